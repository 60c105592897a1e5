"""Tests for provisioner.state module."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from provisioner.state import ExecutionState, ResourceState


class TestResourceState:
    """Tests for ResourceState dataclass."""

    def test_defaults(self):
        state = ResourceState(address='github_branch.develop')
        assert state.status == 'pending'
        assert state.action is None
        assert state.error is None
        assert state.duration is None

    def test_start(self):
        state = ResourceState(address='github_branch.develop')
        state.start('create')
        assert state.status == 'running'
        assert state.action == 'create'
        assert state.started_at is not None

    def test_complete(self):
        state = ResourceState(address='github_branch.develop')
        state.start()
        state.complete('create')
        assert state.status == 'applied'
        assert state.action == 'create'
        assert state.duration is not None
        assert state.duration >= 0

    def test_mark_unchanged(self):
        state = ResourceState(address='github_repository.repo')
        state.mark_unchanged()
        assert state.status == 'unchanged'
        assert state.action == 'no-op'

    def test_fail(self):
        state = ResourceState(address='github_branch_protection.main')
        state.start()
        state.fail('tofu apply failed: 403 Resource not accessible')
        assert state.status == 'failed'
        assert '403' in state.error
        assert state.completed_at is not None

    def test_mark_destroyed(self):
        state = ResourceState(address='github_repository.repo')
        state.mark_destroyed()
        assert state.status == 'destroyed'
        assert state.action == 'delete'

    def test_to_dict_minimal(self):
        assert ResourceState(address='a.b').to_dict() == {'address': 'a.b', 'status': 'pending'}

    def test_dict_roundtrip_preserves_error(self):
        state = ResourceState(address='a.b')
        state.start('update')
        state.fail('boom')
        restored = ResourceState.from_dict(state.to_dict())
        assert restored == state


class TestExecutionState:
    """Tests for ExecutionState."""

    def test_add_and_get(self):
        exec_state = ExecutionState('test', 'apply')
        exec_state.add_resource('github_repository.repo')
        assert exec_state.get_resource('github_repository.repo').status == 'pending'
        assert list(exec_state.resources) == ['github_repository.repo']

    def test_get_unknown_registers(self):
        exec_state = ExecutionState('test')
        state = exec_state.get_resource('github_branch.orphan')
        assert state.address == 'github_branch.orphan'
        assert 'github_branch.orphan' in exec_state.resources

    def test_resources_is_copy(self):
        exec_state = ExecutionState('test')
        exec_state.add_resource('a.b')
        exec_state.resources.clear()
        assert 'a.b' in exec_state.resources

    def test_counts_and_failed(self):
        exec_state = ExecutionState('test')
        exec_state.add_resource('a.one').complete('create')
        exec_state.add_resource('a.two').mark_unchanged()
        exec_state.add_resource('a.three').fail('err')
        assert exec_state.counts() == {'applied': 1, 'unchanged': 1, 'failed': 1}
        assert [s.address for s in exec_state.failed()] == ['a.three']

    def test_save_and_load(self, tmp_path):
        exec_state = ExecutionState('test', 'apply')
        exec_state.start()
        exec_state.add_resource('github_repository.repo').complete('create')
        exec_state.add_resource('github_branch.develop').fail('conflict')
        exec_state.finish()

        path = exec_state.save(tmp_path / 'execution.json')
        data = json.loads(path.read_text())
        assert data['verb'] == 'apply'
        assert data['resources']['github_branch.develop']['error'] == 'conflict'

        loaded = ExecutionState.load('test', path)
        assert loaded.verb == 'apply'
        assert loaded.started_at == exec_state.started_at
        assert loaded.get_resource('github_repository.repo').status == 'applied'
        assert loaded.get_resource('github_branch.develop').error == 'conflict'

    def test_default_path(self, tmp_path):
        with patch('provisioner.state.get_base_dir', return_value=tmp_path):
            path = ExecutionState('demo', 'plan').save()
            assert path == tmp_path / '.states' / 'demo' / 'execution.json'
            assert ExecutionState.load('demo').verb == 'plan'

    def test_load_missing_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ExecutionState.load('test', tmp_path / 'missing.json')
