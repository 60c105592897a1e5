"""Tests for provisioner.graph module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from manifest import Manifest
from provisioner.graph import GraphNode, ResourceGraph
from provisioner.render import Resource, render_resources


def _res(rtype, name, depends_on=None, **attrs):
    return Resource(rtype, name, attrs, depends_on=list(depends_on or []))


def _addresses(nodes):
    return [n.address for n in nodes]


class TestGraphNode:
    """Tests for GraphNode dataclass."""

    def test_properties(self):
        node = GraphNode(resource=_res('github_repository', 'repo'))
        assert node.address == 'github_repository.repo'
        assert node.type == 'github_repository'
        assert node.is_root is True

    def test_non_root_node(self):
        parent = GraphNode(resource=_res('github_repository', 'repo'))
        child = GraphNode(resource=_res('github_branch', 'dev'), requires=[parent], depth=1)
        parent.required_by.append(child)
        assert child.is_root is False

    def test_repr(self):
        node = GraphNode(resource=_res('github_branch', 'dev'), depth=2)
        assert 'github_branch.dev' in repr(node)
        assert 'depth=2' in repr(node)


class TestResourceGraph:
    """Tests for ResourceGraph construction and ordering."""

    def test_single_resource(self):
        graph = ResourceGraph([_res('github_repository', 'repo')])
        assert len(graph) == 1
        assert _addresses(graph.roots) == ['github_repository.repo']
        assert graph.max_depth == 0

    def test_empty_graph(self):
        graph = ResourceGraph([])
        assert len(graph) == 0
        assert graph.max_depth == 0
        assert graph.create_order() == []

    def test_implicit_reference_edge(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_repository_collaborator', 'bot', repository='${github_repository.repo.name}'),
        ])
        assert graph.dependencies('github_repository_collaborator.bot') == ['github_repository.repo']
        assert graph.dependents('github_repository.repo') == ['github_repository_collaborator.bot']
        assert graph.get_node('github_repository_collaborator.bot').depth == 1

    def test_explicit_and_implicit_deduplicated(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_branch', 'dev', depends_on=['github_repository.repo'],
                 repository='${github_repository.repo.name}'),
        ])
        assert graph.dependencies('github_branch.dev') == ['github_repository.repo']

    def test_create_order_dependencies_first(self):
        graph = ResourceGraph([
            _res('github_branch', 'dev', depends_on=['github_repository_file.a']),
            _res('github_repository_file', 'a', repository='${github_repository.repo.name}'),
            _res('github_repository', 'repo'),
        ])
        assert _addresses(graph.create_order()) == [
            'github_repository.repo',
            'github_repository_file.a',
            'github_branch.dev',
        ]

    def test_create_order_stable_by_declaration(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_repository_file', 'b', repository='${github_repository.repo.name}'),
            _res('github_repository_file', 'a', repository='${github_repository.repo.name}'),
            _res('tls_private_key', 'k'),
        ])
        assert _addresses(graph.create_order()) == [
            'github_repository.repo',
            'github_repository_file.b',
            'github_repository_file.a',
            'tls_private_key.k',
        ]

    def test_destroy_order_is_reverse(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_branch', 'dev', repository='${github_repository.repo.name}'),
        ])
        assert _addresses(graph.destroy_order()) == list(reversed(_addresses(graph.create_order())))

    def test_transitive_dependencies(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_repository_file', 'a', repository='${github_repository.repo.name}'),
            _res('github_branch', 'dev', depends_on=['github_repository_file.a']),
        ])
        assert graph.dependencies('github_branch.dev') == ['github_repository_file.a']
        assert graph.dependencies('github_branch.dev', transitive=True) == [
            'github_repository_file.a',
            'github_repository.repo',
        ]
        assert graph.max_depth == 2

    def test_explicit_dependencies(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_repository_file', 'a', repository='${github_repository.repo.name}'),
            _res('github_branch', 'dev', depends_on=['github_repository_file.a'],
                 repository='${github_repository.repo.name}'),
        ])
        assert graph.explicit_dependencies('github_branch.dev') == ['github_repository_file.a']

    def test_contains_and_by_type(self):
        graph = ResourceGraph([
            _res('github_repository', 'repo'),
            _res('github_branch', 'a'),
            _res('github_branch', 'b'),
        ])
        assert 'github_branch.a' in graph
        assert 'github_branch.zzz' not in graph
        assert _addresses(graph.by_type('github_branch')) == ['github_branch.a', 'github_branch.b']

    def test_get_node_unknown_raises(self):
        graph = ResourceGraph([_res('github_repository', 'repo')])
        with pytest.raises(KeyError):
            graph.get_node('github_branch.dev')


class TestResourceGraphErrors:
    """Tests for graph validation errors."""

    def test_duplicate_address(self):
        with pytest.raises(ConfigError, match='Duplicate resource address'):
            ResourceGraph([_res('github_repository', 'repo'), _res('github_repository', 'repo')])

    def test_dangling_explicit_dependency(self):
        with pytest.raises(ConfigError, match="unknown resource 'github_repository_file.x'"):
            ResourceGraph([_res('github_branch', 'dev', depends_on=['github_repository_file.x'])])

    def test_dangling_reference(self):
        with pytest.raises(ConfigError, match="unknown resource 'github_repository.other'"):
            ResourceGraph([_res('github_branch', 'dev', repository='${github_repository.other.name}')])

    def test_self_dependency(self):
        with pytest.raises(ConfigError, match='depends on itself'):
            ResourceGraph([_res('github_branch', 'dev', depends_on=['github_branch.dev'])])

    def test_cycle_detected(self):
        with pytest.raises(ConfigError, match='Cycle detected'):
            ResourceGraph([
                _res('github_branch', 'a', depends_on=['github_branch.b']),
                _res('github_branch', 'b', depends_on=['github_branch.a']),
            ])


class TestRenderedManifestGraph:
    """Graph properties of a fully rendered manifest."""

    def test_builds_without_errors(self, manifest):
        graph = ResourceGraph(render_resources(manifest))
        assert len(graph) == 13
        assert _addresses(graph.roots) == ['github_repository.repo', 'tls_private_key.ci']

    def test_branch_created_after_every_file(self, manifest):
        graph = ResourceGraph(render_resources(manifest))
        order = _addresses(graph.create_order())
        branch_pos = order.index('github_branch.develop')
        for f in ('pr_template', 'codeowners', 'notify_workflow'):
            assert order.index(f'github_repository_file.{f}') < branch_pos

    def test_default_branch_after_branch(self, manifest):
        graph = ResourceGraph(render_resources(manifest))
        order = _addresses(graph.create_order())
        assert order.index('github_branch.develop') < order.index('github_branch_default.default')

    def test_secret_after_key_pair(self, manifest):
        graph = ResourceGraph(render_resources(manifest))
        assert 'tls_private_key.ci' in graph.dependencies('github_actions_secret.deploy_private_key')

    def test_repository_destroyed_last(self, manifest):
        graph = ResourceGraph(render_resources(manifest))
        assert graph.destroy_order()[-1].address in ('github_repository.repo', 'tls_private_key.ci')
        order = _addresses(graph.destroy_order())
        assert order.index('github_repository.repo') > order.index('github_repository_file.codeowners')

    def test_branch_created_after_its_source(self, manifest_data, manifest_dir):
        manifest_data['branches'] = [
            {'name': 'feature', 'source_branch': 'develop'},
            {'name': 'develop', 'source_branch': 'main'},
        ]
        m = Manifest.from_dict(manifest_data, source_path=manifest_dir / 'test.yaml')
        graph = ResourceGraph(render_resources(m))
        assert 'github_branch.develop' in graph.dependencies('github_branch.feature', transitive=True)
        order = _addresses(graph.create_order())
        assert order.index('github_branch.develop') < order.index('github_branch.feature')

    def test_branches_sourced_from_each_other(self, manifest_data, manifest_dir):
        manifest_data['branches'] = [
            {'name': 'feature', 'source_branch': 'develop'},
            {'name': 'develop', 'source_branch': 'feature'},
        ]
        m = Manifest.from_dict(manifest_data, source_path=manifest_dir / 'test.yaml')
        with pytest.raises(ConfigError, match='Cycle detected'):
            ResourceGraph(render_resources(m))
