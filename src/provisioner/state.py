"""Execution state for manifest-based provisioning.

Tracks per-resource outcomes of the last engine run (pending, running,
applied, unchanged, failed, destroyed) and persists them next to the
workspace. This is a run record only; the engine's own state file is
the source of truth for remote object identities.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from config import get_base_dir

logger = logging.getLogger(__name__)

STATES_DIRNAME = '.states'


@dataclass
class ResourceState:
    """Per-resource execution state.

    Attributes:
        address: Resource address (type.name)
        status: Current status (pending, running, applied, unchanged, failed, destroyed)
        action: Engine action taken or planned (create, update, delete, replace, no-op)
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed
    """
    address: str
    status: str = 'pending'
    action: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self, action: Optional[str] = None) -> None:
        self.status = 'running'
        self.started_at = time.time()
        if action is not None:
            self.action = action

    def complete(self, action: Optional[str] = None) -> None:
        self.status = 'applied'
        self.completed_at = time.time()
        if action is not None:
            self.action = action

    def mark_unchanged(self) -> None:
        self.status = 'unchanged'
        self.action = 'no-op'
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def mark_destroyed(self) -> None:
        self.status = 'destroyed'
        self.action = 'delete'
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'status': self.status,
        }
        if self.action is not None:
            d['action'] = self.action
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            address=data['address'],
            status=data.get('status', 'pending'),
            action=data.get('action'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error'),
        )


class ExecutionState:
    """Manifest-level execution state with save/load.

    State is persisted to .states/{manifest}/execution.json.
    """

    def __init__(self, manifest_name: str, verb: str = ''):
        self.manifest_name = manifest_name
        self.verb = verb
        self._resources: dict[str, ResourceState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_resource(self, address: str) -> ResourceState:
        """Register a resource for tracking."""
        state = ResourceState(address=address)
        self._resources[address] = state
        return state

    def get_resource(self, address: str) -> ResourceState:
        """Get resource state by address, registering unknown addresses.

        The engine may report addresses the manifest no longer declares
        (orphans being deleted), so lookups never fail.
        """
        if address not in self._resources:
            return self.add_resource(address)
        return self._resources[address]

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def counts(self) -> dict[str, int]:
        """Number of resources per status."""
        result: dict[str, int] = {}
        for state in self._resources.values():
            result[state.status] = result.get(state.status, 0) + 1
        return result

    def failed(self) -> list[ResourceState]:
        return [s for s in self._resources.values() if s.status == 'failed']

    def _state_dir(self) -> Path:
        return get_base_dir() / STATES_DIRNAME / self.manifest_name

    def save(self, path: Optional[Path] = None) -> Path:
        """Save state to JSON file.

        Args:
            path: Optional override path. Default: .states/{manifest}/execution.json

        Returns:
            Path where state was saved
        """
        if path is None:
            path = self._state_dir() / 'execution.json'
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'manifest_name': self.manifest_name,
            'verb': self.verb,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'resources': {addr: state.to_dict() for addr, state in self._resources.items()},
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Saved execution state to {path}")
        return path

    @classmethod
    def load(cls, manifest_name: str, path: Optional[Path] = None) -> 'ExecutionState':
        """Load state from JSON file.

        Raises:
            FileNotFoundError: If state file doesn't exist
        """
        state = cls(manifest_name)
        if path is None:
            path = state._state_dir() / 'execution.json'

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        state.verb = data.get('verb', '')
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')

        for address, resource_data in data.get('resources', {}).items():
            state._resources[address] = ResourceState.from_dict(resource_data)

        logger.debug(f"Loaded execution state from {path}")
        return state
