"""Persistent state: what has been applied and what providers returned.

A StateSnapshot is immutable. Every change produces a new snapshot with
the serial incremented, so a plan can record the (lineage, serial) it
was computed against and refuse to apply to anything else.

The snapshot is persisted as a single JSON document:

    {
      "format_version": 1,
      "lineage": "<uuid>",
      "serial": 7,
      "resources": {"<address>": {type, inputs, outputs, dependencies, status, ...}},
      "outputs": {"<name>": <value>}
    }
"""

import dataclasses
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from common import EngineError, LockConflictError, atomic_write_json
from expressions import get_path, split_reference
from orchestrator.lock import StateLock

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

RESOURCE_STATUSES = ('applied', 'tainted')


@dataclass(frozen=True)
class ResourceState:
    """Recorded state of one applied resource.

    Attributes:
        address: Resource address
        type: Resource type
        inputs: Resolved attributes as last applied
        outputs: Provider-assigned state (ids, computed attributes)
        dependencies: Addresses this resource depended on when applied
        status: 'applied' or 'tainted' (forces replacement on next plan)
        deposed: Provider state of a replaced instance not yet destroyed
        created_at: Time of the create that produced the current instance
        updated_at: Time of the last create or update
    """
    address: str
    type: str
    inputs: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: tuple = ()
    status: str = 'applied'
    deposed: Optional[dict] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def __post_init__(self):
        if self.status not in RESOURCE_STATUSES:
            raise ValueError(f"Unknown resource status '{self.status}'")
        if not isinstance(self.dependencies, tuple):
            object.__setattr__(self, 'dependencies', tuple(self.dependencies))

    @property
    def attributes(self) -> dict:
        """Inputs overlaid with outputs, as seen by references."""
        return {**self.inputs, **self.outputs}

    @property
    def tainted(self) -> bool:
        return self.status == 'tainted'

    def replace(self, **changes: Any) -> 'ResourceState':
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'inputs': self.inputs,
            'outputs': self.outputs,
            'dependencies': list(self.dependencies),
            'status': self.status,
        }
        if self.deposed is not None:
            d['deposed'] = self.deposed
        if self.created_at is not None:
            d['created_at'] = self.created_at
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, address: str, data: dict) -> 'ResourceState':
        return cls(
            address=address,
            type=data['type'],
            inputs=data.get('inputs', {}),
            outputs=data.get('outputs', {}),
            dependencies=tuple(data.get('dependencies', [])),
            status=data.get('status', 'applied'),
            deposed=data.get('deposed'),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable snapshot of applied resources and root outputs."""
    lineage: str = field(default_factory=lambda: uuid.uuid4().hex)
    serial: int = 0
    resources: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)

    @classmethod
    def empty(cls) -> 'StateSnapshot':
        return cls()

    def __contains__(self, address: str) -> bool:
        return address in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def addresses(self) -> list[str]:
        return list(self.resources)

    def get(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)

    def attribute(self, reference: str) -> Any:
        """Value of a resource reference ('type.name.attr') in this snapshot.

        Raises:
            KeyError: If the resource or attribute is not recorded
        """
        try:
            address, path = split_reference(reference)
        except ValueError:
            raise KeyError(reference)
        entry = self.resources.get(address)
        if entry is None:
            raise KeyError(address)
        return get_path(entry.attributes, path)

    def with_resource(self, resource: ResourceState) -> 'StateSnapshot':
        """New snapshot with resource added or replaced."""
        resources = dict(self.resources)
        resources[resource.address] = resource
        return dataclasses.replace(self, serial=self.serial + 1, resources=resources)

    def without_resource(self, address: str) -> 'StateSnapshot':
        """New snapshot with resource removed (no-op copy if absent)."""
        resources = {a: r for a, r in self.resources.items() if a != address}
        return dataclasses.replace(self, serial=self.serial + 1, resources=resources)

    def with_outputs(self, outputs: dict) -> 'StateSnapshot':
        """New snapshot with root outputs replaced."""
        return dataclasses.replace(self, serial=self.serial + 1, outputs=dict(outputs))

    def to_dict(self) -> dict:
        return {
            'format_version': STATE_FORMAT_VERSION,
            'lineage': self.lineage,
            'serial': self.serial,
            'resources': {a: r.to_dict() for a, r in self.resources.items()},
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StateSnapshot':
        """Create StateSnapshot from dictionary.

        Raises:
            EngineError: If the document is not a supported state format
        """
        if not isinstance(data, dict):
            raise EngineError("State must be a JSON object")
        version = data.get('format_version', STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise EngineError(f"Unsupported state format version: {version}")
        try:
            resources = {
                address: ResourceState.from_dict(address, entry)
                for address, entry in (data.get('resources') or {}).items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise EngineError(f"Malformed state resource entry: {e}")
        return cls(
            lineage=data.get('lineage') or uuid.uuid4().hex,
            serial=int(data.get('serial', 0)),
            resources=resources,
            outputs=dict(data.get('outputs') or {}),
        )


@runtime_checkable
class StateBackend(Protocol):
    """Where snapshots live and how concurrent runs are excluded."""

    def load(self) -> StateSnapshot:
        ...

    def save(self, snapshot: StateSnapshot) -> None:
        ...

    def acquire_lock(self, operation: str) -> dict:
        ...

    def release_lock(self) -> None:
        ...

    def force_unlock(self, lock_id: Optional[str] = None) -> Optional[dict]:
        ...


class LocalStateBackend:
    """State in a local JSON file, locked with a sibling .lock file.

    Saves are whole-file atomic replaces: a crash mid-write leaves the
    previous snapshot intact.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = StateLock(self.path.with_name(self.path.name + '.lock'))

    def load(self) -> StateSnapshot:
        """Load the snapshot. A missing file is an empty state.

        Raises:
            EngineError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return StateSnapshot.empty()
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise EngineError(f"Invalid state file {self.path}: {e}")
        snapshot = StateSnapshot.from_dict(data)
        logger.debug(f"Loaded state from {self.path} (serial {snapshot.serial})")
        return snapshot

    def save(self, snapshot: StateSnapshot) -> None:
        atomic_write_json(self.path, snapshot.to_dict())
        logger.debug(f"Saved state serial {snapshot.serial} to {self.path}")

    def acquire_lock(self, operation: str) -> dict:
        return self.lock.acquire(operation)

    def release_lock(self) -> None:
        self.lock.release()

    def force_unlock(self, lock_id: Optional[str] = None) -> Optional[dict]:
        return self.lock.force_unlock(lock_id)


class MemoryStateBackend:
    """In-process backend, for tests and embedding."""

    def __init__(self, snapshot: Optional[StateSnapshot] = None):
        self.snapshot = snapshot if snapshot is not None else StateSnapshot.empty()
        self.saves: list[StateSnapshot] = []
        self._lock: Optional[dict] = None

    def load(self) -> StateSnapshot:
        return self.snapshot

    def save(self, snapshot: StateSnapshot) -> None:
        self.snapshot = snapshot
        self.saves.append(snapshot)

    def acquire_lock(self, operation: str) -> dict:
        if self._lock is not None:
            raise LockConflictError(Path('<memory>'), self._lock)
        self._lock = {'id': uuid.uuid4().hex, 'operation': operation, 'created_at': time.time()}
        return self._lock

    def release_lock(self) -> None:
        self._lock = None

    def force_unlock(self, lock_id: Optional[str] = None) -> Optional[dict]:
        held = self._lock
        if held is not None and lock_id is not None and held['id'] != lock_id:
            raise LockConflictError(Path('<memory>'), held)
        self._lock = None
        return held
