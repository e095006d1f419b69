"""Common types, errors and helpers for the orchestration engine."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base class for orchestration errors."""


class ValidationError(EngineError):
    """Malformed declarations. Raised before any state mutation."""


class UnresolvedReferenceError(ValidationError):
    """A reference names a node, variable or module output that does not exist."""

    def __init__(self, reference: str, source: str = ''):
        self.reference = reference
        self.source = source
        where = f" in '{source}'" if source else ''
        super().__init__(f"Unresolved reference '{reference}'{where}")


class CyclicDependencyError(ValidationError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: Node addresses along the cycle, first address repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class DriftError(EngineError):
    """Provider-reported state diverges from the snapshot.

    Only raised when the caller asks for drift to be fatal.
    """

    def __init__(self, drift: list):
        self.drift = list(drift)
        names = ', '.join(d.address for d in self.drift)
        super().__init__(f"Drift detected on {len(self.drift)} resource(s): {names}")


class ProviderError(EngineError):
    """A provider create/update/destroy/read call failed."""

    def __init__(self, message: str, address: Optional[str] = None):
        self.address = address
        super().__init__(message)


class PlanConflictError(EngineError):
    """Two actions would mutate the same node concurrently, or a plan was reused."""


class PartialApplyError(EngineError):
    """One or more nodes failed or were skipped during apply.

    Attributes:
        failed: Addresses whose provider operation failed
        skipped: Addresses never attempted (failed dependency or cancellation)
        result: The ApplyResult of the run (state reflects completed work)
    """

    def __init__(self, failed: list[str], skipped: list[str], result: Any = None):
        self.failed = list(failed)
        self.skipped = list(skipped)
        self.result = result
        parts = []
        if self.failed:
            parts.append(f"failed: {', '.join(self.failed)}")
        if self.skipped:
            parts.append(f"skipped: {', '.join(self.skipped)}")
        super().__init__(f"Apply incomplete ({'; '.join(parts)})")


class LockConflictError(EngineError):
    """Another run holds the state lock."""

    def __init__(self, path: Path, holder: Optional[dict] = None):
        self.path = path
        self.holder = holder or {}
        who = ''
        if self.holder:
            who = (f" by {self.holder.get('operation', '?')} "
                   f"(pid {self.holder.get('pid', '?')} on {self.holder.get('host', '?')}, "
                   f"id {self.holder.get('id', '?')})")
        super().__init__(f"State is locked{who}: {path}")


@dataclass
class NodeResult:
    """Result of executing one plan step."""
    address: str
    action: str
    status: str  # 'applied', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    outputs: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == 'applied'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
            'duration': round(self.duration, 2),
        }
        if self.message:
            d['message'] = self.message
        return d


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path so readers see either the old or the new file.

    The data is written to a temporary file in the same directory, flushed
    to disk, then renamed over the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}-', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write('\n')
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.debug(f"Wrote {path}")
