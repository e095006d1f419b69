"""State lock file.

A run holds the lock for its whole duration. The lock file is created
with O_CREAT | O_EXCL so only one process can own it, and holds JSON
describing the holder (id, pid, host, operation, created_at).

A lock left behind by a crashed run is never broken implicitly; the
operator removes it with force-unlock after checking the holder.
"""

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Optional

from common import LockConflictError

logger = logging.getLogger(__name__)


def _process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


class StateLock:
    """Exclusive lock on a state file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._held: Optional[dict] = None

    @property
    def held(self) -> bool:
        return self._held is not None

    def read(self) -> Optional[dict]:
        """Return the current holder info, or None if unlocked."""
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except (ValueError, OSError):
            return {'id': '?', 'operation': '?', 'pid': '?', 'host': '?'}
        if not isinstance(data, dict):
            return {'id': '?', 'operation': '?', 'pid': '?', 'host': '?'}
        return data

    def holder_alive(self, info: Optional[dict] = None) -> Optional[bool]:
        """Whether the holding process still runs (None if unknown or remote)."""
        info = info if info is not None else self.read()
        if not info or info.get('host') != socket.gethostname():
            return None
        pid = info.get('pid')
        if not isinstance(pid, int):
            return None
        return _process_alive(pid)

    def acquire(self, operation: str) -> dict:
        """Take the lock.

        Args:
            operation: Verb holding the lock (plan, apply, destroy, ...)

        Returns:
            Lock info written to the lock file

        Raises:
            LockConflictError: If the lock is already held
        """
        if self._held is not None:
            raise LockConflictError(self.path, self._held)

        info = {
            'id': uuid.uuid4().hex,
            'pid': os.getpid(),
            'host': socket.gethostname(),
            'operation': operation,
            'created_at': time.time(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.read()
            if self.holder_alive(holder) is False:
                logger.warning(f"State lock held by exited process {holder.get('pid')}; "
                               f"run force-unlock {holder.get('id')} if no run is active")
            raise LockConflictError(self.path, holder)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info, f, indent=2)
            f.write('\n')

        self._held = info
        logger.debug(f"Acquired state lock {info['id']} for {operation}")
        return info

    def release(self) -> None:
        """Release a lock taken by this instance. No-op if not held."""
        if self._held is None:
            return
        current = self.read()
        if current and current.get('id') != self._held['id']:
            logger.warning(f"State lock was replaced (now {current.get('id')}); leaving it")
        else:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            logger.debug(f"Released state lock {self._held['id']}")
        self._held = None

    def force_unlock(self, lock_id: Optional[str] = None) -> Optional[dict]:
        """Remove the lock file regardless of holder.

        Args:
            lock_id: If given, only remove the lock when its id matches

        Returns:
            The removed holder info, or None if there was no lock

        Raises:
            LockConflictError: If lock_id does not match the current holder
        """
        current = self.read()
        if current is None:
            return None
        if lock_id is not None and current.get('id') != lock_id:
            raise LockConflictError(self.path, current)
        try:
            self.path.unlink()
        except FileNotFoundError:
            return None
        logger.info(f"Force-unlocked state (lock {current.get('id')}, "
                    f"held by {current.get('operation')} pid {current.get('pid')})")
        return current

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
