"""local_file: a file on the local filesystem."""

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from common import ProviderError
from providers.base import ResourceSchema

logger = logging.getLogger(__name__)


def _sha1(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


class LocalFileProvider:
    """Provider for local_file.

    Files are written relative to root_dir; absolute filenames and paths
    escaping root_dir are rejected.
    """

    schema = ResourceSchema(
        type_name='local_file',
        required=('filename', 'content'),
        optional=('file_permission',),
        outputs=('id', 'path'),
        force_new=('filename',),
    )

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir).resolve()

    def _path(self, filename: str) -> Path:
        path = (self.root_dir / filename).resolve()
        if path != self.root_dir and self.root_dir not in path.parents:
            raise ProviderError(f"local_file path escapes {self.root_dir}: {filename}")
        return path

    def _write(self, attrs: dict) -> dict:
        path = self._path(attrs['filename'])
        content = str(attrs['content']).encode('utf-8')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            if perm := attrs.get('file_permission'):
                os.chmod(path, int(str(perm), 8))
        except (OSError, ValueError) as e:
            raise ProviderError(f"Cannot write {path}: {e}")
        return {'id': _sha1(content), 'path': str(path)}

    def create(self, attrs: dict) -> dict:
        state = self._write(attrs)
        logger.info(f"[local_file] wrote {state['path']}")
        return state

    def update(self, attrs: dict, state: dict) -> dict:
        new_state = self._write(attrs)
        logger.info(f"[local_file] rewrote {new_state['path']}")
        return new_state

    def destroy(self, state: dict) -> None:
        path = Path(state['path'])
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"Cannot remove {path}: {e}")
        logger.info(f"[local_file] removed {path}")

    def read(self, state: dict) -> Optional[dict]:
        path = Path(state['path'])
        if not path.exists():
            return None
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ProviderError(f"Cannot read {path}: {e}")
        return {'id': _sha1(content), 'path': str(path)}
