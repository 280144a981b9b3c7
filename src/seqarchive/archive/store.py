"""
seqarchive.archive.store - Remote store interface.

The archival engine needs only three operations from the place containers
end up: put a file, attach metadata to it, and compute a checksum.
Authentication and collection management belong to the store.

LocalDirectoryStore implements the interface over a directory tree, e.g.
an NFS/NAS mount. Metadata is kept in a JSON sidecar next to each object:

    <remote_path>
    <remote_path>.meta.json
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from datetime import datetime

from seqarchive.errors import RemoteStoreError
from seqarchive.archive.transfer import calculate_checksum, safe_copy

logger = logging.getLogger(__name__)

METADATA_SUFFIX = '.meta.json'


class RemoteStore(ABC):
    """Destination for closed containers."""

    @abstractmethod
    def put_file(self, local_path: Path, remote_path: str):
        """Copy local_path to remote_path, replacing any existing object."""

    @abstractmethod
    def attach_metadata(self, remote_path: str, attributes: dict):
        """Attach key/value attributes to an object already in the store."""

    @abstractmethod
    def compute_checksum(self, path) -> str:
        """md5 of a stored object (remote path) or a local file."""


class LocalDirectoryStore(RemoteStore):
    """RemoteStore backed by a directory tree rooted at root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def __repr__(self):
        return f"LocalDirectoryStore({self.root})"

    def resolve(self, remote_path: str) -> Path:
        """Filesystem location of a remote path. Remote paths are rooted at self.root."""
        relative = Path(str(remote_path).lstrip('/'))
        if '..' in relative.parts:
            raise RemoteStoreError(f"Remote path escapes store root: '{remote_path}'")
        return self.root / relative

    def put_file(self, local_path: Path, remote_path: str):
        local_path = Path(local_path)
        target = self.resolve(remote_path)
        if not local_path.is_file():
            raise RemoteStoreError(f"Cannot put missing file {local_path}")

        if not safe_copy(local_path, target, verify=True):
            raise RemoteStoreError(f"Failed to put {local_path} to {remote_path}")
        logger.info(f"Stored {local_path.name} at {target}")

    def attach_metadata(self, remote_path: str, attributes: dict):
        target = self.resolve(remote_path)
        if not target.exists():
            raise RemoteStoreError(f"Cannot attach metadata to missing object {remote_path}")

        meta_path = target.with_name(target.name + METADATA_SUFFIX)
        metadata = self.get_metadata(remote_path)
        metadata.update(attributes)
        metadata['updated_at'] = datetime.now().isoformat()

        tmp_path = meta_path.with_name(meta_path.name + '.tmp')
        try:
            with open(tmp_path, 'w') as f:
                json.dump(metadata, f, indent=2, sort_keys=True, default=str)
            tmp_path.replace(meta_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise RemoteStoreError(f"Failed to write metadata for {remote_path}: {e}") from e

        logger.debug(f"Attached metadata to {remote_path}: {sorted(attributes)}")

    def get_metadata(self, remote_path: str) -> dict:
        """Metadata attached to remote_path, or {} if none."""
        target = self.resolve(remote_path)
        meta_path = target.with_name(target.name + METADATA_SUFFIX)
        if not meta_path.exists():
            return {}
        try:
            with open(meta_path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RemoteStoreError(f"Failed to read metadata for {remote_path}: {e}") from e

    def compute_checksum(self, path) -> str:
        local = Path(path)
        if not local.is_absolute() or not local.exists():
            local = self.resolve(str(path))
        try:
            return calculate_checksum(local)
        except OSError as e:
            raise RemoteStoreError(f"Failed to checksum {path}: {e}") from e
