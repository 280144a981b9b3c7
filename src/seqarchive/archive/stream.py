"""
seqarchive.archive.stream - A single tar container under construction.

Files are streamed into the tar and hashed in the same pass, so the
recorded checksum always describes exactly the bytes stored in the
container.
"""

import os
import contextlib
import time
import hashlib
import logging
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

from seqarchive.errors import ArchiveIOError, SourceFileMissing
from seqarchive.archive.transfer import CHECKSUM_ALGORITHM

logger = logging.getLogger(__name__)


class _HashingReader:
    """File wrapper that hashes everything read through it."""

    def __init__(self, fileobj, algorithm: str):
        self._fileobj = fileobj
        self._hash = hashlib.new(algorithm)

    def read(self, size=-1):
        data = self._fileobj.read(size)
        self._hash.update(data)
        return data

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


class ArchiveStream:
    """
    One open tar container.

    Member names are paths relative to working_dir. A file may be added
    more than once (e.g. re-added after it changed); every addition
    appends to that file's checksum history.

    If remove_files is True, each source file is deleted once it has been
    written to the container.
    """

    def __init__(self, archive_file: Path, working_dir: Path, remove_files: bool = False):
        self.archive_file = Path(archive_file)
        self.working_dir = Path(working_dir)
        self.remove_files = remove_files

        self.byte_count = 0
        self.file_count = 0
        self.start_time = time.time()
        self.last_add_time: Optional[float] = None

        self._fh = None
        self._tar: Optional[tarfile.TarFile] = None
        self._closed = False
        self._failed = False
        # Insertion order is the order files were first added
        self._checksums: Dict[Path, List[str]] = {}

    def __repr__(self):
        state = 'failed' if self._failed else 'open' if self.is_open else 'closed' if self._closed else 'new'
        return (f"ArchiveStream({self.archive_file}, {state}, "
                f"files={self.file_count}, bytes={self.byte_count})")

    @property
    def is_open(self) -> bool:
        return self._tar is not None

    @property
    def failed(self) -> bool:
        return self._failed

    def open(self):
        """
        Create the container file for writing.

        Raises:
            RuntimeError: if the stream has already been opened
            ArchiveIOError: if the container cannot be created
        """
        if self._tar is not None or self._closed or self._failed:
            raise RuntimeError(f"Archive stream {self.archive_file} has already been opened")

        try:
            self.archive_file.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.archive_file, 'wb')
            self._tar = tarfile.open(fileobj=self._fh, mode='w', format=tarfile.PAX_FORMAT)
        except (OSError, tarfile.TarError) as e:
            self._failed = True
            if self._fh is not None:
                self._fh.close()
                self._fh = None
            raise ArchiveIOError(f"Failed to create container {self.archive_file}: {e}") from e

        self.start_time = time.time()
        logger.debug(f"Opened container {self.archive_file} (working dir {self.working_dir})")

    def item_path(self, path: Path) -> str:
        """Member name for an absolute path: its path relative to working_dir."""
        path = Path(path)
        if not path.is_absolute():
            raise ValueError(f"An absolute path is required: '{path}'")
        return path.relative_to(self.working_dir).as_posix()

    def add_file(self, path: Path):
        """
        Append a file to the container.

        Raises:
            SourceFileMissing: if the file no longer exists
            OSError: if the source file cannot be read; nothing was written
            ArchiveIOError: if writing to the container fails; the stream
                is unusable afterwards
        """
        self._require_open()
        path = Path(path)
        arcname = self.item_path(path)

        # Nothing has been written to the tar until the source is open
        try:
            tarinfo = self._tar.gettarinfo(str(path), arcname=arcname)
            source = open(path, 'rb')
        except FileNotFoundError:
            raise SourceFileMissing(path)

        with source:
            reader = _HashingReader(source, CHECKSUM_ALGORITHM)
            try:
                self._tar.addfile(tarinfo, reader)
            except (OSError, tarfile.TarError) as e:
                self._failed = True
                raise ArchiveIOError(f"Failed to add '{path}' to {self.archive_file}: {e}") from e

        checksum = reader.hexdigest()
        self.byte_count += tarinfo.size
        self.file_count += 1
        self.last_add_time = time.time()
        self._checksums.setdefault(path, []).append(checksum)

        logger.debug(f"Added '{arcname}' ({tarinfo.size} bytes, {checksum}) to {self.archive_file.name}")

        if self.remove_files:
            try:
                path.unlink()
            except OSError as e:
                logger.error(f"Archived but failed to remove source file {path}: {e}")

    def file_added(self, path: Path) -> bool:
        """True if this stream has ever added path."""
        return Path(path) in self._checksums

    def file_updated(self, path: Path) -> bool:
        """True if path was added more than once with differing content."""
        return len(set(self._checksums.get(Path(path), []))) > 1

    def file_checksum_history(self, path: Path) -> List[str]:
        """Checksums of every addition of path, oldest first."""
        return list(self._checksums.get(Path(path), []))

    def file_checksum(self, path: Path) -> Optional[str]:
        """Checksum of the most recent addition of path."""
        history = self._checksums.get(Path(path))
        return history[-1] if history else None

    def file_paths(self) -> List[Path]:
        """Absolute paths of every file added, in first-added order."""
        return list(self._checksums)

    def elapsed_time(self) -> float:
        """Seconds since the stream was opened."""
        return time.time() - self.start_time

    def close(self):
        """
        Finalize the container: write the end-of-archive marker, flush and
        sync to disk, and release the file handle.

        Raises:
            ArchiveIOError: if finalizing fails; the container must then
                be treated as invalid
        """
        self._require_open()
        try:
            self._tar.close()
            self._fh.flush()
            os.fsync(self._fh.fileno())
            self._fh.close()
        except (OSError, tarfile.TarError) as e:
            self._failed = True
            if not self._fh.closed:
                with contextlib.suppress(OSError):
                    self._fh.close()
            raise ArchiveIOError(f"Failed to close container {self.archive_file}: {e}") from e
        finally:
            self._tar = None
            self._fh = None

        self._closed = True
        logger.debug(f"Closed container {self.archive_file}: "
                     f"{self.file_count} files, {self.byte_count} bytes")

    def discard(self):
        """Close the stream and delete its container file (used for empty containers)."""
        if self._tar is not None:
            try:
                self._tar.close()
                self._fh.close()
            except (OSError, tarfile.TarError) as e:
                logger.warning(f"Error closing discarded container {self.archive_file}: {e}")
            finally:
                self._tar = None
                self._fh = None
        self._closed = True
        self.archive_file.unlink(missing_ok=True)
        logger.debug(f"Discarded container {self.archive_file}")

    def _require_open(self):
        if self._failed:
            raise RuntimeError(f"Archive stream {self.archive_file} failed and cannot be reused")
        if self._tar is None:
            raise RuntimeError(f"Archive stream {self.archive_file} is not open")
