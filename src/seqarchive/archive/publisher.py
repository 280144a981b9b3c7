"""
seqarchive.archive.publisher - Publish files into capacity-bounded containers.

Files are packed into sequentially numbered tar containers
(<archive_path>.<n>.tar). When a container reaches capacity it is closed
automatically and the next publish opens a new one.

A manifest records which file went into which container. It is updated
only after a container has been closed (and delivered to the remote
store, if one is configured), which is what makes a large archiving
operation restartable: a publisher created over an existing manifest
treats every file listed there as already published.

Capacity rules:
    byte_capacity  checked BEFORE adding; if the file would take a
                   non-empty container past the limit, the container is
                   closed and publish() returns None without adding the
                   file. The caller must offer the same file again.
    file_capacity  checked AFTER adding; the file that fills the
                   container is included in it.
"""

import re
import logging
from pathlib import Path
from typing import Optional

from seqarchive.errors import ArchiveIOError, RemoteStoreError, SourceFileMissing
from seqarchive.archive.manifest import Manifest
from seqarchive.archive.stream import ArchiveStream
from seqarchive.archive.store import RemoteStore
from seqarchive.archive.transfer import calculate_checksum

logger = logging.getLogger(__name__)

CONTAINER_EXTENSION = 'tar'

DEFAULT_FILE_CAPACITY = 10_000
DEFAULT_BYTE_CAPACITY = 32 * 1024 * 1024 * 1024


class ArchivePublisher:
    """
    Owns one Manifest and at most one open ArchiveStream.

    Args:
        manifest_path: Manifest file; read immediately if it exists
        archive_path: Base path of the containers; the n-th container is
            written to <archive_path>.<n>.tar
        working_dir: Directory that member names are relative to (the
            run root)
        file_capacity: Maximum files per container
        byte_capacity: Maximum bytes per container
        remove_files: Delete each source file once archived
        store: Optional RemoteStore receiving every closed container
        remote_collection: Remote directory for containers (required with store)
        metadata: Extra attributes attached to every delivered container

    Raises:
        ManifestCorrupt: if an existing manifest cannot be parsed
    """

    def __init__(self, manifest_path: Path, archive_path: Path, working_dir: Path,
                 file_capacity: int = DEFAULT_FILE_CAPACITY,
                 byte_capacity: int = DEFAULT_BYTE_CAPACITY,
                 remove_files: bool = False,
                 store: Optional[RemoteStore] = None,
                 remote_collection: Optional[str] = None,
                 metadata: Optional[dict] = None):
        if file_capacity <= 0 or byte_capacity <= 0:
            raise ValueError(f"Capacities must be positive: files={file_capacity}, bytes={byte_capacity}")
        if store is not None and not remote_collection:
            raise ValueError("A remote_collection is required when a store is configured")

        self.manifest = Manifest(manifest_path)
        self.archive_path = Path(archive_path)
        self.working_dir = Path(working_dir)
        self.file_capacity = file_capacity
        self.byte_capacity = byte_capacity
        self.remove_files = remove_files
        self.store = store
        self.remote_collection = remote_collection.rstrip('/') if remote_collection else None
        self.metadata = dict(metadata or {})

        self.archive_count = 0
        self.stream: Optional[ArchiveStream] = None
        self.failed_stream: Optional[ArchiveStream] = None

        # Read any manifest of published files left by a previous process
        if self.manifest.exists():
            self.manifest.read()
            logger.info(f"Resuming from manifest {self.manifest.manifest_path} "
                        f"({len(self.manifest)} files already published)")

        # Containers named in the manifest are committed; never reuse their names
        self._index_offset = self._next_free_index()

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def publish(self, path: Path) -> Optional[str]:
        """
        Add a file to the current container.

        Args:
            path: Absolute path below working_dir

        Returns:
            Name of the container the file was added to, or None if the
            container was full and has been closed instead (publish the
            same file again to place it in a fresh container).

        Raises:
            SourceFileMissing: the file no longer exists
            ArchiveIOError: the container could not be written, closed or
                delivered; the manifest is unchanged
        """
        path = self._check_path(path)

        if self.stream is None:
            self._open_stream()

        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise SourceFileMissing(path)

        # An empty container always accepts a file, so an oversized file
        # gets a container of its own
        if self.stream.file_count > 0 and self.stream.byte_count + size > self.byte_capacity:
            logger.info(f"'{self.stream.archive_file}' reached capacity of {self.byte_capacity} bytes")
            self.close_stream()  # Pre-op check: file was not added
            return None

        logger.debug(f"Adding '{path}' to '{self.stream.archive_file}'")
        try:
            self.stream.add_file(path)
        except ArchiveIOError:
            self._abandon_stream()
            raise
        destination = self.container_name(self.stream)

        logger.debug(f"Capacity now at {self.stream.file_count} / {self.file_capacity} files, "
                     f"{self.stream.byte_count} / {self.byte_capacity} bytes")

        if self.stream.file_count >= self.file_capacity:
            logger.info(f"'{self.stream.archive_file}' reached capacity of {self.file_capacity} files")
            self.close_stream()  # Post-op check: file was added

        return destination

    def close_stream(self):
        """
        Close the open container, if any, and commit its files to the manifest.

        An open container with no files is discarded: the archive count and
        the manifest are left alone.

        Raises:
            ArchiveIOError: closing, delivering or persisting failed; none of
                the container's files are committed
        """
        if self.stream is None:
            return

        stream = self.stream
        if stream.file_count == 0:
            stream.discard()
            self.stream = None
            return

        try:
            stream.close()
        except ArchiveIOError:
            self._abandon_stream()
            raise

        container = self.container_name(stream)
        if self.store is not None:
            try:
                self._deliver(stream, container)
            except RemoteStoreError as e:
                self._abandon_stream()
                raise ArchiveIOError(f"Failed to deliver {stream.archive_file} to {container}: {e}") from e

        for file_path in stream.file_paths():
            self.manifest.add_item(container, stream.item_path(file_path), stream.file_checksum(file_path))
        try:
            self.manifest.persist()
        except OSError as e:
            self._reload_manifest()
            self._abandon_stream()
            raise ArchiveIOError(f"Failed to update manifest {self.manifest.manifest_path}: {e}") from e

        self.archive_count += 1
        self.stream = None
        logger.info(f"Closed container '{container}' ({stream.file_count} files, "
                    f"{stream.byte_count} bytes); {self.archive_count} closed this session")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def file_published(self, path: Path) -> bool:
        """
        True if the file has been published by this instance or a previous one.

        Test this before publishing to avoid duplicate work after a restart.
        """
        path = self._check_path(path)
        item_path = self.item_path(path)

        published = (self.manifest.contains_item(item_path) or
                     (self.stream is not None and self.stream.file_added(path)))
        logger.debug(f"File '{path}' published? {'yes' if published else 'no'}")

        return published

    def file_updated(self, path: Path) -> bool:
        """
        True if the file changed since it was last published.

        A file held by the open container is compared against the checksum
        of its latest copy there; otherwise against its manifest entry.
        """
        path = self._check_path(path)

        if self.stream is not None:
            published = self.stream.file_checksum(path)
            if published is not None:
                if self.stream.file_updated(path):
                    logger.debug(f"Checksum history of '{path}': "
                                 f"[{', '.join(self.stream.file_checksum_history(path))}]")
                return self._checksum_changed(path, published)

        entry = self.manifest.get_item(self.item_path(path))
        if entry is None or entry.checksum is None:
            return False
        return self._checksum_changed(path, entry.checksum)

    def _checksum_changed(self, path: Path, published: str) -> bool:
        if not path.is_file():
            return False
        try:
            current = calculate_checksum(path)
        except FileNotFoundError:
            return False
        if current != published:
            logger.debug(f"File '{path}' updated during publication "
                         f"from '{published}' to '{current}'")
            return True
        return False

    def session_in_progress(self) -> bool:
        """True if a container is open and has at least one file."""
        return self.stream is not None and self.stream.file_count > 0

    def elapsed_time(self) -> float:
        """Seconds since the open container was created; 0 if none is open."""
        if self.stream is None:
            return 0
        return self.stream.elapsed_time()

    def item_path(self, path: Path) -> str:
        """Path of a file relative to the working directory, as recorded in the manifest."""
        return Path(path).relative_to(self.working_dir).as_posix()

    def container_name(self, stream: ArchiveStream) -> str:
        """Manifest name of a container: its remote path, or local path without a store."""
        if self.store is not None:
            return f"{self.remote_collection}/{stream.archive_file.name}"
        return str(stream.archive_file)

    def next_archive_file(self) -> Path:
        """Local path the next container will be written to."""
        index = self._index_offset + self.archive_count
        return self.archive_path.with_name(f"{self.archive_path.name}.{index}.{CONTAINER_EXTENSION}")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _check_path(self, path) -> Path:
        if path is None:
            raise ValueError("A defined path argument is required")
        path = Path(path)
        if not path.is_absolute():
            raise ValueError(f"An absolute path argument is required: '{path}'")
        return path

    def _open_stream(self):
        archive_file = self.next_archive_file()
        logger.info(f"Opening '{archive_file}' with capacity {self.file_capacity} files / "
                    f"{self.byte_capacity} bytes from working dir '{self.working_dir}'")

        stream = ArchiveStream(archive_file, self.working_dir, remove_files=self.remove_files)
        stream.open()
        self.stream = stream

    def _deliver(self, stream: ArchiveStream, container: str):
        self.store.put_file(stream.archive_file, container)
        attributes = {
            'md5': self.store.compute_checksum(stream.archive_file),
            'file_count': stream.file_count,
            'byte_count': stream.byte_count,
        }
        attributes.update(self.metadata)
        self.store.attach_metadata(container, attributes)

    def _abandon_stream(self):
        """Keep a failed stream for diagnosis; it is never written to again."""
        if self.stream is not None:
            logger.error(f"Abandoning container {self.stream!r}; its files were not committed")
        self.failed_stream = self.stream
        self.stream = None

    def _reload_manifest(self):
        self.manifest = Manifest(self.manifest.manifest_path)
        if self.manifest.exists():
            self.manifest.read()

    def _next_free_index(self) -> int:
        pattern = re.compile(rf"\.(\d+)\.{CONTAINER_EXTENSION}$")
        indices = [-1]
        for container in self.manifest.containers():
            match = pattern.search(container)
            if match and Path(container).name.startswith(self.archive_path.name + '.'):
                indices.append(int(match.group(1)))
        return max(indices) + 1
