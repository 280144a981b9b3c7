"""
Run publishing sessions for the seqarchive monitor.

A RunSession drives one ArchivePublisher against one run-folder while the
instrument is still writing to it:

  1. Scan the run-folder for data files
  2. Publish every file that is new, or changed since it was published
  3. Close the open container if nothing was added to it for
     archive_timeout seconds
  4. Stop once nothing has been published for session_timeout seconds,
     flushing the last partially filled container

Per-file errors are counted and never end the session. Container errors
(ArchiveIOError) end it, leaving the manifest as it was before the failed
container was opened.
"""

import sys
import signal
import time
import logging
import threading
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from seqarchive.config import ArchiveConfig
from seqarchive.errors import ArchiveError, ArchiveIOError, SourceFileMissing
from seqarchive.archive.publisher import ArchivePublisher
from seqarchive.archive.store import LocalDirectoryStore
from seqarchive.archive.transfer import file_settled
from seqarchive.watcher.identify import RunIdentity

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    """Counts reported when a session ends."""
    files_total: int = 0
    files_processed: int = 0
    files_errored: int = 0
    archive_count: int = 0

    @property
    def exit_code(self) -> int:
        return 0 if self.files_errored == 0 else 1


class RunSession:
    """
    Publish the files of one run-folder until it goes idle.

    Args:
        publisher: ArchivePublisher bound to this run-folder
        run_path: Run-folder to scan
        file_pattern: Glob for data files, matched recursively
        session_timeout: End the session after this many seconds without
            publishing a file
        archive_timeout: Close the open container after this many seconds
            without adding a file to it
        poll_interval: Seconds between scans
        stable_seconds: Skip files modified more recently than this
        force: Publish files again even if already published
        stop_event: Ends the session early when set
    """

    def __init__(self, publisher: ArchivePublisher, run_path: Path,
                 file_pattern: str = '*',
                 session_timeout: float = 60 * 20,
                 archive_timeout: float = 60 * 5,
                 poll_interval: float = 5,
                 stable_seconds: float = 0,
                 force: bool = False,
                 stop_event: Optional[threading.Event] = None):
        self.publisher = publisher
        self.run_path = Path(run_path)
        self.file_pattern = file_pattern
        self.session_timeout = session_timeout
        self.archive_timeout = archive_timeout
        self.poll_interval = poll_interval
        self.stable_seconds = stable_seconds
        self.force = force
        self.stop_event = stop_event or threading.Event()

        # path -> (size, mtime_ns) when last examined
        self._seen: Dict[Path, Tuple[int, int]] = {}
        # paths counted in files_total
        self._discovered: Set[Path] = set()

    @classmethod
    def for_run(cls, identity: RunIdentity, config: ArchiveConfig,
                force: bool = False,
                stop_event: Optional[threading.Event] = None) -> 'RunSession':
        """
        Build a session, its publisher and store from configuration.

        Containers and the manifest live in <archive_dir>/<device id>/<asic id>/;
        with dest_root set, closed containers are delivered to the same
        relative location under dest_root.

        Raises:
            ManifestCorrupt: if the run's existing manifest cannot be parsed
            ConfigurationError: if archive_dir is not configured
        """
        archive_dir = config.require_archive_dir() / identity.collection
        store = LocalDirectoryStore(config.dest_root) if config.dest_root else None

        publisher = ArchivePublisher(
            manifest_path=archive_dir / identity.manifest_name,
            archive_path=archive_dir / identity.run_name,
            working_dir=identity.run_path,
            file_capacity=config.file_capacity,
            byte_capacity=config.byte_capacity,
            remove_files=config.remove_files,
            store=store,
            remote_collection=identity.collection if store else None,
            metadata=identity.as_metadata(),
        )

        return cls(
            publisher, identity.run_path,
            file_pattern=config.file_pattern,
            session_timeout=config.session_timeout,
            archive_timeout=config.archive_timeout,
            poll_interval=config.session_poll_interval,
            stable_seconds=config.stable_seconds,
            force=force,
            stop_event=stop_event,
        )

    def discover_files(self) -> List[Path]:
        """Data files currently under the run-folder, sorted by path."""
        try:
            return sorted(p for p in self.run_path.rglob(self.file_pattern) if p.is_file())
        except OSError as e:
            logger.warning(f"Failed to scan run folder '{self.run_path}': {e}")
            return []

    def publish_files(self) -> SessionResult:
        """
        Run the session to completion.

        Returns:
            SessionResult with files seen, published and errored
        """
        result = SessionResult()
        last_published = time.monotonic()

        logger.info(f"Started session on '{self.run_path}'; session timeout {self.session_timeout}s, "
                    f"archive timeout {self.archive_timeout}s")

        try:
            while True:
                n_published = self._publish_pass(result)
                now = time.monotonic()
                if n_published:
                    last_published = now
                idle = now - last_published

                if self.publisher.session_in_progress() and idle >= self.archive_timeout:
                    logger.info(f"No files added for {idle:.0f}s to a container open for "
                                f"{self.publisher.elapsed_time():.0f}s; closing it")
                    self.publisher.close_stream()

                if idle >= self.session_timeout:
                    logger.info(f"Session on '{self.run_path}' idle for {idle:.0f}s; ending")
                    break

                if self.stop_event.wait(timeout=self.poll_interval):
                    logger.info(f"Session on '{self.run_path}' asked to stop")
                    break

            self.publisher.close_stream()

        except ArchiveIOError as e:
            logger.error(f"Session on '{self.run_path}' ended by container error: {e}")
            result.files_errored += 1

        result.archive_count = self.publisher.archive_count

        level = logging.INFO if result.files_errored == 0 else logging.ERROR
        logger.log(level, f"Finished session on '{self.run_path}': {result.files_processed} / "
                          f"{result.files_total} files published in {result.archive_count} containers "
                          f"with {result.files_errored} errors")
        return result

    def _publish_pass(self, result: SessionResult) -> int:
        """One scan of the run-folder. Returns the number of files published."""
        n_published = 0

        for path in self.discover_files():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue

            snapshot = (stat.st_size, stat.st_mtime_ns)
            previous = self._seen.get(path)
            if previous == snapshot:
                continue
            if not file_settled(path, self.stable_seconds):
                continue

            if path not in self._discovered:
                self._discovered.add(path)
                result.files_total += 1
            self._seen[path] = snapshot

            try:
                if (not self.force and self.publisher.file_published(path)
                        and not self.publisher.file_updated(path)):
                    continue

                destination = self.publisher.publish(path)
                if destination is None:
                    # The container was full and has been closed; offer the file to a new one
                    destination = self.publisher.publish(path)
            except SourceFileMissing as e:
                logger.warning(str(e))
                result.files_errored += 1
                continue
            except OSError as e:
                logger.error(f"Failed to read '{path}': {e}")
                result.files_errored += 1
                del self._seen[path]
                continue

            if destination is None:
                logger.warning(f"'{path}' was not accepted by a new container; will retry")
                del self._seen[path]
                continue

            logger.debug(f"Published '{path}' to '{destination}'")
            result.files_processed += 1
            n_published += 1

        return n_published


def publish_run(identity: RunIdentity, config: ArchiveConfig):
    """
    Worker process entry point: run one session and exit.

    Exits with status 0 if the session had no errors, 1 otherwise
    (including a session that could not start).
    """
    # Ctrl+C at the terminal stops the monitor, not the sessions it started
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    # SIGTERM ends the session after the current pass, closing its container
    stop_event = threading.Event()

    def handle_sigterm(signum, frame):
        logger.info(f"Received signal {signum}, finishing publisher for '{identity.run_path}'")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        session = RunSession.for_run(identity, config, stop_event=stop_event)
        logger.info(f"Started publisher for '{identity.run_path}' "
                    f"(device {identity.device_id}, asic {identity.asic_id})")
        result = session.publish_files()
    except ArchiveError as e:
        logger.error(f"Failed to publish '{identity.run_path}': {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Publisher for '{identity.run_path}' crashed: {e}")
        sys.exit(1)

    logger.info(f"Finished publishing {result.files_processed} files for device {identity.device_id} "
                f"with {result.files_errored} errors and exit code {result.exit_code}")
    sys.exit(result.exit_code)
