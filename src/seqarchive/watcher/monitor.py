"""
Staging-directory run monitor for seqarchive.

Watches the staging directory for instrument run-folders and starts one
publishing worker per run-folder, up to max_processes at a time.

Loop (single thread):
  A. Wait up to poll_interval for filesystem events, then drain the queue
  B. Start workers for queued run-folders while the pool has room
  C. Reap finished workers

A run-folder has at most one worker at a time; events for a run-folder
that is being published are ignored. A run-folder whose data files do not
exist yet is skipped and picked up again on a later event. When a worker
finishes (its session went idle), the next event for that run-folder
starts a new session which resumes from the run's manifest.
"""

import signal
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict

from seqarchive.config import MonitorConfig
from seqarchive.errors import InvalidRunIdentifier
from seqarchive.watcher.events import RunEvent, WatchdogEventSource, ARRIVAL_KINDS
from seqarchive.watcher.identify import identify_run
from seqarchive.watcher.pool import ProcessPool, WorkerHandle
from seqarchive.watcher.session import publish_run

logger = logging.getLogger(__name__)


class RunMonitor:
    """
    Dispatches run-folders appearing in the staging directory to workers.

    Args:
        config: MonitorConfig
        source: Event source with start()/poll(timeout)/stop() and a
            lost_events count (default: WatchdogEventSource on the
            staging path)
        pool: Worker pool with has_capacity()/spawn(name, *args)/reap()
            (default: ProcessPool running publish_run)
        identify: Callable(run_path, pattern) -> RunIdentity or None
        log_queue: Queue handed to the default ProcessPool for worker log records
    """

    def __init__(self, config: MonitorConfig, source=None, pool=None,
                 identify: Callable = identify_run, log_queue=None):
        if config.staging_path is None:
            raise ValueError("A staging path is required")

        self.config = config
        self.staging_path = Path(config.staging_path)
        self.source = source or WatchdogEventSource(self.staging_path, queue_size=config.queue_size)
        self.pool = pool or ProcessPool(config.max_processes, publish_run, log_queue=log_queue)
        self.identify = identify

        # Run-folder path -> worker publishing it
        self.in_progress: Dict[Path, WorkerHandle] = {}
        # Run-folder path -> oldest undispatched event; waits here while the pool is full
        self.pending: 'OrderedDict[Path, RunEvent]' = OrderedDict()
        # Run-folder path -> exit code of its most recent worker
        self.exit_codes: Dict[Path, int] = {}

        self.workers_started = 0
        self.workers_succeeded = 0
        self.workers_failed = 0

        self._continue = False
        self._lost_events_reported = 0

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    def start(self) -> int:
        """
        Monitor until stop() is called.

        Workers already started are left to finish on their own.

        Returns:
            Number of errors: monitor failures plus workers that exited
            with a nonzero status
        """
        archive = self.config.archive
        logger.info(f"Started RunMonitor; staging path: '{self.staging_path}', "
                    f"file capacity: {archive.file_capacity} files, "
                    f"archive timeout {archive.archive_timeout} sec, "
                    f"max processes: {self.config.max_processes}, "
                    f"session timeout {archive.session_timeout} sec")

        self._continue = True
        num_errors = 0

        self.source.start()
        try:
            while self._continue:
                self.run_once()
        except Exception as e:
            logger.error(f"RunMonitor failed: {e}", exc_info=True)
            num_errors += 1
        finally:
            self.source.stop()

        # Collect any workers that finished during the last cycle
        self._reap()

        if self.in_progress:
            logger.info(f"Leaving {len(self.in_progress)} running workers to finish: "
                        f"{sorted(str(p) for p in self.in_progress)}")

        num_errors += self.workers_failed
        logger.info(f"Stopped RunMonitor; {self.workers_started} workers started, "
                    f"{self.workers_succeeded} succeeded, {self.workers_failed} failed")
        return num_errors

    def run_once(self):
        """One poll cycle: collect events, dispatch what the pool has room for, reap."""
        events = self.source.poll(self.config.poll_interval)
        if events:
            logger.debug(f"{len(events)} events")
        for event in events:
            self.enqueue(event)

        lost = self.source.lost_events
        if lost > self._lost_events_reported:
            logger.warning(f"Some events were lost! ({lost - self._lost_events_reported} dropped)")
            self._lost_events_reported = lost

        if self.pending:
            logger.debug(f"{len(self.pending)} run folders in queue")
        self.dispatch_pending()
        self._reap()

    def stop(self):
        """Ask the loop to finish its current cycle and return."""
        logger.info("RunMonitor stop requested")
        self._continue = False

    def handle_signals(self):
        """Stop cleanly on SIGINT or SIGTERM."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    # =========================================================================
    # EVENT QUEUE
    # =========================================================================

    def enqueue(self, event: RunEvent):
        """Queue an event unless its run-folder is already being published or queued."""
        if event.kind not in ARRIVAL_KINDS or not event.is_directory:
            logger.debug(f"Ignoring {event.kind.value} event on '{event.path}'")
            return

        path = Path(event.path)
        handle = self.in_progress.get(path)
        if handle is not None:
            logger.debug(f"{path} is already being monitored by process with PID {handle.pid}")
            return
        if path not in self.pending:
            self.pending[path] = event

    def dispatch_pending(self):
        """Start workers for queued run-folders, oldest first, while the pool has room."""
        for path in list(self.pending):
            if path in self.in_progress:
                del self.pending[path]
                continue
            if not self.pool.has_capacity():
                logger.debug(f"Worker pool full; {len(self.pending)} run folders waiting")
                break
            event = self.pending.pop(path)
            self._dispatch(event)

    def _dispatch(self, event: RunEvent):
        path = Path(event.path)
        if not path.is_dir():
            logger.debug(f"'{path}' is no longer a directory; dropping event")
            return

        try:
            identity = self.identify(path, self.config.data_pattern)
        except InvalidRunIdentifier as e:
            logger.error(f"Failed to parse a run identifier from '{path}': {e}")
            return

        if identity is None:
            return

        handle = self.pool.spawn(str(path), identity, self.config.archive)
        self.in_progress[path] = handle
        self.workers_started += 1

        logger.info(f"Started publisher with PID {handle.pid} on '{path}' "
                    f"(device {identity.device_id}, asic {identity.asic_id})")

    # =========================================================================
    # WORKERS
    # =========================================================================

    def _reap(self):
        self._record_finished(self.pool.reap())

    def join_workers(self, timeout=None):
        """Wait for the workers still running after start() returned, recording their exit codes."""
        self._record_finished(self.pool.join(timeout))

    def _record_finished(self, finished: Dict[str, int]):
        for name, exit_code in finished.items():
            path = Path(name)
            self.in_progress.pop(path, None)
            self.exit_codes[path] = exit_code

            if exit_code == 0:
                self.workers_succeeded += 1
                logger.info(f"Publisher for '{path}' completed")
            else:
                self.workers_failed += 1
                logger.error(f"Publisher for '{path}' failed with exit code {exit_code}")

    def summary(self) -> dict:
        """Worker counts for reporting."""
        return {
            'staging_path': str(self.staging_path),
            'workers_started': self.workers_started,
            'workers_succeeded': self.workers_succeeded,
            'workers_failed': self.workers_failed,
            'in_progress': {str(p): h.started_at.isoformat(timespec='seconds')
                            for p, h in sorted(self.in_progress.items())},
            'pending': [str(p) for p in self.pending],
            'lost_events': self.source.lost_events,
        }
