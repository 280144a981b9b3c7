"""
Filesystem notification for the seqarchive monitor.

Uses watchdog to watch the staging directory. The event handler never acts
on an event itself: it converts it to a RunEvent and puts it on a bounded
queue that the monitor drains from its own loop.

Every event is reported against the run-folder it belongs to (the
top-level directory under the staging path). Activity deeper inside a
run-folder (new subdirectories, data files being written) is reported as
ATTRIBUTE_CHANGED on the run-folder, so a run that had no data when it
first appeared is revisited as soon as the instrument writes some.
"""

import os
import enum
import queue
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    CREATED = 'created'
    MOVED_IN = 'moved_in'
    MOVED_FROM = 'moved_from'
    DELETED = 'deleted'
    ATTRIBUTE_CHANGED = 'attribute_changed'


# Kinds that may announce a new run-folder
ARRIVAL_KINDS = {EventKind.CREATED, EventKind.MOVED_IN, EventKind.ATTRIBUTE_CHANGED}


@dataclass(frozen=True)
class RunEvent:
    """A filesystem change affecting one entry of the staging directory."""
    path: Path
    kind: EventKind
    is_directory: bool


class StagingEventHandler(FileSystemEventHandler):
    """
    Queues RunEvents for directories appearing in the staging directory.

    If the queue is full the event is dropped and counted in lost_events;
    the monitor reports the loss.
    """

    def __init__(self, staging_path: Path, event_queue: queue.Queue):
        super().__init__()
        self.staging_path = Path(staging_path)
        self.event_queue = event_queue
        self.lost_events = 0

    def on_created(self, event):
        self._handle(event.src_path, event.is_directory, EventKind.CREATED)

    def on_modified(self, event):
        self._handle(event.src_path, event.is_directory, EventKind.ATTRIBUTE_CHANGED)

    def on_deleted(self, event):
        self._handle(event.src_path, event.is_directory, EventKind.DELETED)

    def on_moved(self, event):
        self._handle(event.src_path, event.is_directory, EventKind.MOVED_FROM)
        self._handle(event.dest_path, event.is_directory, EventKind.MOVED_IN)

    def _run_folder(self, path: Path) -> Optional[Path]:
        """Top-level staging entry containing path, or None if outside/equal to staging."""
        try:
            relative = path.relative_to(self.staging_path)
        except ValueError:
            return None
        if not relative.parts:
            return None
        return self.staging_path / relative.parts[0]

    def _handle(self, path, is_directory: bool, kind: EventKind):
        path = Path(os.fsdecode(path))
        run_folder = self._run_folder(path)
        if run_folder is None:
            return

        if path != run_folder:
            # Something changed inside a run-folder; a removal inside one is not news
            if kind in (EventKind.DELETED, EventKind.MOVED_FROM):
                return
            self._push(RunEvent(run_folder, EventKind.ATTRIBUTE_CHANGED, True))
            return

        if not is_directory:
            return

        if kind in ARRIVAL_KINDS:
            logger.debug(f"Event {kind.value} on '{run_folder}'")
            self._push(RunEvent(run_folder, kind, True))
        else:
            # Path was removed from the watched hierarchy
            logger.debug(f"Event {kind.value} on '{run_folder}'")

    def _push(self, event: RunEvent):
        try:
            self.event_queue.put_nowait(event)
        except queue.Full:
            self.lost_events += 1
            logger.warning(f"Event queue full; some events were lost ({self.lost_events} so far)")


class WatchdogEventSource:
    """
    Watches a staging directory and hands queued RunEvents to a poller.

    Usage:
        source = WatchdogEventSource(staging_path)
        source.start()
        events = source.poll(timeout=2)
        ...
        source.stop()
    """

    def __init__(self, staging_path: Path, queue_size: int = 10_000):
        self.staging_path = Path(staging_path)
        self.event_queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.handler = StagingEventHandler(self.staging_path, self.event_queue)
        self._observer: Optional[Observer] = None

    @property
    def lost_events(self) -> int:
        return self.handler.lost_events

    def start(self):
        """Start watching (non-blocking)."""
        if self._observer is not None:
            return

        self._observer = Observer()
        self._observer.schedule(self.handler, str(self.staging_path), recursive=True)
        self._observer.start()

        logger.debug(f"Started watch on '{self.staging_path}'")

    def poll(self, timeout: float) -> List[RunEvent]:
        """
        Wait up to timeout seconds for an event, then drain the queue.

        Returns:
            Every queued event, oldest first; empty on timeout
        """
        try:
            first = self.event_queue.get(timeout=timeout)
        except queue.Empty:
            return []

        events = [first]
        while True:
            try:
                events.append(self.event_queue.get_nowait())
            except queue.Empty:
                break
        return events

    def stop(self):
        """Cancel the watch."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.debug(f"Cancelled watch on '{self.staging_path}'")
