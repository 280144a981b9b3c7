#!/usr/bin/env python3
"""
Integration tests for the watcher package.

Uses tempdirs for the staging directory and archives. The monitor is
driven with fake event sources and worker pools, so no test depends on
filesystem notification timing except the single watchdog smoke test.
"""

import os
import sys
import time
import queue
import signal
import hashlib
import logging
import tarfile
import threading
import multiprocessing
import pytest
from pathlib import Path
from unittest.mock import Mock, patch

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
)

from seqarchive.config import ArchiveConfig, MonitorConfig
from seqarchive.errors import ArchiveIOError, InvalidRunIdentifier, SourceFileMissing
from seqarchive.archive.manifest import Manifest
from seqarchive.archive.publisher import ArchivePublisher
from seqarchive.archive.store import LocalDirectoryStore
from seqarchive.watcher.identify import (
    RunIdentity,
    find_data_file,
    identify_run,
    parse_run_identity,
)
from seqarchive.watcher.events import (
    EventKind,
    RunEvent,
    StagingEventHandler,
    WatchdogEventSource,
)
from seqarchive.watcher.pool import ProcessPool, WorkerHandle
from seqarchive.watcher.session import RunSession, SessionResult, publish_run
from seqarchive.watcher.monitor import RunMonitor


DATA_NAME = "minion-host_20170331_FAF12345_MN12345_sequencing_run_ch1_read{n}_strand.fast5"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def staging(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


def make_run(staging: Path, name: str = "run_001", n_files: int = 3, subdir: str = "0") -> Path:
    """Create a run-folder with n_files data files in a numbered subdirectory."""
    run = staging / name
    (run / subdir).mkdir(parents=True, exist_ok=True)
    for n in range(n_files):
        (run / subdir / DATA_NAME.format(n=n)).write_bytes(bytes([n]) * 20)
    return run


def make_identity(run_path: Path) -> RunIdentity:
    return RunIdentity(
        run_path=run_path,
        hostname="minion-host",
        run_date="20170331",
        asic_id="FAF12345",
        device_id="MN12345",
        data_file=run_path / "0" / DATA_NAME.format(n=0),
    )


def make_session(run: Path, archive_dir: Path, publisher_kwargs=None, **kwargs) -> RunSession:
    publisher = ArchivePublisher(
        manifest_path=archive_dir / "run.manifest.txt",
        archive_path=archive_dir / run.name,
        working_dir=run,
        **(publisher_kwargs or {})
    )
    options = dict(file_pattern="*.fast5", session_timeout=60, archive_timeout=60, poll_interval=0.01)
    options.update(kwargs)
    return RunSession(publisher, run, **options)


def stopped_event() -> threading.Event:
    """An event that is already set: the session makes exactly one pass."""
    event = threading.Event()
    event.set()
    return event


# =============================================================================
# RUN IDENTIFICATION TESTS
# =============================================================================

class TestIdentify:
    """Tests for parsing run identity from data file names."""

    def test_parse_valid_name(self, tmp_path):
        identity = parse_run_identity(tmp_path / DATA_NAME.format(n=0), tmp_path / "run_001")

        assert identity.hostname == "minion-host"
        assert identity.run_date == "20170331"
        assert identity.asic_id == "FAF12345"
        assert identity.device_id == "MN12345"
        assert identity.run_name == "run_001"
        assert identity.collection == "MN12345/FAF12345"
        assert identity.manifest_name == "MN12345_FAF12345_20170331.manifest.txt"

    def test_parse_too_few_fields(self, tmp_path):
        with pytest.raises(InvalidRunIdentifier, match="at least 4"):
            parse_run_identity(tmp_path / "host_20170331_FAF1.fast5", tmp_path)

    def test_parse_bad_date(self, tmp_path):
        with pytest.raises(InvalidRunIdentifier):
            parse_run_identity(tmp_path / "host_20171331_FAF1_MN1.fast5", tmp_path)
        with pytest.raises(InvalidRunIdentifier):
            parse_run_identity(tmp_path / "host_2017033_FAF1_MN1.fast5", tmp_path)

    def test_parse_empty_field(self, tmp_path):
        with pytest.raises(InvalidRunIdentifier):
            parse_run_identity(tmp_path / "host_20170331__MN1.fast5", tmp_path)

    def test_find_data_file_uses_numeric_directory_order(self, staging):
        run = make_run(staging, n_files=1, subdir="10")
        (run / "2").mkdir()
        (run / "2" / "b_20170401_X_Y.fast5").write_bytes(b"x")
        (run / "notes").mkdir()
        (run / "notes" / "a_20170101_X_Y.fast5").write_bytes(b"x")

        assert find_data_file(run) == run / "2" / "b_20170401_X_Y.fast5"

    def test_identify_run_without_data_returns_none(self, staging):
        run = staging / "run_empty"
        (run / "0").mkdir(parents=True)
        assert identify_run(run) is None

    def test_identify_run(self, staging):
        run = make_run(staging)
        identity = identify_run(run)
        assert identity.device_id == "MN12345"
        assert identity.data_file == run / "0" / DATA_NAME.format(n=0)


# =============================================================================
# EVENT HANDLER TESTS
# =============================================================================

class TestStagingEventHandler:
    """Tests for converting watchdog events into RunEvents."""

    @pytest.fixture
    def handler(self, staging):
        return StagingEventHandler(staging, queue.Queue())

    def drain(self, handler):
        events = []
        while not handler.event_queue.empty():
            events.append(handler.event_queue.get_nowait())
        return events

    def test_new_run_directory_is_queued(self, handler, staging):
        handler.dispatch(DirCreatedEvent(str(staging / "run_001")))

        assert self.drain(handler) == [RunEvent(staging / "run_001", EventKind.CREATED, True)]

    def test_nested_activity_reported_on_run_folder(self, handler, staging):
        handler.dispatch(FileCreatedEvent(str(staging / "run_001" / "0" / "x.fast5")))
        handler.dispatch(FileModifiedEvent(str(staging / "run_001" / "0" / "x.fast5")))

        events = self.drain(handler)
        assert len(events) == 2
        assert all(e == RunEvent(staging / "run_001", EventKind.ATTRIBUTE_CHANGED, True) for e in events)

    def test_top_level_file_ignored(self, handler, staging):
        handler.dispatch(FileCreatedEvent(str(staging / "README.txt")))
        assert self.drain(handler) == []

    def test_removals_not_queued(self, handler, staging):
        handler.dispatch(DirDeletedEvent(str(staging / "run_001")))
        handler.dispatch(DirDeletedEvent(str(staging / "run_001" / "0")))
        assert self.drain(handler) == []

    def test_moved_in_run_is_queued(self, handler, staging):
        handler.dispatch(DirMovedEvent(str(staging / "incoming"), str(staging / "run_002")))

        assert self.drain(handler) == [RunEvent(staging / "run_002", EventKind.MOVED_IN, True)]

    def test_events_outside_staging_ignored(self, handler, tmp_path):
        handler.dispatch(DirCreatedEvent(str(tmp_path / "elsewhere")))
        assert self.drain(handler) == []

    def test_full_queue_counts_lost_events(self, staging):
        handler = StagingEventHandler(staging, queue.Queue(maxsize=1))
        handler.dispatch(DirCreatedEvent(str(staging / "run_001")))
        handler.dispatch(DirCreatedEvent(str(staging / "run_002")))

        assert handler.lost_events == 1
        assert handler.event_queue.qsize() == 1


class TestWatchdogEventSource:
    """Tests for the queue-draining event source."""

    def test_poll_times_out_empty(self, staging):
        source = WatchdogEventSource(staging)
        assert source.poll(timeout=0.01) == []

    def test_poll_drains_all_queued_events(self, staging):
        source = WatchdogEventSource(staging)
        for name in ("a", "b", "c"):
            source.event_queue.put(RunEvent(staging / name, EventKind.CREATED, True))

        events = source.poll(timeout=0.01)
        assert [e.path.name for e in events] == ["a", "b", "c"]
        assert source.poll(timeout=0.01) == []

    def test_observer_reports_new_run_folder(self, staging):
        source = WatchdogEventSource(staging)
        source.start()
        try:
            (staging / "run_001").mkdir()

            seen = []
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and not seen:
                seen = [e for e in source.poll(timeout=0.2) if e.path == staging / "run_001"]
        finally:
            source.stop()

        assert seen
        assert seen[0].is_directory is True


# =============================================================================
# SESSION TESTS
# =============================================================================

class TestRunSession:
    """Tests for publishing one run-folder."""

    def test_single_pass_publishes_everything(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        session = make_session(run, tmp_path / "archive", stop_event=stopped_event())

        result = session.publish_files()

        assert result == SessionResult(files_total=3, files_processed=3, files_errored=0, archive_count=1)
        assert result.exit_code == 0
        manifest = Manifest(tmp_path / "archive" / "run.manifest.txt")
        manifest.read()
        assert len(manifest) == 3

    def test_session_ends_after_idle_timeout(self, staging, tmp_path):
        run = make_run(staging, n_files=2)
        session = make_session(run, tmp_path / "archive", session_timeout=0.2, archive_timeout=0.05)

        start = time.monotonic()
        result = session.publish_files()

        assert time.monotonic() - start >= 0.2
        assert result.files_processed == 2
        assert result.archive_count == 1

    def test_second_session_skips_published_files(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        make_session(run, tmp_path / "archive", stop_event=stopped_event()).publish_files()

        result = make_session(run, tmp_path / "archive", stop_event=stopped_event()).publish_files()

        assert result.files_total == 3
        assert result.files_processed == 0
        assert result.archive_count == 0

    def test_changed_file_published_again(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        make_session(run, tmp_path / "archive", stop_event=stopped_event()).publish_files()

        (run / "0" / DATA_NAME.format(n=1)).write_bytes(b"appended by instrument")
        result = make_session(run, tmp_path / "archive", stop_event=stopped_event()).publish_files()

        assert result.files_processed == 1
        assert result.archive_count == 1

    def test_force_republishes_everything(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        make_session(run, tmp_path / "archive", stop_event=stopped_event()).publish_files()

        result = make_session(run, tmp_path / "archive", stop_event=stopped_event(), force=True).publish_files()

        assert result.files_processed == 3

    def test_full_container_retries_file_in_new_container(self, staging, tmp_path):
        """A file refused by a full container goes into the next one in the same pass."""
        run = make_run(staging, n_files=3)
        session = make_session(run, tmp_path / "archive", stop_event=stopped_event(),
                               publisher_kwargs={'byte_capacity': 30})

        result = session.publish_files()

        assert result.files_processed == 3
        assert result.archive_count == 3

    def test_unsettled_files_are_skipped(self, staging, tmp_path):
        run = make_run(staging, n_files=2)
        session = make_session(run, tmp_path / "archive", stop_event=stopped_event(), stable_seconds=3600)

        result = session.publish_files()

        assert result.files_total == 0
        assert result.files_processed == 0

    def test_missing_file_counted_as_error(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        session = make_session(run, tmp_path / "archive", stop_event=stopped_event())
        vanished = run / "0" / DATA_NAME.format(n=1)
        publish = session.publisher.publish

        def flaky_publish(path):
            if path == vanished:
                raise SourceFileMissing(path)
            return publish(path)

        with patch.object(session.publisher, "publish", side_effect=flaky_publish):
            result = session.publish_files()

        assert result.files_processed == 2
        assert result.files_errored == 1
        assert result.exit_code == 1

    def test_file_rewritten_while_container_open_is_published_again(self, staging, tmp_path):
        """The container holds the final content of a file rewritten after its first copy."""
        run = make_run(staging, n_files=2)
        rewritten = run / "0" / DATA_NAME.format(n=1)
        final_content = b"final content written after the first copy"
        session = make_session(run, tmp_path / "archive", session_timeout=0.3)
        publish_pass = session._publish_pass
        passes = []

        def publish_then_rewrite(result):
            n_published = publish_pass(result)
            passes.append(n_published)
            if len(passes) == 1:
                rewritten.write_bytes(final_content)
            return n_published

        with patch.object(session, "_publish_pass", side_effect=publish_then_rewrite):
            result = session.publish_files()

        assert passes[:2] == [2, 1]
        assert result.files_total == 2
        assert result.files_processed == 3
        assert result.archive_count == 1

        manifest = Manifest(tmp_path / "archive" / "run.manifest.txt")
        manifest.read()
        entry = manifest.get_item(f"0/{rewritten.name}")
        assert entry.checksum == hashlib.md5(final_content).hexdigest()

        with tarfile.open(tmp_path / "archive" / "run_001.0.tar") as tar:
            copies = [m for m in tar.getmembers() if m.name == f"0/{rewritten.name}"]
            assert len(copies) == 2
            assert tar.extractfile(copies[-1]).read() == final_content

    def test_read_error_retried_on_next_pass(self, staging, tmp_path):
        run = make_run(staging, n_files=1)
        session = make_session(run, tmp_path / "archive", session_timeout=0.3)
        publish = session.publisher.publish
        calls = []

        def fail_once(path):
            calls.append(path)
            if len(calls) == 1:
                raise PermissionError(13, "Permission denied", str(path))
            return publish(path)

        with patch.object(session.publisher, "publish", side_effect=fail_once):
            result = session.publish_files()

        assert len(calls) == 2
        assert result.files_total == 1
        assert result.files_errored == 1
        assert result.files_processed == 1

    def test_container_error_ends_session(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        session = make_session(run, tmp_path / "archive")

        with patch.object(session.publisher, "publish", side_effect=ArchiveIOError("disk full")):
            result = session.publish_files()

        assert result.files_errored == 1
        assert result.files_processed == 0

    def test_idle_container_closed_after_archive_timeout(self, tmp_path):
        publisher = Mock()
        publisher.session_in_progress.return_value = True
        publisher.elapsed_time.return_value = 10
        publisher.archive_count = 1
        session = RunSession(publisher, tmp_path, archive_timeout=0, stop_event=stopped_event())

        session.publish_files()

        # Once for the archive timeout, once when the session ends
        assert publisher.close_stream.call_count == 2

    def test_for_run_lays_out_archive_by_device_and_asic(self, staging, tmp_path):
        run = make_run(staging)
        config = ArchiveConfig({
            'archive_dir': str(tmp_path / "archives"),
            'dest_root': str(tmp_path / "remote"),
            'file_capacity': 7,
        })

        session = RunSession.for_run(make_identity(run), config)
        publisher = session.publisher

        device_dir = tmp_path / "archives" / "MN12345" / "FAF12345"
        assert publisher.manifest.manifest_path == device_dir / "MN12345_FAF12345_20170331.manifest.txt"
        assert publisher.archive_path == device_dir / "run_001"
        assert publisher.file_capacity == 7
        assert isinstance(publisher.store, LocalDirectoryStore)
        assert publisher.remote_collection == "MN12345/FAF12345"

    def test_publish_run_exits_with_session_status(self, staging, tmp_path):
        identity = make_identity(make_run(staging))
        session = Mock()
        session.publish_files.return_value = SessionResult(files_total=2, files_processed=1, files_errored=1)

        with patch("seqarchive.watcher.session.signal.signal"), \
                patch.object(RunSession, "for_run", return_value=session):
            with pytest.raises(SystemExit) as exc_info:
                publish_run(identity, ArchiveConfig())

        assert exc_info.value.code == 1

    def test_publish_run_exits_nonzero_when_session_cannot_start(self, staging, monkeypatch):
        monkeypatch.delenv("SEQARCHIVE_ARCHIVE_DIR", raising=False)
        identity = make_identity(make_run(staging))

        with patch("seqarchive.watcher.session.signal.signal"):
            with pytest.raises(SystemExit) as exc_info:
                publish_run(identity, ArchiveConfig({'archive_dir': None}))

        assert exc_info.value.code == 1

    def test_publish_run_stops_session_on_sigterm(self, staging):
        identity = make_identity(make_run(staging))
        session = Mock()
        session.publish_files.return_value = SessionResult(files_total=1, files_processed=1)

        with patch("seqarchive.watcher.session.signal.signal") as mock_signal, \
                patch.object(RunSession, "for_run", return_value=session) as mock_for_run:
            with pytest.raises(SystemExit) as exc_info:
                publish_run(identity, ArchiveConfig())

        assert exc_info.value.code == 0
        handlers = {c[0][0]: c[0][1] for c in mock_signal.call_args_list}
        assert handlers[signal.SIGINT] is signal.SIG_IGN

        stop_event = mock_for_run.call_args[1]['stop_event']
        assert not stop_event.is_set()
        handlers[signal.SIGTERM](signal.SIGTERM, None)
        assert stop_event.is_set()


# =============================================================================
# WORKER POOL TESTS
# =============================================================================

def wait_for_reap(pool: ProcessPool, timeout: float = 10) -> dict:
    finished = {}
    deadline = time.monotonic() + timeout
    while pool.running() and time.monotonic() < deadline:
        finished.update(pool.reap())
        time.sleep(0.05)
    return finished


class TestProcessPool:
    """Tests for the worker process pool."""

    def test_exit_codes_collected(self):
        pool = ProcessPool(2, sys.exit)
        pool.spawn("ok", 0)
        pool.spawn("bad", 3)

        assert wait_for_reap(pool) == {"ok": 0, "bad": 3}
        assert pool.has_capacity()

    def test_full_pool_refuses_spawn(self):
        pool = ProcessPool(1, time.sleep)
        handle = pool.spawn("sleeper", 0.2)

        assert handle.pid is not None
        assert pool.has_capacity() is False
        with pytest.raises(RuntimeError):
            pool.spawn("another", 0)

        assert wait_for_reap(pool) == {"sleeper": 0}

    def test_duplicate_name_refused(self):
        pool = ProcessPool(2, time.sleep)
        pool.spawn("run", 0.2)
        with pytest.raises(RuntimeError):
            pool.spawn("run", 0)
        wait_for_reap(pool)

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            ProcessPool(0, sys.exit)

    def test_join_waits_for_running_workers(self):
        pool = ProcessPool(2, time.sleep)
        pool.spawn("sleeper", 0.2)

        assert pool.join(timeout=10) == {"sleeper": 0}
        assert pool.running() == []

    def test_worker_logs_sent_to_log_queue(self):
        log_queue = multiprocessing.Queue()
        pool = ProcessPool(1, logging.warning, log_queue=log_queue)
        pool.spawn("logger", "line from worker")

        record = log_queue.get(timeout=10)

        assert record.getMessage() == "line from worker"
        assert record.levelno == logging.WARNING
        assert record.processName == "logger"
        assert wait_for_reap(pool) == {"logger": 0}

    def test_terminated_publisher_closes_container(self, staging, tmp_path):
        run = make_run(staging, n_files=3)
        config = ArchiveConfig({
            'archive_dir': str(tmp_path / "archives"),
            'session_timeout': 600,
            'session_poll_interval': 0.05,
        })
        device_dir = tmp_path / "archives" / "MN12345" / "FAF12345"
        pool = ProcessPool(1, publish_run)
        handle = pool.spawn(str(run), make_identity(run), config)

        deadline = time.monotonic() + 10
        while not (device_dir / "run_001.0.tar").exists() and time.monotonic() < deadline:
            time.sleep(0.05)
        os.kill(handle.pid, signal.SIGTERM)

        assert wait_for_reap(pool, timeout=20) == {str(run): 0}
        manifest = Manifest(device_dir / "MN12345_FAF12345_20170331.manifest.txt")
        manifest.read()
        assert len(manifest) == 3


# =============================================================================
# MONITOR TESTS
# =============================================================================

class FakeSource:
    """Event source returning scripted batches, one per poll."""

    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.lost_events = 0
        self.started = False
        self.stopped = False
        self.on_poll = None

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def poll(self, timeout):
        if self.on_poll:
            self.on_poll()
        return self.batches.pop(0) if self.batches else []


class FakePool:
    """Pool recording spawns; tests decide when workers finish."""

    def __init__(self, max_processes=2):
        self.max_processes = max_processes
        self.spawned = []
        self.running = {}
        self.finished = {}

    def has_capacity(self):
        return len(self.running) < self.max_processes

    def spawn(self, name, *args):
        handle = WorkerHandle(name=name, process=None, pid=1000 + len(self.spawned))
        self.spawned.append((name, args))
        self.running[name] = handle
        return handle

    def finish(self, name, exit_code=0):
        self.finished[name] = exit_code

    def reap(self):
        done, self.finished = self.finished, {}
        for name in done:
            self.running.pop(name, None)
        return done

    def join(self, timeout=None):
        for name in self.running:
            self.finished.setdefault(name, 0)
        return self.reap()


@pytest.fixture
def monitor_config(staging, tmp_path):
    return MonitorConfig(
        {'staging_path': str(staging), 'poll_interval': 0.01},
        archive=ArchiveConfig({'archive_dir': str(tmp_path / "archives")}),
    )


def created(path: Path) -> RunEvent:
    return RunEvent(path, EventKind.CREATED, True)


class TestRunMonitor:
    """Tests for dispatching run-folders to workers."""

    def test_new_run_starts_one_worker(self, staging, monitor_config):
        run = make_run(staging)
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(run)]]), pool=pool)

        monitor.run_once()

        assert len(pool.spawned) == 1
        name, args = pool.spawned[0]
        assert name == str(run)
        assert args[0].device_id == "MN12345"
        assert args[1] is monitor_config.archive
        assert run in monitor.in_progress

    def test_repeated_events_never_start_a_second_worker(self, staging, monitor_config):
        run = make_run(staging)
        attribute = RunEvent(run, EventKind.ATTRIBUTE_CHANGED, True)
        source = FakeSource([[created(run), attribute], [attribute, created(run)]])
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=source, pool=pool)

        monitor.run_once()
        monitor.run_once()

        assert len(pool.spawned) == 1

    def test_run_restarted_after_worker_finishes(self, staging, monitor_config):
        run = make_run(staging)
        source = FakeSource([[created(run)], [], [RunEvent(run, EventKind.ATTRIBUTE_CHANGED, True)]])
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=source, pool=pool)

        monitor.run_once()
        pool.finish(str(run), 0)
        monitor.run_once()
        assert run not in monitor.in_progress
        assert monitor.workers_succeeded == 1

        monitor.run_once()
        assert len(pool.spawned) == 2

    def test_full_pool_leaves_runs_queued(self, staging, monitor_config):
        run_a = make_run(staging, "run_a")
        run_b = make_run(staging, "run_b")
        pool = FakePool(max_processes=1)
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(run_a), created(run_b)]]), pool=pool)

        monitor.run_once()
        assert [name for name, _ in pool.spawned] == [str(run_a)]
        assert list(monitor.pending) == [run_b]

        pool.finish(str(run_a), 0)
        monitor.run_once()  # reaps run_a
        monitor.run_once()  # dispatches run_b
        assert [name for name, _ in pool.spawned] == [str(run_a), str(run_b)]
        assert not monitor.pending

    def test_invalid_identifier_dropped(self, staging, monitor_config):
        run = staging / "bad_run"
        (run / "0").mkdir(parents=True)
        (run / "0" / "garbage.fast5").write_bytes(b"x")
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(run)]]), pool=pool)

        monitor.run_once()

        assert pool.spawned == []
        assert not monitor.pending
        assert run not in monitor.in_progress

    def test_run_without_data_waits_for_next_event(self, staging, monitor_config):
        run = staging / "run_new"
        run.mkdir()
        source = FakeSource([[created(run)], [RunEvent(run, EventKind.ATTRIBUTE_CHANGED, True)]])
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=source, pool=pool)

        monitor.run_once()
        assert pool.spawned == []

        make_run(staging, "run_new")
        monitor.run_once()
        assert len(pool.spawned) == 1

    def test_non_arrival_and_file_events_ignored(self, staging, monitor_config):
        run = make_run(staging)
        events = [
            RunEvent(run, EventKind.DELETED, True),
            RunEvent(run, EventKind.MOVED_FROM, True),
            RunEvent(staging / "notes.txt", EventKind.CREATED, False),
        ]
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=FakeSource([events]), pool=pool)

        monitor.run_once()
        assert pool.spawned == []

    def test_vanished_run_dropped(self, staging, monitor_config):
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(staging / "gone")]]), pool=pool)

        monitor.run_once()
        assert pool.spawned == []

    def test_lost_events_reported(self, staging, monitor_config, caplog):
        source = FakeSource()
        source.lost_events = 4
        monitor = RunMonitor(monitor_config, source=source, pool=FakePool())

        with caplog.at_level("WARNING"):
            monitor.run_once()
            monitor.run_once()

        lost_messages = [r for r in caplog.records if "lost" in r.getMessage()]
        assert len(lost_messages) == 1

    def test_start_returns_failed_worker_count(self, staging, monitor_config):
        run_a = make_run(staging, "run_a")
        run_b = make_run(staging, "run_b")
        source = FakeSource([[created(run_a), created(run_b)]])
        pool = FakePool()
        monitor = RunMonitor(monitor_config, source=source, pool=pool)

        polls = []

        def on_poll():
            polls.append(1)
            if len(polls) == 2:
                pool.finish(str(run_a), 0)
                pool.finish(str(run_b), 2)
            if len(polls) == 3:
                monitor.stop()

        source.on_poll = on_poll
        num_errors = monitor.start()

        assert num_errors == 1
        assert source.started and source.stopped
        assert monitor.exit_codes == {run_a: 0, run_b: 2}
        assert monitor.summary()['workers_failed'] == 1

    def test_summary_reports_worker_start_times(self, staging, monitor_config):
        run = make_run(staging)
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(run)]]), pool=FakePool())

        monitor.run_once()

        started_at = monitor.in_progress[run].started_at
        assert monitor.summary()['in_progress'] == {str(run): started_at.isoformat(timespec='seconds')}

    def test_join_workers_records_remaining_exit_codes(self, staging, monitor_config):
        run = make_run(staging)
        monitor = RunMonitor(monitor_config, source=FakeSource([[created(run)]]), pool=FakePool())
        monitor.run_once()

        monitor.join_workers()

        assert monitor.in_progress == {}
        assert monitor.exit_codes == {run: 0}
        assert monitor.workers_succeeded == 1

    def test_start_survives_loop_failure(self, staging, monitor_config):
        source = FakeSource()
        source.poll = Mock(side_effect=RuntimeError("inotify gone"))
        monitor = RunMonitor(monitor_config, source=source, pool=FakePool())

        assert monitor.start() == 1
        assert source.stopped

    def test_signal_handler_stops_monitor(self, monitor_config):
        monitor = RunMonitor(monitor_config, source=FakeSource(), pool=FakePool())
        monitor._continue = True

        with patch("seqarchive.watcher.monitor.signal.signal") as mock_signal:
            monitor.handle_signals()

        handler = mock_signal.call_args_list[0][0][1]
        handler(2, None)
        assert monitor._continue is False

    def test_staging_path_required(self, monkeypatch):
        monkeypatch.delenv("SEQARCHIVE_STAGING_PATH", raising=False)
        with pytest.raises(ValueError):
            RunMonitor(MonitorConfig({}), source=FakeSource(), pool=FakePool())
