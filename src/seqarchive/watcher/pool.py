"""
Worker supervision for the seqarchive monitor.

Each run-folder is published by its own OS process, so a crashing worker
cannot damage another run's manifest or container. Workers are polled,
never waited on, so the monitor loop stays responsive while they run.

Worker log records are sent back to the monitor through a log queue when
one is given, so sessions log to the monitor's handlers whatever the
multiprocessing start method.
"""

import logging
import multiprocessing
from logging.handlers import QueueHandler
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkerHandle:
    """A running (or finished) worker process."""
    name: str
    process: multiprocessing.Process
    pid: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.now)


def _configure_worker_logging(log_queue):
    """Route every record logged in this process to log_queue."""
    root = logging.getLogger()
    # Handlers inherited through fork write to the parent's files directly
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(QueueHandler(log_queue))
    root.setLevel(logging.DEBUG)


def _run_worker(target: Callable, log_queue, args):
    if log_queue is not None:
        _configure_worker_logging(log_queue)
    target(*args)


class ProcessPool:
    """
    Bounded set of worker processes.

    Args:
        max_processes: Maximum number of workers running at once
        target: Function run in each worker; its exit status (via
            sys.exit) is the worker's exit code
        log_queue: Optional multiprocessing queue receiving the workers'
            log records (drained by a QueueListener in the parent)
    """

    def __init__(self, max_processes: int, target: Callable, log_queue=None):
        if max_processes <= 0:
            raise ValueError(f"max_processes must be positive, got {max_processes}")
        self.max_processes = max_processes
        self.target = target
        self.log_queue = log_queue
        self._running: Dict[str, WorkerHandle] = {}

    def has_capacity(self) -> bool:
        return len(self._running) < self.max_processes

    def running(self) -> List[WorkerHandle]:
        return list(self._running.values())

    def spawn(self, name: str, *args) -> WorkerHandle:
        """
        Start a worker running target(*args).

        Raises:
            RuntimeError: if the pool is full or a worker with this name is running
        """
        if not self.has_capacity():
            raise RuntimeError(f"Worker pool is full ({self.max_processes} processes)")
        if name in self._running:
            raise RuntimeError(f"A worker named '{name}' is already running")

        process = multiprocessing.Process(target=_run_worker, args=(self.target, self.log_queue, args),
                                          name=name, daemon=False)
        process.start()
        handle = WorkerHandle(name=name, process=process, pid=process.pid)
        self._running[name] = handle

        logger.debug(f"Process {name} (PID {handle.pid}) started")
        return handle

    def poll(self, handle: WorkerHandle) -> Optional[int]:
        """Exit code of a worker, or None while it is still running."""
        return handle.process.exitcode

    def reap(self) -> Dict[str, int]:
        """
        Collect finished workers.

        Returns:
            Mapping of worker name -> exit code for every worker that
            finished since the last call
        """
        finished = {}
        for name, handle in list(self._running.items()):
            exit_code = self.poll(handle)
            if exit_code is None:
                continue
            handle.process.join()
            handle.process.close()
            del self._running[name]
            finished[name] = exit_code
            logger.debug(f"Process {name} (PID {handle.pid}) completed with exit code: {exit_code}")
        return finished

    def join(self, timeout: Optional[float] = None) -> Dict[str, int]:
        """
        Wait for running workers to finish, then reap them.

        Args:
            timeout: Seconds to wait for each worker (None waits indefinitely)

        Returns:
            Mapping of worker name -> exit code for the workers that finished
        """
        for handle in self.running():
            logger.info(f"Waiting for process {handle.name} (PID {handle.pid}), "
                        f"running since {handle.started_at:%Y-%m-%d %H:%M:%S}")
            handle.process.join(timeout)
        return self.reap()
