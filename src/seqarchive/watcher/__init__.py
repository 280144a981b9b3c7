"""
seqarchive.watcher - Run-folder monitoring for seqarchive.

A staging directory receives one run-folder per instrument run:

    <staging>/
    ├── run_001/
    │   ├── 0/         ← numbered subdirectories of data files
    │   │   ├── MN-HOST_20170331_FAF12345_MN12345_..._read_1.fast5
    │   │   └── ...
    │   └── 1/
    └── run_002/

RunMonitor watches the staging directory (watchdog) and starts one worker
process per run-folder. Each worker runs a RunSession, which publishes the
run's data files with an ArchivePublisher until the run goes idle.

Requirements
============
    1. staging_path and archive.archive_dir set in ~/.seqarchive/config.json
       (or SEQARCHIVE_STAGING_PATH / SEQARCHIVE_ARCHIVE_DIR)
    2. Optional archive.dest_root, a mounted directory receiving every
       closed container

Usage:
    seqarchive-watch [--staging DIR] [--verbose | --quiet]
"""

from .identify import RunIdentity, identify_run
from .session import RunSession, SessionResult, publish_run
from .monitor import RunMonitor

__all__ = [
    "RunIdentity",
    "identify_run",
    "RunSession",
    "SessionResult",
    "publish_run",
    "RunMonitor",
]
