"""
seqarchive - Resumable archival of sequencing instrument run-folders
=====================================================================

Packs the data files of instrument run-folders into capacity-bounded tar
containers, optionally delivers each container to a remote store, and
records every archived file in a per-run manifest so an interrupted
archive resumes where it stopped.

Components:
    archive  - Manifest, ArchiveStream and ArchivePublisher (the engine)
    watcher  - RunSession (one run-folder) and RunMonitor (a staging
               directory, one worker process per run-folder)

Usage:
    from seqarchive.config import ArchiveConfig
    from seqarchive.archive import ArchivePublisher
    from seqarchive.watcher import RunMonitor, RunSession
"""

__version__ = "0.3.0"
