"""
seqarchive.archive - Resumable archival of run-folder files into tar containers.

Files are packed into capacity-bounded containers by ArchivePublisher.
A per-run Manifest, rewritten only after each container closes
successfully, lets an interrupted run resume without re-sending or
skipping files.
"""

from .manifest import Manifest, ManifestEntry
from .stream import ArchiveStream
from .publisher import ArchivePublisher
from .store import RemoteStore, LocalDirectoryStore

__all__ = [
    "Manifest",
    "ManifestEntry",
    "ArchiveStream",
    "ArchivePublisher",
    "RemoteStore",
    "LocalDirectoryStore",
]
