"""
Error taxonomy for seqarchive.

Per-file errors (SourceFileMissing, RemoteStoreError on a single file) are
counted by the caller and never abort a session. Container-level errors
(ArchiveIOError, ManifestCorrupt) end the current session but never the
monitor.
"""


class ArchiveError(Exception):
    """Base class for all seqarchive errors."""
    pass


class SourceFileMissing(ArchiveError):
    """A file disappeared between discovery and being added to a container."""

    def __init__(self, path):
        super().__init__(f"Source file no longer exists: {path}")
        self.path = path


class ArchiveIOError(ArchiveError):
    """A container could not be created, written, flushed or delivered."""
    pass


class ManifestCorrupt(ArchiveError):
    """A persisted manifest exists but cannot be parsed."""

    def __init__(self, path, line_number: int, reason: str):
        super().__init__(f"Manifest '{path}' is corrupt at line {line_number}: {reason}")
        self.path = path
        self.line_number = line_number


class InvalidRunIdentifier(ArchiveError):
    """No run identifier could be parsed from a run-folder's data files."""
    pass


class RemoteStoreError(ArchiveError):
    """The remote store rejected an operation."""
    pass
