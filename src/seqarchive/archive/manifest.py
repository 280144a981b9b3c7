"""
seqarchive.archive.manifest - Persisted record of archived files.

One manifest per run-folder. Each line associates a local file (relative
to the run root) with the container it was packed into and its checksum:

    <container><TAB><item path><TAB><md5>

Legacy two-field lines (no checksum) are accepted on read. The file is
only ever rewritten after a container has been closed successfully, so it
never names a file sitting in an unfinished container.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from seqarchive.errors import ManifestCorrupt

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = '\t'


@dataclass(frozen=True)
class ManifestEntry:
    """One archived file."""
    container_path: str
    item_path: str
    checksum: Optional[str] = None

    def to_line(self) -> str:
        fields = [self.container_path, self.item_path]
        if self.checksum:
            fields.append(self.checksum)
        return FIELD_SEPARATOR.join(fields)


class Manifest:
    """
    Ledger mapping item paths to the container and checksum they were
    written with. Keyed by item path: adding an item again replaces the
    previous entry.
    """

    def __init__(self, manifest_path: Path):
        self.manifest_path = Path(manifest_path)
        self._entries: Dict[str, ManifestEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries.values())

    def exists(self) -> bool:
        """True if the backing file is present on disk."""
        return self.manifest_path.is_file()

    def read(self):
        """
        Load entries from the backing file, replacing any held in memory.

        Raises:
            ManifestCorrupt: if any non-blank line does not have two or
                three non-empty tab-separated fields
        """
        entries: Dict[str, ManifestEntry] = {}

        with open(self.manifest_path, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.rstrip('\r\n')
                if not line.strip():
                    continue

                fields = line.split(FIELD_SEPARATOR)
                if len(fields) not in (2, 3):
                    raise ManifestCorrupt(
                        self.manifest_path, line_number,
                        f"expected 2 or 3 tab-separated fields, found {len(fields)}"
                    )
                if not all(fields):
                    raise ManifestCorrupt(self.manifest_path, line_number, "empty field")

                container_path, item_path = fields[0], fields[1]
                checksum = fields[2] if len(fields) == 3 else None
                entries[item_path] = ManifestEntry(container_path, item_path, checksum)

        self._entries = entries
        logger.debug(f"Read {len(entries)} entries from manifest {self.manifest_path}")

    def add_item(self, container_path: str, item_path: str, checksum: Optional[str]):
        """Insert or overwrite the entry for item_path. Memory only."""
        self._entries[item_path] = ManifestEntry(str(container_path), str(item_path), checksum)

    def contains_item(self, item_path: str) -> bool:
        return item_path in self._entries

    def get_item(self, item_path: str) -> Optional[ManifestEntry]:
        return self._entries.get(item_path)

    def containers(self) -> List[str]:
        """Container names in first-seen order."""
        return list(dict.fromkeys(e.container_path for e in self._entries.values()))

    def persist(self):
        """
        Rewrite the backing file with all entries.

        Writes to a temporary file in the same directory, fsyncs it and
        renames it over the manifest, so a crash leaves either the old or
        the new manifest and never a partial one.
        """
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.manifest_path.with_name(self.manifest_path.name + '.tmp')

        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                for entry in self._entries.values():
                    f.write(entry.to_line())
                    f.write('\n')
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.manifest_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Persisted {len(self._entries)} entries to manifest {self.manifest_path}")
