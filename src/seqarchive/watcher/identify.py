"""
Run identification for the seqarchive monitor.

A run is identified from the name of its first data file, not from the
run-folder name. Instruments write data files into numbered
subdirectories of the run-folder:

    <staging>/<run folder>/0/<hostname>_<run date>_<asic id>_<device id>_....fast5
    <staging>/<run folder>/1/...

File name rules:
- At least 4 underscore-separated fields, none empty
- Field 1 is the run date, 8 digits (YYYYMMDD) and a real date
"""

import re
import fnmatch
import logging
from pathlib import Path
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from seqarchive.errors import InvalidRunIdentifier

logger = logging.getLogger(__name__)

NUMBERED_DIR_PATTERN = re.compile(r'^\d+$')
DEFAULT_DATA_PATTERN = '*.fast5'


@dataclass(frozen=True)
class RunIdentity:
    """Identity of one instrument run, parsed from a data file name."""
    run_path: Path
    hostname: str
    run_date: str
    asic_id: str
    device_id: str
    data_file: Path

    @property
    def run_name(self) -> str:
        return self.run_path.name

    @property
    def collection(self) -> str:
        """Relative location of this run's containers: <device id>/<asic id>."""
        return f"{self.device_id}/{self.asic_id}"

    @property
    def manifest_name(self) -> str:
        return f"{self.device_id}_{self.asic_id}_{self.run_date}.manifest.txt"

    def as_metadata(self) -> dict:
        """Attributes attached to every container of this run."""
        return {
            'device_id': self.device_id,
            'asic_id': self.asic_id,
            'run_date': self.run_date,
            'hostname': self.hostname,
            'run_name': self.run_name,
        }


def find_data_file(run_path: Path, pattern: str = DEFAULT_DATA_PATTERN) -> Optional[Path]:
    """
    Find the first data file in the numbered subdirectories of a run-folder.

    Subdirectories are searched in numeric order, files in name order.

    Returns:
        Path to the data file, or None if there is none yet
    """
    run_path = Path(run_path)
    logger.debug(f"Looking for numbered subdirectories in '{run_path}'")

    try:
        dirs = [d for d in run_path.iterdir()
                if d.is_dir() and NUMBERED_DIR_PATTERN.match(d.name)]
    except OSError as e:
        logger.warning(f"Failed to list run folder '{run_path}': {e}")
        return None

    for subdir in sorted(dirs, key=lambda d: int(d.name)):
        logger.debug(f"Checking for data files in '{subdir}'")
        try:
            files = sorted(f for f in subdir.iterdir()
                           if f.is_file() and fnmatch.fnmatch(f.name, pattern))
        except OSError as e:
            logger.warning(f"Failed to list '{subdir}': {e}")
            continue
        if files:
            return files[0]

    return None


def parse_run_identity(data_file: Path, run_path: Path) -> RunIdentity:
    """
    Parse a run identity from a data file name.

    Raises:
        InvalidRunIdentifier: if the name does not follow the rules above
    """
    data_file = Path(data_file)
    stem = data_file.name.split('.', 1)[0]
    parts = stem.split('_')

    if len(parts) < 4:
        raise InvalidRunIdentifier(
            f"Expected at least 4 underscore-separated fields in '{data_file.name}', got {len(parts)}"
        )

    hostname, run_date, asic_id, device_id = parts[:4]
    if not all((hostname, run_date, asic_id, device_id)):
        raise InvalidRunIdentifier(f"Empty identifier field in '{data_file.name}'")

    if not re.match(r'^\d{8}$', run_date):
        raise InvalidRunIdentifier(f"Run date '{run_date}' must be 8 digits (YYYYMMDD) in '{data_file.name}'")
    try:
        datetime.strptime(run_date, '%Y%m%d')
    except ValueError as e:
        raise InvalidRunIdentifier(f"Invalid run date {run_date} in '{data_file.name}': {e}")

    return RunIdentity(
        run_path=Path(run_path),
        hostname=hostname,
        run_date=run_date,
        asic_id=asic_id,
        device_id=device_id,
        data_file=data_file,
    )


def identify_run(run_path: Path, pattern: str = DEFAULT_DATA_PATTERN) -> Optional[RunIdentity]:
    """
    Identify the run in a run-folder.

    Returns:
        RunIdentity, or None if no data file has been written yet

    Raises:
        InvalidRunIdentifier: if a data file exists but its name cannot be parsed
    """
    logger.debug(f"Identifying a run from data files under '{run_path}'")

    data_file = find_data_file(run_path, pattern)
    if data_file is None:
        logger.warning(f"Failed to find any data file in '{run_path}'")
        return None

    return parse_run_identity(data_file, run_path)
