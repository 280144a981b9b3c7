"""
File transfer utilities for seqarchive.

Checksums, verified copies and a quick settle check used to avoid
archiving files the instrument is still writing.
"""

import time
import shutil
import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CHECKSUM_ALGORITHM = 'md5'
_CHUNK_SIZE = 1024 * 1024


def calculate_checksum(path: Path, algorithm: str = CHECKSUM_ALGORITHM) -> str:
    """
    Hash a file's content.

    Args:
        path: File to hash
        algorithm: hashlib algorithm name ('md5', 'sha256')

    Returns:
        Hex digest string

    Raises:
        OSError: if the file cannot be read
    """
    h = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b''):
            h.update(chunk)
    return h.hexdigest()


def safe_copy(src: Path, dst: Path, verify: bool = True) -> bool:
    """
    Copy a file via a temporary name, renaming into place when complete.

    A reader of dst never sees a partial file.

    Args:
        src: Source file path
        dst: Destination file path
        verify: If True, verify file sizes match before the rename

    Returns:
        True if copy succeeded (and verified if requested)
    """
    tmp = dst.with_name(dst.name + ".part")
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Copying {src.name} -> {dst.parent}")
        shutil.copy2(str(src), str(tmp))

        if verify:
            src_size = src.stat().st_size
            tmp_size = tmp.stat().st_size
            if src_size != tmp_size:
                logger.error(
                    f"Size mismatch after copy: src={src_size}, dst={tmp_size} "
                    f"for {src.name}"
                )
                tmp.unlink(missing_ok=True)
                return False

        tmp.replace(dst)
        return True

    except OSError as e:
        logger.error(f"Copy failed {src} -> {dst}: {e}")
        tmp.unlink(missing_ok=True)
        return False


def file_settled(path: Path, stable_seconds: float) -> bool:
    """
    Quick (non-blocking) check that a file has not been modified recently.

    Designed to be called once per scan pass: a file still being written
    is simply skipped and picked up on a later pass.

    Returns:
        True if the file exists and was last modified at least
        stable_seconds ago. Always True for stable_seconds <= 0 if the
        file exists.
    """
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return False
    if stable_seconds <= 0:
        return True
    return (time.time() - mtime) >= stable_seconds
