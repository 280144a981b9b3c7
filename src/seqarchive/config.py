#!/usr/bin/env python3
"""
seqarchive configuration

Settings for the archival engine and the run monitor.
Values come from ~/.seqarchive/config.json (preferred) or environment variables.

Example config.json:

    {
        "monitor": {
            "staging_path": "/data/staging",
            "max_processes": 20,
            "archive": {
                "archive_dir": "/data/archives",
                "dest_root": "/nas/seq/minion",
                "file_capacity": 10000
            }
        }
    }
"""

import os
import json
from pathlib import Path
from typing import Optional, List

from seqarchive.archive.publisher import DEFAULT_BYTE_CAPACITY, DEFAULT_FILE_CAPACITY


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

DEFAULT_CONFIG_FILE = Path.home() / ".seqarchive" / "config.json"


def get_config_file() -> Path:
    """Config file location, overridable with SEQARCHIVE_CONFIG."""
    override = os.getenv("SEQARCHIVE_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_FILE


def _load_config(config_file: Optional[Path] = None) -> dict:
    """Load configuration from JSON file. A missing file means no settings."""
    config_file = config_file or get_config_file()
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read config file {config_file}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a JSON object")
    return data


def _optional_path(value) -> Optional[Path]:
    return Path(value) if value else None


# =============================================================================
# ARCHIVE (PER-RUN PUBLISHING) SETTINGS
# =============================================================================

class ArchiveConfig:
    """Settings for one run-folder publishing session.

    Loaded from the 'archive' section of config.json (or the 'archive'
    sub-section of 'monitor'). Handed unchanged to every worker process.
    """

    def __init__(self, config_dict: dict = None):
        cfg = config_dict or {}
        self.file_capacity: int = cfg.get('file_capacity', DEFAULT_FILE_CAPACITY)
        self.byte_capacity: int = cfg.get('byte_capacity', DEFAULT_BYTE_CAPACITY)
        self.archive_timeout: float = cfg.get('archive_timeout', 60 * 5)
        self.session_timeout: float = cfg.get('session_timeout', 60 * 20)
        self.session_poll_interval: float = cfg.get('session_poll_interval', 5)
        self.file_pattern: str = cfg.get('file_pattern', '*.fast5')
        self.stable_seconds: float = cfg.get('stable_seconds', 0)
        self.remove_files: bool = cfg.get('remove_files', False)
        self.archive_dir: Optional[Path] = _optional_path(
            cfg.get('archive_dir') or os.getenv("SEQARCHIVE_ARCHIVE_DIR")
        )
        self.dest_root: Optional[Path] = _optional_path(cfg.get('dest_root'))

    @classmethod
    def load(cls) -> 'ArchiveConfig':
        """Load archive config from the config file."""
        return cls(_load_config().get('archive', {}))

    def to_dict(self) -> dict:
        """Serialize to dict for saving to config.json."""
        d = {
            'file_capacity': self.file_capacity,
            'byte_capacity': self.byte_capacity,
            'archive_timeout': self.archive_timeout,
            'session_timeout': self.session_timeout,
            'session_poll_interval': self.session_poll_interval,
            'file_pattern': self.file_pattern,
            'stable_seconds': self.stable_seconds,
            'remove_files': self.remove_files,
        }
        if self.archive_dir:
            d['archive_dir'] = str(self.archive_dir)
        if self.dest_root:
            d['dest_root'] = str(self.dest_root)
        return d

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when usable)."""
        problems = []
        for name in ('file_capacity', 'byte_capacity'):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                problems.append(f"{name} must be a positive integer, got {value!r}")
        for name in ('archive_timeout', 'session_timeout', 'session_poll_interval'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                problems.append(f"{name} must be a positive number of seconds, got {value!r}")
        if self.stable_seconds < 0:
            problems.append(f"stable_seconds must not be negative, got {self.stable_seconds!r}")
        if self.archive_dir is None:
            problems.append("archive_dir not configured (set archive.archive_dir or SEQARCHIVE_ARCHIVE_DIR)")
        return problems

    def require_archive_dir(self) -> Path:
        """Get archive_dir, raising a helpful error if not configured."""
        if self.archive_dir is None:
            raise ConfigurationError(
                "Archive directory is not configured.\n\n"
                f"Set archive.archive_dir in {get_config_file()} "
                "or the SEQARCHIVE_ARCHIVE_DIR environment variable."
            )
        return self.archive_dir


# =============================================================================
# RUN MONITOR SETTINGS
# =============================================================================

class MonitorConfig:
    """Configuration for the staging-directory run monitor.

    Loaded from the 'monitor' section of config.json. The embedded
    ArchiveConfig comes from 'monitor.archive', falling back to the
    top-level 'archive' section.
    """

    def __init__(self, config_dict: dict = None, archive: ArchiveConfig = None):
        cfg = config_dict or {}
        self.staging_path: Optional[Path] = _optional_path(
            cfg.get('staging_path') or os.getenv("SEQARCHIVE_STAGING_PATH")
        )
        self.max_processes: int = cfg.get('max_processes', 50)
        self.poll_interval: float = cfg.get('poll_interval', 2)
        self.queue_size: int = cfg.get('queue_size', 10_000)
        self.data_pattern: str = cfg.get('data_pattern', '*.fast5')
        self.log_dir: Optional[Path] = _optional_path(cfg.get('log_dir'))
        self.archive: ArchiveConfig = archive or ArchiveConfig(cfg.get('archive', {}))

    @classmethod
    def load(cls) -> 'MonitorConfig':
        """Load monitor config from the config file."""
        config = _load_config()
        monitor = config.get('monitor', {})
        archive_section = monitor.get('archive') or config.get('archive', {})
        return cls(monitor, archive=ArchiveConfig(archive_section))

    def to_dict(self) -> dict:
        """Serialize to dict for saving to config.json."""
        d = {
            'max_processes': self.max_processes,
            'poll_interval': self.poll_interval,
            'queue_size': self.queue_size,
            'data_pattern': self.data_pattern,
            'archive': self.archive.to_dict(),
        }
        if self.staging_path:
            d['staging_path'] = str(self.staging_path)
        if self.log_dir:
            d['log_dir'] = str(self.log_dir)
        return d

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when usable)."""
        problems = []
        if self.staging_path is None:
            problems.append("staging_path not configured (set monitor.staging_path or SEQARCHIVE_STAGING_PATH)")
        elif not self.staging_path.is_dir():
            problems.append(f"Staging path does not exist: {self.staging_path}")
        if not isinstance(self.max_processes, int) or self.max_processes <= 0:
            problems.append(f"max_processes must be a positive integer, got {self.max_processes!r}")
        if self.poll_interval <= 0:
            problems.append(f"poll_interval must be positive, got {self.poll_interval!r}")
        if not isinstance(self.queue_size, int) or self.queue_size <= 0:
            problems.append(f"queue_size must be a positive integer, got {self.queue_size!r}")
        problems.extend(self.archive.validate())
        return problems

    def get_log_dir(self) -> Path:
        """Get log directory, defaulting to <archive_dir>/logs."""
        if self.log_dir:
            return self.log_dir
        return self.archive.require_archive_dir() / "logs"
