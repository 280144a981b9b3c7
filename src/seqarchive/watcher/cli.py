"""
CLI entry point for the seqarchive run monitor.

Commands:
    seqarchive-watch    Watch the staging directory and publish run-folders
"""

import sys
import logging
import multiprocessing
from pathlib import Path
from logging.handlers import QueueListener, RotatingFileHandler

logger = logging.getLogger(__name__)


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(log_dir: Path, verbose: bool = False, quiet: bool = False,
                  log_name: str = "seqarchive.log"):
    """
    Setup logging to console and rotating file.

    Args:
        log_dir: Directory for log files
        verbose: Enable debug logging
        quiet: Suppress info logging (errors only)
        log_name: File name of the log inside log_dir
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_name

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    # Worker processes share the file; processName tells their lines apart
    formatter = logging.Formatter('%(asctime)s %(levelname)-8s %(processName)s %(name)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    # File handler (rotating, 10MB max, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    return log_file


def start_log_listener():
    """
    Forward records from worker processes to the root logger's handlers.

    Returns:
        (log_queue, listener); hand log_queue to the ProcessPool and stop
        the listener once every worker has exited
    """
    log_queue = multiprocessing.Queue(-1)
    listener = QueueListener(log_queue, *logging.getLogger().handlers, respect_handler_level=True)
    listener.start()
    return log_queue, listener


def _option_value(args, flag):
    """Value following flag in args, or None."""
    if flag in args:
        i = args.index(flag)
        if i + 1 < len(args):
            return args[i + 1]
    return None


# =============================================================================
# MAIN WATCH COMMAND
# =============================================================================

def main_watch():
    """Watch the staging directory and publish run-folders as they arrive."""
    args = sys.argv[1:]
    verbose = '--verbose' in args
    quiet = '--quiet' in args
    staging = _option_value(args, '--staging')

    if '--help' in args or '-h' in args:
        print("Usage: seqarchive-watch [--staging DIR] [--verbose | --quiet]")
        return

    from seqarchive.config import MonitorConfig, ConfigurationError
    from seqarchive.watcher.monitor import RunMonitor

    try:
        config = MonitorConfig.load()
    except ConfigurationError as e:
        print(f"ERROR: Failed to load monitor configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if staging:
        config.staging_path = Path(staging)

    problems = config.validate()
    if problems:
        print("ERROR: Monitor configuration is not usable:", file=sys.stderr)
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        sys.exit(1)

    try:
        log_dir = config.get_log_dir()
        log_file = setup_logging(log_dir, verbose=verbose, quiet=quiet)
        logger.info(f"Logging to {log_file}")
    except (OSError, ConfigurationError) as e:
        print(f"ERROR: Failed to setup logging: {e}", file=sys.stderr)
        sys.exit(1)

    archive = config.archive
    print("=" * 70)
    print("seqarchive Run Monitor")
    print("=" * 70)
    print()
    print("Configuration:")
    print(f"  Staging Path:    {config.staging_path}")
    print(f"  Archive Dir:     {archive.archive_dir}")
    print(f"  Destination:     {archive.dest_root or '(local only)'}")
    print(f"  Max Processes:   {config.max_processes}")
    print(f"  File Capacity:   {archive.file_capacity}")
    print(f"  Byte Capacity:   {archive.byte_capacity}")
    print(f"  Archive Timeout: {archive.archive_timeout}s")
    print(f"  Session Timeout: {archive.session_timeout}s")
    print(f"  Remove Files:    {'Yes' if archive.remove_files else 'No'}")
    print(f"  Logs:            {log_dir}")
    print()

    log_queue, listener = start_log_listener()
    monitor = RunMonitor(config, log_queue=log_queue)
    monitor.handle_signals()

    logger.info("Starting run monitor - press Ctrl+C to stop")
    try:
        num_errors = monitor.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        num_errors = monitor.workers_failed

    # Workers log through the listener, so keep it running until they exit
    if monitor.in_progress:
        print(f"Waiting for {len(monitor.in_progress)} running publishers to finish...")
        failed_before = monitor.workers_failed
        try:
            monitor.join_workers()
        except KeyboardInterrupt:
            logger.info("Stopped waiting for publishers")
        num_errors += monitor.workers_failed - failed_before
    listener.stop()

    summary = monitor.summary()
    print()
    print("=" * 70)
    print("Final Summary")
    print("=" * 70)
    print(f"Workers started:   {summary['workers_started']}")
    print(f"Workers succeeded: {summary['workers_succeeded']}")
    print(f"Workers failed:    {summary['workers_failed']}")
    print(f"Events lost:       {summary['lost_events']}")
    if summary['in_progress']:
        print("Still publishing:")
        for path, started_at in summary['in_progress'].items():
            print(f"  {path} (since {started_at})")
    print()

    sys.exit(0 if num_errors == 0 else 1)


if __name__ == "__main__":
    main_watch()
