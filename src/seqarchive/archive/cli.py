#!/usr/bin/env python3
"""
cli.py - Command line interface for publishing a single run-folder.

Usage:
    seqarchive-publish /data/staging/run_001            # Publish until the run goes idle
    seqarchive-publish /data/staging/run_001 --force    # Re-send files already published
    seqarchive-manifest /data/archives/MN12345/FAF12345/MN12345_FAF12345_20170331.manifest.txt
"""

import argparse
import sys
import logging
from pathlib import Path

from seqarchive.config import ArchiveConfig, ConfigurationError
from seqarchive.errors import ArchiveError
from seqarchive.archive.manifest import Manifest

logger = logging.getLogger(__name__)


def main():
    """CLI entry point for seqarchive-publish."""
    parser = argparse.ArgumentParser(
        description="Publish the data files of one run-folder into tar containers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    seqarchive-publish /data/staging/run_001
    seqarchive-publish /data/staging/run_001 --file-capacity 500 --session-timeout 60

The run is identified from its first data file; containers and the
manifest are written under <archive_dir>/<device id>/<asic id>/.
Re-running over the same run-folder resumes from the manifest.
"""
    )

    parser.add_argument(
        "run_folder",
        type=Path,
        help="Run-folder to publish"
    )

    parser.add_argument(
        "--file-capacity",
        type=int,
        help="Maximum files per container"
    )

    parser.add_argument(
        "--byte-capacity",
        type=int,
        help="Maximum bytes per container"
    )

    parser.add_argument(
        "--session-timeout",
        type=float,
        help="End after this many seconds without publishing a file"
    )

    parser.add_argument(
        "--remove-files",
        action="store_true",
        help="Delete each data file once it has been archived"
    )

    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Publish files again even if the manifest lists them"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)-8s %(name)s - %(message)s',
    )

    from seqarchive.watcher.identify import identify_run
    from seqarchive.watcher.session import RunSession

    try:
        config = ArchiveConfig.load()
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if args.file_capacity is not None:
        config.file_capacity = args.file_capacity
    if args.byte_capacity is not None:
        config.byte_capacity = args.byte_capacity
    if args.session_timeout is not None:
        config.session_timeout = args.session_timeout
    if args.remove_files:
        config.remove_files = True

    problems = config.validate()
    if problems:
        print("ERROR: Archive configuration is not usable:", file=sys.stderr)
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        sys.exit(1)

    run_folder = args.run_folder.resolve()
    if not run_folder.is_dir():
        print(f"ERROR: Not a directory: {run_folder}", file=sys.stderr)
        sys.exit(1)

    try:
        identity = identify_run(run_folder, config.file_pattern)
    except ArchiveError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    if identity is None:
        print(f"ERROR: No data files matching '{config.file_pattern}' in {run_folder}", file=sys.stderr)
        sys.exit(1)

    print(f"Publishing {run_folder}")
    print(f"  Device: {identity.device_id}  ASIC: {identity.asic_id}  Run date: {identity.run_date}")
    print()

    try:
        session = RunSession.for_run(identity, config, force=args.force)
        result = session.publish_files()
    except (ArchiveError, ConfigurationError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    print(f"Published {result.files_processed} / {result.files_total} files "
          f"in {result.archive_count} containers")
    if result.files_errored:
        print(f"Errors: {result.files_errored}")

    sys.exit(result.exit_code)


def main_manifest():
    """CLI entry point for seqarchive-manifest."""
    parser = argparse.ArgumentParser(
        description="Summarize a run manifest"
    )

    parser.add_argument(
        "manifest",
        type=Path,
        help="Manifest file"
    )

    parser.add_argument(
        "--items", "-i",
        action="store_true",
        help="List every item with its container"
    )

    args = parser.parse_args()

    manifest = Manifest(args.manifest)
    if not manifest.exists():
        print(f"ERROR: Manifest not found: {args.manifest}", file=sys.stderr)
        sys.exit(1)

    try:
        manifest.read()
    except ArchiveError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    counts = {}
    for entry in manifest:
        counts[entry.container_path] = counts.get(entry.container_path, 0) + 1

    print(f"{args.manifest}: {len(manifest)} items in {len(counts)} containers")
    print()
    for container in manifest.containers():
        print(f"  {counts[container]:8d}  {container}")

    if args.items:
        print()
        for entry in manifest:
            print(f"{entry.container_path}\t{entry.item_path}\t{entry.checksum or '-'}")


if __name__ == "__main__":
    main()
