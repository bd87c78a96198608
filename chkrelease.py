#!/usr/bin/env python3
"""
chkrelease – audit a filesystem against a release tarball.

Extracts the members of a tar archive one at a time into a private scratch
directory, hashes each one and compares it with the same path under the
directory being audited. Every member that differs, is missing or cannot be
compared (symbolic links) is printed on stdout; the first column is the
member path, so the output can be fed straight back to tar:

  chkrelease.py /tmp/release.tar / | awk '{ print $1 }' | \\
      tar -C / -xvf /tmp/release.tar --files-from=-

Exit status is the number of modified files (capped at 125); 252-255 mark
bad options, missing parameters, unreadable archives and unknown failures.
Send SIGHUP for a progress report; SIGINT/SIGTERM report and stop.
"""

import argparse
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from audit_cmd import AuditConfig, AuditControl, audit_release
from common import (
    E_MISSING_PARAM,
    E_UNKNOWN,
    PROGRAM,
    VERSION,
    ArchiveAccessError,
    ChkreleaseError,
    FilesystemAccessError,
    UsageError,
    setup_logging,
)


@dataclass
class AuditTargets:
    """Which positional argument is the archive and which the comparison root."""

    archive: Path
    root: Path
    reverse: bool


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that reports bad options as UsageError instead of exiting 2."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        raise UsageError(f"{self.prog}: {message}")


def _readable(path: Path) -> bool:
    return os.access(path, os.R_OK)


def resolve_targets(first: Optional[str], second: Optional[str]) -> AuditTargets:
    """Work out the archive and comparison root from the positional arguments.

    A readable file first means "archive [root]" (root defaults to '.');
    a readable directory first means "root archive", and the archive is required.
    """
    if not first:
        raise UsageError(f"{PROGRAM}: missing parameter", exit_code=E_MISSING_PARAM)

    first_path = Path(first)
    if first_path.is_file() and _readable(first_path):
        root = Path(second) if second else Path('.')
        if not root.is_dir() or not _readable(root):
            raise FilesystemAccessError(f"{PROGRAM}: {root} is not a readable directory")
        return AuditTargets(archive=first_path, root=root, reverse=False)

    if first_path.is_dir() and _readable(first_path):
        archive = Path(second) if second else None
        if archive is None or not archive.is_file() or not _readable(archive):
            raise ArchiveAccessError(f"{PROGRAM}: No readable tarfile provided")
        return AuditTargets(archive=archive, root=first_path, reverse=True)

    raise UsageError(f"{PROGRAM}: {first} is not a readable file or directory")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog=PROGRAM,
        add_help=False,
        description='Audit a directory against a release tarball (or the reverse).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  chkrelease.py /tmp/release.tar /srv/app
  chkrelease.py --count --progress /tmp/release.tar / > /tmp/deltas &
  chkrelease.py ~/mydir ~/backup-of-mydir.tar

  Repair the deltas found by a previous run:
    awk '{print $1}' /tmp/deltas | tar -C / -xvf /tmp/release.tar --files-from=-
        """,
    )
    parser.add_argument(
        '-h', '-?', '--help', '--usage',
        action='help',
        help='Show this usage output and exit',
    )
    parser.add_argument(
        '-v', '--version',
        action='version',
        version=f'{PROGRAM} version {VERSION}',
        help='Print the program version and exit',
    )
    parser.add_argument(
        '-c', '--count',
        action='store_true',
        help='Print a summary of totals on stderr when done',
    )
    parser.add_argument(
        '-m', '--messy',
        action='store_true',
        help='Do not remove the scratch directory; useful for examining extracted files',
    )
    parser.add_argument(
        '-p', '--progress',
        action='store_true',
        help=f'Print a progress report on stderr during operation (implies --count). '
             f'Sending SIGHUP to {PROGRAM} has the same effect.',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Also write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    parser.add_argument(
        'first',
        nargs='?',
        metavar='tarball_or_dir',
        help='Tarball to audit the directory against, or the directory to audit',
    )
    parser.add_argument(
        'second',
        nargs='?',
        metavar='dir_or_tarball',
        help="Directory to audit (default: '.'), or the tarball when a directory comes first",
    )
    return parser


def _install_signal_handlers(control: AuditControl) -> dict:
    """Route signals to the control token. Returns the previous handlers."""
    previous = {}

    def on_progress(signum, frame):
        control.request_progress()

    def on_stop(signum, frame):
        control.request_stop()

    wanted = [
        (getattr(signal, 'SIGHUP', None), on_progress),
        (signal.SIGINT, on_stop),
        (getattr(signal, 'SIGTERM', None), on_stop),
    ]
    for signum, handler in wanted:
        if signum is None:
            continue
        previous[signum] = signal.signal(signum, handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        if handler is not None:
            signal.signal(signum, handler)


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the audit and return the process exit status."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except UsageError as exc:
        logging.error(str(exc))
        return exc.exit_code

    setup_logging(args.log, args.verbose)

    try:
        targets = resolve_targets(args.first, args.second)
    except ChkreleaseError as exc:
        logging.error(str(exc))
        if isinstance(exc, UsageError):
            parser.print_usage(sys.stderr)
        return exc.exit_code

    config = AuditConfig(
        show_totals=args.count,
        keep_scratch=args.messy,
        progress=args.progress,
        reverse=targets.reverse,
        report_path=args.report,
    )
    control = AuditControl()
    previous = _install_signal_handlers(control)
    try:
        result = audit_release(
            archive_path=targets.archive,
            root=targets.root,
            config=config,
            control=control,
        )
    except ChkreleaseError as exc:
        logging.error(str(exc))
        return exc.exit_code
    except Exception:
        logging.exception("Unexpected failure")
        return E_UNKNOWN
    finally:
        _restore_signal_handlers(previous)

    return result.exit_status


def main() -> None:
    """Main entry point for the script."""
    sys.exit(run())


if __name__ == "__main__":
    main()
