"""
Shared code for chkrelease: constants, exit codes, errors, counters, hashing, reporting.
"""

import hashlib
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Optional, TextIO, Union


PROGRAM = "chkrelease"
VERSION = "0.1.3"
DEFAULT_HASH_ALGO = "md5"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
PROGRESS_EVERY = 10
MAX_DELTA_STATUS = 125

# Exit statuses 1..125 report the number of deltas; these mark abnormal runs.
E_BAD_OPTION = 252
E_MISSING_PARAM = 253
E_BAD_TARBALL = 254
E_UNKNOWN = 255

# Digest of a live path that does not exist or cannot be read.
ABSENT = None


class ChkreleaseError(Exception):
    """Base error; carries the process exit status it maps to."""

    exit_code = E_UNKNOWN

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class UsageError(ChkreleaseError):
    """Bad or missing command-line arguments."""

    exit_code = E_BAD_OPTION


class ArchiveAccessError(ChkreleaseError):
    """The archive is missing, unreadable or corrupt."""

    exit_code = E_BAD_TARBALL


class ExtractionError(ArchiveAccessError):
    """A single archive member could not be materialized."""


class FilesystemAccessError(ChkreleaseError):
    """The comparison root is missing or unreadable."""

    exit_code = E_BAD_OPTION


@dataclass
class AuditCounters:
    """Running tallies for one audit run."""
    total: int = 0
    audited: int = 0
    modified: int = 0
    skipped: int = 0

    def snapshot(self) -> "AuditCounters":
        return AuditCounters(self.total, self.audited, self.modified, self.skipped)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console (stderr; stdout carries results)."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def report_counters(counters: AuditCounters, stream: TextIO) -> None:
    """Write the four totals in fixed order."""
    snap = counters.snapshot()
    stream.write(
        "\n"
        f"Total number of files to audit: {snap.total}\n"
        f"Total number of files audited:  {snap.audited}\n"
        f"Total number of files modified: {snap.modified}\n"
        f"Total number of files skipped:  {snap.skipped}\n"
    )
    stream.flush()


def exit_status_for(modified: int) -> int:
    """Map a delta count onto the 0..125 exit status range."""
    return min(max(modified, 0), MAX_DELTA_STATUS)


def iter_files(root: Path) -> Iterable[Path]:
    """Iterate through regular files under root without following symlinks."""
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in sorted(entries, key=lambda e: e.name):
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.is_file(follow_symlinks=False):
                            yield Path(entry.path)
                    except OSError as exc:
                        logging.warning(f"Skipping entry {entry.path}: {exc}")
        except OSError as exc:
            logging.warning(f"Skipping directory {current}: {exc}")


def _new_hasher():
    return hashlib.md5(usedforsecurity=False)


def compute_stream_hash(handle: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute the MD5 hash of everything left in a binary stream."""
    hasher = _new_hasher()
    for chunk in iter(lambda: handle.read(chunk_size), b''):
        hasher.update(chunk)
    return hasher.hexdigest()


def compute_hash(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute MD5 hash for a file."""
    with file_path.open('rb') as handle:
        return compute_stream_hash(handle, chunk_size)


def fingerprint(source: Union[Path, str, BinaryIO]) -> str:
    """Content digest of a path or an open binary stream."""
    if isinstance(source, (str, os.PathLike)):
        return compute_hash(Path(source))
    return compute_stream_hash(source)


def live_fingerprint(file_path: Path) -> Optional[str]:
    """Digest of a live file, or ABSENT if it is not a readable regular file."""
    try:
        if not file_path.is_file():
            return ABSENT
        return compute_hash(file_path)
    except OSError as exc:
        logging.debug(f"Cannot read {file_path}: {exc}")
        return ABSENT


def build_report(
    archive: Path,
    root: Path,
    counters: AuditCounters,
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "archive": str(archive),
        "root": str(root),
        "hash_algo": DEFAULT_HASH_ALGO,
        "mode": mode,
        "stats": counters.as_dict(),
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
