"""
Audit command: compare each archive member against its live counterpart under a root.
"""

import logging
import os
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from archive_source import ArchiveEntrySource, EntryRef, EntryType
from common import (
    ABSENT,
    PROGRESS_EVERY,
    AuditCounters,
    ArchiveAccessError,
    ExtractionError,
    build_report,
    exit_status_for,
    fingerprint,
    iter_files,
    live_fingerprint,
    report_counters,
    write_report,
)
from scratch import ScratchArea


@dataclass
class AuditConfig:
    """Options for one audit run."""

    show_totals: bool = False
    keep_scratch: bool = False
    progress: bool = False
    reverse: bool = False
    report_path: Optional[Path] = None
    scratch_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.progress:
            self.show_totals = True


class Outcome(Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    MISSING = "missing"
    SKIPPED = "skipped"
    UNTRACKED = "untracked"


@dataclass
class ComparisonResult:
    entry_name: str
    outcome: Outcome
    reason: str = ""

    @property
    def is_delta(self) -> bool:
        return self.outcome in (Outcome.MISMATCH, Outcome.MISSING)

    def line(self) -> str:
        return f"{self.entry_name} {self.reason}"


@dataclass
class AuditResult:
    counters: AuditCounters
    interrupted: bool
    exit_status: int
    results: List[ComparisonResult] = field(default_factory=list)


class AuditControl:
    """Progress and stop requests, honoured only between entries.

    Signal handlers call the request methods; the audit loop calls
    checkpoint() at each entry boundary.
    """

    def __init__(self) -> None:
        self.progress_requested = False
        self.stop_requested = False

    def request_progress(self) -> None:
        self.progress_requested = True

    def request_stop(self) -> None:
        self.stop_requested = True

    def checkpoint(self, counters: AuditCounters, diag: TextIO) -> bool:
        """Serve pending requests. Returns True when the run should stop."""
        if self.stop_requested:
            report_counters(counters, diag)
            return True
        if self.progress_requested:
            self.progress_requested = False
            report_counters(counters, diag)
        return False


def _display_path(root: Path, relative_path: str) -> str:
    return os.path.join(str(root), relative_path)


def _compare_entry(
    entry: EntryRef,
    source: ArchiveEntrySource,
    scratch: ScratchArea,
    root: Path,
) -> ComparisonResult:
    """Classify one archive member against the live tree."""
    if entry.entry_type is EntryType.SYMLINK:
        return ComparisonResult(entry.name, Outcome.SKIPPED, "is a symbolic link, skipping")
    if entry.entry_type is not EntryType.REGULAR:
        return ComparisonResult(entry.name, Outcome.SKIPPED, "is not a regular file, skipping")

    staged = source.materialize(entry, scratch.acquire())
    try:
        try:
            archived_digest = fingerprint(staged)
        except OSError as exc:
            raise ExtractionError(f"{entry.name}: cannot read extracted copy: {exc}") from exc
    finally:
        scratch.discard(staged)

    live_path = root.joinpath(*entry.relative_path.split("/"))
    live_digest = live_fingerprint(live_path)
    display = _display_path(root, entry.relative_path)

    if live_digest is ABSENT:
        return ComparisonResult(entry.name, Outcome.MISSING, f"does not match {display}")
    if live_digest != archived_digest:
        return ComparisonResult(entry.name, Outcome.MISMATCH, f"does not match {display}")
    return ComparisonResult(entry.name, Outcome.MATCH)


def _find_untracked(root: Path, entries: List[EntryRef]) -> List[str]:
    """Regular files under root that have no archive member."""
    members = {entry.relative_path for entry in entries}
    untracked: List[str] = []
    for file_path in iter_files(root):
        rel = file_path.relative_to(root).as_posix()
        if rel not in members:
            untracked.append(rel)
    return untracked


def audit_release(
    archive_path: Path,
    root: Path,
    config: Optional[AuditConfig] = None,
    control: Optional[AuditControl] = None,
    out: Optional[TextIO] = None,
    diag: Optional[TextIO] = None,
    progress_callback: Optional[Callable[[int, Dict[str, int]], None]] = None,
) -> AuditResult:
    """Audit root against the members of archive_path.

    Result lines go to out, counter reports to diag. The scratch area is
    released on every exit path unless config.keep_scratch is set.
    """
    config = config or AuditConfig()
    control = control or AuditControl()
    out = out if out is not None else sys.stdout
    diag = diag if diag is not None else sys.stderr

    counters = AuditCounters()
    results: List[ComparisonResult] = []
    interrupted = False
    run_started = int(time.time())

    def record(result: ComparisonResult) -> None:
        if result.outcome is Outcome.SKIPPED:
            counters.skipped += 1
        elif result.is_delta:
            counters.modified += 1
        counters.audited += 1

        if result.outcome is not Outcome.MATCH:
            out.write(result.line() + "\n")
            out.flush()
            results.append(result)
        logging.debug(f"{result.entry_name}: {result.outcome.value}")

        if config.progress and counters.audited % PROGRESS_EVERY == 0:
            report_counters(counters, diag)
        if progress_callback:
            progress_callback(counters.audited, counters.as_dict())

    with ArchiveEntrySource(archive_path) as source, \
            ScratchArea(keep=config.keep_scratch, base_dir=config.scratch_dir) as scratch:
        try:
            entries = list(source.entries())
            counters.total = len(entries)
            logging.info(f"Auditing {root} against {archive_path}: {counters.total} entries")

            for entry in entries:
                if control.checkpoint(counters, diag):
                    interrupted = True
                    break
                record(_compare_entry(entry, source, scratch, root))
        except ArchiveAccessError:
            report_counters(counters, diag)
            raise

    # Untracked files are not archive members: diagnostics only, never counted.
    if config.reverse and not interrupted:
        for rel in _find_untracked(root, entries):
            result = ComparisonResult(rel, Outcome.UNTRACKED, f"is not in {archive_path}")
            diag.write(result.line() + "\n")
            results.append(result)
        diag.flush()

    if interrupted:
        logging.info("Audit interrupted")
    elif config.show_totals:
        report_counters(counters, diag)

    exit_status = exit_status_for(counters.modified)
    logging.info(
        f"Completed: total={counters.total}, audited={counters.audited}, "
        f"modified={counters.modified}, skipped={counters.skipped}"
    )

    if config.report_path:
        details: Dict[str, object] = {
            outcome.value: [r.entry_name for r in results if r.outcome is outcome]
            for outcome in (Outcome.MISMATCH, Outcome.MISSING, Outcome.SKIPPED, Outcome.UNTRACKED)
        }
        details["interrupted"] = interrupted
        details["exit_status"] = exit_status
        report = build_report(
            archive=archive_path,
            root=root,
            counters=counters,
            run_started=run_started,
            run_finished=int(time.time()),
            mode="reverse" if config.reverse else "audit",
            details=details,
        )
        write_report(report, config.report_path)

    return AuditResult(
        counters=counters,
        interrupted=interrupted,
        exit_status=exit_status,
        results=results,
    )
