"""
Archive entry source: list tar members lazily and stream one member at a time into scratch.
"""

import logging
import lzma
import shutil
import tarfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional

from common import ArchiveAccessError, ExtractionError


COPY_BUFFER_SIZE = 1024 * 1024

# Decompressor errors that tarfile lets through unwrapped.
ARCHIVE_ERRORS = (tarfile.TarError, OSError, EOFError, lzma.LZMAError, zlib.error)


class EntryType(Enum):
    REGULAR = "regular"
    SYMLINK = "symlink"
    DIRECTORY = "directory"
    OTHER = "other"


@dataclass
class EntryRef:
    """One archive member as seen by the audit loop."""
    name: str
    entry_type: EntryType
    relative_path: str
    member: Optional[tarfile.TarInfo] = field(default=None, repr=False, compare=False)


def entry_type_of(member: tarfile.TarInfo) -> EntryType:
    """Classify a tar member. Hard links carry regular content."""
    if member.isdir():
        return EntryType.DIRECTORY
    if member.issym():
        return EntryType.SYMLINK
    if member.isfile() or member.islnk():
        return EntryType.REGULAR
    return EntryType.OTHER


def normalize_member_name(name: str) -> str:
    """Strip leading '/' and './' the way tar does on extraction."""
    parts = [p for p in PurePosixPath(name).parts if p not in ("/", ".")]
    return "/".join(parts)


class ArchiveEntrySource:
    """Sequential access to the members of one tar archive (any compression)."""

    def __init__(self, archive_path: Path) -> None:
        self.archive_path = archive_path
        self._tar: Optional[tarfile.TarFile] = None

    def __enter__(self) -> "ArchiveEntrySource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        if self._tar is not None:
            return
        try:
            self._tar = tarfile.open(self.archive_path, "r:*")
        except ARCHIVE_ERRORS as exc:
            raise ArchiveAccessError(f"Cannot read archive {self.archive_path}: {exc}") from exc
        logging.debug(f"Opened archive {self.archive_path}")

    def close(self) -> None:
        if self._tar is not None:
            self._tar.close()
            self._tar = None

    @property
    def tar(self) -> tarfile.TarFile:
        if self._tar is None:
            raise ArchiveAccessError(f"Archive {self.archive_path} is not open")
        return self._tar

    def entries(self) -> Iterator[EntryRef]:
        """Yield non-directory members in archive order; reads headers only."""
        tar = self.tar
        try:
            for member in tar:
                entry_type = entry_type_of(member)
                if entry_type is EntryType.DIRECTORY:
                    continue
                yield EntryRef(
                    name=member.name,
                    entry_type=entry_type,
                    relative_path=normalize_member_name(member.name),
                    member=member,
                )
        except ARCHIVE_ERRORS as exc:
            raise ArchiveAccessError(f"Cannot list archive {self.archive_path}: {exc}") from exc

    def _locate(self, entry: EntryRef) -> tarfile.TarInfo:
        if entry.member is not None:
            return entry.member
        try:
            return self.tar.getmember(entry.name)
        except KeyError as exc:
            raise ExtractionError(f"{entry.name}: not found in archive {self.archive_path}") from exc

    def materialize(self, entry: EntryRef, destination: Path) -> Path:
        """Copy exactly one member's bytes to destination/relative_path."""
        rel = PurePosixPath(entry.relative_path)
        if not entry.relative_path or ".." in rel.parts:
            raise ExtractionError(f"{entry.name}: unsafe member path in archive {self.archive_path}")
        if entry.entry_type is not EntryType.REGULAR:
            raise ExtractionError(f"{entry.name}: not a regular file member")

        member = self._locate(entry)
        target = destination.joinpath(*rel.parts)
        try:
            source = self.tar.extractfile(member)
            if source is None:
                raise ExtractionError(f"{entry.name}: member has no content")
            target.parent.mkdir(parents=True, exist_ok=True)
            with source, target.open('wb') as handle:
                shutil.copyfileobj(source, handle, COPY_BUFFER_SIZE)
        except (KeyError,) + ARCHIVE_ERRORS as exc:
            raise ExtractionError(
                f"{entry.name}: cannot extract from archive {self.archive_path}: {exc}"
            ) from exc
        logging.debug(f"Materialized {entry.name} -> {target}")
        return target
