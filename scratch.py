"""
Scratch area: a process-private temporary directory holding one extracted member at a time.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from common import PROGRAM


class ScratchArea:
    """Lazily created temporary directory, removed on release unless kept."""

    def __init__(self, keep: bool = False, base_dir: Optional[Path] = None) -> None:
        self.keep = keep
        self.base_dir = base_dir
        self.path: Optional[Path] = None

    def __enter__(self) -> "ScratchArea":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def acquire(self) -> Path:
        """Create the directory on first use; later calls return the same path."""
        if self.path is None:
            self.path = Path(tempfile.mkdtemp(
                prefix=f"{PROGRAM}.{os.getpid()}.",
                dir=str(self.base_dir) if self.base_dir else None,
            ))
            logging.debug(f"Created scratch area {self.path}")
        return self.path

    def discard(self, file_path: Path) -> None:
        """Remove one materialized file."""
        if self.keep:
            return
        try:
            file_path.unlink()
        except FileNotFoundError:
            pass

    def release(self) -> None:
        """Remove everything created under the area. Safe to call repeatedly."""
        if self.path is None:
            return
        if self.keep:
            logging.info(f"Leaving scratch area in place: {self.path}")
            return
        if not self.path.exists():
            self.path = None
            return

        logging.info(f"Please wait while I clean the scratch area {self.path}...")
        shutil.rmtree(self.path)
        self.path = None
