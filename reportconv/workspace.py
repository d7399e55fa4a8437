from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ScratchFileError


logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "pandoc"


@dataclass(frozen=True)
class ScratchFile:
    purpose: str
    path: Path


def acquire_scratch_file(purpose: str, directory: Optional[Path] = None) -> ScratchFile:
    """Create a uniquely named, empty scratch file and return it.

    Uniqueness is left to tempfile; callers never coordinate names.
    """
    try:
        fd, name = tempfile.mkstemp(
            prefix=f"{SCRATCH_PREFIX}-{purpose}-",
            dir=str(directory) if directory is not None else None,
        )
    except OSError as exc:
        raise ScratchFileError(f"failed to create temporary {purpose} file: {exc}") from exc
    os.close(fd)

    logger.info("created temporary %s file at %s", purpose, name)
    return ScratchFile(purpose=purpose, path=Path(name))


def release_scratch_file(scratch: ScratchFile) -> None:
    # Best effort: a file we cannot delete must not fail the request.
    try:
        scratch.path.unlink()
    except OSError as exc:
        logger.warning("failed to delete temporary file %s: %s", scratch.path, exc)


class Workspace:
    """Scratch files owned by a single request.

    Use as a context manager or call release() on every exit path. Release is
    idempotent, so ownership can be handed to the response that streams the
    output and released there once more without harm.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory
        self._files: List[ScratchFile] = []

    @property
    def files(self) -> List[ScratchFile]:
        return list(self._files)

    def acquire(self, purpose: str) -> ScratchFile:
        scratch = acquire_scratch_file(purpose, self._directory)
        self._files.append(scratch)
        return scratch

    def release(self) -> None:
        while self._files:
            release_scratch_file(self._files.pop())

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
