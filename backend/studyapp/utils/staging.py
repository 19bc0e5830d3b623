"""Staging area for uploads awaiting placement in a study set.

Uploads are written here under a unique name before the lifecycle
service moves them into the owning study-set directory.
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable

from ..schemas import IncomingFile

_LOGGER = logging.getLogger("studyapp.staging")


def staged_name(original_name: str) -> str:
    """Return a collision-free stored name that keeps the original extension."""
    suffix = Path(original_name).suffix.lower()
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{suffix}"


def stage_upload(fh: BinaryIO, original_name: str, staging_dir: Path, max_bytes: int) -> IncomingFile:
    """Copy an upload stream into `staging_dir`.

    Raises ValueError when the payload exceeds `max_bytes`.
    """
    payload = fh.read(max_bytes + 1)
    if len(payload) > max_bytes:
        raise ValueError(f"file too large: {original_name}")
    staging_dir = Path(staging_dir)
    staging_dir.mkdir(parents=True, exist_ok=True)
    target = staging_dir / staged_name(original_name)
    target.write_bytes(payload)
    return IncomingFile(original_name=original_name, staged_path=str(target))


def discard_staged(files: Iterable[IncomingFile]) -> None:
    """Remove staged files that were not moved into a study set."""
    for f in files:
        try:
            Path(f.staged_path).unlink(missing_ok=True)
        except OSError as exc:
            _LOGGER.warning("staged_discard_failed path=%s error=%s", f.staged_path, exc)
