"""Local file store for study-set uploads.

Every path handed to the store must live under its root. Removals go
through `stash` first: the target is renamed into a trash directory on
the same file system, which is atomic, and can be put back with
`restore` until it is `purge`d.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path
from typing import Union

PathLike = Union[str, os.PathLike]

TRASH_DIRNAME = ".trash"


class FileStore:
    """Directory tree rooted at `root` holding `{user_id}/{study_set_id}/...`."""

    def __init__(self, root: PathLike):
        self.root = Path(root).expanduser().resolve()
        self.trash_root = self.root / TRASH_DIRNAME

    def study_set_dir(self, user_id: int, study_set_id: int) -> Path:
        return self.root / str(user_id) / str(study_set_id)

    def _inside_root(self, path: PathLike) -> Path:
        p = Path(path).expanduser().resolve()
        if p != self.root and self.root not in p.parents:
            raise ValueError(f"path outside upload root: {p}")
        return p

    def ensure_directory(self, path: PathLike) -> Path:
        """Create `path` and its parents; existing directories are fine."""
        p = self._inside_root(path)
        p.mkdir(parents=True, exist_ok=True)
        return p

    def move_file(self, src: PathLike, dest: PathLike) -> Path:
        """Move `src` to `dest` and return the final path.

        Refuses to overwrite an existing destination.
        """
        target = self._inside_root(dest)
        if target.exists():
            raise FileExistsError(f"destination already exists: {target}")
        return Path(shutil.move(str(src), str(target)))

    def delete_file(self, path: PathLike) -> None:
        """Remove a single file; a missing file counts as removed."""
        self._inside_root(path).unlink(missing_ok=True)

    def delete_directory_recursive(self, path: PathLike) -> None:
        """Remove a directory tree; a missing directory counts as removed."""
        p = self._inside_root(path)
        if p.exists():
            shutil.rmtree(p)

    def stash_path(self, path: PathLike) -> Path:
        """Pick the trash location `stash` will use for `path`."""
        p = self._inside_root(path)
        return self.trash_root / f"{uuid.uuid4().hex}_{p.name}"

    def stash(self, path: PathLike, target: PathLike | None = None) -> Path | None:
        """Move `path` into the trash and return its new location.

        `target` is a location from `stash_path`; a fresh one is picked
        when it is omitted. Returns None when `path` does not exist.
        """
        p = self._inside_root(path)
        if not p.exists():
            return None
        self.trash_root.mkdir(parents=True, exist_ok=True)
        stashed = self._inside_root(target) if target is not None else self.stash_path(p)
        os.replace(p, stashed)
        return stashed

    def restore(self, stashed: PathLike, original: PathLike) -> Path:
        """Put a stashed file or directory back at `original`."""
        src = self._inside_root(stashed)
        dest = self._inside_root(original)
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(src, dest)
        return dest

    def purge(self, stashed: PathLike) -> None:
        """Permanently remove a stashed file or directory."""
        p = self._inside_root(stashed)
        if p.is_dir():
            shutil.rmtree(p)
        else:
            p.unlink(missing_ok=True)
