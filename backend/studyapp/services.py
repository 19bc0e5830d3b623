"""Business logic services used by HTTP controllers.

`StudySetService` owns the study-set lifecycle: it keeps the database
rows and the on-disk directory `{user_id}/{study_set_id}/` in step.
Every mutating operation runs inside one database transaction; file
placements and removals are recorded in the intent log first and are
undone (or left for `reconcile`) when the transaction does not commit.
"""

import json
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import transaction
from .errors import NotFoundError, StorageError, ValidationError
from .schemas import IncomingFile
from .utils.file_store import FileStore
from .utils.intent_log import ATTACH, COMMITTED, DELETE_FILE, DELETE_SET, ROLLED_BACK, IntentLog
from .utils.locks import KeyedLock

logger = logging.getLogger("studyapp.lifecycle")

# shared by every service instance in the process
study_set_locks = KeyedLock()


def _log(event: str, **fields) -> None:
    logger.info("%s %s", event, json.dumps(fields, ensure_ascii=True, default=str))


def _require_name(name) -> str:
    if name is None or not isinstance(name, str) or not name.strip():
        raise ValidationError("Study set name is required.")
    return name.strip()


def _next_modified(previous: Optional[datetime]) -> datetime:
    """Return a modification time strictly after `previous`."""
    now = models.utcnow()
    if previous is not None:
        if previous.tzinfo is None:
            previous = previous.replace(tzinfo=timezone.utc)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
    return now


class _Attachment:
    """Bookkeeping for one batch of file placements."""
    def __init__(self):
        self.intent_id: Optional[str] = None
        self.moved: List[Path] = []
        self.timed_out = False


class StudySetService:
    """Create, read, update and delete study sets and their files."""
    def __init__(
        self,
        session: Session,
        store: Optional[FileStore] = None,
        intents: Optional[IntentLog] = None,
        locks: Optional[KeyedLock] = None,
        timeout_s: Optional[float] = None,
        workers: Optional[int] = None,
    ):
        self.session = session
        self.sets = repositories.StudySetRepository(session)
        self.files = repositories.StudySetFileRepository(session)
        self.store = store or FileStore(settings.UPLOAD_ROOT)
        self.intents = intents or IntentLog(settings.INTENT_LOG_PATH)
        self.locks = locks or study_set_locks
        self.timeout_s = timeout_s or settings.FILE_OP_TIMEOUT_SECONDS
        self.workers = workers or settings.FILE_OP_WORKERS

    # ----- reads -----

    def get_all_study_sets(self, user_id: Optional[int]) -> List[dict]:
        """Return every study set owned by `user_id` in creation order."""
        if user_id is None:
            raise ValidationError("User ID is required.")
        try:
            rows = self.sets.list_for_user(user_id)
        except SQLAlchemyError as exc:
            raise StorageError("Error fetching study sets.") from exc
        return [self._study_set_dict(s) for s in rows]

    def get_study_set_details(self, study_set_id: int) -> dict:
        """Return a study set with its `{file_id, file_path}` entries."""
        try:
            study_set = self.sets.get(study_set_id)
            if study_set is None:
                raise NotFoundError("Study set not found.")
            files = self.files.list_for_study_set(study_set_id)
        except SQLAlchemyError as exc:
            raise StorageError("Error fetching study set details.") from exc
        out = self._study_set_dict(study_set)
        out['files'] = [{'file_id': f.id, 'file_path': f.file_path} for f in files]
        return out

    def get_files_for_study_set(self, study_set_id: int) -> List[dict]:
        """Return the file rows of a study set, e.g. as input for content generation."""
        try:
            if self.sets.get(study_set_id) is None:
                raise NotFoundError("Study set not found.")
            files = self.files.list_for_study_set(study_set_id)
        except SQLAlchemyError as exc:
            raise StorageError("Error fetching files.") from exc
        return [{'id': f.id, 'study_set_id': f.study_set_id, 'file_path': f.file_path} for f in files]

    # ----- writes -----

    def create_study_set(
        self,
        user_id: Optional[int],
        name: Optional[str],
        description: Optional[str] = None,
        files: Optional[List[IncomingFile]] = None,
    ) -> dict:
        """Create a study set, its directory and any attached files.

        All files are moved concurrently; if any move or row insert fails
        the transaction is rolled back, moved files and the new directory
        are removed, and `StorageError` is raised.
        """
        if user_id is None:
            raise ValidationError("User ID is required.")
        name = _require_name(name)
        files = list(files or [])
        started = time.perf_counter()
        attachment = _Attachment()
        directory: Optional[Path] = None
        try:
            with transaction(self.session):
                now = models.utcnow()
                study_set = self.sets.create(models.StudySet(
                    user_id=user_id,
                    name=name,
                    description=description or None,
                    created_at=now,
                    modified_at=now,
                ))
                directory = self.store.study_set_dir(user_id, study_set.id)
                self._ensure_directory(directory)
                placed = self._attach(study_set.id, directory, files, attachment)
        except StorageError as exc:
            self._compensate(attachment, directory=directory)
            _log("study_set_create_failed", user_id=user_id, file_count=len(files), error=str(exc.__cause__ or exc))
            raise
        except (SQLAlchemyError, OSError) as exc:
            self._compensate(attachment, directory=directory)
            _log("study_set_create_failed", user_id=user_id, file_count=len(files), error=str(exc))
            raise StorageError("Error creating study set.") from exc
        self._finish(attachment)
        out = self._study_set_dict(study_set)
        out['files'] = placed
        _log(
            "study_set_created",
            study_set_id=out['id'],
            user_id=user_id,
            file_count=len(placed),
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        return out

    def update_study_set(
        self,
        study_set_id: Optional[int],
        name: Optional[str],
        description: Optional[str] = None,
        files: Optional[List[IncomingFile]] = None,
    ) -> dict:
        """Update name/description and attach any new files.

        Existing files are never removed here. A failed file placement
        rolls back the metadata change as well.
        """
        if study_set_id is None:
            raise ValidationError("Study set ID is required.")
        name = _require_name(name)
        files = list(files or [])
        started = time.perf_counter()
        attachment = _Attachment()
        with self.locks.hold(study_set_id):
            try:
                with transaction(self.session):
                    study_set = self.sets.get(study_set_id)
                    if study_set is None:
                        raise NotFoundError("Study set not found.")
                    study_set.name = name
                    study_set.description = description or None
                    study_set.modified_at = _next_modified(study_set.modified_at)
                    self.sets.update(study_set)
                    placed = []
                    if files:
                        directory = self.store.study_set_dir(study_set.user_id, study_set.id)
                        self._ensure_directory(directory)
                        placed = self._attach(study_set.id, directory, files, attachment)
            except StorageError as exc:
                self._compensate(attachment)
                _log("study_set_update_failed", study_set_id=study_set_id, file_count=len(files), error=str(exc.__cause__ or exc))
                raise
            except (SQLAlchemyError, OSError) as exc:
                self._compensate(attachment)
                _log("study_set_update_failed", study_set_id=study_set_id, file_count=len(files), error=str(exc))
                raise StorageError("Error updating study set.") from exc
            self._finish(attachment)
            out = self._study_set_dict(study_set)
        out['files'] = placed
        _log(
            "study_set_updated",
            study_set_id=study_set_id,
            file_count=len(placed),
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        return out

    def delete_study_set(self, study_set_id: Optional[int]) -> dict:
        """Delete a study set, all of its file rows and its directory.

        The directory is stashed inside the transaction and only purged
        after the commit, so a failure before the commit restores it.
        """
        if study_set_id is None:
            raise ValidationError("Study set ID is required.")
        intent_id = None
        stashed = None
        directory = None
        with self.locks.hold(study_set_id):
            try:
                with transaction(self.session):
                    study_set = self.sets.get(study_set_id)
                    if study_set is None:
                        raise NotFoundError("Study set not found.")
                    directory = self.store.study_set_dir(study_set.user_id, study_set.id)
                    removed = self.files.delete_for_study_set(study_set_id)
                    self.sets.delete(study_set)
                    # the trash location is logged before the rename so a crash can be undone
                    target = self.store.stash_path(directory)
                    intent_id = self.intents.begin(
                        DELETE_SET, study_set_id, directory=str(directory), stashed=str(target)
                    )
                    try:
                        stashed = self.store.stash(directory, target)
                    except OSError as exc:
                        raise StorageError("Error deleting study set directory.") from exc
            except NotFoundError:
                raise
            except (StorageError, SQLAlchemyError, OSError) as exc:
                self._undo_stash(intent_id, stashed, directory)
                _log("study_set_delete_failed", study_set_id=study_set_id, error=str(exc.__cause__ or exc))
                if isinstance(exc, StorageError):
                    raise
                raise StorageError("Error deleting study set.") from exc
            self._purge(intent_id, stashed)
        _log("study_set_deleted", study_set_id=study_set_id, file_count=removed)
        return {'id': study_set_id, 'files_removed': removed}

    def delete_file_from_study_set(self, file_id: Optional[int]) -> dict:
        """Delete one file row and the file it points at.

        The row deletion and the file removal succeed or fail together:
        the file is stashed before the commit and purged after it.
        """
        if file_id is None:
            raise ValidationError("File ID is required.")
        try:
            study_set_id = self.files.study_set_id_for(file_id)
        except SQLAlchemyError as exc:
            raise StorageError("Error fetching file.") from exc
        if study_set_id is None:
            raise NotFoundError("File not found.")
        intent_id = None
        stashed = None
        path = None
        with self.locks.hold(study_set_id):
            try:
                with transaction(self.session):
                    row = self.files.get(file_id)
                    if row is None:
                        raise NotFoundError("File not found.")
                    path = row.file_path
                    self.files.delete(row)
                    try:
                        target = self.store.stash_path(path)
                        intent_id = self.intents.begin(
                            DELETE_FILE, study_set_id, file_id=file_id, path=path, stashed=str(target)
                        )
                        stashed = self.store.stash(path, target)
                    except (OSError, ValueError) as exc:
                        raise StorageError("Error deleting file.") from exc
            except NotFoundError:
                raise
            except (StorageError, SQLAlchemyError, OSError) as exc:
                self._undo_stash(intent_id, stashed, path)
                _log("study_set_file_delete_failed", file_id=file_id, error=str(exc.__cause__ or exc))
                if isinstance(exc, StorageError):
                    raise
                raise StorageError("Error deleting file.") from exc
            self._purge(intent_id, stashed)
        _log("study_set_file_deleted", study_set_id=study_set_id, file_id=file_id)
        return {'file_id': file_id, 'study_set_id': study_set_id, 'file_path': path}

    # ----- recovery -----

    def reconcile(self) -> dict:
        """Settle operations the intent log shows as unfinished.

        Placed files that no row references are removed. A stashed
        directory or file is restored when its row still exists and
        purged otherwise. Intents that cannot be settled stay in the log.
        """
        pending = self.intents.pending()
        summary = {'pending': len(pending), 'removed': 0, 'restored': 0, 'purged': 0, 'kept': 0}
        keep = []
        settled = []
        for rec in pending:
            op = rec.get('op')
            try:
                if op == ATTACH:
                    for path in rec.get('paths', []):
                        if Path(path).exists() and not self.files.exists_with_path(path):
                            self.store.delete_file(path)
                            summary['removed'] += 1
                elif op in (DELETE_SET, DELETE_FILE) and rec.get('stashed') and Path(rec['stashed']).exists():
                    # a missing stash means the rename never ran or the purge finished
                    stashed = rec['stashed']
                    if op == DELETE_SET:
                        alive = self.sets.get(rec.get('study_set_id')) is not None
                        original = rec.get('directory')
                    else:
                        alive = self.files.get(rec.get('file_id')) is not None
                        original = rec.get('path')
                    if alive:
                        self.store.restore(stashed, original)
                        summary['restored'] += 1
                    else:
                        self.store.purge(stashed)
                        summary['purged'] += 1
            except (OSError, ValueError, SQLAlchemyError) as exc:
                logger.warning("reconcile_failed %s", json.dumps({'intent_id': rec.get('intent_id'), 'op': op, 'error': str(exc)}))
                keep.append(rec)
                continue
            settled.append(rec.get('intent_id'))
        summary['kept'] = len(keep)
        if pending:
            self.intents.compact(settled)
            _log("intents_reconciled", **summary)
        return summary

    # ----- helpers -----

    def _study_set_dict(self, s: models.StudySet) -> dict:
        return {
            'id': s.id,
            'user_id': s.user_id,
            'name': s.name,
            'description': s.description,
            'created_at': s.created_at,
            'modified_at': s.modified_at,
        }

    def _ensure_directory(self, directory: Path) -> None:
        try:
            self.store.ensure_directory(directory)
        except OSError as exc:
            raise StorageError("Error creating study set directory.") from exc

    def _attach(self, study_set_id: int, directory: Path, files: List[IncomingFile], attachment: _Attachment) -> List[dict]:
        """Move staged files into `directory` and insert their rows.

        Moves fan out over a thread pool and are joined before any row is
        written; rows are inserted on the calling thread since the
        session is not shared between threads.
        """
        if not files:
            return []
        plan = [(f, directory / Path(f.staged_path).name) for f in files]
        attachment.intent_id = self.intents.begin(ATTACH, study_set_id, paths=[str(dest) for _, dest in plan])
        moved, failures = self._move_all(plan, attachment)
        attachment.moved = [dest for _, dest in moved]
        if failures:
            raise StorageError(f"Error uploading files: {len(failures)} of {len(plan)} failed.") from failures[0]
        placed = []
        for incoming, dest in moved:
            row = self.files.add(study_set_id, str(dest))
            placed.append({'file_id': row.id, 'original_name': incoming.original_name, 'final_path': str(dest)})
        return placed

    def _move_all(self, plan, attachment: _Attachment):
        workers = min(self.workers, len(plan))
        # each move gets the full timeout even when it has to queue for a worker
        budget = self.timeout_s * math.ceil(len(plan) / workers)
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="studyset-move")
        try:
            futures = {pool.submit(self.store.move_file, f.staged_path, dest): (f, dest) for f, dest in plan}
            _, not_done = wait(futures, timeout=budget)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        moved, failures = [], []
        for fut, (incoming, dest) in futures.items():
            if fut in not_done:
                attachment.timed_out = True
                failures.append(TimeoutError(f"moving {incoming.original_name} timed out after {self.timeout_s:.0f}s"))
            elif fut.exception() is not None:
                failures.append(fut.exception())
            else:
                moved.append((incoming, dest))
        return moved, failures

    def _compensate(self, attachment: _Attachment, directory: Optional[Path] = None) -> None:
        """Remove files placed by a batch whose transaction rolled back.

        `directory` is only passed for a brand-new study set, whose
        directory is removed as well. A batch with a timed-out move keeps
        its intent open since that move may still land later.
        """
        clean = True
        for path in attachment.moved:
            try:
                self.store.delete_file(path)
            except OSError as exc:
                clean = False
                logger.warning("compensate_failed %s", json.dumps({'path': str(path), 'error': str(exc)}))
        if directory is not None and not attachment.timed_out:
            try:
                self.store.delete_directory_recursive(directory)
            except OSError as exc:
                clean = False
                logger.warning("compensate_failed %s", json.dumps({'path': str(directory), 'error': str(exc)}))
        if attachment.intent_id and clean and not attachment.timed_out:
            self._end_intent(attachment.intent_id, ROLLED_BACK)

    def _end_intent(self, intent_id: str, outcome: str) -> None:
        """Close an intent; when the log cannot be written it stays open for `reconcile`."""
        try:
            self.intents.end(intent_id, outcome)
        except OSError as exc:
            logger.warning(
                "intent_end_failed %s",
                json.dumps({'intent_id': intent_id, 'outcome': outcome, 'error': str(exc)}),
            )

    def _finish(self, attachment: _Attachment) -> None:
        if attachment.intent_id:
            self._end_intent(attachment.intent_id, COMMITTED)

    def _undo_stash(self, intent_id: Optional[str], stashed: Optional[Path], original) -> None:
        if stashed is not None:
            try:
                self.store.restore(stashed, original)
            except OSError as exc:
                # intent stays open; reconcile restores it later
                logger.error("restore_failed %s", json.dumps({'stashed': str(stashed), 'error': str(exc)}))
                return
        if intent_id:
            self._end_intent(intent_id, ROLLED_BACK)

    def _purge(self, intent_id: Optional[str], stashed: Optional[Path]) -> None:
        if stashed is not None:
            try:
                self.store.purge(stashed)
            except OSError as exc:
                # rows are already gone; reconcile purges the leftover trash
                logger.warning("purge_failed %s", json.dumps({'stashed': str(stashed), 'error': str(exc)}))
                return
        if intent_id:
            self._end_intent(intent_id, COMMITTED)
