"""Repository classes encapsulating database operations.

Each repository is small and focused on a single table. Unlike a
stand-alone CRUD helper, these repositories never commit: the calling
service owns the transaction and decides when to commit or roll back.
Writes are flushed so generated ids are available immediately.
"""

from typing import List, Optional
from sqlmodel import Session, select
from . import models


class StudySetRepository:
    """CRUD operations for `StudySet` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, study_set: models.StudySet) -> models.StudySet:
        """Stage a new study set and flush it to obtain its id."""
        self.session.add(study_set)
        self.session.flush()
        self.session.refresh(study_set)
        return study_set

    def get(self, study_set_id: int) -> Optional[models.StudySet]:
        """Get a `StudySet` by primary key."""
        return self.session.get(models.StudySet, study_set_id)

    def list_for_user(self, user_id: int) -> List[models.StudySet]:
        """Return every study set owned by `user_id` in insertion order."""
        stmt = select(models.StudySet).where(models.StudySet.user_id == user_id).order_by(models.StudySet.id)
        return self.session.exec(stmt).all()

    def update(self, study_set: models.StudySet) -> models.StudySet:
        self.session.add(study_set)
        self.session.flush()
        return study_set

    def delete(self, study_set: models.StudySet) -> None:
        """Delete a study set row and flush."""
        self.session.delete(study_set)
        self.session.flush()


class StudySetFileRepository:
    """CRUD operations for `StudySetFile` rows."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, study_set_id: int, file_path: str) -> models.StudySetFile:
        """Stage a file row for `study_set_id` and flush it."""
        row = models.StudySetFile(study_set_id=study_set_id, file_path=file_path)
        self.session.add(row)
        self.session.flush()
        self.session.refresh(row)
        return row

    def get(self, file_id: int) -> Optional[models.StudySetFile]:
        """Fetch a single file row by id."""
        return self.session.get(models.StudySetFile, file_id)

    def study_set_id_for(self, file_id: int) -> Optional[int]:
        """Return the owning study set id of a file row or `None`."""
        stmt = select(models.StudySetFile.study_set_id).where(models.StudySetFile.id == file_id)
        return self.session.exec(stmt).first()

    def list_for_study_set(self, study_set_id: int) -> List[models.StudySetFile]:
        """List all file rows for the provided `study_set_id`."""
        stmt = select(models.StudySetFile).where(
            models.StudySetFile.study_set_id == study_set_id
        ).order_by(models.StudySetFile.id)
        return self.session.exec(stmt).all()

    def exists_with_path(self, file_path: str) -> bool:
        """Return True if any row references `file_path`."""
        stmt = select(models.StudySetFile.id).where(models.StudySetFile.file_path == file_path)
        return self.session.exec(stmt).first() is not None

    def delete(self, row: models.StudySetFile) -> None:
        self.session.delete(row)
        self.session.flush()

    def delete_for_study_set(self, study_set_id: int) -> int:
        """Delete every file row of a study set and return the count."""
        rows = self.list_for_study_set(study_set_id)
        for row in rows:
            self.session.delete(row)
        self.session.flush()
        return len(rows)
