"""SQLModel data models.

This module defines the study-set tables using SQLModel. A study set
owns zero or more uploaded files; the cascade on delete is performed by
`services.StudySetService`, not by the database.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Relationship
from datetime import datetime, timezone
from typing import List


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StudySet(SQLModel, table=True):
    """A user-owned collection of uploaded course documents.

    Fields:
    - `user_id`: owner, fixed at creation
    - `name`: display name, never empty
    - `created_at` / `modified_at`: equal at creation, `modified_at`
      advances on every update
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, nullable=False)
    name: str = Field(nullable=False)
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    modified_at: datetime = Field(default_factory=utcnow)
    files: List['StudySetFile'] = Relationship(back_populates='study_set')


class StudySetFile(SQLModel, table=True):
    """A file stored under the owning study set's directory."""
    id: Optional[int] = Field(default=None, primary_key=True)
    study_set_id: int = Field(foreign_key='studyset.id', index=True)
    file_path: str = Field(nullable=False)
    study_set: Optional[StudySet] = Relationship(back_populates='files')
