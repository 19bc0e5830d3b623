"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional


class IncomingFile(BaseModel):
    """A staged upload waiting to be moved into a study set."""
    original_name: str
    staged_path: str


class PlacedFile(BaseModel):
    """A file that has been moved into its study-set directory."""
    file_id: int
    original_name: str
    final_path: str


class StudySetFileOut(BaseModel):
    """File entry as listed in study-set details."""
    file_id: int
    file_path: str


class StudySetOut(BaseModel):
    """Study-set metadata."""
    id: int
    user_id: int
    name: str
    description: Optional[str] = None
    created_at: datetime
    modified_at: datetime


class StudySetSaved(StudySetOut):
    """Result of creating or updating a study set."""
    message: str
    files: List[PlacedFile] = []


class StudySetDetails(StudySetOut):
    """A study set together with its files."""
    files: List[StudySetFileOut] = []


class StudySetFileRow(BaseModel):
    """Raw file row of a study set."""
    id: int
    study_set_id: int
    file_path: str


class StudySetDeleted(BaseModel):
    message: str
    id: int
    files_removed: int


class FileDeleted(BaseModel):
    message: str
    file_id: int
    study_set_id: int
