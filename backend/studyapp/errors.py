"""Error types raised by the study-set services.

Controllers translate these into HTTP status codes; services never raise
HTTPException themselves.
"""


class StudySetError(Exception):
    """Base class for study-set lifecycle failures."""


class ValidationError(StudySetError, ValueError):
    """Required input missing or empty. Raised before any store access."""


class NotFoundError(StudySetError):
    """The referenced study set or study-set file does not exist."""


class StorageError(StudySetError):
    """The database or the file store failed during a valid operation."""
