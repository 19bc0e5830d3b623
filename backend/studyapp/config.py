"""Application settings and validation."""

import math
import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    UPLOAD_ROOT: Path
    STAGING_DIR: Path
    INTENT_LOG_PATH: Path
    MAX_UPLOAD_BYTES: int
    MAX_FILES_PER_REQUEST: int
    FILE_OP_TIMEOUT_SECONDS: float
    FILE_OP_WORKERS: int
    SQLITE_BUSY_TIMEOUT_SECONDS: float
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'studyapp.db'}")
        self.UPLOAD_ROOT = Path(os.getenv("UPLOAD_ROOT", str(BASE / "uploads"))).expanduser().resolve()
        self.STAGING_DIR = Path(os.getenv("STAGING_DIR", str(self.UPLOAD_ROOT / "tmp"))).expanduser().resolve()
        self.INTENT_LOG_PATH = Path(
            os.getenv("INTENT_LOG_PATH", str(self.UPLOAD_ROOT / ".intents.jsonl"))
        ).expanduser().resolve()
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB default
        self.MAX_FILES_PER_REQUEST = int(os.getenv("MAX_FILES_PER_REQUEST", "5"))
        self.FILE_OP_TIMEOUT_SECONDS = float(os.getenv("FILE_OP_TIMEOUT_SECONDS", "10"))
        self.FILE_OP_WORKERS = int(os.getenv("FILE_OP_WORKERS", "4"))
        self.SQLITE_BUSY_TIMEOUT_SECONDS = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "60"))
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.MAX_UPLOAD_BYTES <= 0:
            raise RuntimeError("MAX_UPLOAD_BYTES must be positive")
        if self.MAX_FILES_PER_REQUEST <= 0:
            raise RuntimeError("MAX_FILES_PER_REQUEST must be positive")
        if self.FILE_OP_TIMEOUT_SECONDS <= 0:
            raise RuntimeError("FILE_OP_TIMEOUT_SECONDS must be positive")
        if self.FILE_OP_WORKERS <= 0:
            raise RuntimeError("FILE_OP_WORKERS must be positive")
        # an attach holds the SQLite write lock while its moves run
        move_budget = self.FILE_OP_TIMEOUT_SECONDS * math.ceil(self.MAX_FILES_PER_REQUEST / self.FILE_OP_WORKERS)
        if move_budget >= self.SQLITE_BUSY_TIMEOUT_SECONDS:
            raise RuntimeError("SQLITE_BUSY_TIMEOUT_SECONDS must exceed the time a batch of moves may take")


settings = Settings()
