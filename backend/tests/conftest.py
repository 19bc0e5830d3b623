import os
import shutil
import tempfile
from pathlib import Path

import pytest

# Point the import-time engine and upload root away from the repository.
_TMP = Path(tempfile.mkdtemp(prefix="studyapp-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP / 'app.db'}")
os.environ.setdefault("UPLOAD_ROOT", str(_TMP / "uploads"))

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from studyapp.database import create_db_and_tables, make_engine  # noqa: E402
from studyapp.main import app, get_staging_dir, get_study_set_service  # noqa: E402
from studyapp.schemas import IncomingFile  # noqa: E402
from studyapp.services import StudySetService  # noqa: E402
from studyapp.utils.file_store import FileStore  # noqa: E402
from studyapp.utils.intent_log import IntentLog  # noqa: E402
from studyapp.utils.locks import KeyedLock  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def cleanup_tmp():
    """Remove the scratch database and uploads once the run finishes."""
    yield
    shutil.rmtree(_TMP, ignore_errors=True)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "uploads")


@pytest.fixture
def intents(tmp_path):
    return IntentLog(tmp_path / "uploads" / ".intents.jsonl")


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def staging_dir(tmp_path):
    p = tmp_path / "staging"
    p.mkdir()
    return p


@pytest.fixture
def make_service(engine, store, intents, locks):
    """Factory for services that share the store, log and locks but not sessions."""
    sessions = []

    def _make(**kwargs):
        session = Session(engine)
        sessions.append(session)
        kwargs.setdefault("timeout_s", 5)
        kwargs.setdefault("workers", 4)
        return StudySetService(session, store=store, intents=intents, locks=locks, **kwargs)

    yield _make
    for s in sessions:
        s.close()


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def stage(staging_dir):
    """Write a file into the staging area the way an upload would land."""
    counter = {"n": 0}

    def _stage(original_name="notes.txt", content=b"lecture notes"):
        counter["n"] += 1
        suffix = Path(original_name).suffix
        path = staging_dir / f"{counter['n']:04d}_staged{suffix}"
        path.write_bytes(content)
        return IncomingFile(original_name=original_name, staged_path=str(path))

    return _stage


@pytest.fixture
def client(engine, store, intents, locks, staging_dir):
    def _service():
        with Session(engine) as session:
            yield StudySetService(session, store=store, intents=intents, locks=locks, timeout_s=5)

    app.dependency_overrides[get_study_set_service] = _service
    app.dependency_overrides[get_staging_dir] = lambda: staging_dir
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
