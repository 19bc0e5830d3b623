import threading
import time
from pathlib import Path

import pytest
from sqlalchemy.exc import SQLAlchemyError

from studyapp.errors import NotFoundError, StorageError, ValidationError


def test_create_without_files_roundtrip(service, store):
    created = service.create_study_set(1, "Biology", "cells and tissues")
    assert created['files'] == []
    details = service.get_study_set_details(created['id'])
    assert details['user_id'] == 1
    assert details['name'] == "Biology"
    assert details['description'] == "cells and tissues"
    assert details['created_at'] == details['modified_at']
    assert details['files'] == []
    # the owning directory exists even without files
    assert store.study_set_dir(1, created['id']).is_dir()


@pytest.mark.parametrize("name", [None, "", "   "])
def test_create_requires_name(service, name):
    with pytest.raises(ValidationError):
        service.create_study_set(1, name)
    assert service.get_all_study_sets(1) == []


def test_create_requires_user(service):
    with pytest.raises(ValidationError):
        service.create_study_set(None, "Biology")


def test_get_all_requires_user(service):
    with pytest.raises(ValidationError):
        service.get_all_study_sets(None)


def test_get_all_filters_by_owner_in_creation_order(service):
    a = service.create_study_set(1, "Algebra")
    service.create_study_set(2, "History")
    b = service.create_study_set(1, "Biology")
    rows = service.get_all_study_sets(1)
    assert [r['id'] for r in rows] == [a['id'], b['id']]
    assert all(r['user_id'] == 1 for r in rows)


def test_create_with_files_moves_out_of_staging(service, store, stage):
    first = stage("chapter1.pdf", b"%PDF-1.4 one")
    second = stage("chapter2.txt", b"two")
    created = service.create_study_set(7, "Physics", files=[first, second])
    directory = store.study_set_dir(7, created['id'])
    assert [f['original_name'] for f in created['files']] == ["chapter1.pdf", "chapter2.txt"]
    for placed in created['files']:
        final = Path(placed['final_path'])
        assert final.parent == directory
        assert final.exists()
    assert not Path(first.staged_path).exists()
    assert not Path(second.staged_path).exists()
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 2
    assert all(Path(f['file_path']).exists() for f in details['files'])
    assert {f['file_id'] for f in details['files']} == {p['file_id'] for p in created['files']}


def test_biology_scenario(service, store, stage):
    created = service.create_study_set(1, "Biology")
    assert created['files'] == []
    service.update_study_set(created['id'], "Biology", files=[stage("a.txt"), stage("b.txt")])
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 2

    service.delete_file_from_study_set(details['files'][0]['file_id'])
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 1

    service.delete_study_set(created['id'])
    with pytest.raises(NotFoundError):
        service.get_study_set_details(created['id'])
    assert not store.study_set_dir(1, created['id']).exists()
    assert service.get_all_study_sets(1) == []


def test_update_metadata_is_idempotent_but_advances_modified_at(service):
    created = service.create_study_set(1, "Chemistry")
    service.update_study_set(created['id'], "Organic Chemistry", "week 3")
    first = service.get_study_set_details(created['id'])
    service.update_study_set(created['id'], "Organic Chemistry", "week 3")
    second = service.get_study_set_details(created['id'])
    assert (first['name'], first['description']) == (second['name'], second['description'])
    assert first['created_at'] == second['created_at']
    assert second['modified_at'] > first['modified_at'] > first['created_at']


def test_update_validation_and_missing(service):
    with pytest.raises(ValidationError):
        service.update_study_set(None, "x")
    with pytest.raises(ValidationError):
        service.update_study_set(1, "")
    with pytest.raises(NotFoundError):
        service.update_study_set(999, "Ghost")


def test_update_keeps_existing_files(service, stage):
    created = service.create_study_set(1, "Art", files=[stage("old.txt")])
    service.update_study_set(created['id'], "Art", files=[stage("new.txt")])
    files = service.get_files_for_study_set(created['id'])
    assert len(files) == 2


def _fail_on_suffix(store, monkeypatch, suffix):
    real_move = store.move_file

    def move_file(src, dest):
        if str(src).endswith(suffix):
            raise OSError("disk full")
        return real_move(src, dest)

    monkeypatch.setattr(store, "move_file", move_file)


def test_create_partial_move_failure_rolls_back_and_compensates(service, store, stage, intents, monkeypatch):
    _fail_on_suffix(store, monkeypatch, ".bad")
    good = stage("good.txt")
    bad = stage("broken.bad")
    with pytest.raises(StorageError):
        service.create_study_set(3, "Geology", files=[good, bad])
    assert service.get_all_study_sets(3) == []
    user_dir = store.root / "3"
    assert not user_dir.exists() or not any(p.is_file() for p in user_dir.rglob("*"))
    assert intents.pending() == []


def test_update_move_failure_rolls_back_metadata(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Maths", "before")
    _fail_on_suffix(store, monkeypatch, ".bad")
    good = stage("good.txt")
    with pytest.raises(StorageError):
        service.update_study_set(created['id'], "Renamed", "after", files=[good, stage("x.bad")])
    details = service.get_study_set_details(created['id'])
    assert details['name'] == "Maths"
    assert details['description'] == "before"
    assert details['files'] == []
    directory = store.study_set_dir(1, created['id'])
    assert list(directory.iterdir()) == []
    assert intents.pending() == []


def test_row_insert_failure_removes_moved_files(service, store, stage, monkeypatch):
    created = service.create_study_set(1, "Music")

    def boom(*_args, **_kwargs):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(service.files, "add", boom)
    with pytest.raises(StorageError):
        service.update_study_set(created['id'], "Music", files=[stage("score.txt")])
    assert list(store.study_set_dir(1, created['id']).iterdir()) == []


def test_move_timeout_is_storage_error_and_reconciled_later(make_service, store, stage, monkeypatch):
    release = threading.Event()
    real_move = store.move_file

    def slow_move(src, dest):
        release.wait(5)
        return real_move(src, dest)

    monkeypatch.setattr(store, "move_file", slow_move)
    service = make_service(timeout_s=0.05)
    created = service.create_study_set(1, "Latin")
    with pytest.raises(StorageError):
        service.update_study_set(created['id'], "Latin", files=[stage("late.txt")])

    # the move finishes after the request gave up
    release.set()
    directory = store.study_set_dir(1, created['id'])
    deadline = time.time() + 5
    while time.time() < deadline and not any(directory.iterdir()):
        time.sleep(0.02)
    assert any(directory.iterdir())

    summary = service.reconcile()
    assert summary['removed'] == 1
    assert list(directory.iterdir()) == []
    assert service.get_study_set_details(created['id'])['files'] == []


def test_delete_file_unknown_has_no_side_effects(service, stage):
    created = service.create_study_set(1, "Drama", files=[stage("play.txt")])
    with pytest.raises(NotFoundError):
        service.delete_file_from_study_set(424242)
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 1
    assert Path(details['files'][0]['file_path']).exists()


def test_delete_file_requires_id(service):
    with pytest.raises(ValidationError):
        service.delete_file_from_study_set(None)


def test_delete_file_stash_failure_keeps_row_and_file(service, store, stage, monkeypatch):
    created = service.create_study_set(1, "Poetry", files=[stage("poem.txt")])
    file_id = created['files'][0]['file_id']

    def broken_stash(_path, _target=None):
        raise OSError("permission denied")

    monkeypatch.setattr(store, "stash", broken_stash)
    with pytest.raises(StorageError):
        service.delete_file_from_study_set(file_id)
    details = service.get_study_set_details(created['id'])
    assert [f['file_id'] for f in details['files']] == [file_id]
    assert Path(details['files'][0]['file_path']).exists()


def test_delete_file_already_missing_on_disk(service, stage):
    created = service.create_study_set(1, "Economics", files=[stage("notes.txt")])
    placed = created['files'][0]
    Path(placed['final_path']).unlink()
    result = service.delete_file_from_study_set(placed['file_id'])
    assert result['study_set_id'] == created['id']
    assert service.get_study_set_details(created['id'])['files'] == []


def test_delete_study_set_missing(service):
    with pytest.raises(NotFoundError):
        service.delete_study_set(31337)


def test_delete_study_set_stash_failure_keeps_everything(service, store, stage, monkeypatch):
    created = service.create_study_set(1, "Law", files=[stage("case.txt")])

    def broken_stash(_path, _target=None):
        raise OSError("busy")

    monkeypatch.setattr(store, "stash", broken_stash)
    with pytest.raises(StorageError):
        service.delete_study_set(created['id'])
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 1
    assert Path(details['files'][0]['file_path']).exists()


def test_delete_study_set_commit_failure_restores_directory(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Ethics", files=[stage("trolley.txt")])
    directory = store.study_set_dir(1, created['id'])

    def failing_commit():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(service.session, "commit", failing_commit)
    with pytest.raises(StorageError):
        service.delete_study_set(created['id'])
    monkeypatch.undo()

    assert directory.is_dir()
    assert len(list(directory.iterdir())) == 1
    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 1
    assert intents.pending() == []


def test_delete_study_set_purge_failure_is_reconciled(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Logic", files=[stage("proof.txt")])
    real_purge = store.purge

    def broken_purge(_path):
        raise OSError("device busy")

    monkeypatch.setattr(store, "purge", broken_purge)
    service.delete_study_set(created['id'])
    with pytest.raises(NotFoundError):
        service.get_study_set_details(created['id'])
    assert len(intents.pending()) == 1

    monkeypatch.setattr(store, "purge", real_purge)
    summary = service.reconcile()
    assert summary['purged'] == 1
    assert intents.pending() == []
    assert not any(store.trash_root.iterdir())


def test_get_files_for_study_set(service, stage):
    created = service.create_study_set(1, "Statistics", files=[stage("data.csv")])
    rows = service.get_files_for_study_set(created['id'])
    assert len(rows) == 1
    assert rows[0]['study_set_id'] == created['id']
    with pytest.raises(NotFoundError):
        service.get_files_for_study_set(999)


def test_concurrent_update_and_file_delete_keep_row_intact(make_service, stage):
    setup = make_service()
    created = setup.create_study_set(1, "Biology", "intro", files=[stage("a.txt"), stage("b.txt")])
    file_id = created['files'][0]['file_id']
    updater = make_service()
    deleter = make_service()
    errors = []

    def run(fn, *args):
        try:
            fn(*args)
        except Exception as exc:  # surfaced via the assertion below
            errors.append(exc)

    threads = [
        threading.Thread(target=run, args=(updater.update_study_set, created['id'], "Cell Biology", "chapter 2")),
        threading.Thread(target=run, args=(deleter.delete_file_from_study_set, file_id)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert errors == []

    details = make_service().get_study_set_details(created['id'])
    assert details['name'] == "Cell Biology"
    assert details['description'] == "chapter 2"
    assert [f['file_id'] for f in details['files']] == [created['files'][1]['file_id']]


def _crash_on_commit(service, monkeypatch):
    def crash():
        raise KeyboardInterrupt("process killed")

    monkeypatch.setattr(service.session, "commit", crash)


def test_crash_after_file_stash_is_restored_by_reconcile(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Geometry", files=[stage("angles.txt")])
    placed = created['files'][0]
    _crash_on_commit(service, monkeypatch)
    with pytest.raises(KeyboardInterrupt):
        service.delete_file_from_study_set(placed['file_id'])
    monkeypatch.undo()

    # the row survived the rollback but the file sits in the trash
    assert not Path(placed['final_path']).exists()
    pending = intents.pending()
    assert len(pending) == 1
    assert Path(pending[0]['stashed']).exists()

    summary = service.reconcile()
    assert summary['restored'] == 1
    assert Path(placed['final_path']).read_bytes() == b"lecture notes"
    details = service.get_study_set_details(created['id'])
    assert [f['file_id'] for f in details['files']] == [placed['file_id']]
    assert intents.pending() == []


def test_crash_after_directory_stash_is_restored_by_reconcile(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Anatomy", files=[stage("bones.txt")])
    directory = store.study_set_dir(1, created['id'])
    _crash_on_commit(service, monkeypatch)
    with pytest.raises(KeyboardInterrupt):
        service.delete_study_set(created['id'])
    monkeypatch.undo()
    assert not directory.exists()

    summary = service.reconcile()
    assert summary['restored'] == 1
    assert len(list(directory.iterdir())) == 1
    assert len(service.get_study_set_details(created['id'])['files']) == 1
    assert intents.pending() == []


def test_delete_file_purge_failure_is_reconciled(service, store, stage, intents, monkeypatch):
    created = service.create_study_set(1, "Zoology", files=[stage("cats.txt")])
    file_id = created['files'][0]['file_id']

    def broken_purge(_path):
        raise OSError("device busy")

    monkeypatch.setattr(store, "purge", broken_purge)
    service.delete_file_from_study_set(file_id)
    monkeypatch.undo()
    assert service.get_study_set_details(created['id'])['files'] == []

    summary = service.reconcile()
    assert summary['purged'] == 1
    assert summary['restored'] == 0
    assert not any(store.trash_root.iterdir())
    assert intents.pending() == []


def test_intent_log_failure_after_commit_keeps_the_study_set(service, stage, intents, monkeypatch):
    def full_disk(_intent_id, _outcome):
        raise OSError("no space left on device")

    monkeypatch.setattr(intents, "end", full_disk)
    created = service.create_study_set(2, "Chem", files=[stage("a.txt")])
    monkeypatch.undo()

    details = service.get_study_set_details(created['id'])
    assert len(details['files']) == 1
    assert Path(details['files'][0]['file_path']).exists()
    # left open, and reconcile finds nothing to undo
    assert len(intents.pending()) == 1
    summary = service.reconcile()
    assert summary['removed'] == 0
    assert Path(details['files'][0]['file_path']).exists()
    assert intents.pending() == []
