"""Append-only intent log for file-store side effects.

Before the lifecycle service places or removes files it writes a `begin`
record naming the paths involved; once the database outcome is known it
writes an `end` record. Any `begin` without an `end` after a restart marks
an operation that was interrupted between the two stores and is handed to
`StudySetService.reconcile`.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterable, List


_LOGGER = logging.getLogger("studyapp.intents")
# shared by every IntentLog in the process; services are built per request
_WRITE_LOCK = Lock()

ATTACH = "attach"
DELETE_SET = "delete_set"
DELETE_FILE = "delete_file"

COMMITTED = "committed"
ROLLED_BACK = "rolled_back"


class IntentLog:
    def __init__(self, path: Path):
        self.path = Path(path)

    def _append(self, record: dict) -> None:
        payload = dict(record)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        line = json.dumps(payload, ensure_ascii=True)
        with _WRITE_LOCK:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        _LOGGER.debug("intent %s", line)

    def begin(self, op: str, study_set_id: int | None, **details) -> str:
        """Record the planned effects of `op` and return the intent id."""
        intent_id = uuid.uuid4().hex
        self._append({"intent_id": intent_id, "phase": "begin", "op": op, "study_set_id": study_set_id, **details})
        return intent_id

    def end(self, intent_id: str, outcome: str) -> None:
        self._append({"intent_id": intent_id, "phase": "end", "outcome": outcome})

    def _read_unlocked(self) -> List[dict]:
        if not self.path.exists():
            return []
        records = []
        for raw in self.path.read_text(encoding="utf-8").splitlines():
            raw = raw.strip()
            if not raw:
                continue
            try:
                records.append(json.loads(raw))
            except json.JSONDecodeError:
                # a torn final line from a crash mid-write
                _LOGGER.warning("intent_log_skip_line %s", json.dumps({"line": raw[:200]}))
        return records

    def read(self) -> List[dict]:
        with _WRITE_LOCK:
            return self._read_unlocked()

    def pending(self) -> List[dict]:
        """Return `begin` records that never reached `end`."""
        begun: dict = {}
        finished = set()
        for rec in self.read():
            intent_id = rec.get("intent_id")
            if not intent_id:
                continue
            phase = rec.get("phase")
            if phase == "begin":
                begun[intent_id] = rec
            elif phase == "end":
                finished.add(intent_id)
        return [rec for key, rec in begun.items() if key not in finished]

    def compact(self, settled: Iterable[str] = ()) -> None:
        """Drop finished intents and the `settled` ids from the log.

        The log is re-read under the write lock, so records appended since
        `pending` was called survive the rewrite.
        """
        drop = set(settled)
        with _WRITE_LOCK:
            records = self._read_unlocked()
            drop.update(r.get("intent_id") for r in records if r.get("phase") == "end")
            lines = [
                json.dumps(r, ensure_ascii=True)
                for r in records
                if r.get("intent_id") and r.get("intent_id") not in drop
            ]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            os.replace(tmp, self.path)
