from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from .errors import DuplicateRunError, RunNotFoundError
from .models import Atom, Molecule, OrphanTestInfo, PatchOp, RunRecord, RunStatus, RunSummary, utc_now

logger = logging.getLogger(__name__)


class RunRepository(Protocol):
    """Durable run store. ``create_run`` must reject an existing run id."""

    def create_run(self, record: RunRecord) -> RunRecord: ...

    def update_run_status(self, run_id: str, status: RunStatus, summary: RunSummary | None = None) -> None: ...

    def store_patch_ops(self, run_id: str, ops: Sequence[PatchOp]) -> None: ...

    def find_run_by_run_id(self, run_id: str) -> RunRecord | None: ...

    def list_runs(self) -> list[RunRecord]: ...


class InMemoryRunRepository:
    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def create_run(self, record: RunRecord) -> RunRecord:
        with self._lock:
            if record.run_id in self._runs:
                raise DuplicateRunError(record.run_id)
            self._runs[record.run_id] = record.model_copy(deep=True)
        return record

    def update_run_status(self, run_id: str, status: RunStatus, summary: RunSummary | None = None) -> None:
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise RunNotFoundError(run_id)
            update: dict[str, object] = {"status": status, "updated_at": utc_now()}
            if summary is not None:
                update["summary"] = summary
            self._runs[run_id] = current.model_copy(update=update)

    def store_patch_ops(self, run_id: str, ops: Sequence[PatchOp]) -> None:
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise RunNotFoundError(run_id)
            self._runs[run_id] = current.model_copy(update={"patch_ops": list(ops), "updated_at": utc_now()})

    def find_run_by_run_id(self, run_id: str) -> RunRecord | None:
        with self._lock:
            record = self._runs.get(run_id)
            return record.model_copy(deep=True) if record is not None else None

    def list_runs(self) -> list[RunRecord]:
        with self._lock:
            return sorted((record.model_copy(deep=True) for record in self._runs.values()), key=lambda r: r.created_at)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    run_uuid TEXT NOT NULL UNIQUE,
    root_directory TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    summary TEXT
);
CREATE TABLE IF NOT EXISTS atom_recommendations (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    temp_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (run_id, temp_id)
);
CREATE TABLE IF NOT EXISTS molecule_recommendations (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    temp_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (run_id, temp_id)
);
CREATE TABLE IF NOT EXISTS test_records (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    test_key TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (run_id, test_key)
);
CREATE TABLE IF NOT EXISTS patch_ops (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    seq INTEGER NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (run_id, seq)
);
"""


class SqliteRunRepository:
    """Run repository on a single sqlite database; writes are serialized by a lock."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def create_run(self, record: RunRecord) -> RunRecord:
        summary = record.summary.model_dump_json() if record.summary is not None else None
        with self._lock, self._conn:
            if self._conn.execute("SELECT 1 FROM runs WHERE run_id = ?", (record.run_id,)).fetchone():
                raise DuplicateRunError(record.run_id)
            self._conn.execute(
                "INSERT INTO runs (run_id, run_uuid, root_directory, mode, status, created_at, updated_at, summary) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.run_id,
                    record.run_uuid,
                    record.root_directory,
                    record.mode.value,
                    record.status.value,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                    summary,
                ),
            )
            self._conn.executemany(
                "INSERT INTO atom_recommendations (run_id, temp_id, payload) VALUES (?, ?, ?)",
                [(record.run_id, atom.id, atom.model_dump_json()) for atom in record.atoms],
            )
            self._conn.executemany(
                "INSERT INTO molecule_recommendations (run_id, temp_id, payload) VALUES (?, ?, ?)",
                [(record.run_id, molecule.id, molecule.model_dump_json()) for molecule in record.molecules],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO test_records (run_id, test_key, payload) VALUES (?, ?, ?)",
                [(record.run_id, test.key, test.model_dump_json()) for test in record.test_records],
            )
            self._insert_ops(record.run_id, record.patch_ops)
        return record

    def _insert_ops(self, run_id: str, ops: Sequence[PatchOp]) -> None:
        self._conn.executemany(
            "INSERT INTO patch_ops (run_id, seq, payload) VALUES (?, ?, ?)",
            [(run_id, index, op.model_dump_json()) for index, op in enumerate(ops)],
        )

    def update_run_status(self, run_id: str, status: RunStatus, summary: RunSummary | None = None) -> None:
        with self._lock, self._conn:
            if summary is None:
                cursor = self._conn.execute(
                    "UPDATE runs SET status = ?, updated_at = ? WHERE run_id = ?",
                    (status.value, utc_now().isoformat(), run_id),
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE runs SET status = ?, updated_at = ?, summary = ? WHERE run_id = ?",
                    (status.value, utc_now().isoformat(), summary.model_dump_json(), run_id),
                )
            if cursor.rowcount == 0:
                raise RunNotFoundError(run_id)

    def store_patch_ops(self, run_id: str, ops: Sequence[PatchOp]) -> None:
        with self._lock, self._conn:
            exists = self._conn.execute("SELECT 1 FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            if exists is None:
                raise RunNotFoundError(run_id)
            self._conn.execute("DELETE FROM patch_ops WHERE run_id = ?", (run_id,))
            self._insert_ops(run_id, ops)

    def find_run_by_run_id(self, run_id: str) -> RunRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT run_id, run_uuid, root_directory, mode, status, created_at, updated_at, summary "
                "FROM runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(row)

    def list_runs(self) -> list[RunRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT run_id, run_uuid, root_directory, mode, status, created_at, updated_at, summary "
                "FROM runs ORDER BY created_at"
            ).fetchall()
            return [self._hydrate(row) for row in rows]

    def _payloads(self, table: str, run_id: str, order: str) -> list[str]:
        rows = self._conn.execute(f"SELECT payload FROM {table} WHERE run_id = ? ORDER BY {order}", (run_id,))
        return [payload for (payload,) in rows.fetchall()]

    def _hydrate(self, row: tuple) -> RunRecord:
        run_id, run_uuid, root_directory, mode, status, created_at, updated_at, summary = row
        return RunRecord(
            run_id=run_id,
            run_uuid=run_uuid,
            root_directory=root_directory,
            mode=mode,
            status=status,
            created_at=created_at,
            updated_at=updated_at,
            summary=RunSummary.model_validate(json.loads(summary)) if summary else None,
            atoms=[Atom.model_validate_json(item) for item in self._payloads("atom_recommendations", run_id, "rowid")],
            molecules=[
                Molecule.model_validate_json(item) for item in self._payloads("molecule_recommendations", run_id, "rowid")
            ],
            test_records=[OrphanTestInfo.model_validate_json(item) for item in self._payloads("test_records", run_id, "rowid")],
            patch_ops=[PatchOp.model_validate_json(item) for item in self._payloads("patch_ops", run_id, "seq")],
        )
