"""Run store: SQLite persistence for plan runs.

Holds what a run needs to survive a process restart:
- runs: params, mutable plan id, attention retries, pending-cycle checkpoint
- cycles: append-only cycle log, one row per (run_id, cycle)
- timers: durable timer deadlines keyed by (run_id, timer_key)
- timeline_events: run events for the CLI timeline
"""

import json
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

from robotloop.config import ROBOTLOOP_DB
from robotloop.models import CycleEntry, FinalReport, PlanParams

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

_RUN_COLUMNS = frozenset({
    "instance_plan_id",
    "status",
    "attention_retries",
    "pending_json",
    "report_json",
    "error",
})


@dataclass
class RunRecord:
    """Stored state of one plan run."""

    run_id: str
    site_id: str
    activity: str
    instance_id: str
    instance_plan_id: str | None
    user_id: str | None
    status: str
    attention_retries: int
    pending: dict | None
    report: dict | None
    error: str | None
    created_at: float
    updated_at: float

    @property
    def params(self) -> PlanParams:
        return PlanParams(
            site_id=self.site_id,
            activity=self.activity,
            instance_id=self.instance_id,
            instance_plan_id=self.instance_plan_id,
            user_id=self.user_id,
        )


def _row_to_run(row) -> RunRecord:
    return RunRecord(
        run_id=row[0],
        site_id=row[1],
        activity=row[2],
        instance_id=row[3],
        instance_plan_id=row[4],
        user_id=row[5],
        status=row[6],
        attention_retries=row[7] or 0,
        pending=json.loads(row[8]) if row[8] else None,
        report=json.loads(row[9]) if row[9] else None,
        error=row[10],
        created_at=row[11],
        updated_at=row[12],
    )


_RUN_SELECT = (
    "SELECT run_id, site_id, activity, instance_id, instance_plan_id, user_id, status, "
    "attention_retries, pending_json, report_json, error, created_at, updated_at FROM runs"
)


def _update_run(conn: sqlite3.Connection, run_id: str, columns: dict) -> None:
    invalid = set(columns) - _RUN_COLUMNS
    if invalid:
        raise ValueError(f"Invalid run columns: {sorted(invalid)}")
    columns = {**columns, "updated_at": time.time()}
    sets = ", ".join(f"{k} = ?" for k in columns)
    conn.execute(f"UPDATE runs SET {sets} WHERE run_id = ?", list(columns.values()) + [run_id])


def _checkpoint_columns(
    instance_plan_id: str | None,
    attention_retries: int,
    pending: dict | None,
) -> dict:
    return {
        "instance_plan_id": instance_plan_id,
        "attention_retries": attention_retries,
        "pending_json": json.dumps(pending) if pending else None,
    }


class RunStore:
    """SQLite-backed run persistence."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or ROBOTLOOP_DB)
        self._init_db()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                site_id TEXT,
                activity TEXT,
                instance_id TEXT,
                instance_plan_id TEXT,
                user_id TEXT,
                status TEXT DEFAULT 'running',
                attention_retries INTEGER DEFAULT 0,
                pending_json TEXT,
                report_json TEXT,
                error TEXT,
                created_at REAL,
                updated_at REAL
            );

            CREATE TABLE IF NOT EXISTS cycles (
                run_id TEXT,
                cycle INTEGER,
                response_type TEXT,
                entry_json TEXT,
                recorded_at REAL,
                PRIMARY KEY (run_id, cycle)
            );

            CREATE TABLE IF NOT EXISTS timers (
                run_id TEXT,
                timer_key TEXT,
                due_at REAL,
                fired_at REAL,
                PRIMARY KEY (run_id, timer_key)
            );

            CREATE TABLE IF NOT EXISTS timeline_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL,
                event_type TEXT,
                summary TEXT,
                run_id TEXT,
                cycle INTEGER,
                metadata_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
            CREATE INDEX IF NOT EXISTS idx_timeline_ts ON timeline_events(timestamp);
            CREATE INDEX IF NOT EXISTS idx_timeline_run ON timeline_events(run_id);
        """)
        conn.commit()
        conn.close()

    # --- Runs ---

    def create_run(self, run_id: str, params: PlanParams) -> RunRecord:
        now = time.time()
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO runs (run_id, site_id, activity, instance_id, instance_plan_id, user_id, "
            "status, attention_retries, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)",
            (
                run_id, params.site_id, params.activity, params.instance_id,
                params.instance_plan_id, params.user_id, RUN_STATUS_RUNNING, now, now,
            ),
        )
        conn.commit()
        conn.close()
        return self.get_run(run_id)

    def update_run(self, run_id: str, **kwargs) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            _update_run(conn, run_id, kwargs)
            conn.commit()
        finally:
            conn.close()

    def get_run(self, run_id: str) -> RunRecord | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(f"{_RUN_SELECT} WHERE run_id = ?", (run_id,)).fetchone()
        conn.close()
        return _row_to_run(row) if row else None

    def list_runs(self, status: str | None = None, limit: int = 50) -> list[RunRecord]:
        conn = sqlite3.connect(self.db_path)
        query = f"{_RUN_SELECT} WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [_row_to_run(r) for r in rows]

    def save_checkpoint(
        self,
        run_id: str,
        *,
        instance_plan_id: str | None,
        attention_retries: int,
        pending: dict | None,
    ) -> None:
        """Persist the mutable loop state after each decision."""
        self.update_run(
            run_id,
            **_checkpoint_columns(instance_plan_id, attention_retries, pending),
        )

    def save_report(self, run_id: str, report: FinalReport) -> None:
        self.update_run(
            run_id,
            status=RUN_STATUS_COMPLETED if report.success else RUN_STATUS_FAILED,
            instance_plan_id=report.instance_plan_id,
            pending_json=None,
            report_json=json.dumps(report.to_dict()),
            error=report.error,
        )

    # --- Cycle log ---

    def append_cycle(
        self,
        run_id: str,
        entry: CycleEntry,
        *,
        checkpoint: dict | None = None,
    ) -> None:
        """Append a cycle entry. Entries are never rewritten.

        ``checkpoint`` takes the ``save_checkpoint`` keyword arguments and is
        written in the same transaction, so a stored entry always comes with
        the pending marker that says how to handle it.
        """
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                "INSERT INTO cycles (run_id, cycle, response_type, entry_json, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (run_id, entry.cycle, entry.response_type, json.dumps(entry.to_dict()), time.time()),
            )
            if checkpoint is not None:
                _update_run(conn, run_id, _checkpoint_columns(**checkpoint))
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Cycle {entry.cycle} already recorded for run {run_id}") from e
        finally:
            conn.close()

    def get_cycles(self, run_id: str) -> list[CycleEntry]:
        conn = sqlite3.connect(self.db_path)
        rows = conn.execute(
            "SELECT entry_json FROM cycles WHERE run_id = ? ORDER BY cycle ASC",
            (run_id,),
        ).fetchall()
        conn.close()
        return [CycleEntry.from_dict(json.loads(r[0])) for r in rows]

    # --- Durable timers ---

    def timer_due_at(self, run_id: str, timer_key: str, due_at: float) -> float:
        """Register a timer deadline once; return the stored deadline.

        A key seen before keeps its original deadline, so a restarted run
        only waits for whatever time remains.
        """
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT OR IGNORE INTO timers (run_id, timer_key, due_at) VALUES (?, ?, ?)",
            (run_id, timer_key, due_at),
        )
        conn.commit()
        row = conn.execute(
            "SELECT due_at FROM timers WHERE run_id = ? AND timer_key = ?",
            (run_id, timer_key),
        ).fetchone()
        conn.close()
        return row[0]

    def mark_timer_fired(self, run_id: str, timer_key: str) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "UPDATE timers SET fired_at = ? WHERE run_id = ? AND timer_key = ?",
            (time.time(), run_id, timer_key),
        )
        conn.commit()
        conn.close()

    def get_timer(self, run_id: str, timer_key: str) -> dict | None:
        conn = sqlite3.connect(self.db_path)
        row = conn.execute(
            "SELECT due_at, fired_at FROM timers WHERE run_id = ? AND timer_key = ?",
            (run_id, timer_key),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return {"due_at": row[0], "fired_at": row[1]}

    # --- Timeline events ---

    def record_event(
        self,
        event_type: str,
        summary: str,
        run_id: str | None = None,
        cycle: int | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Record a timeline event. Returns the event ID."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.execute(
            "INSERT INTO timeline_events (timestamp, event_type, summary, run_id, cycle, metadata_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (time.time(), event_type, summary, run_id, cycle,
             json.dumps(metadata, default=str) if metadata else None),
        )
        event_id = cursor.lastrowid
        conn.commit()
        conn.close()
        return event_id

    def get_timeline(
        self,
        run_id: str | None = None,
        limit: int = 50,
        event_type: str | None = None,
    ) -> list[dict]:
        """Query timeline events, newest first."""
        conn = sqlite3.connect(self.db_path)
        query = (
            "SELECT id, timestamp, event_type, summary, run_id, cycle, metadata_json "
            "FROM timeline_events WHERE 1=1"
        )
        params: list = []
        if run_id:
            query += " AND run_id = ?"
            params.append(run_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [
            {
                "id": r[0], "timestamp": r[1], "event_type": r[2], "summary": r[3],
                "run_id": r[4], "cycle": r[5],
                "metadata": json.loads(r[6]) if r[6] else None,
            }
            for r in rows
        ]
