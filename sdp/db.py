from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .models import PipelineRun, RunState, RunStatus, StageOutcome, StageResult, Trigger, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    When the control API runs in a container with the DB path bind-mounted,
    Docker creates a directory for a missing file mount. In that case the DB
    file goes inside the directory.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "sdp.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id TEXT PRIMARY KEY,
              trigger TEXT NOT NULL,       -- push|manual
              revision TEXT NOT NULL,
              status TEXT NOT NULL,        -- running|succeeded|failed
              state TEXT NOT NULL,         -- pending|building|publishing|deploying|succeeded|failed
              failed_stage TEXT,
              error_kind TEXT,
              detail TEXT NOT NULL DEFAULT '',
              recreated TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS stages (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              stage_name TEXT NOT NULL,
              started_at TEXT NOT NULL,
              finished_at TEXT NOT NULL,
              outcome TEXT NOT NULL,       -- ok|failed|skipped
              detail TEXT NOT NULL DEFAULT '',
              FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS deployments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              host TEXT NOT NULL,
              service_name TEXT NOT NULL,
              image TEXT NOT NULL,
              config_hash TEXT NOT NULL,
              run_id TEXT,
              deployed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              run_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_stages_run_id ON stages(run_id);
            CREATE INDEX IF NOT EXISTS idx_deployments_host ON deployments(host, service_name);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, run_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, run_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, run_id, message),
        )


@dataclass(frozen=True)
class DeploymentRow:
    id: int
    host: str
    service_name: str
    image: str
    config_hash: str
    run_id: str | None
    deployed_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def save_run(run: PipelineRun) -> None:
    """Insert or update a run together with its stage results."""
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO runs (id, trigger, revision, status, state, failed_stage, error_kind, detail, recreated, created_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              status=excluded.status,
              state=excluded.state,
              failed_stage=excluded.failed_stage,
              error_kind=excluded.error_kind,
              detail=excluded.detail,
              recreated=excluded.recreated,
              finished_at=excluded.finished_at
            """,
            (
                run.id,
                run.trigger.value,
                run.revision,
                run.status.value,
                run.state.value,
                run.failed_stage,
                run.error_kind,
                run.detail,
                ",".join(run.recreated),
                run.created_at,
                run.finished_at,
            ),
        )
        conn.execute("DELETE FROM stages WHERE run_id=?", (run.id,))
        conn.executemany(
            """
            INSERT INTO stages (run_id, seq, stage_name, started_at, finished_at, outcome, detail)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (run.id, i, s.stage_name, s.started_at, s.finished_at, s.outcome.value, s.detail)
                for i, s in enumerate(run.stages)
            ],
        )


def _row_to_run(conn: sqlite3.Connection, row: sqlite3.Row) -> PipelineRun:
    stages = conn.execute("SELECT * FROM stages WHERE run_id=? ORDER BY seq", (row["id"],)).fetchall()
    return PipelineRun(
        id=row["id"],
        trigger=Trigger(row["trigger"]),
        revision=row["revision"],
        status=RunStatus(row["status"]),
        state=RunState(row["state"]),
        stages=[
            StageResult(
                stage_name=s["stage_name"],
                started_at=s["started_at"],
                finished_at=s["finished_at"],
                outcome=StageOutcome(s["outcome"]),
                detail=s["detail"],
            )
            for s in stages
        ],
        failed_stage=row["failed_stage"],
        error_kind=row["error_kind"],
        detail=row["detail"],
        recreated=[x for x in row["recreated"].split(",") if x],
        created_at=row["created_at"],
        finished_at=row["finished_at"],
    )


def get_run(run_id: str) -> PipelineRun | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
        return _row_to_run(conn, row) if row else None


def list_runs(limit: int = 20) -> list[PipelineRun]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_run(conn, r) for r in rows]


def latest_run() -> PipelineRun | None:
    runs = list_runs(limit=1)
    return runs[0] if runs else None


def record_deployment(host: str, service_name: str, image: str, config_hash: str, run_id: str | None) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployments (host, service_name, image, config_hash, run_id, deployed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (host, service_name, image, config_hash, run_id, utc_now()),
        )


def list_deployments(host: str | None = None, limit: int = 100) -> list[DeploymentRow]:
    with connect() as conn:
        if host:
            rows = conn.execute(
                "SELECT * FROM deployments WHERE host=? ORDER BY id DESC LIMIT ?", (host, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM deployments ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, DeploymentRow)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
