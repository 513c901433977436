from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from sequencer.models import PipelineRun

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    pipeline TEXT NOT NULL,
    event TEXT NOT NULL,
    action TEXT NOT NULL,
    environment TEXT NOT NULL,
    actor TEXT,
    status TEXT NOT NULL,
    outcome TEXT NOT NULL,
    error TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    skip_reason TEXT,
    started_at TEXT,
    ended_at TEXT,
    artifacts TEXT,
    error TEXT
);

CREATE TABLE IF NOT EXISTS steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    stage TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    exit_code INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER,
    failure TEXT,
    error TEXT
);
"""


class StateDB:
    """Run history. Runs are written once, after they reach a terminal status."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> StateDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ── Runs ─────────────────────────────────────────────────────────

    def record_run(self, run: PipelineRun) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO runs (run_id, pipeline, event, action, environment, "
                "actor, status, outcome, error, started_at, ended_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.pipeline,
                    run.trigger.event.value,
                    run.trigger.action,
                    run.trigger.environment,
                    run.trigger.actor,
                    run.status.value,
                    run.outcome.value,
                    run.configuration_error,
                    run.started_at.isoformat(),
                    run.ended_at.isoformat(),
                ),
            )
            for stage in run.stages.values():
                self._conn.execute(
                    "INSERT INTO stages (run_id, name, status, skip_reason, "
                    "started_at, ended_at, artifacts, error) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        run.run_id,
                        stage.name,
                        stage.status.value,
                        stage.skip_reason.value if stage.skip_reason else None,
                        stage.started_at.isoformat() if stage.started_at else None,
                        stage.ended_at.isoformat() if stage.ended_at else None,
                        ",".join(stage.artifacts),
                        stage.error,
                    ),
                )
                for step in stage.steps:
                    self._conn.execute(
                        "INSERT INTO steps (run_id, stage, name, status, exit_code, "
                        "attempts, duration_ms, failure, error) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            run.run_id,
                            stage.name,
                            step.name,
                            step.status.value,
                            step.exit_code,
                            len(step.attempts),
                            int(step.duration_seconds * 1000),
                            step.failure.value if step.failure else None,
                            step.error,
                        ),
                    )

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT * FROM runs WHERE run_id=?", (run_id,)
        ).fetchone()
        return dict(row) if row else None

    def list_runs(self, limit: int = 20, pipeline: str | None = None) -> list[dict[str, Any]]:
        if pipeline is None:
            rows = self._conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM runs WHERE pipeline=? ORDER BY started_at DESC LIMIT ?",
                (pipeline, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Stages & steps ───────────────────────────────────────────────

    def get_stages(self, run_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM stages WHERE run_id=? ORDER BY id", (run_id,)
        ).fetchall()
        return [dict(r) for r in rows]

    def get_steps(self, run_id: str, stage: str | None = None) -> list[dict[str, Any]]:
        if stage is None:
            rows = self._conn.execute(
                "SELECT * FROM steps WHERE run_id=? ORDER BY id", (run_id,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM steps WHERE run_id=? AND stage=? ORDER BY id",
                (run_id, stage),
            ).fetchall()
        return [dict(r) for r in rows]
