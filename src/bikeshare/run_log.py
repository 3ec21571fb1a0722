from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(db_path)
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA synchronous=NORMAL;")
    return con


def init_db(db_path: str) -> None:
    con = connect(db_path)
    cur = con.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS pipeline_runs (
        run_id TEXT PRIMARY KEY,
        ts_utc TEXT NOT NULL,
        success INTEGER NOT NULL,
        continue_on_error INTEGER NOT NULL,
        failed_steps TEXT NOT NULL,
        total_seconds REAL,
        payload_json TEXT NOT NULL
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS stage_outcomes (
        run_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        stage_id TEXT NOT NULL,
        status TEXT NOT NULL,
        message TEXT,
        duration_sec REAL,
        PRIMARY KEY (run_id, position)
    );
    """)

    con.commit()
    con.close()


def log_run(db_path: str, run: Dict[str, Any]) -> None:
    """Insert one PipelineRun (as produced by PipelineRun.to_dict)."""
    init_db(db_path)
    con = connect(db_path)
    try:
        with con:
            con.execute("""
                INSERT OR REPLACE INTO pipeline_runs
                (run_id, ts_utc, success, continue_on_error, failed_steps, total_seconds, payload_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                run["run_id"],
                run.get("finished_at_utc") or now_utc_iso(),
                int(bool(run["success"])),
                int(bool(run.get("continue_on_error", False))),
                json.dumps(run["failed_steps"]),
                run.get("total_seconds"),
                json.dumps(run, default=str),
            ))
            # a re-logged run_id replaces its outcomes wholesale
            con.execute("DELETE FROM stage_outcomes WHERE run_id = ?", (run["run_id"],))
            con.executemany("""
                INSERT INTO stage_outcomes
                (run_id, position, stage_id, status, message, duration_sec)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (run["run_id"], i, o["stage_id"], o["status"], o.get("message"), o.get("duration_sec"))
                for i, o in enumerate(run["outcomes"])
            ])
    finally:
        con.close()


def recent_runs(db_path: str, limit: int = 20) -> List[Dict[str, Any]]:
    if not Path(db_path).exists():
        return []
    con = connect(db_path)
    try:
        rows = con.execute("""
            SELECT run_id, ts_utc, success, failed_steps, total_seconds
            FROM pipeline_runs
            ORDER BY ts_utc DESC
            LIMIT ?
        """, (limit,)).fetchall()
    finally:
        con.close()
    return [
        {
            "run_id": r[0],
            "ts_utc": r[1],
            "success": bool(r[2]),
            "failed_steps": json.loads(r[3]),
            "total_seconds": r[4],
        }
        for r in rows
    ]


def load_run(db_path: str, run_id: str) -> Optional[Dict[str, Any]]:
    if not Path(db_path).exists():
        return None
    con = connect(db_path)
    try:
        row = con.execute(
            "SELECT payload_json FROM pipeline_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
    finally:
        con.close()
    return json.loads(row[0]) if row else None
