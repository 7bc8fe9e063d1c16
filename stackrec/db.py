from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (for instance a bind mount that
    Docker created as a directory), the db file is placed inside it.
    """
    if path == ":memory:":
        return path

    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "stackrec.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


@dataclass(frozen=True)
class ResourceRow:
    """Last known realized form of one resource."""

    stack: str
    name: str
    kind: str
    resource_id: str
    props: dict[str, Any] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)  # path -> sha256
    outputs: dict[str, Any] = field(default_factory=dict)
    deps: list[str] = field(default_factory=list)
    rank: int = 0
    seq: int = 0
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ResourceRow:
        d = dict(row)
        for key in ("props", "files", "outputs", "deps"):
            d[key] = json.loads(d[key])
        return cls(**d)


class StateStore:
    """Observed state of every stack, persisted in sqlite.

    Every statement runs under one lock: a single writer at a time, even when
    several actions finish concurrently.
    """

    def __init__(self, path: str) -> None:
        self.path = _resolve_db_path(path)
        self._lock = Lock()
        self._memory_conn: sqlite3.Connection | None = None
        if self.path == ":memory:":
            self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        if self._memory_conn is not None:
            return self._memory_conn
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._lock, self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS resources (
                  stack TEXT NOT NULL,
                  name TEXT NOT NULL,
                  kind TEXT NOT NULL, -- network|image|container
                  resource_id TEXT NOT NULL,
                  props TEXT NOT NULL,
                  files TEXT NOT NULL,
                  outputs TEXT NOT NULL,
                  deps TEXT NOT NULL,
                  rank INTEGER NOT NULL,
                  seq INTEGER NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY(stack, name)
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  stack TEXT,
                  resource TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def log_event(self, level: str, message: str, stack: str | None = None, resource: str | None = None) -> None:
        with self._lock, self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, stack, resource, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), stack, resource, message),
            )

    def latest_events(self, limit: int = 100, stack: str | None = None) -> list[dict[str, Any]]:
        with self._lock, self.connect() as conn:
            if stack:
                rows = conn.execute(
                    "SELECT * FROM events WHERE stack=? ORDER BY id DESC LIMIT ?", (stack, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def list_resources(self, stack: str) -> list[ResourceRow]:
        with self._lock, self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM resources WHERE stack=? ORDER BY rank, seq", (stack,)
            ).fetchall()
            return [ResourceRow.from_row(r) for r in rows]

    def get_resource(self, stack: str, name: str) -> ResourceRow | None:
        with self._lock, self.connect() as conn:
            row = conn.execute("SELECT * FROM resources WHERE stack=? AND name=?", (stack, name)).fetchone()
            return ResourceRow.from_row(row) if row else None

    def save_resource(self, row: ResourceRow) -> None:
        with self._lock, self.connect() as conn:
            conn.execute(
                """
                INSERT INTO resources (stack, name, kind, resource_id, props, files, outputs, deps, rank, seq, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stack, name) DO UPDATE SET
                  kind=excluded.kind,
                  resource_id=excluded.resource_id,
                  props=excluded.props,
                  files=excluded.files,
                  outputs=excluded.outputs,
                  deps=excluded.deps,
                  rank=excluded.rank,
                  seq=excluded.seq,
                  updated_at=excluded.updated_at
                """,
                (
                    row.stack,
                    row.name,
                    row.kind,
                    row.resource_id,
                    json.dumps(row.props, sort_keys=True),
                    json.dumps(row.files, sort_keys=True),
                    json.dumps(row.outputs, sort_keys=True),
                    json.dumps(row.deps),
                    row.rank,
                    row.seq,
                    utc_now(),
                ),
            )

    def delete_resource(self, stack: str, name: str) -> None:
        with self._lock, self.connect() as conn:
            conn.execute("DELETE FROM resources WHERE stack=? AND name=?", (stack, name))

    def list_stacks(self) -> list[str]:
        with self._lock, self.connect() as conn:
            rows = conn.execute("SELECT DISTINCT stack FROM resources ORDER BY stack").fetchall()
            return [r["stack"] for r in rows]
