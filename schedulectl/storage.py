import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .models import DEFAULTS, ScheduleState
from .substrate import OperationBatch
from .utils import iso, utcnow

_local = threading.local()


def home_dir() -> Path:
    return Path(os.environ.get("SCHEDULECTL_HOME", Path.home() / ".schedulectl"))


def db_path() -> Path:
    return home_dir() / "schedules.db"


def get_conn() -> sqlite3.Connection:
    path = db_path()
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "path", None) != path:
        if conn is not None:
            conn.close()
        path.parent.mkdir(parents=True, exist_ok=True)
        # autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = path
        init_db(conn)
    return conn


def close_conn(close: bool = True) -> None:
    """Drop the cached connection. Forked children pass close=False: the handle belongs to the parent."""
    conn = getattr(_local, "conn", None)
    if conn is not None and close:
        conn.close()
    _local.conn = None
    _local.path = None


def with_conn(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        conn = get_conn()
        return fn(conn, *args, **kwargs)
    return wrapper


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE takes the write lock up front, so only one operation runs at a time."""
    conn = get_conn()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def init_db(conn: sqlite3.Connection):
    conn.executescript(
        """
        PRAGMA journal_mode=WAL;
        CREATE TABLE IF NOT EXISTS schedules(
          id TEXT PRIMARY KEY,
          status TEXT NOT NULL,
          state TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS signals(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          schedule_id TEXT NOT NULL,
          operation TEXT NOT NULL,
          payload TEXT,
          not_before TEXT NOT NULL,
          state TEXT NOT NULL DEFAULT 'pending',
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_signals_state_due ON signals(state,not_before);
        CREATE TABLE IF NOT EXISTS orchestrations(
          instance_id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          input TEXT,
          schedule_id TEXT,
          state TEXT NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          worker_id TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_orchestrations_state ON orchestrations(state,updated_at);
        CREATE TABLE IF NOT EXISTS registry(
          name TEXT PRIMARY KEY,
          command TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS config(
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS workers(
          id TEXT PRIMARY KEY,
          pid INTEGER NOT NULL,
          started_at TEXT NOT NULL,
          stopped_at TEXT
        );
        """
    )
    # defaults
    for k, v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, str(v)),
        )
    conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")


# -----------------------------
# Schedules
# -----------------------------
def load_state(conn: sqlite3.Connection, schedule_id: str) -> Optional[ScheduleState]:
    row = conn.execute("SELECT state FROM schedules WHERE id=?", (schedule_id,)).fetchone()
    return ScheduleState.from_json(row["state"]) if row else None


def save_state(conn: sqlite3.Connection, schedule_id: str, state: ScheduleState, now: datetime):
    ts = iso(now)
    conn.execute(
        """INSERT INTO schedules(id,status,state,created_at,updated_at) VALUES(?,?,?,?,?)
           ON CONFLICT(id) DO UPDATE SET
             status=excluded.status,
             state=excluded.state,
             updated_at=excluded.updated_at
        """,
        (schedule_id, state.status.value, state.to_json(), ts, ts),
    )


@with_conn
def get_schedule(conn, schedule_id: str) -> Optional[ScheduleState]:
    return load_state(conn, schedule_id)


@with_conn
def list_schedules(conn, status: Optional[str] = None) -> List[Tuple[str, ScheduleState]]:
    if status:
        cur = conn.execute("SELECT id, state FROM schedules WHERE status=? ORDER BY created_at", (status,))
    else:
        cur = conn.execute("SELECT id, state FROM schedules ORDER BY created_at")
    return [(r["id"], ScheduleState.from_json(r["state"])) for r in cur.fetchall()]


@with_conn
def counts_by_status(conn) -> List[Tuple[str, int]]:
    cur = conn.execute("SELECT status, COUNT(*) FROM schedules GROUP BY status")
    return cur.fetchall()


# -----------------------------
# Signals
# -----------------------------
def enqueue_signal(conn: sqlite3.Connection, schedule_id: str, operation: str, payload: Optional[str],
                   not_before: datetime, now: datetime):
    # skipped when an identical signal is already pending
    ts = iso(now)
    conn.execute(
        """INSERT INTO signals(schedule_id,operation,payload,not_before,state,attempts,created_at,updated_at)
           SELECT ?,?,?,?,'pending',0,?,?
            WHERE NOT EXISTS (
              SELECT 1 FROM signals
               WHERE schedule_id=? AND operation=? AND payload IS ? AND not_before=? AND state='pending'
            )""",
        (schedule_id, operation, payload, iso(not_before), ts, ts,
         schedule_id, operation, payload, iso(not_before)),
    )


def next_due_signal(conn: sqlite3.Connection, now: datetime) -> Optional[sqlite3.Row]:
    return conn.execute(
        """
        SELECT * FROM signals
         WHERE state='pending' AND not_before <= ?
         ORDER BY not_before ASC, id ASC
         LIMIT 1
        """, (iso(now),)
    ).fetchone()


def ack_signal(conn: sqlite3.Connection, signal_id: int):
    conn.execute("DELETE FROM signals WHERE id=?", (signal_id,))


def retry_or_bury_signal(conn: sqlite3.Connection, signal_id: int, attempts: int, max_retries: int,
                         last_error: str, not_before: datetime, now: datetime):
    # a signal that has failed max_retries times is parked in the dead letter queue
    if attempts >= max_retries:
        conn.execute(
            "UPDATE signals SET state='dead', attempts=?, last_error=?, updated_at=? WHERE id=?",
            (attempts, last_error, iso(now), signal_id),
        )
    else:
        conn.execute(
            "UPDATE signals SET attempts=?, last_error=?, not_before=?, updated_at=? WHERE id=?",
            (attempts, last_error, iso(not_before), iso(now), signal_id),
        )


@with_conn
def list_signals(conn, state: Optional[str] = None, schedule_id: Optional[str] = None) -> List[sqlite3.Row]:
    clauses, params = [], []
    if state:
        clauses.append("state=?")
        params.append(state)
    if schedule_id:
        clauses.append("schedule_id=?")
        params.append(schedule_id)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return conn.execute(f"SELECT * FROM signals{where} ORDER BY not_before, id", params).fetchall()


@with_conn
def get_signal(conn, signal_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM signals WHERE id=?", (signal_id,)).fetchone()


@with_conn
def requeue_dead_signal(conn, signal_id: int) -> bool:
    now = iso(utcnow())
    cur = conn.execute(
        """UPDATE signals SET state='pending', attempts=0, last_error=NULL, not_before=?, updated_at=?
            WHERE id=? AND state='dead'""",
        (now, now, signal_id),
    )
    return cur.rowcount > 0


# -----------------------------
# Orchestrations
# -----------------------------
def launch_orchestration(conn: sqlite3.Connection, name: str, input: Optional[str], instance_id: str,
                         schedule_id: Optional[str], now: datetime) -> bool:
    """Start an instance unless one with the same id is still pending or running."""
    ts = iso(now)
    cur = conn.execute(
        """INSERT INTO orchestrations(instance_id,name,input,schedule_id,state,attempts,created_at,updated_at)
           VALUES(?,?,?,?,'pending',0,?,?)
           ON CONFLICT(instance_id) DO UPDATE SET
             name=excluded.name,
             input=excluded.input,
             schedule_id=excluded.schedule_id,
             state='pending',
             attempts=0,
             last_error=NULL,
             updated_at=excluded.updated_at,
             worker_id=NULL
           WHERE orchestrations.state IN ('completed','failed')
        """,
        (instance_id, name, input, schedule_id, ts, ts),
    )
    return cur.rowcount > 0


def flush_batch(conn: sqlite3.Connection, schedule_id: str, batch: OperationBatch, now: datetime) -> int:
    """Persist the side effects recorded during one operation; returns how many launches took effect."""
    for s in batch.signals:
        enqueue_signal(conn, s.schedule_id, s.operation, s.payload, s.not_before, now)
    started = 0
    for w in batch.launches:
        if launch_orchestration(conn, w.name, w.input, w.instance_id, schedule_id, now):
            started += 1
    return started


@with_conn
def fetch_and_lock_next_orchestration(conn, worker_id: str) -> Optional[sqlite3.Row]:
    now = iso(utcnow())
    conn.execute("BEGIN IMMEDIATE")
    row = conn.execute(
        "SELECT instance_id FROM orchestrations WHERE state='pending' ORDER BY updated_at ASC LIMIT 1"
    ).fetchone()
    if not row:
        conn.execute("COMMIT")
        return None
    instance_id = row["instance_id"]
    conn.execute(
        "UPDATE orchestrations SET state='processing', worker_id=?, attempts=attempts+1, updated_at=? WHERE instance_id=?",
        (worker_id, now, instance_id),
    )
    run = conn.execute("SELECT * FROM orchestrations WHERE instance_id=?", (instance_id,)).fetchone()
    conn.execute("COMMIT")
    return run


@with_conn
def mark_orchestration_finished(conn, instance_id: str, ok: bool, last_error: Optional[str] = None):
    conn.execute(
        "UPDATE orchestrations SET state=?, last_error=?, updated_at=?, worker_id=NULL WHERE instance_id=?",
        ("completed" if ok else "failed", last_error, iso(utcnow()), instance_id),
    )


@with_conn
def recover_processing(conn):
    now = iso(utcnow())
    conn.execute("""
      UPDATE orchestrations
         SET state='pending', worker_id=NULL, updated_at=?
       WHERE state='processing'
    """, (now,))


@with_conn
def get_orchestration(conn, instance_id: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM orchestrations WHERE instance_id=?", (instance_id,)).fetchone()


@with_conn
def list_orchestrations(conn, state: Optional[str] = None) -> List[sqlite3.Row]:
    if state:
        cur = conn.execute("SELECT * FROM orchestrations WHERE state=? ORDER BY updated_at", (state,))
    else:
        cur = conn.execute("SELECT * FROM orchestrations ORDER BY updated_at")
    return cur.fetchall()


@with_conn
def register_orchestration(conn, name: str, command: str):
    conn.execute(
        "INSERT INTO registry(name,command) VALUES(?,?) ON CONFLICT(name) DO UPDATE SET command=excluded.command",
        (name, command),
    )


@with_conn
def get_registered_command(conn, name: str) -> Optional[str]:
    row = conn.execute("SELECT command FROM registry WHERE name=?", (name,)).fetchone()
    return row[0] if row else None


@with_conn
def list_registry(conn) -> List[sqlite3.Row]:
    return conn.execute("SELECT * FROM registry ORDER BY name").fetchall()


# -----------------------------
# Config & workers
# -----------------------------
@with_conn
def config_get(conn, key: str, default: Optional[str] = None) -> str:
    cur = conn.execute("SELECT value FROM config WHERE key=?", (key,))
    row = cur.fetchone()
    return row[0] if row else default


@with_conn
def config_set(conn, key: str, value: str):
    conn.execute("INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))


@with_conn
def register_worker(conn, wid: str, pid: int):
    conn.execute("INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, iso(utcnow())))


@with_conn
def stop_worker_record(conn, wid: str):
    conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (iso(utcnow()), wid))


@with_conn
def list_workers(conn):
    return conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()
