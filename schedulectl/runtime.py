"""
Hosts schedules on the sqlite store.

Every operation (from the CLI or from a deferred signal) runs inside one
BEGIN IMMEDIATE transaction: load the state, apply the operation, write the
state back together with the signals and launches it produced, and ack the
signal it consumed. A crash anywhere before COMMIT leaves the signal in place,
so it is delivered again.
"""
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from . import config, storage
from .errors import InvalidState, ScheduleError
from .models import ScheduleConfiguration, ScheduleState, ScheduleUpdate
from .schedule import Schedule
from .substrate import OperationBatch
from .utils import utcnow

OPERATIONS = ("create", "update", "pause", "resume", "run", "delete")


def backoff_delay(base: float, attempts: int) -> float:
    """delay = base ** attempts (with safe casts)"""
    try:
        return float(base) ** int(attempts)
    except (TypeError, ValueError, OverflowError):
        return 2.0 ** int(attempts)


def apply_operation(schedule: Schedule, operation: str, payload: Optional[str] = None) -> None:
    if operation not in OPERATIONS:
        raise InvalidState(f"unknown operation: {operation}")
    if operation == "create":
        cfg = ScheduleConfiguration.model_validate_json(payload or "{}")
        if cfg.schedule_id != schedule.schedule_id:
            raise InvalidState(f"configuration is for schedule {cfg.schedule_id}, not {schedule.schedule_id}")
        schedule.create(cfg)
    elif operation == "update":
        upd = ScheduleUpdate.model_validate_json(payload or "{}")
        if upd.schedule_id and upd.schedule_id != schedule.schedule_id:
            raise InvalidState(f"update is for schedule {upd.schedule_id}, not {schedule.schedule_id}")
        schedule.update(upd)
    elif operation == "pause":
        schedule.pause()
    elif operation == "resume":
        schedule.resume()
    elif operation == "run":
        schedule.run(payload or "")
    else:
        schedule.delete()


def _load(conn: sqlite3.Connection, schedule_id: str, batch: OperationBatch, now: datetime) -> Schedule:
    state = storage.load_state(conn, schedule_id)
    return Schedule(schedule_id, batch, state=state, logger=logger, clock=lambda: now)


def _persist(conn: sqlite3.Connection, schedule: Schedule, batch: OperationBatch, now: datetime) -> None:
    storage.save_state(conn, schedule.schedule_id, schedule.state, now)
    started = storage.flush_batch(conn, schedule.schedule_id, batch, now)
    skipped = len(batch.launches) - started
    if skipped:
        schedule.logger.info("{} launch(es) skipped, orchestration instance still running", skipped)


def execute(schedule_id: str, operation: str, payload: Optional[str] = None,
            now: Optional[datetime] = None) -> ScheduleState:
    """Run one operation synchronously and return the resulting state. Failures roll back."""
    now = now or utcnow()
    batch = OperationBatch()
    with storage.transaction() as conn:
        schedule = _load(conn, schedule_id, batch, now)
        apply_operation(schedule, operation, payload)
        _persist(conn, schedule, batch, now)
    return schedule.state


def _handle_signal(conn: sqlite3.Connection, signal: sqlite3.Row, now: datetime) -> None:
    batch = OperationBatch()
    schedule = _load(conn, signal["schedule_id"], batch, now)
    try:
        apply_operation(schedule, signal["operation"], signal["payload"])
    except (ScheduleError, ValidationError) as e:
        # state untouched; not retried
        schedule.logger.warning("Dropping {} signal {}: {}", signal["operation"], signal["id"], e)
        storage.ack_signal(conn, signal["id"])
        return
    _persist(conn, schedule, batch, now)
    storage.ack_signal(conn, signal["id"])


def _retry_later(signal: sqlite3.Row, error: Exception, now: datetime) -> None:
    attempts = int(signal["attempts"]) + 1
    limit = config.max_retries()
    delay = backoff_delay(config.backoff_base(), attempts)
    with storage.transaction() as conn:
        storage.retry_or_bury_signal(
            conn, signal["id"], attempts, limit, str(error)[:512], now + timedelta(seconds=delay), now
        )
    if attempts >= limit:
        logger.bind(schedule_id=signal["schedule_id"]).error(
            "Signal {} moved to the dead letter queue after {} attempts", signal["id"], attempts
        )


def process_next_signal(now: Optional[datetime] = None) -> Optional[sqlite3.Row]:
    """Deliver the earliest due signal, if any. Returns the signal that was handled."""
    now = now or utcnow()
    signal = None
    try:
        with storage.transaction() as conn:
            signal = storage.next_due_signal(conn, now)
            if signal is None:
                return None
            _handle_signal(conn, signal, now)
    except Exception as e:
        if signal is None:
            raise
        logger.bind(schedule_id=signal["schedule_id"]).exception("Signal {} failed", signal["id"])
        _retry_later(signal, e, now)
    return signal


def drain_signals(now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
    """Deliver due signals until none is left (or `limit` is reached)."""
    handled = 0
    while limit is None or handled < limit:
        if process_next_signal(now) is None:
            break
        handled += 1
    return handled
