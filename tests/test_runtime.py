from datetime import timedelta

import pytest

from schedulectl import runtime, storage
from schedulectl.errors import InvalidState
from schedulectl.models import ScheduleConfiguration, ScheduleStatus, ScheduleUpdate
from schedulectl.utils import iso

MINUTE = timedelta(minutes=1)


def create(schedule_id="s1", now=None, **kwargs):
    kwargs.setdefault("orchestration_name", "report")
    kwargs.setdefault("interval", MINUTE)
    cfg = ScheduleConfiguration(schedule_id=schedule_id, **kwargs)
    return runtime.execute(schedule_id, "create", cfg.model_dump_json(by_alias=True), now=now)


def pending(schedule_id="s1"):
    return storage.list_signals("pending", schedule_id)


class TestExecute:
    def test_create_persists_and_arms(self, home, clock):
        state = create(now=clock.now, orchestration_input="AAPL")

        assert state.status == ScheduleStatus.ACTIVE
        assert storage.get_schedule("s1").configuration.orchestration_input == "AAPL"
        [signal] = pending()
        assert signal["operation"] == "run"
        assert signal["payload"] == state.execution_token
        assert signal["not_before"] == iso(clock.now)

    def test_failure_rolls_back(self, home, clock):
        with pytest.raises(InvalidState):
            runtime.execute("s1", "pause", now=clock.now)
        assert storage.get_schedule("s1") is None
        assert pending() == []

    def test_duplicate_create_rolls_back(self, home, clock):
        create(now=clock.now)
        with pytest.raises(InvalidState, match="already created"):
            create(now=clock.now, orchestration_name="other")
        assert storage.get_schedule("s1").configuration.orchestration_name == "report"
        assert len(pending()) == 1

    def test_mismatched_schedule_id(self, home, clock):
        cfg = ScheduleConfiguration(orchestration_name="report", schedule_id="other", interval=MINUTE)
        with pytest.raises(InvalidState):
            runtime.execute("s1", "create", cfg.model_dump_json(by_alias=True), now=clock.now)

    def test_unknown_operation(self, home, clock):
        create(now=clock.now)
        with pytest.raises(InvalidState, match="unknown operation"):
            runtime.execute("s1", "restart", now=clock.now)

    def test_state_survives_reconnect(self, home, clock):
        state = create(now=clock.now)
        storage.close_conn()
        restored = storage.get_schedule("s1")
        assert restored.execution_token == state.execution_token
        assert restored.configuration.interval == MINUTE


class TestSignals:
    def test_chain_dispatches_once_per_interval(self, home, clock):
        t = clock.now
        create(now=t)

        assert runtime.drain_signals(now=t) == 1
        runs = storage.list_orchestrations()
        assert len(runs) == 1
        assert runs[0]["name"] == "report"
        assert runs[0]["schedule_id"] == "s1"
        [signal] = pending()
        assert signal["not_before"] == iso(t + MINUTE)

        # nothing is due before the next boundary
        assert runtime.drain_signals(now=t + timedelta(seconds=59)) == 0

        state = storage.get_schedule("s1")
        assert state.last_run_at == t
        assert state.next_run_at == t + MINUTE

    def test_instance_still_pending_is_not_launched_twice(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        runtime.drain_signals(now=t + MINUTE)

        [run] = storage.list_orchestrations()
        assert run["state"] == "pending"
        assert storage.get_schedule("s1").last_run_at == t + MINUTE

    def test_finished_instance_is_launched_again(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        [run] = storage.list_orchestrations()
        storage.mark_orchestration_finished(run["instance_id"], True)

        runtime.drain_signals(now=t + MINUTE)

        assert storage.get_orchestration(run["instance_id"])["state"] == "pending"

    def test_redelivered_run_does_not_fork_chain(self, home, clock):
        t = clock.now
        state = create(now=t)
        with storage.transaction() as conn:
            # the same signal delivered a second time
            conn.execute(
                """INSERT INTO signals(schedule_id,operation,payload,not_before,state,attempts,created_at,updated_at)
                   VALUES('s1','run',?,?,'pending',0,?,?)""",
                (state.execution_token, iso(t), iso(t), iso(t)),
            )

        assert runtime.drain_signals(now=t) == 2
        assert len(storage.list_orchestrations()) == 1
        assert len(pending()) == 1

    def test_pause_cancels_pending_run(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)

        runtime.execute("s1", "pause", now=t + timedelta(seconds=10))
        assert runtime.drain_signals(now=t + MINUTE) == 1

        assert storage.get_schedule("s1").status == ScheduleStatus.PAUSED
        assert pending() == []
        assert storage.get_schedule("s1").last_run_at == t

    def test_resume_restarts_chain(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        runtime.execute("s1", "pause", now=t)
        runtime.drain_signals(now=t + MINUTE)

        runtime.execute("s1", "resume", now=t + 2 * MINUTE + timedelta(seconds=5))
        runtime.drain_signals(now=t + 2 * MINUTE + timedelta(seconds=5))

        [signal] = pending()
        assert signal["not_before"] == iso(t + 3 * MINUTE)

    def test_update_replaces_chain(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        old = pending()[0]

        upd = ScheduleUpdate(interval=timedelta(minutes=10))
        runtime.execute("s1", "update", upd.model_dump_json(by_alias=True, exclude_none=True), now=t)
        runtime.drain_signals(now=t + MINUTE)

        [signal] = pending()
        assert signal["id"] != old["id"]
        assert signal["not_before"] == iso(t + 10 * MINUTE)

    def test_delete_ends_chain(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        runtime.execute("s1", "delete", now=t)
        runtime.drain_signals(now=t + MINUTE)

        assert pending() == []
        assert storage.get_schedule("s1").status == ScheduleStatus.DELETED

    def test_rejected_signal_is_dropped(self, home, clock):
        t = clock.now
        create(now=t)
        runtime.drain_signals(now=t)
        before = storage.get_schedule("s1")
        with storage.transaction() as conn:
            storage.enqueue_signal(conn, "s1", "resume", None, t, t)

        assert runtime.drain_signals(now=t) == 1

        assert storage.get_schedule("s1").model_dump() == before.model_dump()
        assert [s["operation"] for s in pending()] == ["run"]

    def test_unexpected_error_retries_then_dead_letters(self, home, clock, monkeypatch):
        t = clock.now
        create(now=t)
        storage.config_set("max_retries", "2")

        def boom(schedule, operation, payload=None):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(runtime, "apply_operation", boom)

        runtime.process_next_signal(now=t)
        [signal] = pending()
        assert signal["attempts"] == 1
        assert signal["last_error"] == "store unavailable"
        assert signal["not_before"] == iso(t + timedelta(seconds=2))

        assert runtime.process_next_signal(now=t + timedelta(seconds=1)) is None
        runtime.process_next_signal(now=t + timedelta(seconds=2))
        assert pending() == []
        [dead] = storage.list_signals("dead")
        assert dead["attempts"] == 2

        assert storage.requeue_dead_signal(dead["id"]) is True
        assert storage.get_signal(dead["id"])["state"] == "pending"
        assert storage.requeue_dead_signal(dead["id"]) is False


def test_backoff_delay():
    assert runtime.backoff_delay(2.0, 3) == 8.0
    assert runtime.backoff_delay("bad", 2) == 4.0
