from datetime import timedelta

from schedulectl import config, runtime, storage
from schedulectl.executor import run_command
from schedulectl.models import ScheduleConfiguration
from schedulectl.worker import run_next_orchestration, worker_loop


def launch(name="report", input=None, now=None):
    cfg = ScheduleConfiguration(
        orchestration_name=name, schedule_id="s1", orchestration_input=input, interval=timedelta(minutes=1)
    )
    runtime.execute("s1", "create", cfg.model_dump_json(by_alias=True), now=now)
    runtime.drain_signals(now=now)
    [run] = storage.list_orchestrations()
    return run


def test_runs_registered_command_with_input(home, clock):
    out = home / "out.txt"
    storage.register_orchestration("report", f'cat > "{out}"')
    run = launch(input="AAPL,MSFT", now=clock.now)

    assert run_next_orchestration("w-test") is True

    assert out.read_text() == "AAPL,MSFT"
    done = storage.get_orchestration(run["instance_id"])
    assert done["state"] == "completed"
    assert done["attempts"] == 1
    assert done["worker_id"] is None
    assert run_next_orchestration("w-test") is False


def test_failing_command_marks_failed(home, clock):
    storage.register_orchestration("report", "echo broken >&2; exit 3")
    run = launch(now=clock.now)

    run_next_orchestration("w-test")

    failed = storage.get_orchestration(run["instance_id"])
    assert failed["state"] == "failed"
    assert failed["last_error"] == "broken"


def test_unregistered_orchestration_fails(home, clock):
    run = launch(name="missing", now=clock.now)

    run_next_orchestration("w-test")

    failed = storage.get_orchestration(run["instance_id"])
    assert failed["state"] == "failed"
    assert "unknown orchestration" in failed["last_error"]


def test_recover_processing(home, clock):
    run = launch(now=clock.now)
    storage.fetch_and_lock_next_orchestration("w-dead")
    assert storage.get_orchestration(run["instance_id"])["state"] == "processing"

    storage.recover_processing()

    assert storage.get_orchestration(run["instance_id"])["state"] == "pending"


def test_worker_loop_honours_shutdown(home):
    config.request_shutdown()

    worker_loop("w-test", poll_interval=0)

    assert storage.list_workers() == []


def test_run_command_reports_exit_code():
    assert run_command("true") == (0, "")
    rc, err = run_command("cat >&2; exit 1", input="oops")
    assert rc == 1
    assert err == "oops"
