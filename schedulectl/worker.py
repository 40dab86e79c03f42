# schedulectl/worker.py
import os
import time
import uuid
from multiprocessing import Process
from typing import Optional

from loguru import logger

from . import config
from .executor import run_command
from .runtime import drain_signals
from .storage import (
    close_conn,
    fetch_and_lock_next_orchestration,
    get_registered_command,
    mark_orchestration_finished,
    recover_processing,
    register_worker,
    stop_worker_record,
)


def run_next_orchestration(worker_id: str) -> bool:
    """Claim and run one pending orchestration. Returns False when there was nothing to do."""
    run = fetch_and_lock_next_orchestration(worker_id)
    if not run:
        return False

    log = logger.bind(schedule_id=run["schedule_id"] or "-")
    command = get_registered_command(run["name"])
    if command is None:
        log.error("No command registered for orchestration {}", run["name"])
        mark_orchestration_finished(run["instance_id"], False, f"unknown orchestration: {run['name']}")
        return True

    log.info("Running orchestration {} (instance {})", run["name"], run["instance_id"])
    rc, err = run_command(command, input=run["input"])
    if rc == 0:
        mark_orchestration_finished(run["instance_id"], True)
    else:
        # truncate error to keep DB small
        log.warning("Orchestration {} exited with {}", run["instance_id"], rc)
        mark_orchestration_finished(run["instance_id"], False, (err or f"exit code {rc}")[:512])
    return True


def worker_loop(worker_id: str, poll_interval: Optional[float] = None):
    """
    Single worker process loop:
      - respects global 'shutdown' flag
      - delivers every due schedule signal
      - runs at most one orchestration per pass
      - always deregisters itself on exit
    """
    close_conn(close=False)
    pid = os.getpid()
    register_worker(worker_id, pid)
    recover_processing()  # orphaned 'processing' runs go back to 'pending'
    if poll_interval is None:
        poll_interval = config.poll_interval()
    logger.info("Worker {} started (pid {})", worker_id, pid)

    try:
        while not config.shutdown_requested():
            delivered = drain_signals()
            ran = run_next_orchestration(worker_id)
            if not delivered and not ran:
                time.sleep(poll_interval)
    except KeyboardInterrupt:
        # quiet exit on Ctrl+C
        pass
    finally:
        stop_worker_record(worker_id)
        logger.info("Worker {} stopped", worker_id)


def start_workers(count: int):
    """
    Spawn N workers and join them. If Ctrl+C is pressed in the parent,
    set shutdown=true so children finish their current job and exit cleanly.
    """
    procs = []
    for _ in range(count):
        wid = f"w-{uuid.uuid4().hex[:8]}"
        p = Process(target=worker_loop, args=(wid,), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        # parent interrupted -> request graceful stop for all workers
        config.request_shutdown()
        for p in procs:
            p.join()
