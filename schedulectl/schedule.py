"""
Recurring schedule state machine.

A schedule keeps itself alive through a chain of single deferred `run`
signals, each carrying the execution token that was current when it was
armed. Pause, update and delete rotate the token, so any signal still in
flight is dropped when it arrives. The host substrate never has to cancel
anything.
"""
from datetime import datetime
from typing import Callable, FrozenSet, Optional

from loguru import logger as _default_logger

from .errors import InvalidState
from .models import TIMING_FIELDS, ScheduleConfiguration, ScheduleState, ScheduleStatus, ScheduleUpdate
from .substrate import Substrate
from .utils import utcnow

RUN = "run"

_TRANSITIONS = {
    ScheduleStatus.UNINITIALIZED: frozenset({ScheduleStatus.ACTIVE}),
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.PAUSED, ScheduleStatus.DELETED}),
    ScheduleStatus.PAUSED: frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.DELETED}),
    ScheduleStatus.DELETED: frozenset(),
}


def allowed_transitions(status: ScheduleStatus) -> FrozenSet[ScheduleStatus]:
    return _TRANSITIONS.get(status, frozenset())


class Schedule:
    def __init__(
        self,
        schedule_id: str,
        substrate: Substrate,
        state: Optional[ScheduleState] = None,
        logger=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.schedule_id = schedule_id
        self.substrate = substrate
        self.state = state if state is not None else ScheduleState()
        self.logger = (logger or _default_logger).bind(schedule_id=schedule_id)
        self.clock = clock

    # -----------------------------
    # Operations
    # -----------------------------
    def create(self, config: ScheduleConfiguration) -> None:
        if self.state.status != ScheduleStatus.UNINITIALIZED:
            raise InvalidState("schedule is already created")

        self.logger.info("Creating schedule with options: {}", config.model_dump_json(by_alias=True))
        self._check_transition(ScheduleStatus.ACTIVE)
        self.state.configuration = config
        self.state.status = ScheduleStatus.ACTIVE
        self._arm(self.clock())

    def update(self, update: ScheduleUpdate) -> None:
        if self.state.configuration is None:
            raise InvalidState("schedule configuration is not initialized")

        self.logger.info("Updating schedule with details: {}", update.model_dump_json(by_alias=True, exclude_none=True))
        changed = self.state.merge_config(update)
        if not changed:
            self.logger.info("Schedule configuration is up to date")
            return

        if changed & TIMING_FIELDS:
            self.state.next_run_at = None
        self.state.rotate_token()
        self._arm(self.clock())

    def pause(self) -> None:
        if self.state.status != ScheduleStatus.ACTIVE:
            raise InvalidState("schedule must be Active to pause")

        self._transition(ScheduleStatus.PAUSED)
        self.state.next_run_at = None
        self.state.rotate_token()
        self.logger.info("Schedule paused")

    def resume(self) -> None:
        if self.state.configuration is None:
            raise InvalidState("schedule configuration is not initialized")
        if self.state.status != ScheduleStatus.PAUSED:
            raise InvalidState("schedule must be Paused to resume")

        self._transition(ScheduleStatus.ACTIVE)
        self.state.next_run_at = None
        self.logger.info("Schedule resumed")
        # token is not rotated here
        self._arm(self.clock())

    def delete(self) -> None:
        if self.state.status == ScheduleStatus.DELETED:
            raise InvalidState("schedule is already deleted")

        self._transition(ScheduleStatus.DELETED)
        self.state.next_run_at = None
        self.state.rotate_token()
        self.logger.info("Schedule deleted")

    def run(self, execution_token: str) -> None:
        """
        One due tick. Dispatches the workload when the next run time has been
        reached, then re-arms itself for the following run.

        Missed intervals are coalesced: after a gap the next run jumps straight
        to the first interval boundary after now instead of replaying each one.
        """
        state = self.state
        config = state.configuration
        if config is None or config.interval is None:
            raise InvalidState("schedule configuration or interval is not initialized")

        if execution_token != state.execution_token:
            self.logger.info("Cancel schedule run - execution token {} has expired", execution_token)
            return

        if state.status != ScheduleStatus.ACTIVE:
            raise InvalidState("schedule must be Active to run")

        now = self.clock()
        interval = config.interval
        if state.next_run_at is None:
            if state.last_run_at is None:
                state.next_run_at = config.start_at
            else:
                elapsed = now - state.last_run_at
                state.next_run_at = state.last_run_at + interval * (elapsed // interval + 1)

        if state.next_run_at is None or state.next_run_at <= now:
            state.next_run_at = now
            self._dispatch(config)
            state.last_run_at = state.next_run_at
            state.next_run_at = state.last_run_at + interval

        self._arm(state.next_run_at)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _dispatch(self, config: ScheduleConfiguration) -> None:
        self.logger.info(
            "Starting orchestration {} (instance {})", config.orchestration_name, config.orchestration_instance_id
        )
        self.substrate.start_workload(
            config.orchestration_name, config.orchestration_input, config.orchestration_instance_id
        )

    def _arm(self, not_before: datetime) -> None:
        self.logger.debug("Arming run at {} with token {}", not_before.isoformat(), self.state.execution_token)
        self.substrate.schedule_deferred(self.schedule_id, RUN, self.state.execution_token, not_before)

    def _check_transition(self, to: ScheduleStatus) -> None:
        if to not in allowed_transitions(self.state.status):
            raise InvalidState(f"invalid state transition: cannot go from {self.state.status.value} to {to.value}")

    def _transition(self, to: ScheduleStatus) -> None:
        self._check_transition(to)
        self.state.status = to
