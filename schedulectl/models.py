from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidState
from .utils import as_utc, new_token


class ScheduleStatus(str, Enum):
    UNINITIALIZED = "Uninitialized"
    ACTIVE = "Active"
    PAUSED = "Paused"
    DELETED = "Deleted"


def _check_interval(value: Optional[timedelta]) -> Optional[timedelta]:
    if value is None:
        return value
    if value <= timedelta(0):
        raise ValueError("interval must be positive")
    if value < timedelta(seconds=1):
        raise ValueError("interval must be at least 1 second")
    return value


def _check_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


class ScheduleConfiguration(BaseModel):
    # camelCase aliases match the inbound payload; assignments are validated too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, validate_assignment=True)

    orchestration_name: str
    schedule_id: str = Field(default_factory=new_token)
    orchestration_input: Optional[str] = None
    orchestration_instance_id: Optional[str] = Field(default_factory=new_token)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    interval: Optional[timedelta] = None
    cron_expression: Optional[str] = None
    max_occurrence: int = 0
    start_immediately_if_late: Optional[bool] = None
    version: int = 1

    @field_validator("orchestration_name")
    @classmethod
    def _name_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("orchestration name is required")
        return v

    @field_validator("schedule_id", mode="before")
    @classmethod
    def _schedule_id(cls, v):
        if v is None:
            return new_token()
        if isinstance(v, str) and not v.strip():
            raise ValueError("schedule id must not be empty")
        return v

    @field_validator("orchestration_instance_id", mode="before")
    @classmethod
    def _instance_id(cls, v):
        return v or new_token()

    @field_validator("interval")
    @classmethod
    def _interval(cls, v):
        return _check_interval(v)

    @field_validator("start_at", "end_at")
    @classmethod
    def _timestamps(cls, v):
        return _check_timestamp(v)


class ScheduleUpdate(BaseModel):
    """
    Partial configuration for Update. Unset, empty and zero values all mean
    "leave the stored field alone". schedule_id only addresses the schedule.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    schedule_id: Optional[str] = None
    orchestration_name: Optional[str] = None
    orchestration_input: Optional[str] = None
    orchestration_instance_id: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    interval: Optional[timedelta] = None
    cron_expression: Optional[str] = None
    max_occurrence: int = 0
    start_immediately_if_late: Optional[bool] = None

    @field_validator("orchestration_name")
    @classmethod
    def _name_not_blank(cls, v: Optional[str]) -> Optional[str]:
        # "" means unset; whitespace only is an invalid name
        if v and not v.strip():
            raise ValueError("orchestration name must not be blank")
        return v

    @field_validator("interval")
    @classmethod
    def _interval(cls, v):
        return _check_interval(v)

    @field_validator("start_at", "end_at")
    @classmethod
    def _timestamps(cls, v):
        return _check_timestamp(v)


# merged in this order; schedule_id is the schedule's key and never merged
MERGED_FIELDS = (
    "orchestration_name",
    "orchestration_input",
    "orchestration_instance_id",
    "start_at",
    "end_at",
    "interval",
    "cron_expression",
    "max_occurrence",
    "start_immediately_if_late",
)

# fields whose change invalidates the computed next run
TIMING_FIELDS = frozenset({"start_at", "interval"})


def _is_unset(name: str, value) -> bool:
    if value is None or value == "":
        return True
    return name == "max_occurrence" and value == 0


class ScheduleState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: ScheduleStatus = ScheduleStatus.UNINITIALIZED
    execution_token: str = Field(default_factory=new_token)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    configuration: Optional[ScheduleConfiguration] = None

    def merge_config(self, update: ScheduleUpdate) -> Set[str]:
        """Copy every set field of `update` onto the configuration; returns the changed field names."""
        if self.configuration is None:
            raise InvalidState("schedule configuration is not initialized")
        config = self.configuration
        updates = {}
        for name in MERGED_FIELDS:
            value = getattr(update, name)
            if not _is_unset(name, value):
                updates[name] = value
        # validate the merged result before touching the stored configuration
        ScheduleConfiguration.model_validate({**config.model_dump(), **updates})
        config.version += 1
        for name, value in updates.items():
            setattr(config, name, value)
        return set(updates)

    def rotate_token(self) -> None:
        # any run still carrying the old token becomes a no-op on arrival
        self.execution_token = new_token()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "ScheduleState":
        return cls.model_validate_json(raw)


DEFAULTS = {
    "max_retries": 3,
    "backoff_base": 2.0,
    "poll_interval": 1.0,
    "log_level": "INFO",
}
