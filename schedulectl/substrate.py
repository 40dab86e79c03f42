from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol


class Substrate(Protocol):
    """
    What a schedule needs from the environment that hosts it.

    The host must run operations for one schedule id one at a time and persist
    the state after each operation. Deferred signals may be delivered more than
    once; workload launches must be idempotent per instance id.
    """

    def schedule_deferred(self, schedule_id: str, operation: str, payload: Optional[str], not_before: datetime) -> None:
        ...

    def start_workload(self, name: str, input: Optional[str], instance_id: Optional[str]) -> None:
        ...


@dataclass
class DeferredSignal:
    schedule_id: str
    operation: str
    payload: Optional[str]
    not_before: datetime


@dataclass
class WorkloadLaunch:
    name: str
    input: Optional[str]
    instance_id: Optional[str]


@dataclass
class OperationBatch:
    """Collects the side effects of one operation so the host can persist them with the state."""

    signals: List[DeferredSignal] = field(default_factory=list)
    launches: List[WorkloadLaunch] = field(default_factory=list)

    def schedule_deferred(self, schedule_id: str, operation: str, payload: Optional[str], not_before: datetime) -> None:
        self.signals.append(DeferredSignal(schedule_id, operation, payload, not_before))

    def start_workload(self, name: str, input: Optional[str], instance_id: Optional[str]) -> None:
        self.launches.append(WorkloadLaunch(name, input, instance_id))

    def clear(self) -> None:
        self.signals.clear()
        self.launches.clear()
