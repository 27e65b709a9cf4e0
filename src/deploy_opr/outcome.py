"""Run outcome: per-resource results and overall status."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from deploy_opr.plan import PlanAction


class RunStatus(str, Enum):
    SUCCESS = 'success'
    PARTIAL_FAILURE = 'partial_failure'
    FATAL_ERROR = 'fatal_error'


class ResourceResult(str, Enum):
    READY = 'ready'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    BLOCKED = 'blocked'      # not attempted: a dependency (or dependent, on delete) failed
    CANCELLED = 'cancelled'  # not attempted: run cancelled or timed out
    DELETED = 'deleted'


UNSETTLED_RESULTS = {ResourceResult.FAILED, ResourceResult.BLOCKED, ResourceResult.CANCELLED}


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""
    name: str
    action: PlanAction
    result: ResourceResult
    attempts: int = 0
    error: Optional[str] = None
    blocked_by: Optional[str] = None
    provider_id: Optional[str] = None
    duration: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'action': self.action.value,
            'result': self.result.value,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.error is not None:
            d['error'] = self.error
        if self.blocked_by is not None:
            d['blocked_by'] = self.blocked_by
        if self.provider_id is not None:
            d['provider_id'] = self.provider_id
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        return d


@dataclass
class RunOutcome:
    """Outcome of one engine run (apply, prune or teardown)."""
    mode: str
    deployment_id: str
    resources: dict[str, ResourceOutcome] = field(default_factory=dict)
    status: RunStatus = RunStatus.SUCCESS
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.time()

    def record(self, outcome: ResourceOutcome) -> None:
        self.resources[outcome.name] = outcome

    def merge(self, other: 'RunOutcome') -> None:
        """Fold a follow-up run (e.g. prune after apply) into this one."""
        for outcome in other.resources.values():
            self.record(outcome)
        if other.error and not self.error:
            self.error = other.error
        self.finish()

    def abort(self, error: str) -> None:
        self.error = error
        self.finish()

    def finish(self, order: Optional[list[str]] = None) -> None:
        """Compute overall status; optionally reorder results to plan order."""
        if order is not None:
            ordered = {n: self.resources[n] for n in order if n in self.resources}
            ordered.update({n: o for n, o in self.resources.items() if n not in ordered})
            self.resources = ordered
        self.finished_at = time.time()
        if self.error:
            self.status = RunStatus.FATAL_ERROR
        elif any(o.result in UNSETTLED_RESULTS for o in self.resources.values()):
            self.status = RunStatus.PARTIAL_FAILURE
        else:
            self.status = RunStatus.SUCCESS

    def names(self, result: ResourceResult) -> list[str]:
        return [n for n, o in self.resources.items() if o.result == result]

    @property
    def failed(self) -> list[str]:
        return self.names(ResourceResult.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self.names(ResourceResult.BLOCKED)

    @property
    def cancelled(self) -> list[str]:
        return self.names(ResourceResult.CANCELLED)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'mode': self.mode,
            'deployment': self.deployment_id,
            'status': self.status.value,
            'resources': [o.to_dict() for o in self.resources.values()],
        }
        if self.error is not None:
            d['error'] = self.error
        if self.duration is not None:
            d['duration_seconds'] = round(self.duration, 2)
        return d
