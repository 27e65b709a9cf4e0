"""Post-apply readiness verification.

Polls the provider's describe operation until a kind-specific readiness
predicate holds or the deadline passes. A timeout is reported, never
written to state: the resource exists, only its readiness is unconfirmed.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from deploy_opr.state import DeploymentState, ResourceState, ResourceStatus
from manifest import ReadinessPolicy, ResourceKind
from providers.base import Provider, ProviderError, ProviderStatus

logger = logging.getLogger(__name__)

READY_STATES = {'available', 'active', 'ready', 'attached'}


class ValidationTimeoutError(Exception):
    """Readiness not confirmed before the deadline. Non-fatal."""

    def __init__(self, name: str, timeout: float, last_state: Optional[str] = None):
        self.name = name
        self.timeout = timeout
        self.last_state = last_state
        super().__init__(
            f"'{name}' not ready after {timeout:.0f}s (last state: {last_state or 'unknown'})"
        )


def _instance_ready(status: ProviderStatus) -> bool:
    return status.state == 'running' and status.health == 'passing'


def _generic_ready(status: ProviderStatus) -> bool:
    return status.state in READY_STATES


READINESS_PREDICATES: dict[str, Callable[[ProviderStatus], bool]] = {
    ResourceKind.COMPUTE_INSTANCE.value: _instance_ready,
}


def is_ready(kind: str, status: ProviderStatus) -> bool:
    return READINESS_PREDICATES.get(kind, _generic_ready)(status)


@dataclass
class ValidationResult:
    """Readiness verdict for one resource."""
    name: str
    kind: str
    ready: bool
    state: Optional[str] = None
    health: Optional[str] = None
    polls: int = 0
    elapsed: float = 0.0
    error: Optional[Exception] = None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, ValidationTimeoutError)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'ready': self.ready,
            'polls': self.polls,
            'elapsed': round(self.elapsed, 2),
        }
        if self.state is not None:
            d['state'] = self.state
        if self.health is not None:
            d['health'] = self.health
        if self.error is not None:
            d['error'] = str(self.error)
        return d


@dataclass
class Validator:
    """Checks operational readiness of provisioned resources.

    Attributes:
        provider: Provider plugin for the target
        policy: Default polling policy
        sleep: Sleep function (injected by tests)
        clock: Monotonic clock (injected by tests)
    """
    provider: Provider
    policy: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def verify(self, resource: ResourceState, policy: Optional[ReadinessPolicy] = None) -> ValidationResult:
        """Poll until the resource is ready or the kind's deadline passes."""
        policy = policy or self.policy
        if not resource.exists:
            return ValidationResult(
                name=resource.name, kind=resource.kind, ready=False,
                error=ValueError(f"'{resource.name}' is not provisioned ({resource.status.value})"),
            )

        timeout = policy.timeout_for(resource.kind)
        start = self.clock()
        deadline = start + timeout
        polls = 0
        last: Optional[ProviderStatus] = None

        logger.debug(f"[validate] {resource.name}: polling every {policy.interval}s for up to {timeout}s")
        while True:
            polls += 1
            try:
                last = self.provider.describe(resource.provider_id)
            except ProviderError as e:
                if not e.transient:
                    logger.error(f"[validate] {resource.name}: {e}")
                    return ValidationResult(
                        name=resource.name, kind=resource.kind, ready=False,
                        polls=polls, elapsed=self.clock() - start, error=e,
                    )
                logger.debug(f"[validate] {resource.name}: describe failed, retrying: {e}")
            else:
                if is_ready(resource.kind, last):
                    logger.info(f"[validate] {resource.name} ready ({last.state})")
                    return ValidationResult(
                        name=resource.name, kind=resource.kind, ready=True,
                        state=last.state, health=last.health,
                        polls=polls, elapsed=self.clock() - start,
                    )

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            self.sleep(min(policy.interval, remaining))

        error = ValidationTimeoutError(resource.name, timeout, last.state if last else None)
        logger.warning(f"[validate] {error}")
        return ValidationResult(
            name=resource.name, kind=resource.kind, ready=False,
            state=last.state if last else None, health=last.health if last else None,
            polls=polls, elapsed=self.clock() - start, error=error,
        )

    def verify_all(
        self,
        state: DeploymentState,
        names: Optional[list[str]] = None,
        max_workers: int = 4,
    ) -> list[ValidationResult]:
        """Verify every Ready resource (or the given names) concurrently."""
        targets = [
            rs for name, rs in state.resources.items()
            if (names is None or name in names) and rs.status == ResourceStatus.READY
        ]
        if not targets:
            return []
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='validate') as pool:
            return list(pool.map(self.verify, targets))
