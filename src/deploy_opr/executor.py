"""Execution engine for deployment orchestration.

Walks a plan with a bounded worker pool, issuing create/update/delete calls
through the provider and committing each resource's transition to the state
store before anything that depends on it is dispatched.

Apply mode: a resource is dispatched once every dependency's committed
status is Ready. Delete mode: a resource is dispatched once every dependent
is gone. A failure blocks everything waiting on the failed resource and
nothing else.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from deploy_opr.graph import ResourceGraph
from deploy_opr.outcome import ResourceOutcome, ResourceResult, RunOutcome
from deploy_opr.plan import MODE_APPLY, Plan, PlanAction, PlanEntry, diff
from deploy_opr.state import (
    DeploymentState,
    ResourceState,
    ResourceStatus,
    StateStore,
    StateStoreError,
)
from manifest import REFERENCE_PATTERN, DeploymentSettings, ResourceSpec
from providers.base import Provider, ProviderError, ResourceNotFoundError

logger = logging.getLogger(__name__)


class ReferenceResolutionError(Exception):
    """A ${...} reference points at a resource or attribute that is not available."""


@dataclass
class _Attempts:
    count: int = 0


@dataclass
class Executor:
    """Applies and tears down resource graphs.

    Attributes:
        provider: Provider plugin for the target
        store: State store with the deployment loaded
        settings: Worker limit, retry policy and run timeout
        sleep: Sleep function (injected by tests)
        clock: Monotonic clock (injected by tests)
    """
    provider: Provider
    store: StateStore
    settings: DeploymentSettings = field(default_factory=DeploymentSettings)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        """Stop dispatching new resources; in-flight calls finish normally."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; waiting for in-flight operations")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, graph: ResourceGraph, current_state: Optional[DeploymentState] = None) -> RunOutcome:
        """Bring the deployment up to date with the graph.

        Diffs against current_state (default: the store's committed state),
        executes the plan, then prunes orphaned resources if enabled.

        Raises:
            StateStoreError: If a commit fails (the run stops dispatching first)
        """
        if current_state is None:
            current_state = self.store.snapshot()
        plan = diff(graph, current_state)
        outcome = self.execute(graph, plan)

        if self.settings.prune and not self.cancelled:
            from deploy_opr.teardown import plan_prune
            merged, prune_plan = plan_prune(graph, self.store.snapshot())
            if prune_plan.entries:
                logger.info(f"Pruning {len(prune_plan.entries)} orphaned resource(s)")
                try:
                    outcome.merge(self.execute(merged, prune_plan))
                except StateStoreError as e:
                    if e.outcome is not None:
                        outcome.merge(e.outcome)
                    outcome.abort(str(e))
                    e.outcome = outcome
                    raise
        return outcome

    def execute(self, graph: ResourceGraph, plan: Plan) -> RunOutcome:
        """Execute a precomputed plan (apply or delete mode).

        Raises:
            StateStoreError: If a commit fails
        """
        deployment_id = self.store.snapshot().deployment_id
        outcome = RunOutcome(mode=plan.mode, deployment_id=deployment_id)
        outcome.start()

        summary = ', '.join(f'{n} {a}' for a, n in plan.summary().items() if n)
        logger.info(f"Executing {plan.mode} plan for '{deployment_id}': {summary or 'empty'}")

        if plan.mode == MODE_APPLY:
            prerequisites = graph.dependencies
            worker = self._apply_resource
        else:
            prerequisites = graph.dependents
            worker = self._delete_resource

        try:
            self._run(graph, plan, prerequisites, worker, outcome)
        except StateStoreError as e:
            logger.error(f"State store failure, run aborted: {e}")
            outcome.finish(order=plan.names())
            outcome.abort(str(e))
            e.outcome = outcome
            raise

        outcome.finish(order=plan.names())
        logger.info(f"{plan.mode.capitalize()} finished: {outcome.status.value}")
        return outcome

    def _run(self, graph, plan, prerequisites, worker, outcome) -> None:
        """Dispatch loop."""
        mode = plan.mode
        deadline = None
        if self.settings.run_timeout is not None:
            deadline = self.clock() + self.settings.run_timeout

        pending: list[PlanEntry] = []
        for entry in plan.entries:
            if entry.action == PlanAction.SKIP:
                outcome.record(self._settle_skip(graph, entry, mode))
            else:
                pending.append(entry)

        planned = {e.name for e in pending}
        completed: set[str] = set()
        unsettled: set[str] = set()  # failed or blocked in this run
        running: dict[Future, PlanEntry] = {}
        fatal: Optional[StateStoreError] = None

        def gate_open(name: str) -> bool:
            if name in planned and name not in completed:
                return False
            return self._gate(name, mode)

        with ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                thread_name_prefix=f'{mode}-worker') as pool:
            while pending or running:
                if fatal is None and not self._should_stop(deadline):
                    waiting: list[PlanEntry] = []
                    for entry in pending:
                        prereqs = prerequisites(entry.name)
                        blocker = next((p for p in prereqs if p in unsettled), None)
                        if blocker is not None:
                            outcome.record(self._block(graph, entry, blocker, mode))
                            unsettled.add(entry.name)
                        elif len(running) < self.settings.max_workers and all(gate_open(p) for p in prereqs):
                            running[pool.submit(worker, graph, entry)] = entry
                        else:
                            waiting.append(entry)
                    pending = waiting

                if not running:
                    if pending and fatal is None and not self.cancelled:
                        # Nothing in flight and nothing eligible: prerequisites can never settle
                        for entry in pending:
                            prereqs = prerequisites(entry.name)
                            stuck = next((p for p in prereqs if not gate_open(p)), prereqs[0] if prereqs else entry.name)
                            outcome.record(self._block(graph, entry, stuck, mode))
                            unsettled.add(entry.name)
                        pending = []
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    entry = running.pop(future)
                    try:
                        result = future.result()
                    except StateStoreError as e:
                        fatal = fatal or e
                        outcome.record(ResourceOutcome(
                            name=entry.name, action=entry.action, result=ResourceResult.FAILED,
                            error=f"state store: {e}",
                        ))
                        continue
                    outcome.record(result)
                    if result.result in (ResourceResult.READY, ResourceResult.DELETED):
                        completed.add(entry.name)
                    else:
                        unsettled.add(entry.name)

        for entry in pending:
            outcome.record(ResourceOutcome(
                name=entry.name, action=entry.action, result=ResourceResult.CANCELLED,
                error='run cancelled before dispatch',
            ))
        if fatal is not None:
            raise fatal

    def _should_stop(self, deadline: Optional[float]) -> bool:
        if deadline is not None and not self.cancelled and self.clock() >= deadline:
            logger.warning("Run timeout reached; no new resources will be started")
            self._cancel.set()
        return self.cancelled

    def _gate(self, name: str, mode: str) -> bool:
        """Committed-state check for a prerequisite."""
        rs = self.store.get(name)
        if mode == MODE_APPLY:
            return rs is not None and rs.status == ResourceStatus.READY
        return rs is None or not rs.exists

    def _settle_skip(self, graph: ResourceGraph, entry: PlanEntry, mode: str) -> ResourceOutcome:
        """Record a skipped resource; on delete, close out never-provisioned entries."""
        rs = self.store.get(entry.name)
        if mode != MODE_APPLY and rs is not None and rs.status != ResourceStatus.DELETED:
            rs.mark_deleted(attempts=0)
            self.store.commit(entry.name, rs)
        return ResourceOutcome(
            name=entry.name, action=entry.action, result=ResourceResult.SKIPPED,
            provider_id=rs.provider_id if rs is not None else None,
        )

    def _block(self, graph: ResourceGraph, entry: PlanEntry, blocker: str, mode: str) -> ResourceOutcome:
        rs = self.store.get(entry.name)
        if rs is None and mode == MODE_APPLY:
            node = graph.get_node(entry.name)
            rs = ResourceState(name=entry.name, kind=node.kind.value, dependencies=list(node.dependencies))
        if rs is not None:
            rs.block(blocker)
            self.store.commit(entry.name, rs)
        logger.warning(f"[{entry.action.value}] {entry.name} blocked by '{blocker}'")
        return ResourceOutcome(
            name=entry.name, action=entry.action, result=ResourceResult.BLOCKED,
            error=f"blocked by '{blocker}'", blocked_by=blocker,
        )

    def _apply_resource(self, graph: ResourceGraph, entry: PlanEntry) -> ResourceOutcome:
        """Create or update one resource (runs on a worker thread)."""
        node = graph.get_node(entry.name)
        spec = node.spec
        start = self.clock()

        rs = self.store.get(spec.name) or ResourceState(name=spec.name)
        rs.kind = spec.kind.value
        rs.dependencies = list(node.dependencies)
        rs.begin_create()
        self.store.commit(spec.name, rs)

        logger.info(f"[{entry.action.value}] {spec.name} ({spec.kind.value})")
        attempts = _Attempts()
        try:
            params = self._resolve_params(spec)
            if entry.action == PlanAction.CREATE or rs.provider_id is None:
                provider_id, status = self._with_retry(
                    spec.name, lambda: self.provider.create(spec.kind.value, params), attempts)
            else:
                provider_id = rs.provider_id
                try:
                    status = self._with_retry(
                        spec.name, lambda: self.provider.update(provider_id, params), attempts)
                except ResourceNotFoundError:
                    logger.warning(f"[update] {spec.name}: {provider_id} no longer exists, recreating")
                    provider_id, status = self._with_retry(
                        spec.name, lambda: self.provider.create(spec.kind.value, params), attempts)
        except (ProviderError, ReferenceResolutionError) as e:
            rs.fail(str(e), attempts=attempts.count)
            self.store.commit(spec.name, rs)
            logger.error(f"[{entry.action.value}] {spec.name} failed after {attempts.count} attempt(s): {e}")
            return ResourceOutcome(
                name=spec.name, action=entry.action, result=ResourceResult.FAILED,
                attempts=attempts.count, error=str(e), provider_id=rs.provider_id,
                duration=self.clock() - start,
            )

        rs.mark_ready(provider_id, node.effective_hash, status.attributes, attempts=attempts.count)
        self.store.commit(spec.name, rs)
        logger.info(f"[{entry.action.value}] {spec.name} ready ({provider_id})")
        return ResourceOutcome(
            name=spec.name, action=entry.action, result=ResourceResult.READY,
            attempts=attempts.count, provider_id=provider_id, duration=self.clock() - start,
        )

    def _delete_resource(self, graph: ResourceGraph, entry: PlanEntry) -> ResourceOutcome:
        """Delete one resource (runs on a worker thread)."""
        start = self.clock()
        rs = self.store.get(entry.name)
        if rs is None or not rs.exists:
            return ResourceOutcome(name=entry.name, action=entry.action, result=ResourceResult.SKIPPED)

        provider_id = rs.provider_id
        rs.begin_delete()
        self.store.commit(entry.name, rs)

        logger.info(f"[delete] {entry.name} ({provider_id})")
        attempts = _Attempts()
        try:
            self._with_retry(entry.name, lambda: self.provider.delete(provider_id), attempts)
        except ResourceNotFoundError:
            logger.info(f"[delete] {entry.name}: {provider_id} already gone")
        except ProviderError as e:
            rs.fail(str(e), attempts=attempts.count)
            self.store.commit(entry.name, rs)
            logger.error(f"[delete] {entry.name} failed after {attempts.count} attempt(s): {e}")
            return ResourceOutcome(
                name=entry.name, action=entry.action, result=ResourceResult.FAILED,
                attempts=attempts.count, error=str(e), provider_id=provider_id,
                duration=self.clock() - start,
            )

        rs.mark_deleted(attempts=attempts.count)
        self.store.commit(entry.name, rs)
        logger.info(f"[delete] {entry.name} deleted")
        return ResourceOutcome(
            name=entry.name, action=entry.action, result=ResourceResult.DELETED,
            attempts=attempts.count, provider_id=provider_id, duration=self.clock() - start,
        )

    def _with_retry(self, name: str, call: Callable[[], Any], attempts: _Attempts) -> Any:
        """Invoke a provider call, retrying transient errors with backoff.

        Errors that are not ProviderErrors are treated as unclassified
        provider errors (transient).
        """
        policy = self.settings.retry
        while True:
            attempts.count += 1
            try:
                return call()
            except ProviderError as e:
                error = e
            except Exception as e:  # unclassified plugin failure
                error = ProviderError(f"{type(e).__name__}: {e}")
                error.__cause__ = e

            if not error.transient or attempts.count >= policy.max_attempts:
                raise error
            delay = policy.delay(attempts.count, getattr(error, 'retry_after', None))
            logger.warning(
                f"{name}: transient error (attempt {attempts.count}/{policy.max_attempts}), "
                f"retrying in {delay:.1f}s: {error}"
            )
            self.sleep(delay)

    def _resolve_params(self, spec: ResourceSpec) -> dict:
        """Substitute ${name}, ${name.id} and ${name.attr} from committed state."""
        def lookup(ref: str, attr: Optional[str]) -> Any:
            rs = self.store.get(ref)
            if rs is None or rs.provider_id is None:
                raise ReferenceResolutionError(f"'{spec.name}' references '{ref}', which has no provider id")
            if attr is None or attr == 'id':
                return rs.provider_id
            if attr not in rs.outputs:
                raise ReferenceResolutionError(
                    f"'{spec.name}' references '{ref}.{attr}', but '{ref}' has no output '{attr}'"
                )
            return rs.outputs[attr]

        def resolve(value: Any) -> Any:
            if isinstance(value, str):
                whole = REFERENCE_PATTERN.fullmatch(value)
                if whole:
                    return lookup(whole.group(1), whole.group(2))
                return REFERENCE_PATTERN.sub(lambda m: str(lookup(m.group(1), m.group(2))), value)
            if isinstance(value, dict):
                return {k: resolve(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [resolve(v) for v in value]
            return value

        return resolve(spec.params)
