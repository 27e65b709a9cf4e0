"""Teardown planning.

Deletion runs dependents before dependencies. A resource whose delete
fails keeps its own dependencies alive; unrelated branches still go.
"""

import logging
from typing import TYPE_CHECKING, Optional

from deploy_opr.graph import ResourceGraph, merge_orphans
from deploy_opr.outcome import RunOutcome
from deploy_opr.plan import MODE_DELETE, Plan, PlanAction, PlanEntry
from deploy_opr.state import DeploymentState, ResourceStatus

if TYPE_CHECKING:
    from deploy_opr.executor import Executor

logger = logging.getLogger(__name__)


def _teardown_entry(graph: ResourceGraph, name: str, state: DeploymentState) -> PlanEntry:
    spec = graph.get_node(name).spec
    rs = state.get(name)
    if rs is None:
        return PlanEntry(spec=spec, action=PlanAction.SKIP, reason='not provisioned')
    if rs.status == ResourceStatus.DELETED:
        return PlanEntry(spec=spec, action=PlanAction.SKIP, reason='already deleted')
    if rs.provider_id is None:
        return PlanEntry(spec=spec, action=PlanAction.SKIP, reason=f'no provider id ({rs.status.value})')
    return PlanEntry(spec=spec, action=PlanAction.DELETE, reason=f'status {rs.status.value}')


def plan_teardown(graph: ResourceGraph, state: DeploymentState) -> Plan:
    """Delete plan for every resource in the graph, dependents first."""
    plan = Plan(mode=MODE_DELETE)
    for name in graph.reverse_order():
        plan.entries.append(_teardown_entry(graph, name, state))
    logger.debug(f"Teardown plan: {plan.summary()}")
    return plan


def plan_prune(graph: ResourceGraph, state: DeploymentState) -> tuple[ResourceGraph, Plan]:
    """Delete plan for resources recorded in state but no longer in the graph.

    Returns the graph extended with the orphans (needed to order their
    deletion) and a plan that only touches orphans.
    """
    merged = merge_orphans(graph, state)
    plan = Plan(mode=MODE_DELETE)
    for name in merged.reverse_order():
        if name in graph:
            continue
        entry = _teardown_entry(merged, name, state)
        if entry.action == PlanAction.DELETE:
            plan.entries.append(entry)
    return merged, plan


def teardown(
    executor: 'Executor',
    graph: Optional[ResourceGraph],
    include_orphans: bool = True,
) -> tuple[Plan, RunOutcome]:
    """Tear down a deployment.

    Args:
        executor: Engine bound to the deployment's store and provider
        graph: Graph from the manifest (None to tear down from state alone)
        include_orphans: Also delete resources recorded in state that the
            manifest no longer declares

    Raises:
        StateStoreError: If a commit fails
    """
    state = executor.store.snapshot()
    if graph is None or include_orphans:
        graph = merge_orphans(graph, state)
    plan = plan_teardown(graph, state)
    return plan, executor.execute(graph, plan)
