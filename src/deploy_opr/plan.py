"""Plan computation: diff the resource graph against committed state.

The plan is computed before any provider call, so a dry run shows exactly
what an apply would do.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from deploy_opr.graph import ResourceGraph
from deploy_opr.state import DeploymentState, ResourceStatus
from manifest import ResourceSpec

logger = logging.getLogger(__name__)

MODE_APPLY = 'apply'
MODE_DELETE = 'delete'


class PlanAction(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    SKIP = 'skip'
    DELETE = 'delete'


@dataclass(frozen=True)
class PlanEntry:
    """One resource and what the engine will do with it."""
    spec: ResourceSpec
    action: PlanAction
    reason: str = ''

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass
class Plan:
    """Ordered plan entries.

    Attributes:
        mode: 'apply' (dependencies first) or 'delete' (dependents first)
        entries: Entries in execution order
    """
    mode: str
    entries: list[PlanEntry] = field(default_factory=list)

    def get(self, name: str) -> Optional[PlanEntry]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def names(self, action: Optional[PlanAction] = None) -> list[str]:
        return [e.name for e in self.entries if action is None or e.action == action]

    def actions(self) -> dict[str, PlanAction]:
        return {e.name: e.action for e in self.entries}

    @property
    def has_changes(self) -> bool:
        return any(e.action != PlanAction.SKIP for e in self.entries)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in PlanAction}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'mode': self.mode,
            'summary': self.summary(),
            'entries': [
                {
                    'name': e.name,
                    'kind': e.spec.kind.value,
                    'action': e.action.value,
                    'reason': e.reason,
                }
                for e in self.entries
            ],
        }


def diff(graph: ResourceGraph, state: DeploymentState) -> Plan:
    """Compute the apply plan.

    Per resource, in topological order:
    - nothing provisioned (no state, pending, deleted, no provider id) → create
    - effective hash differs from the last applied one → update
    - not ready (failed or interrupted transition) → update
    - otherwise → skip
    """
    plan = Plan(mode=MODE_APPLY)
    for node in graph:
        rs = state.get(node.name)
        if rs is None:
            action, reason = PlanAction.CREATE, 'new resource'
        elif rs.provider_id is None or rs.status in (ResourceStatus.PENDING, ResourceStatus.DELETED):
            action, reason = PlanAction.CREATE, f'not provisioned ({rs.status.value})'
        elif rs.spec_hash != node.effective_hash:
            action, reason = PlanAction.UPDATE, 'spec changed'
        elif rs.status != ResourceStatus.READY:
            action, reason = PlanAction.UPDATE, f'status {rs.status.value}'
        else:
            action, reason = PlanAction.SKIP, 'unchanged'
        plan.entries.append(PlanEntry(spec=node.spec, action=action, reason=reason))

    logger.debug(f"Apply plan: {plan.summary()}")
    return plan
