"""
Best-effort compensating rollback.

The hosting service has no multi-repository transactions, so "undo" means
running the compensating action recorded for every object created: delete
a ref, close a pull request, delete a release. Actions run in the order the
objects were created. A failing action is recorded as a ``failed`` rollback
item and the remaining actions still run.
"""

import structlog

from devflow.engine.events import EventEmitter
from devflow.enums import CompensationKind, EventType
from devflow.exceptions import DevflowError, RollbackError
from devflow.gateway.base import GatewayFactory
from devflow.models.domain import CompensatingAction, OperationOutcome, RepoCoords, RollbackItem
from devflow.monitoring.metrics import WorkflowMetrics

log = structlog.get_logger(__name__)


def compensations_for(outcomes: list[OperationOutcome]) -> list[CompensatingAction]:
    """Flatten the compensating actions of outcomes, keeping creation order."""
    return [action for outcome in outcomes for action in outcome.compensations]


class RollbackExecutor:
    def __init__(self, gateway_factory: GatewayFactory, metrics: WorkflowMetrics, events: EventEmitter) -> None:
        self.gateway_factory = gateway_factory
        self.metrics = metrics
        self.events = events

    async def run(self, actions: list[CompensatingAction], reason: str = "") -> list[RollbackItem]:
        """Run compensating actions and report each one.

        Args:
            actions: Actions in creation order
            reason: Why the rollback happens (for logs and events)

        Returns:
            One rollback item per action, ``deleted`` or ``failed``
        """
        if not actions:
            return []

        log.warning("rollback_started", actions=len(actions), reason=reason)
        items: list[RollbackItem] = []

        for action in actions:
            try:
                await self._compensate(action)
            except Exception as e:
                error = RollbackError(
                    f"Failed to roll back {action.kind} {action.target} in {action.repository}: {e}",
                    repository=action.repository,
                    target=action.target,
                )
                log.error(
                    "rollback_item_failed",
                    repository=action.repository,
                    kind=str(action.kind),
                    target=action.target,
                    error=str(e),
                    exc_info=not isinstance(e, DevflowError),
                )
                items.append(
                    RollbackItem(action.repository, action.kind, action.target, status="failed", error=error.message)
                )
            else:
                self.metrics.increment("rollbacks_performed")
                log.info(
                    "rollback_item_done", repository=action.repository, kind=str(action.kind), target=action.target
                )
                items.append(RollbackItem(action.repository, action.kind, action.target, status="deleted"))

        failed = sum(1 for item in items if item.status == "failed")
        log.warning("rollback_finished", deleted=len(items) - failed, failed=failed)
        await self.events.emit(
            EventType.ROLLBACK_PERFORMED,
            reason=reason,
            deleted=len(items) - failed,
            failed=failed,
        )
        return items

    async def _compensate(self, action: CompensatingAction) -> None:
        gateway = self.gateway_factory(RepoCoords.parse(action.repository))

        if action.kind == CompensationKind.REF:
            await gateway.delete_ref(str(action.target))
        elif action.kind == CompensationKind.PULL_REQUEST:
            await gateway.close_pull_request(int(action.target))
        elif action.kind == CompensationKind.RELEASE:
            await gateway.delete_release(int(action.target))
        else:
            raise RollbackError(f"Unknown compensation kind: {action.kind}", action.repository, action.target)
