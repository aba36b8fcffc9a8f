"""
Plan executor.

Applies plan items one at a time through an injected mutator (a target API
module), honoring dry-run mode and the max-changes circuit breaker.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ad_reconcile.engine.models import (
    Action, ChangeLimitExceededError, PlanItem, Result, Status, REASON_DRY_RUN,
    utc_now
)
from ad_reconcile.engine.planner import count_mutations

logger = logging.getLogger(__name__)


class Executor:
    """
    Executes plan items against a target.

    The mutator must provide ``create_entity(key, attributes)`` returning the
    new id, ``remove_entity(entity_id)`` and
    ``update_entity(entity_id, attribute, value)``. Errors are signalled by
    raising.
    """

    def __init__(self, mutator, clock: Callable[[], datetime] = utc_now):
        self.mutator = mutator
        self.clock = clock

    def execute(self, plan_items: Sequence[PlanItem], dry_run: bool = False,
                max_changes: Optional[int] = None) -> List[Result]:
        """
        Apply a plan.

        Args:
            plan_items: Items produced by the planner
            dry_run: Record every item as skipped without calling the mutator
            max_changes: Ceiling on mutating items for this run

        Returns:
            One result per plan item, in plan order

        Raises:
            ChangeLimitExceededError: If the plan exceeds max_changes; raised
                before any item is applied
        """
        planned = count_mutations(plan_items)
        if max_changes is not None and planned > max_changes:
            logger.error(f"Circuit breaker tripped: {planned} planned changes, limit {max_changes}")
            raise ChangeLimitExceededError(planned, max_changes)

        if dry_run:
            logger.info(f"Dry run: {planned} changes planned, none applied")

        results = []
        for item in plan_items:
            if dry_run:
                logger.info(f"[dry-run] would {item.action.value} {item.subject_key} ({item.reason})")
                results.append(self._result(item, Status.SKIPPED, REASON_DRY_RUN))
                continue
            results.append(self._apply(item))

        return results

    def _apply(self, item: PlanItem) -> Result:
        """Apply one item; failures are recorded, never propagated."""
        if item.action in (Action.REMOVE, Action.UPDATE) and not item.entity_id:
            logger.error(f"Cannot {item.action.value} {item.subject_key}: no target id")
            return self._result(item, Status.FAILED, f"{item.reason}: target id unknown")

        try:
            if item.action is Action.CREATE:
                new_id = self.mutator.create_entity(item.subject_key, dict(item.proposed_value or {}))
                detail = f"{item.reason}: created id={new_id}"
            elif item.action is Action.REMOVE:
                self.mutator.remove_entity(item.entity_id)
                detail = item.reason
            else:
                self.mutator.update_entity(item.entity_id, item.mapping.target, item.proposed_value)
                detail = f"{item.reason}: {item.mapping.target}={item.proposed_value}"
        except Exception as e:
            logger.error(f"Failed to {item.action.value} {item.subject_key}: {e}")
            return self._result(item, Status.FAILED, f"{type(e).__name__}: {e}")

        logger.info(f"{item.action.value.capitalize()} {item.subject_key}: {detail}")
        return self._result(item, Status.SUCCESS, detail)

    def _result(self, item: PlanItem, status: Status, detail: str) -> Result:
        return Result(item.subject_key, item.action, status, detail, self.clock())
