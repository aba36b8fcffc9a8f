"""
Action planner.

Converts the differ's classification into an ordered list of PlanItems and the
results for every decision not to act (inactive accounts, pattern mismatches,
unchanged attributes).

Precedence per entity:
    1. source-only and inactive   -> skipped (inactive-at-creation)
       source-only and active     -> CREATE
    2. matched, source inactive   -> REMOVE (became-inactive), no attribute sync
    3. matched, source active     -> one UPDATE per drifted mapping whose source
                                     value passes the mapping pattern
    4. target-only                -> REMOVE (absent-from-source)

Entities displaced by a duplicate key are recorded as skipped
(duplicate-key: superseded).
"""

import logging
from datetime import datetime
from typing import Callable, List, NamedTuple, Sequence, Tuple

from ad_reconcile.engine.models import (
    Action, AttributeMapping, Entity, PlanItem, Result, Status,
    REASON_ABSENT_FROM_SOURCE, REASON_ABSENT_FROM_TARGET, REASON_ATTRIBUTE_DRIFT,
    REASON_BECAME_INACTIVE, REASON_DUPLICATE_KEY, REASON_INACTIVE_AT_CREATION,
    REASON_PATTERN_MISMATCH, REASON_UNCHANGED, Origin, utc_now
)
from ad_reconcile.engine.validator import is_active, matches_pattern, normalize_value

logger = logging.getLogger(__name__)

MUTATING_ACTIONS = (Action.CREATE, Action.REMOVE, Action.UPDATE)


class PlanOutcome(NamedTuple):
    items: List[PlanItem]
    results: List[Result]


def plan(to_create: Sequence[Entity], to_remove: Sequence[Entity],
         to_update: Sequence[Tuple[Entity, Entity]],
         mappings: Sequence[AttributeMapping],
         superseded: Sequence[Entity] = (),
         clock: Callable[[], datetime] = utc_now) -> PlanOutcome:
    """
    Build the plan for one reconciliation.

    Args:
        to_create: Source entities missing from the target
        to_remove: Target entities missing from the source
        to_update: Matched (source, target) pairs
        mappings: Attribute mappings declared for this run
        superseded: Entities displaced by a later duplicate of their key
        clock: Time source for activity checks and result timestamps

    Returns:
        PlanOutcome with the plan items and the pre-execution results
    """
    now = clock()
    items = []
    results = []

    def skip(key: str, action: Action, detail: str):
        results.append(Result(key, action, Status.SKIPPED, detail, now))

    for entity in to_create:
        if not is_active(entity, now):
            logger.info(f"Not creating inactive entity {entity.key}")
            skip(entity.key, Action.CREATE, REASON_INACTIVE_AT_CREATION)
            continue

        payload = {}
        for mapping in mappings:
            value = entity.get(mapping.source)
            if value is None:
                continue
            if not matches_pattern(value, mapping.pattern):
                logger.warning(f"Omitting {mapping.target} for new entity {entity.key}: "
                               f"value does not match pattern")
                skip(entity.key, Action.CREATE, f"{REASON_PATTERN_MISMATCH}: {mapping.target}")
                continue
            payload[mapping.target] = value

        items.append(PlanItem(
            subject_key=entity.key,
            action=Action.CREATE,
            reason=REASON_ABSENT_FROM_TARGET,
            proposed_value=payload
        ))

    for source_entity, target_entity in to_update:
        key = source_entity.key

        if not is_active(source_entity, now):
            # Deprovisioning wins over attribute sync for the same entity
            items.append(PlanItem(
                subject_key=key,
                action=Action.REMOVE,
                reason=REASON_BECAME_INACTIVE,
                entity_id=target_entity.entity_id
            ))
            continue

        if not mappings:
            skip(key, Action.UPDATE, REASON_UNCHANGED)
            continue

        for mapping in mappings:
            proposed = source_entity.get(mapping.source)
            current = target_entity.get(mapping.target)

            if normalize_value(proposed) == normalize_value(current):
                skip(key, Action.UPDATE, f"{REASON_UNCHANGED}: {mapping.target}")
                continue

            if not matches_pattern(proposed, mapping.pattern):
                logger.warning(f"Not updating {mapping.target} for {key}: "
                               f"source value does not match pattern")
                skip(key, Action.UPDATE, f"{REASON_PATTERN_MISMATCH}: {mapping.target}")
                continue

            items.append(PlanItem(
                subject_key=key,
                action=Action.UPDATE,
                reason=REASON_ATTRIBUTE_DRIFT,
                mapping=mapping,
                proposed_value=proposed,
                entity_id=target_entity.entity_id
            ))

    for entity in to_remove:
        items.append(PlanItem(
            subject_key=entity.key,
            action=Action.REMOVE,
            reason=REASON_ABSENT_FROM_SOURCE,
            entity_id=entity.entity_id
        ))

    matched = {source_entity.key for source_entity, _ in to_update}
    for entity in superseded:
        if entity.key in matched:
            action = Action.UPDATE
        else:
            action = Action.CREATE if entity.origin is Origin.SOURCE else Action.REMOVE
        skip(entity.key, action, f"{REASON_DUPLICATE_KEY}: superseded")

    logger.info(f"Planned {len(items)} changes, {len(results)} skipped decisions")
    return PlanOutcome(items, results)


def count_mutations(items: Sequence[PlanItem]) -> int:
    """Number of plan items that would change the target."""
    return sum(1 for item in items if item.action in MUTATING_ACTIONS)
