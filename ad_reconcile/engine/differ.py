"""
Three-way classification of source and target entities by key.
"""

import logging
from typing import Dict, Iterable, List, NamedTuple, Tuple

from ad_reconcile.engine.models import DuplicateKeyError, Entity, Origin

logger = logging.getLogger(__name__)


class DiffResult(NamedTuple):
    to_create: List[Entity]
    to_remove: List[Entity]
    to_update: List[Tuple[Entity, Entity]]
    superseded: List[Entity]


def index_by_key(entities: Iterable[Entity], origin: Origin,
                 strict: bool = False) -> Tuple[Dict[str, Entity], List[Entity]]:
    """
    Build a key -> entity lookup.

    On duplicate keys the last entity wins and the earlier ones are returned
    as superseded, unless ``strict`` is set, in which case DuplicateKeyError
    is raised.
    """
    index = {}
    superseded = []
    for entity in entities:
        if entity.key in index:
            if strict:
                raise DuplicateKeyError(entity.key, origin)
            logger.warning(f"Duplicate {origin.value} key '{entity.key}', keeping last occurrence")
            superseded.append(index[entity.key])
        index[entity.key] = entity
    return index, superseded


def diff(source: Iterable[Entity], target: Iterable[Entity],
         strict: bool = False) -> DiffResult:
    """
    Classify entities into creates, removes and matched pairs.

    Superseded target duplicates whose key is absent from the source are
    removed along with the surviving one, so the target converges.

    Args:
        source: Authoritative entities
        target: Entities currently present in the downstream system
        strict: Raise DuplicateKeyError on duplicate keys

    Returns:
        DiffResult with source-only, target-only and (source, target) pairs,
        plus every entity displaced by a duplicate key
    """
    source_index, source_superseded = index_by_key(source, Origin.SOURCE, strict)
    target_index, target_superseded = index_by_key(target, Origin.TARGET, strict)

    to_create = []
    to_update = []
    for key, source_entity in source_index.items():
        target_entity = target_index.get(key)
        if target_entity is None:
            to_create.append(source_entity)
        else:
            to_update.append((source_entity, target_entity))

    to_remove = [entity for key, entity in target_index.items() if key not in source_index]
    to_remove.extend(entity for entity in target_superseded if entity.key not in source_index)

    logger.debug(f"Diff: {len(to_create)} to create, {len(to_remove)} to remove, "
                 f"{len(to_update)} to compare")
    return DiffResult(to_create, to_remove, to_update, source_superseded + target_superseded)
