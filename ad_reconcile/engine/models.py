"""
Core data model for the reconciliation engine.

Entities, attribute mappings, plan items and results are immutable records that
flow through the pipeline (normalize -> diff -> plan -> execute -> ledger).
This module also defines the engine's exception hierarchy.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


def utc_now() -> datetime:
    """Default clock: current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Origin(Enum):
    """Which side of the reconciliation produced an entity."""
    SOURCE = 'source'
    TARGET = 'target'


class Action(Enum):
    CREATE = 'create'
    REMOVE = 'remove'
    UPDATE = 'update'


class Status(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    SKIPPED = 'skipped'


# Reasons attached to plan items and results
REASON_ABSENT_FROM_TARGET = 'absent-from-target'
REASON_ABSENT_FROM_SOURCE = 'absent-from-source'
REASON_BECAME_INACTIVE = 'became-inactive'
REASON_INACTIVE_AT_CREATION = 'inactive-at-creation'
REASON_ATTRIBUTE_DRIFT = 'attribute-drift'
REASON_PATTERN_MISMATCH = 'pattern-mismatch'
REASON_UNCHANGED = 'unchanged'
REASON_MALFORMED_RECORD = 'malformed-record'
REASON_DRY_RUN = 'dry-run'
REASON_DUPLICATE_KEY = 'duplicate-key'


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""
    pass


class MalformedRecordError(ReconcileError):
    """Raised when a raw record cannot be turned into an entity."""
    pass


class DuplicateKeyError(ReconcileError):
    """Raised in strict mode when a collection contains the same key twice."""

    def __init__(self, key: str, origin: Origin):
        self.key = key
        self.origin = origin
        super().__init__(f"Duplicate {origin.value} key: {key}")


class ChangeLimitExceededError(ReconcileError):
    """Raised when a plan holds more mutations than the configured ceiling."""

    def __init__(self, planned: int, limit: int):
        self.planned = planned
        self.limit = limit
        super().__init__(f"Planned {planned} changes exceeds max_changes={limit}; no changes applied")


class SourceFetchError(ReconcileError):
    """Raised when the source collection cannot be fetched."""
    pass


class TargetFetchError(ReconcileError):
    """Raised when the target collection cannot be fetched."""
    pass


class EmptyCollectionError(ReconcileError):
    """Raised when a side returns zero entities although some were expected."""

    def __init__(self, origin: Origin):
        self.origin = origin
        super().__init__(f"No {origin.value} entities returned; refusing to reconcile against an empty {origin.value}")


@dataclass(frozen=True)
class Entity:
    """A normalized record keyed by its comparison identity."""
    key: str
    attributes: Mapping[str, Any]
    origin: Origin
    eligible: bool = True
    entity_id: Optional[str] = None

    def __post_init__(self):
        # Freeze the attribute bag so entities stay read-only for the run
        object.__setattr__(self, 'attributes', MappingProxyType(dict(self.attributes)))

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


@dataclass(frozen=True)
class AttributeMapping:
    """Maps a source attribute onto a target attribute, guarded by a pattern."""
    source: str
    target: str
    pattern: Optional[str] = None

    @classmethod
    def from_config(cls, mapping_cfg: Dict[str, Any]) -> 'AttributeMapping':
        return cls(
            source=mapping_cfg['source'],
            target=mapping_cfg.get('target') or mapping_cfg['source'],
            pattern=mapping_cfg.get('pattern') or None
        )


@dataclass(frozen=True)
class PlanItem:
    """One proposed mutation against the target."""
    subject_key: str
    action: Action
    reason: str
    mapping: Optional[AttributeMapping] = None
    proposed_value: Any = None
    entity_id: Optional[str] = None


@dataclass(frozen=True)
class Result:
    """Outcome of one action (or decision not to act) for one subject."""
    subject_key: str
    action: Action
    status: Status
    detail: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_line(self) -> str:
        return (f"{self.timestamp.isoformat()} {self.status.value.upper():<7} "
                f"{self.action.value:<6} {self.subject_key} - {self.detail}")
