"""
Reconciliation engine: normalizer, validator, differ, planner, executor and ledger.
"""

from ad_reconcile.engine.differ import DiffResult, diff
from ad_reconcile.engine.executor import Executor
from ad_reconcile.engine.ledger import ResultLedger
from ad_reconcile.engine.models import (
    Action, AttributeMapping, ChangeLimitExceededError, DuplicateKeyError,
    EmptyCollectionError, Entity, MalformedRecordError, Origin, PlanItem,
    ReconcileError, Result, SourceFetchError, Status, TargetFetchError, utc_now
)
from ad_reconcile.engine.normalizer import EntityNormalizer
from ad_reconcile.engine.planner import PlanOutcome, plan
from ad_reconcile.engine.validator import is_active, is_valid_email, matches_pattern
