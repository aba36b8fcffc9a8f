"""
Reconciliation pipeline.

Runs one linear pass for a single source/target pairing:
fetch -> normalize -> diff -> plan -> execute, appending every stage's results
to a fresh ResultLedger.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ad_reconcile.engine.differ import diff
from ad_reconcile.engine.executor import Executor
from ad_reconcile.engine.ledger import ResultLedger
from ad_reconcile.engine.models import (
    AttributeMapping, EmptyCollectionError, Origin, SourceFetchError,
    TargetFetchError, utc_now
)
from ad_reconcile.engine.normalizer import EntityNormalizer
from ad_reconcile.engine.planner import plan
from ad_reconcile.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Reconciles one target against the directory.

    The target object supplies ``fetch_entities()`` and is also the mutator
    handed to the Executor.
    """

    def __init__(self, name: str,
                 fetch_source: Callable[[], List[Dict[str, Any]]],
                 target,
                 source_normalizer: EntityNormalizer,
                 target_normalizer: EntityNormalizer,
                 mappings: Sequence[AttributeMapping] = (),
                 strict_keys: bool = False,
                 require_source: bool = True,
                 require_target: bool = False,
                 clock: Callable[[], datetime] = utc_now):
        self.name = name
        self.fetch_source = fetch_source
        self.target = target
        self.source_normalizer = source_normalizer
        self.target_normalizer = target_normalizer
        self.mappings = tuple(mappings)
        self.strict_keys = strict_keys
        self.require_source = require_source
        self.require_target = require_target
        self.clock = clock

    def run(self, dry_run: bool = False, max_changes: Optional[int] = None) -> ResultLedger:
        """
        Run the reconciliation.

        Returns:
            Ledger holding every result of this run

        Raises:
            SourceFetchError, TargetFetchError: If a bulk fetch fails
            EmptyCollectionError: If a required side returned nothing
            DuplicateKeyError: On duplicate keys in strict mode
            ChangeLimitExceededError: If the plan exceeds max_changes
        """
        ledger = ResultLedger(self.name)
        logger.info(f"Reconciling {self.name} (dry_run={dry_run}, max_changes={max_changes})")

        source_records = self._fetch_source()
        target_records = self._fetch_target()

        source, source_dropped = self.source_normalizer.normalize_all(source_records, Origin.SOURCE)
        target, target_dropped = self.target_normalizer.normalize_all(target_records, Origin.TARGET)
        self._record(ledger, source_dropped + target_dropped)

        if self.require_source and not source:
            raise EmptyCollectionError(Origin.SOURCE)
        if self.require_target and not target:
            raise EmptyCollectionError(Origin.TARGET)

        classified = diff(source, target, strict=self.strict_keys)

        outcome = plan(classified.to_create, classified.to_remove, classified.to_update,
                       self.mappings, superseded=classified.superseded, clock=self.clock)
        self._record(ledger, outcome.results)

        executor = Executor(self.target, clock=self.clock)
        self._record(ledger, executor.execute(outcome.items, dry_run=dry_run, max_changes=max_changes))

        logger.info(f"Reconciliation {self.name} finished: {ledger.summary()}")
        return ledger

    def _fetch_source(self) -> List[Dict[str, Any]]:
        try:
            records = list(self.fetch_source())
        except Exception as e:
            raise SourceFetchError(f"Failed to fetch source entities for {self.name}: {e}") from e
        logger.info(f"Fetched {len(records)} source records for {self.name}")
        return records

    def _fetch_target(self) -> List[Dict[str, Any]]:
        try:
            records = list(self.target.fetch_entities())
        except Exception as e:
            raise TargetFetchError(f"Failed to fetch target entities for {self.name}: {e}") from e
        logger.info(f"Fetched {len(records)} target records for {self.name}")
        return records

    def _record(self, ledger: ResultLedger, results) -> None:
        for result in results:
            ledger.record(result)
            audit_logger.log_result(self.name, result)
