"""
Append-only result ledger, the audit output of a reconciliation run.
"""

import os
from collections import Counter
from typing import Dict, Iterable, Iterator, Optional, Tuple

from ad_reconcile.engine.models import Result, Status


class ResultLedger:
    """Ordered, append-only collection of results for one reconciliation."""

    def __init__(self, name: str = 'reconciliation'):
        self.name = name
        self._results = []

    def record(self, result: Result) -> None:
        if not isinstance(result, Result):
            raise TypeError(f"Ledger accepts Result objects only, got {type(result).__name__}")
        self._results.append(result)

    def extend(self, results: Iterable[Result]) -> None:
        for result in results:
            self.record(result)

    def snapshot(self) -> Tuple[Result, ...]:
        """Read-only copy of the ledger contents."""
        return tuple(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[Result]:
        return iter(self.snapshot())

    def summary(self) -> Dict[str, int]:
        """Result counts per status, every status present."""
        counts = Counter(result.status for result in self._results)
        return {status.value: counts.get(status, 0) for status in Status}

    def counts_by_action(self, status: Optional[Status] = None) -> Dict[str, int]:
        counts = Counter(
            result.action.value for result in self._results
            if status is None or result.status is status
        )
        return dict(counts)

    def has_failures(self) -> bool:
        return any(result.status is Status.FAILED for result in self._results)

    def render(self) -> str:
        """Human-readable dump of the ledger."""
        summary = self.summary()
        header = (f"=== {self.name}: {len(self)} results "
                  f"({summary['success']} success, {summary['failed']} failed, "
                  f"{summary['skipped']} skipped) ===")
        return '\n'.join([header] + [result.to_line() for result in self._results])

    def write(self, path: str, append: bool = False) -> str:
        """Write the rendered ledger to a text file and return its path."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'a' if append else 'w', encoding='utf-8') as f:
            f.write(self.render())
            f.write('\n')
        return path
