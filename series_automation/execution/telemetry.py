"""
Block Telemetry.

Per-block counters are a running aggregate of Progress history: after the
engine saves a Progress, the history entries that save added are tallied
per block and added to the telemetry store.

    entered          -> entered
    completed        -> completed (+ branch count for rule blocks,
                        + delivery attempt when content was delivered)
    skipped          -> skipped
    retry_scheduled  -> failed (+ delivery failure on content blocks,
    failed              + delivery attempt when the channel was called)
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

from ..domain.models import CONTENT_BLOCK_TYPES
from ..repositories.telemetry import TelemetryRepository
from ..state.models import ProgressHistoryEntry

logger = logging.getLogger(__name__)


@dataclass
class BlockTally:
    counters: Counter = field(default_factory=Counter)
    last_result: Optional[Dict[str, Any]] = None


def tally_history(entries: Iterable[ProgressHistoryEntry], block_types: Mapping[str, str]) -> Dict[str, BlockTally]:
    tallies: Dict[str, BlockTally] = {}
    for entry in entries:
        if entry.block_id is None:
            continue
        tally = tallies.setdefault(entry.block_id, BlockTally())
        counters = tally.counters

        if entry.action == "entered":
            counters["entered"] += 1
        elif entry.action == "completed":
            counters["completed"] += 1
            if entry.detail.get("branch"):
                counters[f"{entry.detail['branch']}_branch_count"] += 1
            if entry.detail.get("delivered"):
                counters["delivery_attempts"] += 1
        elif entry.action == "skipped":
            counters["skipped"] += 1
        elif entry.action in ("retry_scheduled", "failed"):
            counters["failed"] += 1
            if block_types.get(entry.block_id) in CONTENT_BLOCK_TYPES:
                counters["delivery_failures"] += 1
            if entry.detail.get("delivery_attempted"):
                counters["delivery_attempts"] += 1

        tally.last_result = {"action": entry.action, **entry.detail}
    return tallies


class BlockTelemetryRecorder:
    def __init__(self, repository: TelemetryRepository):
        self.repository = repository

    def record(self, series_id: str, entries: Iterable[ProgressHistoryEntry], block_types: Mapping[str, str]):
        """
        Adds the tallies of 'entries' to the store.
        Telemetry trails the Progress record; a failed write is logged and never undoes the step.
        """
        for block_id, tally in tally_history(entries, block_types).items():
            try:
                self.repository.increment(series_id, block_id, dict(tally.counters), tally.last_result)
            except Exception:
                logger.exception(f"Could not record telemetry for block {block_id} of series {series_id}")
