"""
Suspension/Resume Manager.

Two ways a suspended Progress wakes up:
- an event arrives whose name exactly matches the Progress' event wait;
- the backstop sweep finds its 'wait_until' has elapsed (duration and date
  waits, and blocks re-armed for a retry).
Both hand the row to the SeriesEngine, which continues from where it stopped.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..execution.engine import SeriesEngine
from ..repositories.progress import ProgressRepository
from ..repositories.series import SeriesRepository
from ..state.models import TriggerContext, utc_now

logger = logging.getLogger(__name__)

# Series in these states can still hold waiting rows; paused only stops new entries, archived freezes them
SWEEPABLE_SERIES_STATUSES = ("active", "paused")


@dataclass
class ResumeResult:
    matched: int = 0
    resumed: int = 0
    reason: Optional[str] = None


@dataclass
class SweepResult:
    processed: int = 0
    scanned: int = 0
    reason: Optional[str] = None


def clamp_limit(value: Optional[int], default: int, maximum: int) -> int:
    if value is None or value <= 0:
        return default
    return min(value, maximum)


class ResumeManager:
    def __init__(
        self,
        series_repository: SeriesRepository,
        progress_repository: ProgressRepository,
        engine: SeriesEngine,
    ):
        self.series_repo = series_repository
        self.progress_repo = progress_repository
        self.engine = engine

    def resume_waiting_for_event(self, workspace_id: str, visitor_id: str, event_name: str) -> ResumeResult:
        """
        Resumes every waiting Progress of the visitor that waits for 'event_name'.
        The match is exact and case-sensitive.
        """
        waiting = self.progress_repo.list_waiting_for_event(workspace_id, visitor_id, event_name)
        result = ResumeResult(matched=len(waiting))
        trigger = TriggerContext(source="event", event_name=event_name)

        for progress in waiting:
            outcome = self.engine.process(progress.id, trigger, resume_event=event_name)
            if outcome.processed and outcome.reason != "retry_scheduled":
                result.resumed += 1

        if result.matched:
            logger.info(
                f"Event '{event_name}' for visitor {visitor_id} resumed {result.resumed}/{result.matched} waiting progress"
            )
        return result

    def process_waiting_progress(
        self,
        series_limit: Optional[int] = None,
        waiting_limit_per_series: Optional[int] = None,
    ) -> SweepResult:
        """
        Backstop sweep: resumes rows whose 'wait_until' has passed.
        Rows waiting for an event are never touched here.
        """
        series_limit = clamp_limit(series_limit, settings.DEFAULT_SERIES_SCAN_LIMIT, settings.MAX_SERIES_SCAN_LIMIT)
        waiting_limit = clamp_limit(
            waiting_limit_per_series, settings.DEFAULT_WAITING_BATCH_LIMIT, settings.MAX_WAITING_BATCH_LIMIT
        )

        now = utc_now()
        result = SweepResult()
        for series in self.series_repo.list_series_by_status(SWEEPABLE_SERIES_STATUSES, series_limit):
            due = self.progress_repo.list_due(series.id, now, waiting_limit)
            result.scanned += len(due)
            for progress in due:
                outcome = self.engine.process(progress.id)
                if outcome.processed:
                    result.processed += 1

        logger.info(f"Waiting sweep processed {result.processed} of {result.scanned} due progress rows")
        return result
