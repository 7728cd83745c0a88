"""
Series Runtime Service - Application Orchestration Layer

This service is the entry point for everything that moves visitors through
series at runtime: triggers, incoming events, the backstop sweep, and the
manual terminal operations. It wires the Enrollment Controller and the
Resume Manager to the shared SeriesEngine.

Runtime entry points never raise for ordinary trigger processing; they
return counts. When orchestration is switched off they do nothing and say so.
"""

import logging
from typing import Optional

from ..config import settings
from ..exceptions import NotFoundError, ValidationError
from ..execution.engine import SeriesEngine
from ..execution.schemas.state_machine import TerminalTransition
from ..execution.transitions import apply_terminal
from ..repositories.progress import ProgressRepository
from ..state.models import Progress, TriggerContext
from .enrollment import EnrollmentController, EnrollmentResult
from .resume import ResumeManager, ResumeResult, SweepResult

logger = logging.getLogger(__name__)

ORCHESTRATION_DISABLED = "orchestration_disabled"


class SeriesRuntimeService:
    def __init__(
        self,
        progress_repository: ProgressRepository,
        engine: SeriesEngine,
        enrollment: EnrollmentController,
        resume: ResumeManager,
        enabled: Optional[bool] = None,
    ):
        self.progress_repo = progress_repository
        self.engine = engine
        self.enrollment = enrollment
        self.resume = resume
        self.enabled = settings.SERIES_ORCHESTRATION_ENABLED if enabled is None else enabled

    def evaluate_enrollment_for_visitor(
        self, workspace_id: str, visitor_id: str, trigger: TriggerContext
    ) -> EnrollmentResult:
        if not self.enabled:
            return EnrollmentResult(reason=ORCHESTRATION_DISABLED)
        return self.enrollment.evaluate_enrollment_for_visitor(workspace_id, visitor_id, trigger)

    def resume_waiting_for_event(self, workspace_id: str, visitor_id: str, event_name: str) -> ResumeResult:
        if not self.enabled:
            return ResumeResult(reason=ORCHESTRATION_DISABLED)
        return self.resume.resume_waiting_for_event(workspace_id, visitor_id, event_name)

    def process_waiting_progress(
        self,
        series_limit: Optional[int] = None,
        waiting_limit_per_series: Optional[int] = None,
    ) -> SweepResult:
        if not self.enabled:
            return SweepResult(reason=ORCHESTRATION_DISABLED)
        return self.resume.process_waiting_progress(series_limit, waiting_limit_per_series)

    def get_progress_for_visitor_series(self, visitor_id: str, series_id: str) -> Optional[Progress]:
        """The visitor's most recent Progress in the series, or None."""
        return self.progress_repo.find_latest(visitor_id, series_id)

    # ==========================================================================
    # Manual terminal operations
    # ==========================================================================

    def exit_progress(self, progress_id: str, reason: str = "Exited manually") -> Progress:
        return self._terminate(progress_id, TerminalTransition(status="exited", reason=reason))

    def mark_goal_reached(self, progress_id: str, reason: str = "Goal marked manually") -> Progress:
        return self._terminate(progress_id, TerminalTransition(status="goal_reached", reason=reason))

    def _terminate(self, progress_id: str, transition: TerminalTransition) -> Progress:
        progress = self.progress_repo.get(progress_id)
        if progress is None:
            raise NotFoundError(f"Progress {progress_id} not found.")
        if progress.is_terminal:
            raise ValidationError(f"Progress {progress_id} is already {progress.status}.")

        counted = len(progress.history)
        apply_terminal(progress, transition)
        # ConcurrentModificationError propagates: the caller should reload and retry
        self.progress_repo.save(progress)
        self.engine.record_telemetry(progress, counted)
        return progress
