"""
Enrollment Controller - Series Entry Gating

Decides, for one visitor and one trigger, which active series the visitor
enters. Each successful entry creates a waiting Progress on the series'
start block and drives it through the engine right away, so exit/goal
rules and the first blocks run before the call returns.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import settings
from ..domain.models import EntryTrigger, Series
from ..execution.engine import SeriesEngine
from ..integrations.interface import EventCounter, VisitorDirectory
from ..repositories.progress import ProgressRepository
from ..repositories.series import SeriesRepository
from ..rules.evaluator import evaluate_rule
from ..state.models import Progress, TriggerContext, VisitorSnapshot

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentDecision:
    series_id: str
    entered: bool
    reason: str
    progress_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class EnrollmentResult:
    evaluated: int = 0
    entered: int = 0
    decisions: List[EnrollmentDecision] = field(default_factory=list)
    reason: Optional[str] = None


def _as_text(value) -> Optional[str]:
    return None if value is None else str(value)


def trigger_matches(trigger: EntryTrigger, context: TriggerContext) -> bool:
    """
    True if 'context' satisfies the configured entry trigger.
    Optional trigger fields only narrow the match when they are set.
    """
    if trigger.source != context.source:
        return False

    if trigger.source in ("event", "auto_event"):
        return trigger.event_name is None or trigger.event_name == context.event_name

    if trigger.attribute_key is not None and trigger.attribute_key != context.attribute_key:
        return False
    if trigger.from_value is not None and _as_text(trigger.from_value) != _as_text(context.from_value):
        return False
    if trigger.to_value is not None and _as_text(trigger.to_value) != _as_text(context.to_value):
        return False
    return True


class EnrollmentController:
    def __init__(
        self,
        series_repository: SeriesRepository,
        progress_repository: ProgressRepository,
        visitors: VisitorDirectory,
        engine: SeriesEngine,
        event_counter: Optional[EventCounter] = None,
        allow_reenrollment: bool = settings.ALLOW_REENROLLMENT,
    ):
        self.series_repo = series_repository
        self.progress_repo = progress_repository
        self.visitors = visitors
        self.engine = engine
        self.event_counter = event_counter
        self.allow_reenrollment = allow_reenrollment

    def evaluate_enrollment_for_visitor(
        self, workspace_id: str, visitor_id: str, trigger: TriggerContext
    ) -> EnrollmentResult:
        visitor = self.visitors.get_visitor(visitor_id)
        if visitor is None or visitor.workspace_id != workspace_id:
            logger.info(f"Visitor {visitor_id} not found in workspace {workspace_id}, skipping enrollment")
            return EnrollmentResult(reason="visitor_not_found")

        # Re-read on every call so activations and deactivations apply immediately
        active_series = self.series_repo.list_series(workspace_id, status="active")

        result = EnrollmentResult(evaluated=len(active_series))
        for series in active_series:
            decision = self.evaluate_entry(series, visitor, trigger)
            result.decisions.append(decision)
            if decision.entered:
                result.entered += 1

        if result.entered:
            logger.info(
                f"Visitor {visitor_id} entered {result.entered}/{result.evaluated} series on {trigger.source}"
            )
        return result

    def evaluate_entry(self, series: Series, visitor: VisitorSnapshot, trigger: TriggerContext) -> EnrollmentDecision:
        """Runs the entry checks for one series and enrolls the visitor if they all pass."""
        existing = self.progress_repo.find_latest(visitor.id, series.id)
        if existing and (existing.status == "waiting" or not self.allow_reenrollment):
            return EnrollmentDecision(series.id, False, "already_enrolled", existing.id, existing.status)

        if not any(trigger_matches(t, trigger) for t in series.entry_triggers):
            return EnrollmentDecision(series.id, False, "trigger_mismatch")

        if not evaluate_rule(series.entry_rules, visitor, trigger, self.event_counter):
            return EnrollmentDecision(series.id, False, "entry_rules_not_matched")

        start = self.series_repo.get_graph(series.id).start_block()
        if start is None:
            logger.warning(f"Series {series.id} has no unique start block, not enrolling visitor {visitor.id}")
            return EnrollmentDecision(series.id, False, "invalid_entry_path")

        progress = Progress(
            workspace_id=series.workspace_id,
            visitor_id=visitor.id,
            series_id=series.id,
            current_block_id=start.id,
            last_trigger_source=trigger.source,
            last_trigger_event_name=trigger.event_name,
        )
        progress.record("entered", start.id, trigger_source=trigger.source)

        if not self.progress_repo.enroll(progress, allow_reenrollment=self.allow_reenrollment):
            return EnrollmentDecision(series.id, False, "already_enrolled")

        logger.info(f"Visitor {visitor.id} enrolled into series {series.id} (progress {progress.id})")
        outcome = self.engine.process(progress.id, trigger, history_from=0)
        return EnrollmentDecision(series.id, True, "entered", progress.id, outcome.status)
