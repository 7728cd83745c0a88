"""
Terminal Transitions.

Decides whether a Progress should leave its series before the next block
runs. Exit rules are checked first; goal rules only when exit does not
match. Absent rules never match here (unlike entry rules, where an absent
rule admits everyone).
"""

import logging
from typing import Optional

from ..domain.models import Series
from ..integrations.interface import EventCounter
from ..rules.evaluator import evaluate_rule
from ..state.models import Progress, TriggerContext, VisitorSnapshot, utc_now
from .schemas.state_machine import TerminalTransition

logger = logging.getLogger(__name__)


class TerminalTransitionResolver:
    def __init__(self, event_counter: Optional[EventCounter] = None):
        self.event_counter = event_counter

    def resolve(
        self,
        series: Series,
        visitor: VisitorSnapshot,
        trigger: Optional[TriggerContext] = None,
    ) -> Optional[TerminalTransition]:
        if series.exit_rules is not None and evaluate_rule(series.exit_rules, visitor, trigger, self.event_counter):
            return TerminalTransition(status="exited", reason="Exit rules matched")

        if series.goal_rules is not None and evaluate_rule(series.goal_rules, visitor, trigger, self.event_counter):
            return TerminalTransition(status="goal_reached", reason="Goal rules matched")

        return None


def apply_terminal(progress: Progress, transition: TerminalTransition):
    """Moves 'progress' into the terminal status and stamps the matching timestamp."""
    now = utc_now()
    progress.status = transition.status
    progress.wait_until = None
    progress.wait_event_name = None
    if transition.status == "exited":
        progress.exited_at = now
    elif transition.status == "goal_reached":
        progress.goal_reached_at = now
    progress.record("skipped", progress.current_block_id, status=transition.status, reason=transition.reason)
    logger.info(f"Progress {progress.id} {transition.status}: {transition.reason}")
