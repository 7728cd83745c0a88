"""
Trigger Subscriber.

Turns notifications from the visitor attribute store and the event
tracker into runtime calls. A tracked event can both enroll the visitor
into series triggered by it and release rows waiting for it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..state.models import TriggerContext
from .enrollment import EnrollmentResult
from .resume import ResumeResult
from .runtime import SeriesRuntimeService

logger = logging.getLogger(__name__)


@dataclass
class EventHandled:
    enrollment: EnrollmentResult
    resume: ResumeResult


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class SeriesTriggerSubscriber:
    def __init__(self, runtime: SeriesRuntimeService):
        self.runtime = runtime

    def on_event_tracked(self, workspace_id: str, visitor_id: str, event_name: str, automatic: bool = False) -> EventHandled:
        """Auto-captured events (page views, clicks) use the 'auto_event' trigger source."""
        trigger = TriggerContext(source="auto_event" if automatic else "event", event_name=event_name)
        enrollment = self.runtime.evaluate_enrollment_for_visitor(workspace_id, visitor_id, trigger)
        resume = self.runtime.resume_waiting_for_event(workspace_id, visitor_id, event_name)
        return EventHandled(enrollment=enrollment, resume=resume)

    def on_attribute_changed(
        self,
        workspace_id: str,
        visitor_id: str,
        attribute_key: str,
        from_value: Any = None,
        to_value: Any = None,
    ) -> EnrollmentResult:
        if _as_text(from_value) == _as_text(to_value):
            logger.debug(f"Attribute {attribute_key} of visitor {visitor_id} did not change, ignoring")
            return EnrollmentResult(reason="unchanged")
        trigger = TriggerContext(
            source="visitor_attribute_changed",
            attribute_key=attribute_key,
            from_value=_as_text(from_value),
            to_value=_as_text(to_value),
        )
        return self.runtime.evaluate_enrollment_for_visitor(workspace_id, visitor_id, trigger)

    def on_state_changed(self, workspace_id: str, visitor_id: str, from_state: Any = None, to_state: Any = None) -> EnrollmentResult:
        """Lifecycle state changes (e.g. lead -> customer)."""
        if _as_text(from_state) == _as_text(to_state):
            return EnrollmentResult(reason="unchanged")
        trigger = TriggerContext(
            source="visitor_state_changed",
            attribute_key="state",
            from_value=_as_text(from_state),
            to_value=_as_text(to_state),
        )
        return self.runtime.evaluate_enrollment_for_visitor(workspace_id, visitor_id, trigger)
