"""
Collaborator Interfaces.

Abstract contracts for everything the engine consumes but does not own:
the visitor attribute store, the event log used for event-count rules,
the messaging channels that perform block deliveries, and the audit sink.
Concrete adapters live in integrations/adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..state.models import VisitorSnapshot, utc_now


@dataclass
class Delivery:
    """
    A rendered content block ready to be sent to one visitor.

    Attributes:
        channel: Block type that produced it (chat, post, carousel, email, push).
        workspace_id: Owning workspace.
        visitor: Snapshot of the recipient.
        series_id / block_id / progress_id: Where the delivery came from.
        subject / title / body: Rendered template payload.
        content_id: Optional reference to pre-authored content.
    """
    channel: str
    workspace_id: str
    visitor: VisitorSnapshot
    series_id: str
    block_id: str
    progress_id: str
    body: Optional[str] = None
    subject: Optional[str] = None
    title: Optional[str] = None
    content_id: Optional[str] = None


@dataclass
class AuditEntry:
    action: str
    workspace_id: str
    series_id: str
    progress_id: str
    visitor_id: str
    block_id: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


class VisitorDirectory(ABC):
    """Read access to the visitor attribute store."""

    @abstractmethod
    def get_visitor(self, visitor_id: str) -> Optional[VisitorSnapshot]:
        """Returns the current snapshot, or None if the visitor does not exist."""
        pass


class EventCounter(ABC):
    """Counts tracked events for 'event'-sourced rule properties."""

    @abstractmethod
    def count_events(self, visitor_id: str, event_name: str, since: Optional[datetime] = None) -> int:
        pass


class MessagingChannel(ABC):
    """
    Delivers one rendered block to one visitor.
    Must raise RecoverableExecutionError when a delivery precondition is
    not met (no email on file, no push token, channel disabled).
    """

    @abstractmethod
    def deliver(self, delivery: Delivery) -> None:
        pass


class AuditSink(ABC):
    """Operator-facing record of retries and failures."""

    @abstractmethod
    def record(self, entry: AuditEntry) -> None:
        pass
