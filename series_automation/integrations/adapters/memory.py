"""
In-memory collaborator adapters for tests and local development.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set

from ...exceptions import RecoverableExecutionError
from ...state.models import VisitorSnapshot, utc_now
from ..interface import AuditEntry, AuditSink, Delivery, EventCounter, MessagingChannel, VisitorDirectory


class InMemoryVisitorDirectory(VisitorDirectory):
    def __init__(self):
        self._visitors: Dict[str, VisitorSnapshot] = {}

    def put(self, visitor: VisitorSnapshot):
        self._visitors[visitor.id] = visitor.model_copy(deep=True)

    def get_visitor(self, visitor_id: str) -> Optional[VisitorSnapshot]:
        visitor = self._visitors.get(visitor_id)
        return visitor.model_copy(deep=True) if visitor else None


class InMemoryEventLog(EventCounter):
    """Append-only list of (event name, timestamp) per visitor."""

    def __init__(self):
        self._events: Dict[str, List[tuple]] = defaultdict(list)

    def track(self, visitor_id: str, event_name: str, occurred_at: Optional[datetime] = None):
        self._events[visitor_id].append((event_name, occurred_at or utc_now()))

    def count_events(self, visitor_id: str, event_name: str, since: Optional[datetime] = None) -> int:
        return sum(
            1
            for name, occurred_at in self._events.get(visitor_id, [])
            if name == event_name and (since is None or occurred_at >= since)
        )


class RecordingChannel(MessagingChannel):
    """
    Keeps every delivery in 'sent'.

    Email deliveries need an address on file; push deliveries need a
    registered token for the visitor. Either gap raises a recoverable error,
    the same way a real channel reports a missing precondition.
    """

    def __init__(self, push_tokens: Optional[Set[str]] = None):
        self.sent: List[Delivery] = []
        self.push_tokens: Set[str] = set(push_tokens or ())

    def deliver(self, delivery: Delivery) -> None:
        if delivery.channel == "email" and not delivery.visitor.email:
            raise RecoverableExecutionError("Visitor email is required for email block delivery.")
        if delivery.channel == "push" and delivery.visitor.id not in self.push_tokens:
            raise RecoverableExecutionError("Visitor has no registered push token.")
        self.sent.append(delivery)


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.entries: List[AuditEntry] = []

    def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)
