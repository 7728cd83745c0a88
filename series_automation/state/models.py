"""
State Layer - Runtime Data Models

This module defines the runtime records the engine reads and writes:
the Progress record (one enrollment of a visitor into a series), the
visitor snapshot it is evaluated against, the trigger context that
caused an evaluation, and the per-block telemetry counters.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ProgressStatus = Literal["waiting", "completed", "exited", "goal_reached", "failed"]

TERMINAL_STATUSES = frozenset({"completed", "exited", "goal_reached", "failed"})

TriggerSource = Literal["event", "auto_event", "visitor_attribute_changed", "visitor_state_changed"]

HistoryAction = Literal["entered", "completed", "skipped", "failed", "retry_scheduled"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


class TriggerContext(BaseModel):
    """
    What caused an enrollment evaluation.
    Event sources carry 'event_name'; attribute/state sources carry the change.
    """
    source: TriggerSource
    event_name: Optional[str] = None
    attribute_key: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None


class DeviceInfo(BaseModel):
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


class LocationInfo(BaseModel):
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None


class VisitorSnapshot(BaseModel):
    """
    Read-only view of a visitor, provided by the visitor attribute store.
    The engine never writes to it.
    """
    id: str
    workspace_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    external_user_id: Optional[str] = None
    referrer: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    device: Optional[DeviceInfo] = None
    location: Optional[LocationInfo] = None
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)


class ProgressHistoryEntry(BaseModel):
    block_id: Optional[str] = None
    action: HistoryAction
    detail: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class Progress(BaseModel):
    """
    The durable enrollment record of one visitor in one series.

    A waiting Progress is suspended on 'current_block_id' until either
    'wait_until' elapses (duration waits and retries) or an event named
    'wait_event_name' arrives. The two wait fields are never both set.

    'version' is the optimistic concurrency token: repositories only accept
    a save whose version matches the stored one.
    """
    id: str = Field(default_factory=new_id)
    workspace_id: str
    visitor_id: str
    series_id: str
    status: ProgressStatus = "waiting"
    current_block_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    wait_event_name: Optional[str] = None
    attempt_count: int = 0
    last_execution_error: Optional[str] = None
    last_trigger_source: Optional[TriggerSource] = None
    last_trigger_event_name: Optional[str] = None
    entered_at: datetime = Field(default_factory=utc_now)
    last_block_executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    goal_reached_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    history: List[ProgressHistoryEntry] = Field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def record(self, action: HistoryAction, block_id: Optional[str] = None, **detail: Any):
        self.history.append(ProgressHistoryEntry(block_id=block_id, action=action, detail=detail))

    def has_completed_block(self, block_id: str) -> bool:
        return any(
            entry.block_id == block_id and entry.action == "completed" for entry in self.history
        )


# Per-block counters, in the order they are reported
TELEMETRY_COUNTERS = (
    "entered",
    "completed",
    "skipped",
    "failed",
    "delivery_attempts",
    "delivery_failures",
    "yes_branch_count",
    "no_branch_count",
    "default_branch_count",
)


class BlockTelemetry(BaseModel):
    """
    Running counters for one block of a series, across all visitors.

    'failed' counts failed attempts (a retried block adds one per attempt).
    Branch counts are only kept for rule blocks.
    """
    series_id: str
    block_id: str
    entered: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    delivery_attempts: int = 0
    delivery_failures: int = 0
    yes_branch_count: int = 0
    no_branch_count: int = 0
    default_branch_count: int = 0
    last_result: Optional[Dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=utc_now)
