"""
API Layer - Request/Response Schemas

Pydantic models for API request and response validation.
Domain models (Series, Block, Connection, Progress) are returned as-is.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..domain.models import Block, Connection, EntryTrigger, Series


class CreateSeriesRequest(BaseModel):
    workspace_id: str
    name: str
    description: Optional[str] = None
    entry_triggers: List[EntryTrigger] = Field(default_factory=list)
    entry_rules: Optional[Dict[str, Any]] = None
    exit_rules: Optional[Dict[str, Any]] = None
    goal_rules: Optional[Dict[str, Any]] = None


class UpdateSeriesRequest(BaseModel):
    """Only the fields present in the request body are changed."""
    name: Optional[str] = None
    description: Optional[str] = None
    entry_triggers: Optional[List[EntryTrigger]] = None
    entry_rules: Optional[Dict[str, Any]] = None
    exit_rules: Optional[Dict[str, Any]] = None
    goal_rules: Optional[Dict[str, Any]] = None


class DuplicateSeriesRequest(BaseModel):
    name: Optional[str] = None


class SeriesRead(BaseModel):
    series: Series
    blocks: List[Block]
    connections: List[Connection]


class CreateBlockRequest(BaseModel):
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None


class UpdateBlockRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None
    position: Optional[Dict[str, float]] = None


class CreateConnectionRequest(BaseModel):
    from_block_id: str
    to_block_id: str
    condition: str = "default"


class TrackEventRequest(BaseModel):
    event_name: str
    automatic: bool = False


class AttributeChangeRequest(BaseModel):
    attribute_key: str
    from_value: Optional[Any] = None
    to_value: Optional[Any] = None


class SweepRequest(BaseModel):
    series_limit: Optional[int] = None
    waiting_limit_per_series: Optional[int] = None


class TerminateRequest(BaseModel):
    reason: Optional[str] = None


class EnrollmentDecisionRead(BaseModel):
    series_id: str
    entered: bool
    reason: str
    progress_id: Optional[str] = None
    status: Optional[str] = None


class EnrollmentResponse(BaseModel):
    evaluated: int
    entered: int
    decisions: List[EnrollmentDecisionRead] = Field(default_factory=list)
    reason: Optional[str] = None


class ResumeResponse(BaseModel):
    matched: int
    resumed: int
    reason: Optional[str] = None


class EventResponse(BaseModel):
    enrollment: EnrollmentResponse
    resume: ResumeResponse


class SweepResponse(BaseModel):
    processed: int
    scanned: int
    reason: Optional[str] = None
