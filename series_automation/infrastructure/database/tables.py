"""
Database Table Definitions.

This module defines the SQL schema using SQLModel.
We use the 'DBModel' suffix to distinguish these persistence models
from the Pydantic domain models (Series, Block, Progress).

Nested definitions (triggers, rule trees, block configs, progress
history) are stored as JSONB on PostgreSQL and plain JSON elsewhere.
Columns the engine filters on are real, indexed columns.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Index, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

JSONPayload = JSON().with_variant(JSONB, "postgresql")


class SeriesDBModel(SQLModel, table=True):
    """
    Persistence model for Series definitions.
    Triggers and rule trees are kept in 'definition'.
    """

    __tablename__ = "series"
    __table_args__ = (Index("ix_series_workspace_status", "workspace_id", "status"),)

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    name: str
    status: str = Field(default="draft")

    # entry_triggers, entry_rules, exit_rules, goal_rules, description
    definition: Dict[str, Any] = Field(sa_column=Column(JSONPayload, nullable=False))

    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BlockDBModel(SQLModel, table=True):
    __tablename__ = "series_blocks"

    id: str = Field(primary_key=True)
    series_id: str = Field(index=True)
    type: str
    config: Dict[str, Any] = Field(sa_column=Column(JSONPayload, nullable=False))
    position: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONPayload, nullable=True))

    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConnectionDBModel(SQLModel, table=True):
    __tablename__ = "series_connections"

    id: str = Field(primary_key=True)
    series_id: str = Field(index=True)
    from_block_id: str = Field(index=True)
    to_block_id: str = Field(index=True)
    condition: str = Field(default="default")

    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProgressDBModel(SQLModel, table=True):
    """
    Persistence model for enrollment Progress.

    The partial unique index makes "at most one waiting Progress per
    (visitor, series)" a database guarantee, so concurrent enrollments
    for the same visitor cannot both succeed.
    """

    __tablename__ = "series_progress"
    __table_args__ = (
        Index("ix_series_progress_visitor_series", "visitor_id", "series_id"),
        Index("ix_series_progress_series_status", "series_id", "status"),
        Index("ix_series_progress_visitor_status", "visitor_id", "status"),
        Index(
            "uq_series_progress_one_waiting",
            "visitor_id",
            "series_id",
            unique=True,
            postgresql_where=text("status = 'waiting'"),
            sqlite_where=text("status = 'waiting'"),
        ),
    )

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    visitor_id: str
    series_id: str
    status: str
    current_block_id: Optional[str] = None
    wait_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    wait_event_name: Optional[str] = None
    attempt_count: int = Field(default=0)
    last_execution_error: Optional[str] = None
    last_trigger_source: Optional[str] = None
    last_trigger_event_name: Optional[str] = None

    entered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_block_executed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    exited_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    goal_reached_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    failed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    history: List[Dict[str, Any]] = Field(sa_column=Column(JSONPayload, nullable=False))

    # Optimistic concurrency token
    version: int = Field(default=0)


class BlockTelemetryDBModel(SQLModel, table=True):
    """One counter row per (series, block); the unique index keeps it that way."""

    __tablename__ = "series_block_telemetry"
    __table_args__ = (Index("uq_series_block_telemetry", "series_id", "block_id", unique=True),)

    id: Optional[int] = Field(default=None, primary_key=True)
    series_id: str = Field(index=True)
    block_id: str
    entered: int = Field(default=0)
    completed: int = Field(default=0)
    skipped: int = Field(default=0)
    failed: int = Field(default=0)
    delivery_attempts: int = Field(default=0)
    delivery_failures: int = Field(default=0)
    yes_branch_count: int = Field(default=0)
    no_branch_count: int = Field(default=0)
    default_branch_count: int = Field(default=0)
    last_result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONPayload, nullable=True))

    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; everything the engine compares is UTC-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
