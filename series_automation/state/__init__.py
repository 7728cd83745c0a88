"""
State Layer - Runtime Data Models

Defines the runtime records that track a visitor's enrollment in a
series, plus the visitor snapshot and trigger context they are evaluated
against.
"""

from series_automation.state.models import (
    Progress,
    ProgressHistoryEntry,
    ProgressStatus,
    TriggerContext,
    VisitorSnapshot,
)

__all__ = [
    "Progress",
    "ProgressHistoryEntry",
    "ProgressStatus",
    "TriggerContext",
    "VisitorSnapshot",
]
