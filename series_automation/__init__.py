"""
Series Automation

An audience-triggered workflow engine: visitors who match a trigger and
an audience rule are enrolled into a graph of blocks (waits, rule
branches, messages) and walked through it durably, with exit and goal
rules able to end the journey at any step.
"""

from series_automation.domain import (
    Block,
    BlockConfig,
    BlockType,
    Connection,
    EntryTrigger,
    Position,
    Series,
    SeriesGraph,
)
from series_automation.state import (
    Progress,
    ProgressHistoryEntry,
    ProgressStatus,
    TriggerContext,
    VisitorSnapshot,
)
from series_automation.rules import evaluate_rule, validate_audience_rule
from series_automation.execution import (
    BlockExecutor,
    ProcessResult,
    RetrySupervisor,
    SeriesEngine,
    TerminalTransitionResolver,
)

__all__ = [
    # Domain Layer
    "Block",
    "BlockConfig",
    "BlockType",
    "Connection",
    "EntryTrigger",
    "Position",
    "Series",
    "SeriesGraph",
    # State Layer
    "Progress",
    "ProgressHistoryEntry",
    "ProgressStatus",
    "TriggerContext",
    "VisitorSnapshot",
    # Rules
    "evaluate_rule",
    "validate_audience_rule",
    # Execution Layer
    "BlockExecutor",
    "ProcessResult",
    "RetrySupervisor",
    "SeriesEngine",
    "TerminalTransitionResolver",
]
