"""
Execution Layer - Series Traversal and Block Execution

Defines the SeriesEngine (deterministic state machine), the BlockExecutor
(stateless block worker), the TerminalTransitionResolver and the
RetrySupervisor that together move Progress records through a series.
"""

from series_automation.execution.executor import BlockExecutor
from series_automation.execution.engine import ProcessResult, SeriesEngine
from series_automation.execution.retry import RetrySupervisor
from series_automation.execution.transitions import TerminalTransitionResolver


__all__ = [
    "BlockExecutor",
    "ProcessResult",
    "RetrySupervisor",
    "SeriesEngine",
    "TerminalTransitionResolver",
]
