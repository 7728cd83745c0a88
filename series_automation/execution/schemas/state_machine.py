"""
Transition Types - Traversal State Definitions

Type definitions for what a single block attempt did to the Progress
pointer. Used by the executor (to report) and the engine (to persist
and decide whether to keep walking).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Optional


class StateMachineTransition(Enum):
    """
    Strict State Machine terminology describing what happened to the graph pointer.
    """

    ADVANCE = auto()  # The pointer moves to the next block; keep walking.
    SUSPEND = auto()  # The pointer stays on a wait block until time or an event.
    COMPLETE = auto()  # No next block; the series is finished for this visitor.


@dataclass
class BlockOutcome:
    """
    Result of executing one block.

    Attributes:
        transition: What the engine should do next.
        next_block_id: Target of ADVANCE.
        wait_until: Deadline for a time-based SUSPEND.
        wait_event_name: Event name for an event-based SUSPEND.
        reason: Short human-readable explanation for history and logs.
        branch: Connection condition a rule block followed.
        delivered: True when a content block reached its channel.
    """

    transition: StateMachineTransition
    next_block_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    wait_event_name: Optional[str] = None
    reason: str = ""
    branch: Optional[str] = None
    delivered: bool = False


@dataclass
class TerminalTransition:
    """An exit or goal match that ends the Progress before the next block runs."""

    status: str  # "exited" or "goal_reached"
    reason: str
