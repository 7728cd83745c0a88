"""
Domain Layer - Series Definition Models

This module defines the authored structure of a Series: its entry
triggers and audience rules, the Blocks (steps) it is made of and the
Connections (directed edges) between them. These are the static
definitions the engine walks; runtime state lives in the state layer.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from ..rules.models import AudienceRule
from ..state.models import TriggerSource, new_id, utc_now

"""
BlockType classifies step behavior:
- wait: Suspends the enrollment for a duration, until a date, or until an event
- rule: Evaluates an audience rule and follows the 'yes' or 'no' branch
- chat / post / carousel: In-app content delivered through the messenger
- email: Transactional email (requires an email address on file)
- push: Push notification (requires a registered push token)
"""
BlockType = Literal["wait", "rule", "chat", "post", "carousel", "email", "push"]

CONTENT_BLOCK_TYPES = frozenset({"chat", "post", "carousel", "email", "push"})

WaitType = Literal["duration", "until_date", "until_event"]

WaitUnit = Literal["minutes", "hours", "days"]

ConnectionCondition = Literal["default", "yes", "no"]

SeriesStatus = Literal["draft", "active", "paused", "archived"]


class EntryTrigger(BaseModel):
    """
    A trigger source that can enroll visitors.

    Event sources match on 'event_name' (any event when omitted).
    Attribute/state sources optionally narrow on the changed key and
    the before/after values, compared as text.
    """
    source: TriggerSource
    event_name: Optional[str] = None
    attribute_key: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None


class Position(BaseModel):
    """Canvas coordinates. Authoring metadata only."""
    x: float = 0
    y: float = 0


class BlockConfig(BaseModel):
    """
    Union of all block configuration fields. Which fields matter depends
    on the block type; the readiness check reports missing ones.
    """
    # wait
    wait_type: Optional[WaitType] = None
    wait_duration: Optional[float] = None
    wait_unit: Optional[WaitUnit] = None
    wait_until_date: Optional[datetime] = None
    wait_until_event: Optional[str] = None
    # rule
    rules: Optional[AudienceRule] = None
    # content (Jinja2 templates rendered against the visitor)
    subject: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    content_id: Optional[str] = None


class Block(BaseModel):
    id: str = Field(default_factory=new_id)
    series_id: str
    type: BlockType
    config: BlockConfig = Field(default_factory=BlockConfig)
    position: Optional[Position] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Connection(BaseModel):
    id: str = Field(default_factory=new_id)
    series_id: str
    from_block_id: str
    to_block_id: str
    condition: ConnectionCondition = "default"
    created_at: datetime = Field(default_factory=utc_now)


class Series(BaseModel):
    """
    A named workflow definition: who enters (triggers + entry rules),
    who leaves early (exit rules / goal rules), and the block graph.
    Only 'active' series accept new enrollments; 'archived' series are frozen.
    """
    id: str = Field(default_factory=new_id)
    workspace_id: str
    name: str
    description: Optional[str] = None
    entry_triggers: List[EntryTrigger] = Field(default_factory=list)
    entry_rules: Optional[AudienceRule] = None
    exit_rules: Optional[AudienceRule] = None
    goal_rules: Optional[AudienceRule] = None
    status: SeriesStatus = "draft"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


def _connection_sort_key(connection: Connection):
    return (connection.created_at, connection.id)


@dataclass
class SeriesGraph:
    """
    Block graph of one series with O(1) block lookup.

    Attributes:
        series_id: Owning series.
        blocks: Dict mapping Block IDs to Block objects.
        connections: All edges, in deterministic (created_at, id) order.
    """
    series_id: str
    blocks: Dict[str, Block] = field(default_factory=dict)
    connections: List[Connection] = field(default_factory=list)

    def __post_init__(self):
        self.connections = sorted(self.connections, key=_connection_sort_key)

    def outgoing(self, block_id: str) -> List[Connection]:
        return [c for c in self.connections if c.from_block_id == block_id]

    def entry_blocks(self) -> List[Block]:
        """Blocks without incoming connections."""
        incoming = {c.to_block_id for c in self.connections}
        return [b for b in self.blocks.values() if b.id not in incoming]

    def start_block(self) -> Optional[Block]:
        """The unique entry block, or None if there is none or more than one."""
        entries = self.entry_blocks()
        if len(entries) != 1:
            return None
        return entries[0]

    def select_next(self, block_id: str, preferred: Optional[ConnectionCondition] = None) -> Optional[Connection]:
        """
        Picks the edge to follow out of 'block_id':
        preferred condition, then 'default', then the first edge.
        """
        outgoing = self.outgoing(block_id)
        if not outgoing:
            return None

        if preferred:
            match = next((c for c in outgoing if c.condition == preferred), None)
            if match:
                return match

        default = next((c for c in outgoing if c.condition == "default"), None)
        if default:
            return default

        return outgoing[0]

    def reachable_from(self, block_id: str) -> Set[str]:
        reachable: Set[str] = set()
        queue = deque([block_id])
        while queue:
            current = queue.popleft()
            if current in reachable:
                continue
            reachable.add(current)
            for connection in self.outgoing(current):
                queue.append(connection.to_block_id)
        return reachable

    def creates_cycle(self, from_block_id: str, to_block_id: str) -> bool:
        """True if adding the edge from -> to would close a loop."""
        if from_block_id == to_block_id:
            return True
        return from_block_id in self.reachable_from(to_block_id)
