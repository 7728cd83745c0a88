"""
Domain Layer - Series Definition Models

Defines the authored structure of a Series: entry triggers, audience
rules, Blocks and the Connections between them.
"""

from series_automation.domain.models import (
    Block,
    BlockConfig,
    BlockType,
    Connection,
    EntryTrigger,
    Position,
    Series,
    SeriesGraph,
)

__all__ = [
    "Block",
    "BlockConfig",
    "BlockType",
    "Connection",
    "EntryTrigger",
    "Position",
    "Series",
    "SeriesGraph",
]
