"""
Executor - Block Execution Layer

This module defines the BlockExecutor, a stateless worker that runs exactly
one block for one Progress and reports what should happen next as a
BlockOutcome. It never persists anything; the engine owns the Progress
record and the retry supervisor owns error bookkeeping.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ..domain.models import CONTENT_BLOCK_TYPES, Block, BlockConfig, Series, SeriesGraph
from ..exceptions import BlockConfigurationError, DeliveryError, ExecutionError, RecoverableExecutionError
from ..integrations.interface import Delivery, EventCounter, MessagingChannel
from ..rules.evaluator import evaluate_rule
from ..state.models import Progress, TriggerContext, VisitorSnapshot, utc_now
from .schemas.state_machine import BlockOutcome, StateMachineTransition
from .templates import render_text

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400}

# Payload fields each content block type cannot run without
REQUIRED_CONTENT_FIELDS = {
    "email": ("subject", "body"),
    "push": ("title", "body"),
}


def wait_config_error(config: BlockConfig) -> Optional[str]:
    """Returns why a wait block's config is unusable, or None if it is valid."""
    if config.wait_type is None:
        return "Wait block has no wait_type."
    if config.wait_type == "duration":
        if config.wait_duration is None or config.wait_duration <= 0:
            return "Duration wait needs a positive wait_duration."
        if config.wait_unit is None:
            return "Duration wait needs a wait_unit."
    elif config.wait_type == "until_date":
        if config.wait_until_date is None:
            return "Date wait needs a wait_until_date."
    elif config.wait_type == "until_event":
        if not (config.wait_until_event or "").strip():
            return "Event wait needs a wait_until_event."
    return None


def missing_content_fields(block: Block):
    required = REQUIRED_CONTENT_FIELDS.get(block.type, ())
    return [name for name in required if not getattr(block.config, name)]


class BlockExecutor:
    def __init__(self, channels: Dict[str, MessagingChannel], event_counter: Optional[EventCounter] = None):
        # One channel per content block type (chat, post, carousel, email, push)
        self.channels = channels
        self.event_counter = event_counter

    def execute(
        self,
        series: Series,
        graph: SeriesGraph,
        visitor: VisitorSnapshot,
        progress: Progress,
        block: Block,
        trigger: Optional[TriggerContext] = None,
        now: Optional[datetime] = None,
    ) -> BlockOutcome:
        now = now or utc_now()

        if block.type == "wait":
            return self._execute_wait(graph, block, now)
        if block.type == "rule":
            return self._execute_rule(graph, visitor, block, trigger)
        if block.type in CONTENT_BLOCK_TYPES:
            return self._execute_content(series, graph, visitor, progress, block)

        raise BlockConfigurationError(f"Unknown block type '{block.type}'.")

    # ==========================================================================
    # Block Types
    # ==========================================================================

    def _execute_wait(self, graph: SeriesGraph, block: Block, now: datetime) -> BlockOutcome:
        config = block.config
        error = wait_config_error(config)
        if error:
            raise BlockConfigurationError(error)

        if config.wait_type == "until_event":
            return BlockOutcome(
                transition=StateMachineTransition.SUSPEND,
                wait_event_name=config.wait_until_event,
                reason=f"Waiting for event '{config.wait_until_event}'",
            )

        if config.wait_type == "duration":
            wait_until = now + timedelta(seconds=config.wait_duration * _UNIT_SECONDS[config.wait_unit])
        else:
            wait_until = config.wait_until_date
            if wait_until.tzinfo is None:
                wait_until = wait_until.replace(tzinfo=timezone.utc)
            if wait_until <= now:
                # The date already passed; nothing to wait for
                return self._follow(graph, block, None, "Wait date already passed")

        return BlockOutcome(
            transition=StateMachineTransition.SUSPEND,
            wait_until=wait_until,
            reason=f"Waiting until {wait_until.isoformat()}",
        )

    def _execute_rule(
        self,
        graph: SeriesGraph,
        visitor: VisitorSnapshot,
        block: Block,
        trigger: Optional[TriggerContext],
    ) -> BlockOutcome:
        if block.config.rules is None:
            raise BlockConfigurationError("Rule block has no rules.")

        matched = evaluate_rule(block.config.rules, visitor, trigger, self.event_counter)
        branch = "yes" if matched else "no"
        logger.debug(f"Rule block {block.id} evaluated to '{branch}' for visitor {visitor.id}")
        return self._follow(graph, block, branch, f"Rule matched: {branch}")

    def _execute_content(
        self,
        series: Series,
        graph: SeriesGraph,
        visitor: VisitorSnapshot,
        progress: Progress,
        block: Block,
    ) -> BlockOutcome:
        if progress.has_completed_block(block.id):
            logger.info(f"Block {block.id} already delivered for progress {progress.id}, not sending again")
            return self._follow(graph, block, None, "Already delivered")

        missing = missing_content_fields(block)
        if missing:
            raise BlockConfigurationError(f"{block.type} block is missing {', '.join(missing)}.")

        channel = self.channels.get(block.type)
        if channel is None:
            raise RecoverableExecutionError(f"No messaging channel is registered for '{block.type}' blocks.")

        delivery = Delivery(
            channel=block.type,
            workspace_id=series.workspace_id,
            visitor=visitor,
            series_id=series.id,
            block_id=block.id,
            progress_id=progress.id,
            body=render_text(block.config.body, visitor),
            subject=render_text(block.config.subject, visitor),
            title=render_text(block.config.title, visitor),
            content_id=block.config.content_id,
        )
        try:
            channel.deliver(delivery)
        except ExecutionError as e:
            raise DeliveryError(str(e), recoverable=e.recoverable) from e
        except Exception as e:
            # Timeouts and provider outages are worth another attempt
            logger.exception(f"Channel '{block.type}' raised while delivering block {block.id}")
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        logger.info(f"Delivered {block.type} block {block.id} to visitor {visitor.id}")
        outcome = self._follow(graph, block, None, f"Delivered {block.type}")
        outcome.delivered = True
        return outcome

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _follow(self, graph: SeriesGraph, block: Block, preferred: Optional[str], reason: str) -> BlockOutcome:
        connection = graph.select_next(block.id, preferred)
        # Rule blocks report the edge actually taken; a missing yes/no edge falls back to default
        branch = (connection.condition if connection else "default") if preferred else None
        if connection is None:
            return BlockOutcome(transition=StateMachineTransition.COMPLETE, reason=reason, branch=branch)
        return BlockOutcome(
            transition=StateMachineTransition.ADVANCE,
            next_block_id=connection.to_block_id,
            reason=reason,
            branch=branch,
        )
