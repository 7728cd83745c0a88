"""
Engine - Series Traversal Layer

The SeriesEngine is the deterministic state machine ("The Manager") that
walks one Progress record through its series graph and delegates each
block to the BlockExecutor ("The Worker").
-----------------------------------------------

The loop is "Momentum-Based", like a workflow runner that keeps going
until something blocks it:
1. Before every block, the TerminalTransitionResolver gets the first word:
    exit rules, then goal rules, can end the Progress on the spot.
2. If the block ADVANCEs, the pointer moves and the loop continues
    immediately with the next block.
3. If the block SUSPENDs (a wait block), or the Progress becomes terminal,
    the record is persisted and control returns to the caller. A sweep or
    an incoming event resumes it later through the same loop.

Every write is an optimistic compare-and-swap on the Progress version.
Losing that race means another worker owns the row, so we stop quietly.
Only saved steps are counted in block telemetry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..domain.models import Block, Series, SeriesGraph
from ..exceptions import ConcurrentModificationError
from ..integrations.interface import VisitorDirectory
from ..repositories.progress import ProgressRepository
from ..repositories.series import SeriesRepository
from ..state.models import Progress, TriggerContext, VisitorSnapshot, utc_now
from .executor import BlockExecutor
from .retry import RetrySupervisor
from .schemas.state_machine import BlockOutcome, StateMachineTransition
from .telemetry import BlockTelemetryRecorder
from .transitions import TerminalTransitionResolver, apply_terminal

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """
    What one engine run did to a Progress.

    Attributes:
        processed: False when nothing was done (terminal, still waiting, lost a race).
        status: Progress status after the run, if known.
        reason: Short code: suspended, completed, exited, goal_reached, failed,
            retry_scheduled, waiting_for_event, waiting_until, terminal,
            not_found, series_archived, concurrent_modification.
    """
    processed: bool
    status: Optional[str] = None
    reason: str = ""


class SeriesEngine:
    def __init__(
        self,
        series_repository: SeriesRepository,
        progress_repository: ProgressRepository,
        visitors: VisitorDirectory,
        executor: BlockExecutor,
        resolver: TerminalTransitionResolver,
        supervisor: RetrySupervisor,
        max_depth: int = settings.MAX_EXECUTION_DEPTH,
        telemetry: Optional[BlockTelemetryRecorder] = None,
    ):
        self.series_repository = series_repository
        self.progress_repository = progress_repository
        self.visitors = visitors
        self.executor = executor
        self.resolver = resolver
        self.supervisor = supervisor
        self.max_depth = max_depth
        self.telemetry = telemetry

    def process(
        self,
        progress_id: str,
        trigger: Optional[TriggerContext] = None,
        resume_event: Optional[str] = None,
        history_from: Optional[int] = None,
    ) -> ProcessResult:
        """
        The Orchestrator.

        Drives the Progress until it suspends or terminates.
        'resume_event' is the name of an event that just arrived; it releases
        a Progress waiting for exactly that event.
        'history_from' is the first history entry not yet counted in block
        telemetry; by default everything already stored has been.
        """
        progress = self.progress_repository.get(progress_id)
        if progress is None:
            return ProcessResult(processed=False, reason="not_found")
        if progress.is_terminal:
            return ProcessResult(processed=False, status=progress.status, reason="terminal")
        counted = len(progress.history) if history_from is None else history_from

        # 1. Still suspended?
        now = utc_now()
        resuming_wait = False
        if progress.wait_event_name:
            if resume_event is None or progress.wait_event_name != resume_event:
                return ProcessResult(processed=False, status=progress.status, reason="waiting_for_event")
            progress.wait_event_name = None
            resuming_wait = True
        if progress.wait_until is not None:
            if progress.wait_until > now:
                return ProcessResult(processed=False, status=progress.status, reason="waiting_until")
            progress.wait_until = None
            resuming_wait = True

        # 2. Load Context
        series = self.series_repository.get_series(progress.series_id)
        if series is None:
            self.supervisor.fail(progress, f"Series {progress.series_id} not found.", progress.current_block_id)
            return self._persist(progress, "failed", counted)
        if series.status == "archived":
            # Archived series are frozen; their rows stay where they are
            return ProcessResult(processed=False, status=progress.status, reason="series_archived")

        graph = self.series_repository.get_graph(series.id)

        visitor = self.visitors.get_visitor(progress.visitor_id)
        if visitor is None:
            self.supervisor.fail(progress, f"Visitor {progress.visitor_id} not found.", progress.current_block_id)
            return self._persist(progress, "failed", counted, graph)

        # 3. Step past a wait block whose wait is over
        current = graph.blocks.get(progress.current_block_id) if progress.current_block_id else None
        if current is not None and current.type == "wait" and resuming_wait:
            self._advance(progress, graph, current, None, "Wait finished")

        return self._run(progress, series, graph, visitor, trigger, counted)

    def record_telemetry(self, progress: Progress, counted: int, graph: Optional[SeriesGraph] = None):
        """Adds the history entries from index 'counted' on to block telemetry."""
        entries = progress.history[counted:]
        if self.telemetry is None or not entries:
            return
        graph = graph or self.series_repository.get_graph(progress.series_id)
        block_types = {block_id: block.type for block_id, block in graph.blocks.items()}
        self.telemetry.record(progress.series_id, entries, block_types)

    # ==========================================================================
    # The Loop
    # ==========================================================================

    def _run(
        self,
        progress: Progress,
        series: Series,
        graph: SeriesGraph,
        visitor: VisitorSnapshot,
        trigger: Optional[TriggerContext],
        counted: int,
    ) -> ProcessResult:
        depth = 0
        while True:
            if depth >= self.max_depth:
                self.supervisor.fail(progress, "Maximum execution depth exceeded.", progress.current_block_id)
                return self._persist(progress, "failed", counted, graph)
            depth += 1

            # 1. Terminal rules always win over the next block
            terminal = self.resolver.resolve(series, visitor, trigger)
            if terminal:
                apply_terminal(progress, terminal)
                return self._persist(progress, terminal.status, counted, graph)

            # 2. Fell off the graph
            if progress.current_block_id is None:
                self._complete(progress)
                return self._persist(progress, "completed", counted, graph)

            block = graph.blocks.get(progress.current_block_id)
            if block is None:
                self.supervisor.fail(progress, f"Block {progress.current_block_id} not found.", progress.current_block_id)
                return self._persist(progress, "failed", counted, graph)

            # 3. Execute Block (Worker) under the supervisor
            outcome = self.supervisor.attempt(
                progress,
                block.id,
                lambda: self.executor.execute(series, graph, visitor, progress, block, trigger),
            )
            if outcome is None:
                reason = "failed" if progress.status == "failed" else "retry_scheduled"
                return self._persist(progress, reason, counted, graph)

            # 4. Apply the outcome
            if outcome.transition == StateMachineTransition.SUSPEND:
                self._suspend(progress, outcome)
                return self._persist(progress, "suspended", counted, graph)

            self._advance(progress, graph, block, outcome, outcome.reason)

            # Persist each step so a delivered block is remembered even if a later step crashes
            result = self._persist(progress, "advanced", counted, graph)
            if not result.processed:
                return result
            counted = len(progress.history)

    # ==========================================================================
    # State Mutation
    # ==========================================================================

    def _suspend(self, progress: Progress, outcome: BlockOutcome):
        progress.wait_until = outcome.wait_until
        progress.wait_event_name = outcome.wait_event_name
        progress.attempt_count = 0
        progress.last_execution_error = None
        logger.info(f"Progress {progress.id} suspended on block {progress.current_block_id}: {outcome.reason}")

    def _advance(
        self,
        progress: Progress,
        graph: SeriesGraph,
        block: Block,
        outcome: Optional[BlockOutcome],
        reason: str,
    ):
        """Marks 'block' completed and moves the pointer to the next block (or off the graph)."""
        detail = {"reason": reason}
        if outcome is not None and outcome.branch:
            detail["branch"] = outcome.branch
        if outcome is not None and outcome.delivered:
            detail["delivered"] = True
        progress.record("completed", block.id, **detail)
        progress.attempt_count = 0
        progress.last_execution_error = None
        progress.wait_until = None
        progress.wait_event_name = None

        if outcome is None:
            connection = graph.select_next(block.id)
            next_block_id = connection.to_block_id if connection else None
        elif outcome.transition == StateMachineTransition.ADVANCE:
            next_block_id = outcome.next_block_id
        else:
            next_block_id = None

        progress.current_block_id = next_block_id
        if next_block_id:
            progress.record("entered", next_block_id)

    def _complete(self, progress: Progress):
        progress.status = "completed"
        progress.completed_at = utc_now()
        progress.wait_until = None
        progress.wait_event_name = None
        logger.info(f"Progress {progress.id} completed series {progress.series_id}")

    def _persist(
        self,
        progress: Progress,
        reason: str,
        counted: int,
        graph: Optional[SeriesGraph] = None,
    ) -> ProcessResult:
        try:
            self.progress_repository.save(progress)
        except ConcurrentModificationError as e:
            logger.info(f"Stopping: {e}")
            return ProcessResult(processed=False, reason="concurrent_modification")
        self.record_telemetry(progress, counted, graph)
        return ProcessResult(processed=True, status=progress.status, reason=reason)
