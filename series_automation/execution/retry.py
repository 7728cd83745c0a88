"""
Retry & Failure Supervisor.

Wraps every block attempt. Recoverable errors re-arm the same block as a
timed wait with linear backoff until the attempt budget is spent; anything
else fails the Progress on the spot. Retries and failures are reported to
the audit sink.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

from ..config import settings
from ..exceptions import DeliveryError, ExecutionError, NotFoundError
from ..integrations.interface import AuditEntry, AuditSink
from ..state.models import Progress, utc_now
from .schemas.state_machine import BlockOutcome

logger = logging.getLogger(__name__)


class RetrySupervisor:
    def __init__(
        self,
        audit_sink: AuditSink,
        max_attempts: int = settings.MAX_BLOCK_EXECUTION_ATTEMPTS,
        base_delay_seconds: int = settings.RETRY_BASE_DELAY_SECONDS,
    ):
        self.audit_sink = audit_sink
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds

    def attempt(self, progress: Progress, block_id: str, action: Callable[[], BlockOutcome]) -> Optional[BlockOutcome]:
        """
        Runs one attempt of 'action' for the block 'progress' is on.

        Returns the outcome on success. Returns None when the attempt failed;
        'progress' has then been either re-armed for a retry or failed.
        """
        progress.attempt_count += 1
        progress.last_block_executed_at = utc_now()

        try:
            return action()
        except ExecutionError as e:
            detail = {"delivery_attempted": True} if isinstance(e, DeliveryError) else {}
            if e.recoverable:
                self._schedule_retry(progress, block_id, str(e), **detail)
            else:
                self.fail(progress, str(e), block_id, **detail)
        except NotFoundError as e:
            self.fail(progress, str(e), block_id)
        except Exception as e:
            # Unexpected channel errors (timeouts, provider outages) are treated as transient
            logger.exception(f"Unexpected error executing block {block_id} for progress {progress.id}")
            self._schedule_retry(progress, block_id, f"{type(e).__name__}: {e}")
        return None

    def backoff(self, attempt_count: int) -> timedelta:
        return timedelta(seconds=self.base_delay_seconds * attempt_count)

    def fail(self, progress: Progress, message: str, block_id: Optional[str] = None, **detail):
        """Marks 'progress' failed. Terminal; the row will not be touched again."""
        progress.status = "failed"
        progress.failed_at = utc_now()
        progress.wait_until = None
        progress.wait_event_name = None
        progress.last_execution_error = message
        progress.record("failed", block_id, error=message, attempt_count=progress.attempt_count, **detail)

        logger.error(f"Progress {progress.id} failed on block {block_id}: {message}")
        self._audit("failed", progress, block_id, message)

    def _schedule_retry(self, progress: Progress, block_id: str, message: str, **detail):
        progress.last_execution_error = message

        if progress.attempt_count >= self.max_attempts:
            self.fail(progress, message, block_id, **detail)
            return

        delay = self.backoff(progress.attempt_count)
        progress.wait_until = utc_now() + delay
        progress.wait_event_name = None
        progress.record(
            "retry_scheduled",
            block_id,
            error=message,
            attempt_count=progress.attempt_count,
            retry_in_seconds=int(delay.total_seconds()),
            **detail,
        )

        logger.warning(
            f"Block {block_id} attempt {progress.attempt_count}/{self.max_attempts} failed for "
            f"progress {progress.id}, retrying in {int(delay.total_seconds())}s: {message}"
        )
        self._audit(
            "retry_scheduled",
            progress,
            block_id,
            message,
            attempt_count=progress.attempt_count,
            wait_until=progress.wait_until.isoformat(),
        )

    def _audit(self, action: str, progress: Progress, block_id: Optional[str], message: str, **metadata):
        self.audit_sink.record(
            AuditEntry(
                action=action,
                workspace_id=progress.workspace_id,
                series_id=progress.series_id,
                progress_id=progress.id,
                visitor_id=progress.visitor_id,
                block_id=block_id,
                message=message,
                metadata=metadata,
            )
        )
