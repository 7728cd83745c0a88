import logging

from ..interface import AuditEntry, AuditSink

audit_logger = logging.getLogger("series_automation.audit")


class LoggingAuditSink(AuditSink):
    """
    Writes audit entries to the 'series_automation.audit' logger.
    Route that logger to wherever operators read retries and failures.
    """

    def record(self, entry: AuditEntry) -> None:
        level = logging.ERROR if entry.action == "failed" else logging.WARNING
        audit_logger.log(
            level,
            f"[{entry.action}] workspace={entry.workspace_id} series={entry.series_id} "
            f"progress={entry.progress_id} visitor={entry.visitor_id} block={entry.block_id}: {entry.message}",
            extra={"audit_metadata": entry.metadata},
        )
