"""
Series Readiness Check.

Inspects a series definition and its graph before activation. Blockers
prevent activation; warnings are reported but do not.
"""

from collections import Counter
from typing import List, Optional

from pydantic import BaseModel, Field

from ..domain.models import CONTENT_BLOCK_TYPES, Series, SeriesGraph
from ..execution.executor import missing_content_fields, wait_config_error
from ..execution.templates import template_syntax_error


class ReadinessIssue(BaseModel):
    code: str
    message: str
    block_id: Optional[str] = None


class ReadinessReport(BaseModel):
    ready: bool
    blockers: List[ReadinessIssue] = Field(default_factory=list)
    warnings: List[ReadinessIssue] = Field(default_factory=list)


def evaluate_readiness(series: Series, graph: SeriesGraph) -> ReadinessReport:
    blockers: List[ReadinessIssue] = []
    warnings: List[ReadinessIssue] = []

    if not series.entry_triggers:
        warnings.append(ReadinessIssue(code="no_entry_triggers", message="Series has no entry triggers; nobody can enter."))

    if not graph.blocks:
        blockers.append(ReadinessIssue(code="empty_graph", message="Series has no blocks."))
        return ReadinessReport(ready=False, blockers=blockers, warnings=warnings)

    # --- Structure ---
    for connection in graph.connections:
        for end in (connection.from_block_id, connection.to_block_id):
            if end not in graph.blocks:
                blockers.append(
                    ReadinessIssue(
                        code="dangling_connection",
                        message=f"Connection {connection.id} references missing block {end}.",
                    )
                )

    entries = graph.entry_blocks()
    if not entries:
        blockers.append(ReadinessIssue(code="no_entry_block", message="Every block has an incoming connection."))
    elif len(entries) > 1:
        blockers.append(
            ReadinessIssue(
                code="multiple_entry_blocks",
                message=f"Series has {len(entries)} blocks without incoming connections; exactly one is required.",
            )
        )
    else:
        reachable = graph.reachable_from(entries[0].id)
        for block_id in graph.blocks:
            if block_id not in reachable:
                blockers.append(
                    ReadinessIssue(code="unreachable_block", message="Block cannot be reached from the start block.", block_id=block_id)
                )

    # --- Blocks ---
    for block in graph.blocks.values():
        outgoing = graph.outgoing(block.id)
        conditions = Counter(c.condition for c in outgoing)

        if conditions["default"] > 1:
            blockers.append(
                ReadinessIssue(code="duplicate_default", message="Block has more than one default branch.", block_id=block.id)
            )

        if block.type == "rule":
            if block.config.rules is None:
                blockers.append(ReadinessIssue(code="rule_missing", message="Rule block has no rules.", block_id=block.id))
            if conditions["yes"] != 1 or conditions["no"] != 1:
                blockers.append(
                    ReadinessIssue(
                        code="rule_branches",
                        message="Rule block needs exactly one 'yes' and one 'no' branch.",
                        block_id=block.id,
                    )
                )
        elif conditions["yes"] or conditions["no"]:
            blockers.append(
                ReadinessIssue(
                    code="conditional_on_non_rule",
                    message="Only rule blocks can have 'yes'/'no' branches.",
                    block_id=block.id,
                )
            )

        if block.type == "wait":
            error = wait_config_error(block.config)
            if error:
                blockers.append(ReadinessIssue(code="invalid_wait", message=error, block_id=block.id))
            if not outgoing:
                warnings.append(
                    ReadinessIssue(code="wait_dead_end", message="Wait block leads nowhere.", block_id=block.id)
                )

        if block.type in CONTENT_BLOCK_TYPES:
            missing = missing_content_fields(block)
            if missing:
                blockers.append(
                    ReadinessIssue(
                        code="missing_content",
                        message=f"{block.type} block is missing {', '.join(missing)}.",
                        block_id=block.id,
                    )
                )
            elif not block.config.body and not block.config.content_id:
                warnings.append(
                    ReadinessIssue(code="empty_content", message="Content block has no body.", block_id=block.id)
                )

            for name in ("subject", "title", "body"):
                error = template_syntax_error(getattr(block.config, name))
                if error:
                    blockers.append(
                        ReadinessIssue(
                            code="template_syntax",
                            message=f"Template error in {name} ({error}).",
                            block_id=block.id,
                        )
                    )

    return ReadinessReport(ready=not blockers, blockers=blockers, warnings=warnings)
