"""
Series Authoring Service.

Entry point for editing series definitions: the series itself, its blocks
and the connections between them, activation and deactivation, plus the
read helpers the editor needs (graph, readiness, stats, telemetry).

Every write is validated here, so the graph store only ever holds rule
trees that parse, block configs that fit their block type, and an acyclic
graph whose connections stay inside one series.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..domain.models import Block, BlockConfig, Connection, Series, SeriesGraph
from ..exceptions import NotFoundError, ReadinessError, ValidationError
from ..repositories.progress import ProgressRepository
from ..repositories.series import SeriesRepository
from ..repositories.telemetry import TelemetryRepository
from ..rules.models import parse_audience_rule
from ..state.models import TERMINAL_STATUSES, BlockTelemetry, new_id, utc_now
from .readiness import ReadinessReport, evaluate_readiness
from .resume import clamp_limit

logger = logging.getLogger(__name__)

EDITABLE_SERIES_FIELDS = {"name", "description", "entry_triggers", "entry_rules", "exit_rules", "goal_rules"}

_CONTENT_FIELDS = {"body", "content_id"}

# Config fields each block type may carry
BLOCK_CONFIG_FIELDS = {
    "wait": {"wait_type", "wait_duration", "wait_unit", "wait_until_date", "wait_until_event"},
    "rule": {"rules"},
    "chat": _CONTENT_FIELDS,
    "post": _CONTENT_FIELDS,
    "carousel": _CONTENT_FIELDS,
    "email": _CONTENT_FIELDS | {"subject"},
    "push": _CONTENT_FIELDS | {"title"},
}


class SeriesStats(BaseModel):
    series_id: str
    total: int
    by_status: Dict[str, int]
    completion_rate: float
    goal_rate: float
    truncated: bool = False


class TelemetryTotals(BaseModel):
    entered: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    delivery_attempts: int = 0
    delivery_failures: int = 0


class BlockTelemetryRead(BlockTelemetry):
    # None once the block has been removed from the series
    block: Optional[Block] = None


class SeriesTelemetry(BaseModel):
    series_id: str
    totals: TelemetryTotals
    blocks: List[BlockTelemetryRead]


def _validated(model_cls, data: Dict[str, Any], what: str):
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}: {e.errors(include_url=False)}") from e


class SeriesAuthoringService:
    def __init__(
        self,
        series_repository: SeriesRepository,
        progress_repository: ProgressRepository,
        telemetry_repository: TelemetryRepository,
    ):
        self.series_repo = series_repository
        self.progress_repo = progress_repository
        self.telemetry_repo = telemetry_repository

    # ==========================================================================
    # Series
    # ==========================================================================

    def create_series(
        self,
        workspace_id: str,
        name: str,
        description: Optional[str] = None,
        entry_triggers: Optional[List[Any]] = None,
        entry_rules: Any = None,
        exit_rules: Any = None,
        goal_rules: Any = None,
    ) -> Series:
        if not name or not name.strip():
            raise ValidationError("Series name is required.")

        series = _validated(
            Series,
            {
                "workspace_id": workspace_id,
                "name": name.strip(),
                "description": description,
                "entry_triggers": entry_triggers or [],
                "entry_rules": self._check_rule(entry_rules, "entry_rules"),
                "exit_rules": self._check_rule(exit_rules, "exit_rules"),
                "goal_rules": self._check_rule(goal_rules, "goal_rules"),
            },
            "series",
        )
        self.series_repo.add_series(series)
        logger.info(f"Created series {series.id} '{series.name}' in workspace {workspace_id}")
        return series

    def update_series(self, series_id: str, **changes: Any) -> Series:
        unknown = set(changes) - EDITABLE_SERIES_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update series fields: {', '.join(sorted(unknown))}.")
        if "name" in changes and (not changes["name"] or not str(changes["name"]).strip()):
            raise ValidationError("Series name is required.")

        series = self._require_series(series_id)
        for key in ("entry_rules", "exit_rules", "goal_rules"):
            if key in changes:
                changes[key] = self._check_rule(changes[key], key)

        data = series.model_dump()
        data.update(changes)
        data["updated_at"] = utc_now()
        updated = _validated(Series, data, "series")
        self.series_repo.save_series(updated)
        return updated

    def list_series(self, workspace_id: str, status: Optional[str] = None) -> List[Series]:
        return self.series_repo.list_series(workspace_id, status)

    def get_series_with_graph(self, series_id: str) -> Tuple[Series, SeriesGraph]:
        series = self._require_series(series_id)
        return series, self.series_repo.get_graph(series_id)

    def activate(self, series_id: str) -> Series:
        series, graph = self.get_series_with_graph(series_id)
        report = evaluate_readiness(series, graph)
        if not report.ready:
            raise ReadinessError(
                f"Series {series_id} is not ready to activate.",
                blockers=[issue.model_dump() for issue in report.blockers],
                warnings=[issue.model_dump() for issue in report.warnings],
            )

        series.status = "active"
        series.updated_at = utc_now()
        self.series_repo.save_series(series)
        logger.info(f"Activated series {series_id}")
        return series

    def deactivate(self, series_id: str) -> Series:
        """Stops new enrollments. Visitors already waiting in the series still resume."""
        series = self._require_series(series_id)
        if series.status == "draft":
            raise ValidationError(f"Series {series_id} was never activated.")
        if series.status == "active":
            series.status = "paused"
            series.updated_at = utc_now()
            self.series_repo.save_series(series)
            logger.info(f"Deactivated series {series_id}")
        return series

    def archive(self, series_id: str) -> Series:
        """
        Retires a series. Nobody enters it, and its waiting visitors are no
        longer resumed by events or the sweep. Activating it again brings them back.
        """
        series = self._require_series(series_id)
        if series.status != "archived":
            series.status = "archived"
            series.updated_at = utc_now()
            self.series_repo.save_series(series)
            logger.info(f"Archived series {series_id}")
        return series

    def delete_series(self, series_id: str):
        """Deletes the series with its blocks, connections, telemetry and every Progress (history included)."""
        self._require_series(series_id)
        removed_progress = self.progress_repo.delete_for_series(series_id)
        self.telemetry_repo.delete_for_series(series_id)
        self.series_repo.delete_series(series_id)
        logger.info(f"Deleted series {series_id} and {removed_progress} progress records")

    def get_readiness(self, series_id: str) -> ReadinessReport:
        series, graph = self.get_series_with_graph(series_id)
        return evaluate_readiness(series, graph)

    def duplicate_series(self, series_id: str, name: Optional[str] = None) -> Series:
        """Copies the definition, blocks and connections into a new draft series."""
        source, graph = self.get_series_with_graph(series_id)
        now = utc_now()

        copy = source.model_copy(
            deep=True,
            update={
                "id": new_id(),
                "name": name or f"{source.name} (copy)",
                "status": "draft",
                "created_at": now,
                "updated_at": now,
            },
        )
        self.series_repo.add_series(copy)

        block_ids: Dict[str, str] = {}
        for block in graph.blocks.values():
            new_block = block.model_copy(
                deep=True,
                update={"id": new_id(), "series_id": copy.id, "created_at": now, "updated_at": now},
            )
            block_ids[block.id] = new_block.id
            self.series_repo.add_block(new_block)

        # Keep the original edge order so branch selection behaves the same
        for connection in graph.connections:
            if connection.from_block_id not in block_ids or connection.to_block_id not in block_ids:
                continue
            self.series_repo.add_connection(
                connection.model_copy(
                    update={
                        "id": new_id(),
                        "series_id": copy.id,
                        "from_block_id": block_ids[connection.from_block_id],
                        "to_block_id": block_ids[connection.to_block_id],
                    }
                )
            )

        logger.info(f"Duplicated series {series_id} as {copy.id}")
        return copy

    def get_stats(self, series_id: str, limit: Optional[int] = None) -> SeriesStats:
        self._require_series(series_id)
        limit = limit if limit and limit > 0 else settings.DEFAULT_STATS_SCAN_LIMIT
        rows = self.progress_repo.list_for_series(series_id, limit)

        by_status = {status: 0 for status in ("waiting", *sorted(TERMINAL_STATUSES))}
        for progress in rows:
            by_status[progress.status] += 1

        total = len(rows)
        return SeriesStats(
            series_id=series_id,
            total=total,
            by_status=by_status,
            completion_rate=by_status["completed"] / total if total else 0.0,
            goal_rate=by_status["goal_reached"] / total if total else 0.0,
            truncated=total >= limit,
        )

    def get_telemetry(self, series_id: str, limit: Optional[int] = None) -> SeriesTelemetry:
        self._require_series(series_id)
        limit = clamp_limit(limit, settings.DEFAULT_TELEMETRY_LIMIT, settings.MAX_TELEMETRY_LIMIT)
        rows = self.telemetry_repo.list_for_series(series_id, limit)
        blocks = {block.id: block for block in self.series_repo.list_blocks(series_id)}

        totals = TelemetryTotals()
        for row in rows:
            for name in TelemetryTotals.model_fields:
                setattr(totals, name, getattr(totals, name) + getattr(row, name))

        return SeriesTelemetry(
            series_id=series_id,
            totals=totals,
            blocks=[BlockTelemetryRead(**row.model_dump(), block=blocks.get(row.block_id)) for row in rows],
        )

    # ==========================================================================
    # Blocks
    # ==========================================================================

    def add_block(
        self,
        series_id: str,
        type: str,
        config: Optional[Dict[str, Any]] = None,
        position: Optional[Dict[str, Any]] = None,
    ) -> Block:
        series = self._require_series(series_id)
        block = _validated(
            Block,
            {
                "series_id": series_id,
                "type": type,
                "config": self._check_block_config(type, config or {}),
                "position": position,
            },
            "block",
        )
        self.series_repo.add_block(block)
        self._touch(series)
        return block

    def update_block(
        self,
        block_id: str,
        config: Optional[Dict[str, Any]] = None,
        position: Optional[Dict[str, Any]] = None,
    ) -> Block:
        block = self._require_block(block_id)
        data = block.model_dump()
        if config is not None:
            data["config"] = self._check_block_config(block.type, config)
        if position is not None:
            data["position"] = position
        data["updated_at"] = utc_now()

        updated = _validated(Block, data, "block")
        self.series_repo.save_block(updated)
        self._touch(self._require_series(block.series_id))
        return updated

    def remove_block(self, block_id: str):
        """Removes the block and every connection into or out of it."""
        block = self._require_block(block_id)
        self.series_repo.delete_block(block_id)
        self._touch(self._require_series(block.series_id))

    # ==========================================================================
    # Connections
    # ==========================================================================

    def add_connection(
        self,
        series_id: str,
        from_block_id: str,
        to_block_id: str,
        condition: str = "default",
    ) -> Connection:
        series, graph = self.get_series_with_graph(series_id)

        for block_id in (from_block_id, to_block_id):
            if block_id not in graph.blocks:
                if self.series_repo.get_block(block_id) is None:
                    raise NotFoundError(f"Block {block_id} not found.")
                raise ValidationError(f"Block {block_id} belongs to another series.")

        if graph.creates_cycle(from_block_id, to_block_id):
            raise ValidationError(f"Connecting {from_block_id} -> {to_block_id} would create a cycle.")

        connection = _validated(
            Connection,
            {
                "series_id": series_id,
                "from_block_id": from_block_id,
                "to_block_id": to_block_id,
                "condition": condition,
            },
            "connection",
        )
        self.series_repo.add_connection(connection)
        self._touch(series)
        return connection

    def remove_connection(self, connection_id: str):
        connection = self.series_repo.get_connection(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection {connection_id} not found.")
        self.series_repo.delete_connection(connection_id)
        self._touch(self._require_series(connection.series_id))

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _require_series(self, series_id: str) -> Series:
        series = self.series_repo.get_series(series_id)
        if series is None:
            raise NotFoundError(f"Series {series_id} not found.")
        return series

    def _require_block(self, block_id: str) -> Block:
        block = self.series_repo.get_block(block_id)
        if block is None:
            raise NotFoundError(f"Block {block_id} not found.")
        return block

    def _touch(self, series: Series):
        series.updated_at = utc_now()
        self.series_repo.save_series(series)

    @staticmethod
    def _check_rule(rule: Any, field_name: str) -> Optional[Dict[str, Any]]:
        if rule is None:
            return None
        try:
            return parse_audience_rule(rule).model_dump()
        except ValidationError as e:
            raise ValidationError(f"{field_name}: {e}") from e

    @staticmethod
    def _check_block_config(block_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
        allowed: Iterable[str] = BLOCK_CONFIG_FIELDS.get(block_type)
        if allowed is None:
            raise ValidationError(f"Unknown block type '{block_type}'.")

        present = {key for key, value in config.items() if value is not None}
        unexpected = present - set(allowed)
        if unexpected:
            raise ValidationError(f"{block_type} blocks do not accept: {', '.join(sorted(unexpected))}.")

        parsed = _validated(BlockConfig, config, f"{block_type} block config")
        return parsed.model_dump()
