import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..infrastructure.database.connection import engine
from ..infrastructure.database.tables import BlockTelemetryDBModel, as_utc
from ..state.models import TELEMETRY_COUNTERS, BlockTelemetry, utc_now

logger = logging.getLogger(__name__)


def _check_counters(counters: Mapping[str, int]):
    unknown = set(counters) - set(TELEMETRY_COUNTERS)
    if unknown:
        raise ValueError(f"Unknown telemetry counters: {', '.join(sorted(unknown))}.")


# The Interface
class TelemetryRepository(ABC):
    """Per-block counters. Rows are created on first use."""

    @abstractmethod
    def increment(
        self,
        series_id: str,
        block_id: str,
        counters: Mapping[str, int],
        last_result: Optional[Dict[str, Any]] = None,
    ):
        """Adds 'counters' to the block's row and replaces 'last_result' when one is given."""
        pass

    @abstractmethod
    def list_for_series(self, series_id: str, limit: int) -> List[BlockTelemetry]:
        """Rows of one series, most recently updated first."""
        pass

    @abstractmethod
    def delete_for_series(self, series_id: str) -> int:
        pass


class InMemoryTelemetryRepository(TelemetryRepository):
    def __init__(self):
        self._lock = RLock()
        self._rows: Dict[Tuple[str, str], BlockTelemetry] = {}

    def increment(self, series_id, block_id, counters, last_result=None):
        _check_counters(counters)
        with self._lock:
            row = self._rows.get((series_id, block_id))
            if row is None:
                row = BlockTelemetry(series_id=series_id, block_id=block_id)
                self._rows[(series_id, block_id)] = row
            for name, amount in counters.items():
                setattr(row, name, getattr(row, name) + amount)
            if last_result is not None:
                row.last_result = dict(last_result)
            row.updated_at = utc_now()

    def list_for_series(self, series_id: str, limit: int) -> List[BlockTelemetry]:
        with self._lock:
            matching = [row for row in self._rows.values() if row.series_id == series_id]
            matching.sort(key=lambda row: (row.updated_at, row.block_id), reverse=True)
            return [row.model_copy(deep=True) for row in matching[:limit]]

    def delete_for_series(self, series_id: str) -> int:
        with self._lock:
            keys = [key for key in self._rows if key[0] == series_id]
            for key in keys:
                del self._rows[key]
            return len(keys)


class PostgresTelemetryRepository(TelemetryRepository):
    """
    SQL storage for block telemetry.

    Increments lock the row, so concurrent workers add up instead of
    overwriting each other. Two workers creating the same row race on the
    unique index; the loser retries once as an update.
    """

    def __init__(self, db_engine=None):
        self.engine = db_engine or engine

    def increment(self, series_id, block_id, counters, last_result=None):
        _check_counters(counters)
        try:
            self._apply(series_id, block_id, counters, last_result)
        except IntegrityError:
            logger.debug(f"Telemetry row for block {block_id} was created concurrently, updating it")
            self._apply(series_id, block_id, counters, last_result)

    def _apply(self, series_id, block_id, counters, last_result):
        with Session(self.engine) as db:
            statement = (
                select(BlockTelemetryDBModel)
                .where(BlockTelemetryDBModel.series_id == series_id, BlockTelemetryDBModel.block_id == block_id)
                .with_for_update()
            )
            row = db.exec(statement).first()
            if row is None:
                row = BlockTelemetryDBModel(series_id=series_id, block_id=block_id, updated_at=utc_now())
            for name, amount in counters.items():
                setattr(row, name, (getattr(row, name) or 0) + amount)
            if last_result is not None:
                row.last_result = dict(last_result)
            row.updated_at = utc_now()
            db.add(row)
            db.commit()

    def list_for_series(self, series_id: str, limit: int) -> List[BlockTelemetry]:
        with Session(self.engine) as db:
            statement = (
                select(BlockTelemetryDBModel)
                .where(BlockTelemetryDBModel.series_id == series_id)
                .order_by(BlockTelemetryDBModel.updated_at.desc(), BlockTelemetryDBModel.block_id.desc())
                .limit(limit)
            )
            return [self._to_domain(row) for row in db.exec(statement).all()]

    def delete_for_series(self, series_id: str) -> int:
        with Session(self.engine) as db:
            rows = db.exec(select(BlockTelemetryDBModel).where(BlockTelemetryDBModel.series_id == series_id)).all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)

    @staticmethod
    def _to_domain(row: BlockTelemetryDBModel) -> BlockTelemetry:
        data = row.model_dump(exclude={"id"})
        data["updated_at"] = as_utc(data["updated_at"])
        return BlockTelemetry(**data)
