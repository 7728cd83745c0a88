import logging
from abc import ABC, abstractmethod
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..exceptions import ConcurrentModificationError
from ..infrastructure.database.connection import engine
from ..infrastructure.database.tables import ProgressDBModel, SeriesDBModel, as_utc
from ..state.models import Progress

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = (
    "wait_until",
    "entered_at",
    "last_block_executed_at",
    "completed_at",
    "exited_at",
    "goal_reached_at",
    "failed_at",
)


# The Interface
class ProgressRepository(ABC):
    """
    Defines how the application accesses enrollment Progress records.

    Every write is an optimistic read-modify-write: 'save' only succeeds when
    the stored version still equals the version the caller loaded, and bumps it.
    """

    @abstractmethod
    def enroll(self, progress: Progress, allow_reenrollment: bool = False) -> bool:
        """
        Atomically inserts a new waiting Progress.
        Returns False (and inserts nothing) when the visitor already has a
        waiting Progress in the series, or any Progress when re-enrollment
        is not allowed.
        """
        pass

    @abstractmethod
    def get(self, progress_id: str) -> Optional[Progress]:
        pass

    @abstractmethod
    def find_latest(self, visitor_id: str, series_id: str) -> Optional[Progress]:
        """The most recently entered Progress of a visitor in a series."""
        pass

    @abstractmethod
    def save(self, progress: Progress):
        """
        Persists 'progress' if nobody changed it since it was loaded.
        Raises ConcurrentModificationError otherwise.
        """
        pass

    @abstractmethod
    def list_waiting_for_event(self, workspace_id: str, visitor_id: str, event_name: str) -> List[Progress]:
        pass

    @abstractmethod
    def list_due(self, series_id: str, now: datetime, limit: int) -> List[Progress]:
        """Waiting rows with an elapsed 'wait_until' and no event wait, oldest deadline first."""
        pass

    @abstractmethod
    def list_for_series(self, series_id: str, limit: int) -> List[Progress]:
        pass

    @abstractmethod
    def delete_for_series(self, series_id: str) -> int:
        """Deletes every Progress of a series, history included. Returns how many."""
        pass


class InMemoryProgressRepository(ProgressRepository):
    """
    Uses an in-memory dictionary for Progress storage for testing/dev purposes.
    The lock makes check-and-insert and compare-and-swap atomic within the process.
    """

    def __init__(self):
        self._lock = RLock()
        self._store: Dict[str, Progress] = {}

    def enroll(self, progress: Progress, allow_reenrollment: bool = False) -> bool:
        with self._lock:
            for existing in self._store.values():
                if existing.visitor_id != progress.visitor_id or existing.series_id != progress.series_id:
                    continue
                if existing.status == "waiting" or not allow_reenrollment:
                    return False
            self._store[progress.id] = progress.model_copy(deep=True)
            return True

    def get(self, progress_id: str) -> Optional[Progress]:
        with self._lock:
            progress = self._store.get(progress_id)
            return progress.model_copy(deep=True) if progress else None

    def find_latest(self, visitor_id: str, series_id: str) -> Optional[Progress]:
        with self._lock:
            matching = [
                p for p in self._store.values()
                if p.visitor_id == visitor_id and p.series_id == series_id
            ]
            if not matching:
                return None
            latest = max(matching, key=lambda p: (p.entered_at, p.id))
            return latest.model_copy(deep=True)

    def save(self, progress: Progress):
        with self._lock:
            stored = self._store.get(progress.id)
            if stored is None:
                raise ValueError(f"Progress {progress.id} does not exist.")
            if stored.version != progress.version:
                raise ConcurrentModificationError(
                    f"Progress {progress.id} changed (stored version {stored.version}, loaded {progress.version})."
                )
            progress.version += 1
            self._store[progress.id] = progress.model_copy(deep=True)

    def list_waiting_for_event(self, workspace_id: str, visitor_id: str, event_name: str) -> List[Progress]:
        with self._lock:
            matching = [
                p for p in self._store.values()
                if p.status == "waiting"
                and p.workspace_id == workspace_id
                and p.visitor_id == visitor_id
                and p.wait_event_name == event_name
            ]
            matching.sort(key=lambda p: (p.entered_at, p.id))
            return [p.model_copy(deep=True) for p in matching]

    def list_due(self, series_id: str, now: datetime, limit: int) -> List[Progress]:
        with self._lock:
            matching = [
                p for p in self._store.values()
                if p.series_id == series_id
                and p.status == "waiting"
                and p.wait_event_name is None
                and p.wait_until is not None
                and p.wait_until <= now
            ]
            matching.sort(key=lambda p: (p.wait_until, p.id))
            return [p.model_copy(deep=True) for p in matching[:limit]]

    def list_for_series(self, series_id: str, limit: int) -> List[Progress]:
        with self._lock:
            matching = [p for p in self._store.values() if p.series_id == series_id]
            matching.sort(key=lambda p: (p.entered_at, p.id), reverse=True)
            return [p.model_copy(deep=True) for p in matching[:limit]]

    def delete_for_series(self, series_id: str) -> int:
        with self._lock:
            ids = [p.id for p in self._store.values() if p.series_id == series_id]
            for progress_id in ids:
                del self._store[progress_id]
            return len(ids)


class PostgresProgressRepository(ProgressRepository):
    """
    PostgreSQL storage for Progress records.

    The "one waiting row per (visitor, series)" rule is enforced by a partial
    unique index, so two workers enrolling the same visitor cannot both win.

    The index only sees waiting rows. Without re-enrollment a competing row
    may already have finished (and left the index) by the time ours is
    inserted. Those enrollments lock the series row first, so they run one
    at a time per series, and the insert is flushed and the rows for the
    pair are counted again before committing.
    """

    def __init__(self, db_engine=None):
        self.engine = db_engine or engine

    def enroll(self, progress: Progress, allow_reenrollment: bool = False) -> bool:
        with Session(self.engine) as db:
            if not allow_reenrollment:
                db.exec(select(SeriesDBModel.id).where(SeriesDBModel.id == progress.series_id).with_for_update()).first()
            if self._find_blocking(db, progress, allow_reenrollment):
                return False

            db.add(self._to_row(progress))
            try:
                db.flush()
                if not allow_reenrollment and self._count_for_pair(db, progress) > 1:
                    db.rollback()
                    self._log_lost_race(progress)
                    return False
                db.commit()
            except IntegrityError:
                db.rollback()
                self._log_lost_race(progress)
                return False
            return True

    @staticmethod
    def _find_blocking(db: Session, progress: Progress, allow_reenrollment: bool) -> Optional[ProgressDBModel]:
        statement = select(ProgressDBModel).where(
            ProgressDBModel.visitor_id == progress.visitor_id,
            ProgressDBModel.series_id == progress.series_id,
        )
        if allow_reenrollment:
            statement = statement.where(ProgressDBModel.status == "waiting")
        return db.exec(statement).first()

    @staticmethod
    def _count_for_pair(db: Session, progress: Progress) -> int:
        statement = select(func.count(ProgressDBModel.id)).where(
            ProgressDBModel.visitor_id == progress.visitor_id,
            ProgressDBModel.series_id == progress.series_id,
        )
        return db.exec(statement).one()

    @staticmethod
    def _log_lost_race(progress: Progress):
        logger.info(f"Visitor {progress.visitor_id} was enrolled into series {progress.series_id} concurrently")

    def get(self, progress_id: str) -> Optional[Progress]:
        with Session(self.engine) as db:
            row = db.get(ProgressDBModel, progress_id)
            return self._to_domain(row) if row else None

    def find_latest(self, visitor_id: str, series_id: str) -> Optional[Progress]:
        with Session(self.engine) as db:
            statement = (
                select(ProgressDBModel)
                .where(ProgressDBModel.visitor_id == visitor_id, ProgressDBModel.series_id == series_id)
                .order_by(ProgressDBModel.entered_at.desc(), ProgressDBModel.id.desc())
            )
            row = db.exec(statement).first()
            return self._to_domain(row) if row else None

    def save(self, progress: Progress):
        with Session(self.engine) as db:
            statement = select(ProgressDBModel).where(ProgressDBModel.id == progress.id).with_for_update()
            row = db.exec(statement).first()
            if not row:
                raise ValueError(f"Progress {progress.id} does not exist in DB.")
            if row.version != progress.version:
                raise ConcurrentModificationError(
                    f"Progress {progress.id} changed (stored version {row.version}, loaded {progress.version})."
                )

            fresh = self._to_row(progress)
            for name in ProgressDBModel.model_fields:
                if name in ("id", "version"):
                    continue
                setattr(row, name, getattr(fresh, name))
            row.version = progress.version + 1
            db.add(row)
            db.commit()

        progress.version += 1

    def list_waiting_for_event(self, workspace_id: str, visitor_id: str, event_name: str) -> List[Progress]:
        with Session(self.engine) as db:
            statement = (
                select(ProgressDBModel)
                .where(
                    ProgressDBModel.status == "waiting",
                    ProgressDBModel.workspace_id == workspace_id,
                    ProgressDBModel.visitor_id == visitor_id,
                    ProgressDBModel.wait_event_name == event_name,
                )
                .order_by(ProgressDBModel.entered_at, ProgressDBModel.id)
            )
            return [self._to_domain(row) for row in db.exec(statement).all()]

    def list_due(self, series_id: str, now: datetime, limit: int) -> List[Progress]:
        with Session(self.engine) as db:
            statement = (
                select(ProgressDBModel)
                .where(
                    ProgressDBModel.series_id == series_id,
                    ProgressDBModel.status == "waiting",
                    ProgressDBModel.wait_event_name.is_(None),
                    ProgressDBModel.wait_until.is_not(None),
                    ProgressDBModel.wait_until <= now,
                )
                .order_by(ProgressDBModel.wait_until, ProgressDBModel.id)
                .limit(limit)
            )
            return [self._to_domain(row) for row in db.exec(statement).all()]

    def list_for_series(self, series_id: str, limit: int) -> List[Progress]:
        with Session(self.engine) as db:
            statement = (
                select(ProgressDBModel)
                .where(ProgressDBModel.series_id == series_id)
                .order_by(ProgressDBModel.entered_at.desc(), ProgressDBModel.id.desc())
                .limit(limit)
            )
            return [self._to_domain(row) for row in db.exec(statement).all()]

    def delete_for_series(self, series_id: str) -> int:
        with Session(self.engine) as db:
            rows = db.exec(select(ProgressDBModel).where(ProgressDBModel.series_id == series_id)).all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)

    # --- Mapping ---

    @staticmethod
    def _to_row(progress: Progress) -> ProgressDBModel:
        data = progress.model_dump(exclude={"history"})
        data["history"] = [entry.model_dump(mode="json") for entry in progress.history]
        return ProgressDBModel(**data)

    @staticmethod
    def _to_domain(row: ProgressDBModel) -> Progress:
        # Deserialize the JSON history back into the Pydantic Domain Model
        data = row.model_dump()
        for name in _DATETIME_FIELDS:
            data[name] = as_utc(data[name])
        return Progress(**data)
