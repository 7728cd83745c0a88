from abc import ABC, abstractmethod
from threading import RLock
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, select

from ..domain.models import Block, Connection, Series, SeriesGraph
from ..infrastructure.database.connection import engine
from ..infrastructure.database.tables import BlockDBModel, ConnectionDBModel, SeriesDBModel, as_utc

_DEFINITION_FIELDS = {"description", "entry_triggers", "entry_rules", "exit_rules", "goal_rules"}


# The Interface
class SeriesRepository(ABC):
    """
    Defines how the application accesses Series definitions (the Graph Store):
    series rows, their blocks, and the connections between blocks.
    This allows us change how data is accessed (Memory -> SQL -> API) later
    without changing the engine code.
    """

    @abstractmethod
    def add_series(self, series: Series) -> Series:
        pass

    @abstractmethod
    def get_series(self, series_id: str) -> Optional[Series]:
        pass

    @abstractmethod
    def save_series(self, series: Series):
        pass

    @abstractmethod
    def list_series(self, workspace_id: str, status: Optional[str] = None) -> List[Series]:
        """Series of one workspace, optionally filtered by status."""
        pass

    @abstractmethod
    def list_series_by_status(self, statuses: Iterable[str], limit: int) -> List[Series]:
        """Series across all workspaces, newest first, for the backstop sweep."""
        pass

    @abstractmethod
    def delete_series(self, series_id: str) -> bool:
        """Deletes a series with all of its blocks and connections."""
        pass

    @abstractmethod
    def add_block(self, block: Block) -> Block:
        pass

    @abstractmethod
    def get_block(self, block_id: str) -> Optional[Block]:
        pass

    @abstractmethod
    def save_block(self, block: Block):
        pass

    @abstractmethod
    def delete_block(self, block_id: str) -> bool:
        """Deletes a block and every connection touching it."""
        pass

    @abstractmethod
    def list_blocks(self, series_id: str) -> List[Block]:
        pass

    @abstractmethod
    def add_connection(self, connection: Connection) -> Connection:
        pass

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    def delete_connection(self, connection_id: str) -> bool:
        pass

    @abstractmethod
    def list_connections(self, series_id: str) -> List[Connection]:
        pass

    def get_graph(self, series_id: str) -> SeriesGraph:
        blocks = self.list_blocks(series_id)
        return SeriesGraph(
            series_id=series_id,
            blocks={block.id: block for block in blocks},
            connections=self.list_connections(series_id),
        )


class InMemorySeriesRepository(SeriesRepository):
    """
    Uses in-memory dictionaries for storage for testing/dev purposes.
    Stored objects are copies, so callers cannot mutate the store by accident.
    """

    def __init__(self):
        self._lock = RLock()
        self._series: Dict[str, Series] = {}
        self._blocks: Dict[str, Block] = {}
        self._connections: Dict[str, Connection] = {}

    def add_series(self, series: Series) -> Series:
        with self._lock:
            self._series[series.id] = series.model_copy(deep=True)
        return series

    def get_series(self, series_id: str) -> Optional[Series]:
        with self._lock:
            series = self._series.get(series_id)
            return series.model_copy(deep=True) if series else None

    def save_series(self, series: Series):
        with self._lock:
            if series.id not in self._series:
                raise ValueError(f"Series {series.id} does not exist.")
            self._series[series.id] = series.model_copy(deep=True)

    def list_series(self, workspace_id: str, status: Optional[str] = None) -> List[Series]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in sorted(self._series.values(), key=lambda s: (s.created_at, s.id))
                if s.workspace_id == workspace_id and (status is None or s.status == status)
            ]

    def list_series_by_status(self, statuses: Iterable[str], limit: int) -> List[Series]:
        wanted = set(statuses)
        with self._lock:
            matching = [s for s in self._series.values() if s.status in wanted]
            matching.sort(key=lambda s: (s.created_at, s.id), reverse=True)
            return [s.model_copy(deep=True) for s in matching[:limit]]

    def delete_series(self, series_id: str) -> bool:
        with self._lock:
            if self._series.pop(series_id, None) is None:
                return False
            for block_id in [b.id for b in self._blocks.values() if b.series_id == series_id]:
                del self._blocks[block_id]
            for connection_id in [c.id for c in self._connections.values() if c.series_id == series_id]:
                del self._connections[connection_id]
            return True

    def add_block(self, block: Block) -> Block:
        with self._lock:
            self._blocks[block.id] = block.model_copy(deep=True)
        return block

    def get_block(self, block_id: str) -> Optional[Block]:
        with self._lock:
            block = self._blocks.get(block_id)
            return block.model_copy(deep=True) if block else None

    def save_block(self, block: Block):
        with self._lock:
            if block.id not in self._blocks:
                raise ValueError(f"Block {block.id} does not exist.")
            self._blocks[block.id] = block.model_copy(deep=True)

    def delete_block(self, block_id: str) -> bool:
        with self._lock:
            if block_id not in self._blocks:
                return False
            del self._blocks[block_id]
            for connection_id in [
                c.id for c in self._connections.values()
                if block_id in (c.from_block_id, c.to_block_id)
            ]:
                del self._connections[connection_id]
            return True

    def list_blocks(self, series_id: str) -> List[Block]:
        with self._lock:
            return [
                b.model_copy(deep=True)
                for b in sorted(self._blocks.values(), key=lambda b: (b.created_at, b.id))
                if b.series_id == series_id
            ]

    def add_connection(self, connection: Connection) -> Connection:
        with self._lock:
            self._connections[connection.id] = connection.model_copy(deep=True)
        return connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return connection.model_copy(deep=True) if connection else None

    def delete_connection(self, connection_id: str) -> bool:
        with self._lock:
            if connection_id in self._connections:
                del self._connections[connection_id]
                return True
            return False

    def list_connections(self, series_id: str) -> List[Connection]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._connections.values() if c.series_id == series_id]


class PostgresSeriesRepository(SeriesRepository):
    """
    PostgreSQL storage for series definitions.
    Rule trees, triggers and block configs live in JSONB columns.
    """

    def __init__(self, db_engine=None):
        self.engine = db_engine or engine

    # --- Series ---

    def add_series(self, series: Series) -> Series:
        with Session(self.engine) as db:
            db.add(self._series_to_row(series))
            db.commit()
        return series

    def get_series(self, series_id: str) -> Optional[Series]:
        with Session(self.engine) as db:
            row = db.get(SeriesDBModel, series_id)
            return self._row_to_series(row) if row else None

    def save_series(self, series: Series):
        with Session(self.engine) as db:
            row = db.get(SeriesDBModel, series.id)
            if not row:
                raise ValueError(f"Series {series.id} does not exist in DB.")
            fresh = self._series_to_row(series)
            row.name = fresh.name
            row.status = fresh.status
            row.definition = fresh.definition
            row.updated_at = fresh.updated_at
            db.add(row)
            db.commit()

    def list_series(self, workspace_id: str, status: Optional[str] = None) -> List[Series]:
        with Session(self.engine) as db:
            statement = select(SeriesDBModel).where(SeriesDBModel.workspace_id == workspace_id)
            if status is not None:
                statement = statement.where(SeriesDBModel.status == status)
            statement = statement.order_by(SeriesDBModel.created_at, SeriesDBModel.id)
            return [self._row_to_series(row) for row in db.exec(statement).all()]

    def list_series_by_status(self, statuses: Iterable[str], limit: int) -> List[Series]:
        with Session(self.engine) as db:
            statement = (
                select(SeriesDBModel)
                .where(SeriesDBModel.status.in_(list(statuses)))
                .order_by(SeriesDBModel.created_at.desc(), SeriesDBModel.id.desc())
                .limit(limit)
            )
            return [self._row_to_series(row) for row in db.exec(statement).all()]

    def delete_series(self, series_id: str) -> bool:
        with Session(self.engine) as db:
            row = db.get(SeriesDBModel, series_id)
            if not row:
                return False
            for model in (ConnectionDBModel, BlockDBModel):
                for child in db.exec(select(model).where(model.series_id == series_id)).all():
                    db.delete(child)
            db.delete(row)
            db.commit()
            return True

    # --- Blocks ---

    def add_block(self, block: Block) -> Block:
        with Session(self.engine) as db:
            db.add(
                BlockDBModel(
                    id=block.id,
                    series_id=block.series_id,
                    type=block.type,
                    config=block.config.model_dump(mode="json", exclude_none=True),
                    position=block.position.model_dump(mode="json") if block.position else None,
                    created_at=block.created_at,
                    updated_at=block.updated_at,
                )
            )
            db.commit()
        return block

    def get_block(self, block_id: str) -> Optional[Block]:
        with Session(self.engine) as db:
            row = db.get(BlockDBModel, block_id)
            return self._row_to_block(row) if row else None

    def save_block(self, block: Block):
        with Session(self.engine) as db:
            row = db.get(BlockDBModel, block.id)
            if not row:
                raise ValueError(f"Block {block.id} does not exist in DB.")
            row.type = block.type
            row.config = block.config.model_dump(mode="json", exclude_none=True)
            row.position = block.position.model_dump(mode="json") if block.position else None
            row.updated_at = block.updated_at
            db.add(row)
            db.commit()

    def delete_block(self, block_id: str) -> bool:
        with Session(self.engine) as db:
            row = db.get(BlockDBModel, block_id)
            if not row:
                return False
            statement = select(ConnectionDBModel).where(
                (ConnectionDBModel.from_block_id == block_id) | (ConnectionDBModel.to_block_id == block_id)
            )
            for connection in db.exec(statement).all():
                db.delete(connection)
            db.delete(row)
            db.commit()
            return True

    def list_blocks(self, series_id: str) -> List[Block]:
        with Session(self.engine) as db:
            statement = (
                select(BlockDBModel)
                .where(BlockDBModel.series_id == series_id)
                .order_by(BlockDBModel.created_at, BlockDBModel.id)
            )
            return [self._row_to_block(row) for row in db.exec(statement).all()]

    # --- Connections ---

    def add_connection(self, connection: Connection) -> Connection:
        with Session(self.engine) as db:
            db.add(ConnectionDBModel(**connection.model_dump()))
            db.commit()
        return connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with Session(self.engine) as db:
            row = db.get(ConnectionDBModel, connection_id)
            return self._row_to_connection(row) if row else None

    def delete_connection(self, connection_id: str) -> bool:
        with Session(self.engine) as db:
            row = db.get(ConnectionDBModel, connection_id)
            if not row:
                return False
            db.delete(row)
            db.commit()
            return True

    def list_connections(self, series_id: str) -> List[Connection]:
        with Session(self.engine) as db:
            statement = select(ConnectionDBModel).where(ConnectionDBModel.series_id == series_id)
            return [self._row_to_connection(row) for row in db.exec(statement).all()]

    # --- Mapping ---

    @staticmethod
    def _series_to_row(series: Series) -> SeriesDBModel:
        return SeriesDBModel(
            id=series.id,
            workspace_id=series.workspace_id,
            name=series.name,
            status=series.status,
            definition=series.model_dump(mode="json", include=_DEFINITION_FIELDS, exclude_none=True),
            created_at=series.created_at,
            updated_at=series.updated_at,
        )

    @staticmethod
    def _row_to_series(row: SeriesDBModel) -> Series:
        # Deserialize JSONB back into the Pydantic Domain Model
        return Series(
            id=row.id,
            workspace_id=row.workspace_id,
            name=row.name,
            status=row.status,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            **row.definition,
        )

    @staticmethod
    def _row_to_block(row: BlockDBModel) -> Block:
        return Block(
            id=row.id,
            series_id=row.series_id,
            type=row.type,
            config=row.config,
            position=row.position,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_connection(row: ConnectionDBModel) -> Connection:
        return Connection(
            id=row.id,
            series_id=row.series_id,
            from_block_id=row.from_block_id,
            to_block_id=row.to_block_id,
            condition=row.condition,
            created_at=as_utc(row.created_at),
        )
