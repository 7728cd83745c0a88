"""Tests for the SQL repositories, run against an in-memory SQLite database."""

from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool

from series_automation.domain.models import CONTENT_BLOCK_TYPES, Block, BlockConfig, Connection, Series
from series_automation.exceptions import ConcurrentModificationError
from series_automation.execution import BlockExecutor, RetrySupervisor, SeriesEngine, TerminalTransitionResolver
from series_automation.execution.telemetry import BlockTelemetryRecorder
from series_automation.infrastructure.database.connection import engine_options, init_db, make_engine
from series_automation.repositories.progress import PostgresProgressRepository
from series_automation.repositories.series import PostgresSeriesRepository
from series_automation.repositories.telemetry import PostgresTelemetryRepository
from series_automation.services.authoring import SeriesAuthoringService
from series_automation.services.enrollment import EnrollmentController
from series_automation.services.resume import ResumeManager
from series_automation.services.runtime import SeriesRuntimeService
from series_automation.services.subscriptions import SeriesTriggerSubscriber
from series_automation.state.models import Progress, utc_now

WORKSPACE = "ws-1"


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_series_repo(db_engine) -> PostgresSeriesRepository:
    return PostgresSeriesRepository(db_engine)


@pytest.fixture
def sql_progress_repo(db_engine) -> PostgresProgressRepository:
    return PostgresProgressRepository(db_engine)


@pytest.fixture
def sql_telemetry_repo(db_engine) -> PostgresTelemetryRepository:
    return PostgresTelemetryRepository(db_engine)


def make_progress(series_id: str = "s-1", visitor_id: str = "v-1", **fields) -> Progress:
    return Progress(workspace_id=WORKSPACE, visitor_id=visitor_id, series_id=series_id, **fields)


class TestSeriesRepository:
    """Tests for PostgresSeriesRepository."""

    def test_series_round_trip(self, sql_series_repo) -> None:
        series = Series(
            workspace_id=WORKSPACE,
            name="Welcome",
            description="First week",
            entry_triggers=[{"source": "event", "event_name": "signup"}],
            exit_rules={
                "type": "condition",
                "property": {"source": "custom", "key": "plan"},
                "operator": "equals",
                "value": "free",
            },
        )
        sql_series_repo.add_series(series)

        loaded = sql_series_repo.get_series(series.id)

        assert loaded.name == "Welcome"
        assert loaded.description == "First week"
        assert loaded.entry_triggers[0].event_name == "signup"
        assert loaded.exit_rules is not None
        assert loaded.entry_rules is None
        assert loaded.created_at.tzinfo is not None

    def test_save_and_list_by_status(self, sql_series_repo) -> None:
        draft = sql_series_repo.add_series(
            Series(workspace_id=WORKSPACE, name="Draft", created_at=utc_now() - timedelta(minutes=1))
        )
        live = sql_series_repo.add_series(Series(workspace_id=WORKSPACE, name="Live"))
        live.status = "active"
        sql_series_repo.save_series(live)

        assert [s.id for s in sql_series_repo.list_series(WORKSPACE, status="active")] == [live.id]
        assert [s.id for s in sql_series_repo.list_series(WORKSPACE)] == [draft.id, live.id]
        assert [s.id for s in sql_series_repo.list_series_by_status(("active", "paused"), 10)] == [live.id]

    def test_graph_and_cascading_delete(self, sql_series_repo) -> None:
        series = sql_series_repo.add_series(Series(workspace_id=WORKSPACE, name="Graph"))
        wait = sql_series_repo.add_block(
            Block(series_id=series.id, type="wait", config=BlockConfig(wait_type="until_event", wait_until_event="Purchase"))
        )
        chat = sql_series_repo.add_block(Block(series_id=series.id, type="chat", config=BlockConfig(body="Hi")))
        sql_series_repo.add_connection(Connection(series_id=series.id, from_block_id=wait.id, to_block_id=chat.id))

        graph = sql_series_repo.get_graph(series.id)
        assert graph.start_block().id == wait.id
        assert graph.blocks[wait.id].config.wait_until_event == "Purchase"
        assert graph.select_next(wait.id).to_block_id == chat.id

        assert sql_series_repo.delete_block(chat.id) is True
        assert sql_series_repo.delete_block(chat.id) is False
        assert sql_series_repo.list_connections(series.id) == []
        assert [b.id for b in sql_series_repo.list_blocks(series.id)] == [wait.id]

    def test_save_block(self, sql_series_repo) -> None:
        block = sql_series_repo.add_block(Block(series_id="s-1", type="chat", config=BlockConfig(body="Hi")))
        block.config = BlockConfig(body="Bye")
        sql_series_repo.save_block(block)

        assert sql_series_repo.get_block(block.id).config.body == "Bye"

    def test_delete_series_cascades(self, sql_series_repo) -> None:
        series = sql_series_repo.add_series(Series(workspace_id=WORKSPACE, name="Doomed"))
        other = sql_series_repo.add_series(Series(workspace_id=WORKSPACE, name="Kept"))
        first = sql_series_repo.add_block(Block(series_id=series.id, type="chat", config=BlockConfig(body="1")))
        second = sql_series_repo.add_block(Block(series_id=series.id, type="chat", config=BlockConfig(body="2")))
        kept = sql_series_repo.add_block(Block(series_id=other.id, type="chat", config=BlockConfig(body="3")))
        sql_series_repo.add_connection(Connection(series_id=series.id, from_block_id=first.id, to_block_id=second.id))

        assert sql_series_repo.delete_series(series.id) is True
        assert sql_series_repo.delete_series(series.id) is False
        assert sql_series_repo.get_series(series.id) is None
        assert sql_series_repo.list_blocks(series.id) == []
        assert sql_series_repo.list_connections(series.id) == []
        assert [b.id for b in sql_series_repo.list_blocks(other.id)] == [kept.id]


class TestProgressRepository:
    """Tests for PostgresProgressRepository."""

    def test_enroll_is_unique_per_visitor_and_series(self, sql_progress_repo) -> None:
        assert sql_progress_repo.enroll(make_progress()) is True
        assert sql_progress_repo.enroll(make_progress()) is False
        assert sql_progress_repo.enroll(make_progress(visitor_id="v-2")) is True

    def test_reenrollment_after_terminal(self, sql_progress_repo) -> None:
        sql_progress_repo.enroll(make_progress(status="completed"))

        assert sql_progress_repo.enroll(make_progress()) is False
        assert sql_progress_repo.enroll(make_progress(), allow_reenrollment=True) is True
        assert sql_progress_repo.enroll(make_progress(), allow_reenrollment=True) is False

    def test_concurrent_insert_loses_on_the_unique_index(self, sql_progress_repo, monkeypatch) -> None:
        """Another worker inserted the waiting row between our check and our insert."""
        sql_progress_repo.enroll(make_progress())
        monkeypatch.setattr(sql_progress_repo, "_find_blocking", lambda db, progress, allow_reenrollment: None)

        assert sql_progress_repo.enroll(make_progress(), allow_reenrollment=True) is False
        assert sql_progress_repo.enroll(make_progress()) is False
        assert len(sql_progress_repo.list_for_series("s-1", 10)) == 1

    def test_finished_competitor_still_blocks_without_reenrollment(self, sql_progress_repo, monkeypatch) -> None:
        """The competing row already completed, so the waiting-only index cannot see it."""
        sql_progress_repo.enroll(make_progress(status="completed"))
        monkeypatch.setattr(sql_progress_repo, "_find_blocking", lambda db, progress, allow_reenrollment: None)

        assert sql_progress_repo.enroll(make_progress()) is False
        assert len(sql_progress_repo.list_for_series("s-1", 10)) == 1
        assert sql_progress_repo.enroll(make_progress(), allow_reenrollment=True) is True

    def test_delete_for_series(self, sql_progress_repo) -> None:
        sql_progress_repo.enroll(make_progress(visitor_id="v-1"))
        sql_progress_repo.enroll(make_progress(visitor_id="v-2"))
        kept = make_progress(series_id="s-2")
        sql_progress_repo.enroll(kept)

        assert sql_progress_repo.delete_for_series("s-1") == 2
        assert sql_progress_repo.list_for_series("s-1", 10) == []
        assert sql_progress_repo.get(kept.id) is not None

    def test_round_trip_keeps_history_and_timezones(self, sql_progress_repo) -> None:
        progress = make_progress(current_block_id="b-1", wait_until=utc_now() + timedelta(hours=1))
        progress.record("entered", "b-1")
        sql_progress_repo.enroll(progress)

        loaded = sql_progress_repo.get(progress.id)

        assert loaded.current_block_id == "b-1"
        assert loaded.wait_until.tzinfo is not None
        assert loaded.entered_at.tzinfo is not None
        assert [(h.action, h.block_id) for h in loaded.history] == [("entered", "b-1")]

    def test_save_bumps_version_and_rejects_stale_copies(self, sql_progress_repo) -> None:
        sql_progress_repo.enroll(make_progress())
        [progress] = sql_progress_repo.list_for_series("s-1", 10)
        stale = sql_progress_repo.get(progress.id)

        progress.attempt_count = 2
        progress.record("retry_scheduled", "b-1", attempt_count=2)
        sql_progress_repo.save(progress)

        assert progress.version == 1
        stored = sql_progress_repo.get(progress.id)
        assert stored.version == 1
        assert stored.attempt_count == 2
        assert stored.history[-1].detail == {"attempt_count": 2}
        with pytest.raises(ConcurrentModificationError):
            sql_progress_repo.save(stale)

    def test_list_due(self, sql_progress_repo) -> None:
        now = utc_now()
        later = make_progress(visitor_id="v-1", wait_until=now - timedelta(minutes=1))
        earlier = make_progress(visitor_id="v-2", wait_until=now - timedelta(minutes=5))
        future = make_progress(visitor_id="v-3", wait_until=now + timedelta(minutes=5))
        on_event = make_progress(visitor_id="v-4", wait_event_name="Purchase")
        finished = make_progress(visitor_id="v-5", status="failed", wait_until=now - timedelta(minutes=5))
        for progress in (later, earlier, future, on_event, finished):
            sql_progress_repo.enroll(progress)

        due = sql_progress_repo.list_due("s-1", now, 10)

        assert [p.id for p in due] == [earlier.id, later.id]
        assert [p.id for p in sql_progress_repo.list_due("s-1", now, 1)] == [earlier.id]

    def test_list_waiting_for_event_is_exact(self, sql_progress_repo) -> None:
        waiting = make_progress(wait_event_name="Purchase")
        sql_progress_repo.enroll(waiting)
        sql_progress_repo.enroll(make_progress(series_id="s-2", wait_event_name="Signup"))

        assert [p.id for p in sql_progress_repo.list_waiting_for_event(WORKSPACE, "v-1", "Purchase")] == [waiting.id]
        assert sql_progress_repo.list_waiting_for_event(WORKSPACE, "v-1", "purchase") == []
        assert sql_progress_repo.list_waiting_for_event("ws-2", "v-1", "Purchase") == []

    def test_find_latest(self, sql_progress_repo) -> None:
        old = make_progress(status="completed", entered_at=utc_now() - timedelta(days=3))
        new = make_progress()
        sql_progress_repo.enroll(old)
        sql_progress_repo.enroll(new, allow_reenrollment=True)

        assert sql_progress_repo.find_latest("v-1", "s-1").id == new.id
        assert sql_progress_repo.find_latest("v-1", "s-9") is None


class TestRuntimeOnSql:
    """End-to-end traversal with SQL storage."""

    def test_wait_then_deliver(
        self, sql_series_repo, sql_progress_repo, sql_telemetry_repo, visitors, visitor, channel, audit
    ) -> None:
        engine = SeriesEngine(
            series_repository=sql_series_repo,
            progress_repository=sql_progress_repo,
            visitors=visitors,
            executor=BlockExecutor(channels={t: channel for t in CONTENT_BLOCK_TYPES}),
            resolver=TerminalTransitionResolver(),
            supervisor=RetrySupervisor(audit_sink=audit),
            telemetry=BlockTelemetryRecorder(sql_telemetry_repo),
        )
        runtime = SeriesRuntimeService(
            progress_repository=sql_progress_repo,
            engine=engine,
            enrollment=EnrollmentController(sql_series_repo, sql_progress_repo, visitors, engine),
            resume=ResumeManager(sql_series_repo, sql_progress_repo, engine),
            enabled=True,
        )
        authoring = SeriesAuthoringService(sql_series_repo, sql_progress_repo, sql_telemetry_repo)
        series = authoring.create_series(WORKSPACE, "Welcome", entry_triggers=[{"source": "event", "event_name": "signup"}])
        wait = authoring.add_block(series.id, "wait", {"wait_type": "until_event", "wait_until_event": "Purchase"})
        chat = authoring.add_block(series.id, "chat", {"body": "Thanks {{ visitor.name }}"})
        authoring.add_connection(series.id, wait.id, chat.id)
        authoring.activate(series.id)
        subscriber = SeriesTriggerSubscriber(runtime)

        subscriber.on_event_tracked(WORKSPACE, "v-1", "signup")
        waiting = runtime.get_progress_for_visitor_series("v-1", series.id)
        subscriber.on_event_tracked(WORKSPACE, "v-1", "Purchase")
        done = runtime.get_progress_for_visitor_series("v-1", series.id)

        assert waiting.status == "waiting"
        assert waiting.wait_event_name == "Purchase"
        assert done.status == "completed"
        assert done.version > waiting.version
        assert [d.body for d in channel.sent] == ["Thanks Ada"]

        telemetry = authoring.get_telemetry(series.id)
        assert telemetry.totals.entered == 2
        assert telemetry.totals.completed == 2
        assert telemetry.totals.delivery_attempts == 1

        authoring.delete_series(series.id)
        assert sql_progress_repo.list_for_series(series.id, 10) == []
        assert sql_telemetry_repo.list_for_series(series.id, 10) == []


class TestTelemetryRepository:
    """Tests for PostgresTelemetryRepository."""

    def test_increments_accumulate(self, sql_telemetry_repo) -> None:
        sql_telemetry_repo.increment("s-1", "b-1", {"entered": 1}, {"action": "entered"})
        sql_telemetry_repo.increment("s-1", "b-1", {"entered": 1, "completed": 1, "yes_branch_count": 1})

        [row] = sql_telemetry_repo.list_for_series("s-1", 10)

        assert (row.entered, row.completed, row.yes_branch_count, row.failed) == (2, 1, 1, 0)
        assert row.last_result == {"action": "entered"}
        assert row.updated_at.tzinfo is not None

    def test_list_and_delete_by_series(self, sql_telemetry_repo) -> None:
        sql_telemetry_repo.increment("s-1", "b-1", {"entered": 1})
        sql_telemetry_repo.increment("s-1", "b-2", {"entered": 1})
        sql_telemetry_repo.increment("s-2", "b-3", {"entered": 1})

        assert [row.block_id for row in sql_telemetry_repo.list_for_series("s-1", 10)] == ["b-2", "b-1"]
        assert len(sql_telemetry_repo.list_for_series("s-1", 1)) == 1
        assert sql_telemetry_repo.delete_for_series("s-1") == 2
        assert sql_telemetry_repo.list_for_series("s-1", 10) == []
        assert len(sql_telemetry_repo.list_for_series("s-2", 10)) == 1

    def test_unknown_counter(self, sql_telemetry_repo) -> None:
        with pytest.raises(ValueError):
            sql_telemetry_repo.increment("s-1", "b-1", {"clicks": 1})


class TestEngineOptions:
    """Tests for the engine settings derived from DATABASE_URL."""

    def test_in_memory_sqlite_is_pinned_to_one_connection(self) -> None:
        options = engine_options("sqlite://")
        assert options["poolclass"] is StaticPool
        assert options["connect_args"] == {"check_same_thread": False}

    def test_sqlite_file(self) -> None:
        options = engine_options("sqlite:///./series.db")
        assert "poolclass" not in options
        assert options["connect_args"] == {"check_same_thread": False}

    def test_postgres(self) -> None:
        assert engine_options("postgresql://series:secret@db:5432/series") == {"pool_pre_ping": True}
