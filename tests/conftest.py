"""Shared pytest fixtures for series_automation tests."""

from datetime import timedelta

import pytest

from series_automation.domain.models import CONTENT_BLOCK_TYPES
from series_automation.execution.engine import SeriesEngine
from series_automation.execution.executor import BlockExecutor
from series_automation.execution.retry import RetrySupervisor
from series_automation.execution.telemetry import BlockTelemetryRecorder
from series_automation.execution.transitions import TerminalTransitionResolver
from series_automation.integrations.adapters.memory import (
    InMemoryAuditSink,
    InMemoryEventLog,
    InMemoryVisitorDirectory,
    RecordingChannel,
)
from series_automation.repositories.progress import InMemoryProgressRepository
from series_automation.repositories.series import InMemorySeriesRepository
from series_automation.repositories.telemetry import InMemoryTelemetryRepository
from series_automation.services.authoring import SeriesAuthoringService
from series_automation.services.enrollment import EnrollmentController
from series_automation.services.resume import ResumeManager
from series_automation.services.runtime import SeriesRuntimeService
from series_automation.state.models import TriggerContext, VisitorSnapshot, utc_now

WORKSPACE = "ws-1"


@pytest.fixture
def series_repo() -> InMemorySeriesRepository:
    return InMemorySeriesRepository()


@pytest.fixture
def progress_repo() -> InMemoryProgressRepository:
    return InMemoryProgressRepository()


@pytest.fixture
def telemetry_repo() -> InMemoryTelemetryRepository:
    return InMemoryTelemetryRepository()


@pytest.fixture
def visitors() -> InMemoryVisitorDirectory:
    return InMemoryVisitorDirectory()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def channel() -> RecordingChannel:
    """Records deliveries; only visitor 'v-1' has a push token."""
    return RecordingChannel(push_tokens={"v-1"})


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def engine(series_repo, progress_repo, telemetry_repo, visitors, event_log, channel, audit) -> SeriesEngine:
    return SeriesEngine(
        series_repository=series_repo,
        progress_repository=progress_repo,
        visitors=visitors,
        executor=BlockExecutor(channels={t: channel for t in CONTENT_BLOCK_TYPES}, event_counter=event_log),
        resolver=TerminalTransitionResolver(event_counter=event_log),
        supervisor=RetrySupervisor(audit_sink=audit, max_attempts=3, base_delay_seconds=30),
        max_depth=50,
        telemetry=BlockTelemetryRecorder(telemetry_repo),
    )


@pytest.fixture
def authoring(series_repo, progress_repo, telemetry_repo) -> SeriesAuthoringService:
    return SeriesAuthoringService(
        series_repository=series_repo,
        progress_repository=progress_repo,
        telemetry_repository=telemetry_repo,
    )


@pytest.fixture
def runtime(series_repo, progress_repo, visitors, event_log, engine) -> SeriesRuntimeService:
    enrollment = EnrollmentController(
        series_repository=series_repo,
        progress_repository=progress_repo,
        visitors=visitors,
        engine=engine,
        event_counter=event_log,
        allow_reenrollment=False,
    )
    resume = ResumeManager(series_repository=series_repo, progress_repository=progress_repo, engine=engine)
    return SeriesRuntimeService(
        progress_repository=progress_repo,
        engine=engine,
        enrollment=enrollment,
        resume=resume,
        enabled=True,
    )


@pytest.fixture
def visitor(visitors) -> VisitorSnapshot:
    """A 'pro' plan visitor with an email address, stored in the directory."""
    snapshot = VisitorSnapshot(
        id="v-1",
        workspace_id=WORKSPACE,
        email="ada@example.com",
        name="Ada",
        custom_attributes={"plan": "pro", "age": 36},
    )
    visitors.put(snapshot)
    return snapshot


@pytest.fixture
def signup_trigger() -> TriggerContext:
    return TriggerContext(source="event", event_name="signup")


@pytest.fixture
def build_series(authoring):
    """
    Factory: creates and activates a series whose blocks run in a line.

    Usage:
        series, blocks = build_series(("wait", {...}), ("chat", {...}), entry_rules=...)
    """

    def _build(*block_defs, triggers=None, activate=True, **rules):
        series = authoring.create_series(
            workspace_id=WORKSPACE,
            name="Onboarding",
            entry_triggers=triggers if triggers is not None else [{"source": "event", "event_name": "signup"}],
            **rules,
        )
        blocks = [authoring.add_block(series.id, block_type, config) for block_type, config in block_defs]
        for source, target in zip(blocks, blocks[1:]):
            authoring.add_connection(series.id, source.id, target.id)
        if activate:
            series = authoring.activate(series.id)
        return series, blocks

    return _build


@pytest.fixture
def expire_wait(progress_repo):
    """Moves a Progress' 'wait_until' into the past, as if time had passed."""

    def _expire(progress_id: str):
        progress = progress_repo.get(progress_id)
        progress.wait_until = utc_now() - timedelta(seconds=1)
        progress_repo.save(progress)

    return _expire
