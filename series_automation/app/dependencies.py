"""
Dependency Injection Wiring (Composition Root).

This module acts as the central "container" for the application's services.
It is responsible for:
1. Instantiating the core Singleton services (Repositories, Adapters, Engine).
2. Wiring them together (e.g., injecting the Repositories and Channels into the Engine).
3. Managing the lifecycle of these objects using @lru_cache to ensure
   they are created only once per application process.

The visitor directory, event log and messaging channels are in-memory
adapters here; a deployment that owns real ones swaps them in by
overriding these providers.
"""

from functools import lru_cache

from fastapi import Depends

from ..config import settings
from ..domain.models import CONTENT_BLOCK_TYPES
from ..execution.engine import SeriesEngine
from ..execution.executor import BlockExecutor
from ..execution.retry import RetrySupervisor
from ..execution.telemetry import BlockTelemetryRecorder
from ..execution.transitions import TerminalTransitionResolver
from ..infrastructure.database.connection import init_db
from ..integrations.adapters.audit_log import LoggingAuditSink
from ..integrations.adapters.memory import InMemoryEventLog, InMemoryVisitorDirectory, RecordingChannel
from ..integrations.interface import AuditSink
from ..repositories.progress import InMemoryProgressRepository, PostgresProgressRepository, ProgressRepository
from ..repositories.series import InMemorySeriesRepository, PostgresSeriesRepository, SeriesRepository
from ..repositories.telemetry import InMemoryTelemetryRepository, PostgresTelemetryRepository, TelemetryRepository
from ..services.authoring import SeriesAuthoringService
from ..services.enrollment import EnrollmentController
from ..services.resume import ResumeManager
from ..services.runtime import SeriesRuntimeService
from ..services.subscriptions import SeriesTriggerSubscriber


# Repositories (Singletons)
# Note: In-memory storage must be a singleton so data persists across requests!
@lru_cache()
def get_series_repository() -> SeriesRepository:
    if settings.USE_IN_MEMORY_STORE:
        return InMemorySeriesRepository()
    init_db()
    return PostgresSeriesRepository()


@lru_cache()
def get_progress_repository() -> ProgressRepository:
    if settings.USE_IN_MEMORY_STORE:
        return InMemoryProgressRepository()
    init_db()
    return PostgresProgressRepository()


@lru_cache()
def get_telemetry_repository() -> TelemetryRepository:
    if settings.USE_IN_MEMORY_STORE:
        return InMemoryTelemetryRepository()
    init_db()
    return PostgresTelemetryRepository()


# Collaborators (Singletons)
@lru_cache()
def get_visitor_directory() -> InMemoryVisitorDirectory:
    return InMemoryVisitorDirectory()


@lru_cache()
def get_event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@lru_cache()
def get_messaging_channel() -> RecordingChannel:
    return RecordingChannel()


@lru_cache()
def get_audit_sink() -> AuditSink:
    return LoggingAuditSink()


# The Engine (Singleton Service)
@lru_cache()
def get_series_engine() -> SeriesEngine:
    channel = get_messaging_channel()
    event_log = get_event_log()
    return SeriesEngine(
        series_repository=get_series_repository(),
        progress_repository=get_progress_repository(),
        visitors=get_visitor_directory(),
        executor=BlockExecutor(channels={t: channel for t in CONTENT_BLOCK_TYPES}, event_counter=event_log),
        resolver=TerminalTransitionResolver(event_counter=event_log),
        supervisor=RetrySupervisor(audit_sink=get_audit_sink()),
        telemetry=BlockTelemetryRecorder(get_telemetry_repository()),
    )


# The Authoring Service (Singleton Service)
@lru_cache()
def get_authoring_service(
    series_repo: SeriesRepository = Depends(get_series_repository),
    progress_repo: ProgressRepository = Depends(get_progress_repository),
    telemetry_repo: TelemetryRepository = Depends(get_telemetry_repository),
) -> SeriesAuthoringService:
    return SeriesAuthoringService(
        series_repository=series_repo,
        progress_repository=progress_repo,
        telemetry_repository=telemetry_repo,
    )


# The Runtime Service (Singleton Service)
@lru_cache()
def get_runtime_service(
    series_repo: SeriesRepository = Depends(get_series_repository),
    progress_repo: ProgressRepository = Depends(get_progress_repository),
    engine: SeriesEngine = Depends(get_series_engine),
) -> SeriesRuntimeService:
    """
    Injects all necessary components into the SeriesRuntimeService.
    """
    enrollment = EnrollmentController(
        series_repository=series_repo,
        progress_repository=progress_repo,
        visitors=get_visitor_directory(),
        engine=engine,
        event_counter=get_event_log(),
    )
    resume = ResumeManager(series_repository=series_repo, progress_repository=progress_repo, engine=engine)
    return SeriesRuntimeService(
        progress_repository=progress_repo,
        engine=engine,
        enrollment=enrollment,
        resume=resume,
    )


@lru_cache()
def get_trigger_subscriber(
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
) -> SeriesTriggerSubscriber:
    return SeriesTriggerSubscriber(runtime)
