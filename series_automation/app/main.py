from dataclasses import asdict
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from ..domain.models import Block, Connection, Series
from ..exceptions import ConcurrentModificationError, NotFoundError, ReadinessError, ValidationError
from ..integrations.adapters.memory import InMemoryEventLog, InMemoryVisitorDirectory
from ..services.authoring import SeriesAuthoringService, SeriesStats, SeriesTelemetry
from ..services.readiness import ReadinessReport
from ..services.runtime import SeriesRuntimeService
from ..services.subscriptions import SeriesTriggerSubscriber
from ..state.models import Progress, TriggerContext, VisitorSnapshot
from .dependencies import (
    get_authoring_service,
    get_event_log,
    get_runtime_service,
    get_trigger_subscriber,
    get_visitor_directory,
)
from .schemas import (
    AttributeChangeRequest,
    CreateBlockRequest,
    CreateConnectionRequest,
    CreateSeriesRequest,
    DuplicateSeriesRequest,
    EnrollmentResponse,
    EventResponse,
    ResumeResponse,
    SeriesRead,
    SweepRequest,
    SweepResponse,
    TerminateRequest,
    TrackEventRequest,
    UpdateBlockRequest,
    UpdateSeriesRequest,
)

app = FastAPI(title="Series Automation")


# --- Error Mapping ---

@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_handler(request: Request, exc: ValidationError):
    content = {"detail": str(exc)}
    if isinstance(exc, ReadinessError):
        content["blockers"] = exc.blockers
        content["warnings"] = exc.warnings
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(ConcurrentModificationError)
def conflict_handler(request: Request, exc: ConcurrentModificationError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


# --- Authoring Endpoints ---

@app.post("/series", response_model=Series, status_code=status.HTTP_201_CREATED)
def create_series(
    request: CreateSeriesRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    """Creates a new draft series."""
    return service.create_series(
        workspace_id=request.workspace_id,
        name=request.name,
        description=request.description,
        entry_triggers=[t.model_dump() for t in request.entry_triggers],
        entry_rules=request.entry_rules,
        exit_rules=request.exit_rules,
        goal_rules=request.goal_rules,
    )


@app.get("/series", response_model=List[Series])
def list_series(
    workspace_id: str,
    series_status: Optional[str] = None,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.list_series(workspace_id, series_status)


@app.get("/series/{series_id}", response_model=SeriesRead)
def get_series(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    series, graph = service.get_series_with_graph(series_id)
    return SeriesRead(series=series, blocks=list(graph.blocks.values()), connections=graph.connections)


@app.patch("/series/{series_id}", response_model=Series)
def update_series(
    series_id: str,
    request: UpdateSeriesRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.update_series(series_id, **request.model_dump(exclude_unset=True))


@app.post("/series/{series_id}/duplicate", response_model=Series, status_code=status.HTTP_201_CREATED)
def duplicate_series(
    series_id: str,
    request: DuplicateSeriesRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.duplicate_series(series_id, request.name)


@app.post("/series/{series_id}/activate", response_model=Series)
def activate_series(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    """Runs the readiness check and activates. 422 with blockers if not ready."""
    return service.activate(series_id)


@app.post("/series/{series_id}/deactivate", response_model=Series)
def deactivate_series(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.deactivate(series_id)


@app.post("/series/{series_id}/archive", response_model=Series)
def archive_series(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.archive(series_id)


@app.delete("/series/{series_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_series(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    """Deletes the series, its graph, telemetry and all enrollment records."""
    service.delete_series(series_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/series/{series_id}/readiness", response_model=ReadinessReport)
def get_readiness(
    series_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.get_readiness(series_id)


@app.get("/series/{series_id}/stats", response_model=SeriesStats)
def get_stats(
    series_id: str,
    limit: Optional[int] = None,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.get_stats(series_id, limit)


@app.get("/series/{series_id}/telemetry", response_model=SeriesTelemetry)
def get_telemetry(
    series_id: str,
    limit: Optional[int] = None,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.get_telemetry(series_id, limit)


@app.post("/series/{series_id}/blocks", response_model=Block, status_code=status.HTTP_201_CREATED)
def add_block(
    series_id: str,
    request: CreateBlockRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.add_block(series_id, request.type, request.config, request.position)


@app.patch("/blocks/{block_id}", response_model=Block)
def update_block(
    block_id: str,
    request: UpdateBlockRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.update_block(block_id, request.config, request.position)


@app.delete("/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_block(
    block_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    service.remove_block(block_id)
    # For 204, we must explicitly return a Response object with no content
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/series/{series_id}/connections", response_model=Connection, status_code=status.HTTP_201_CREATED)
def add_connection(
    series_id: str,
    request: CreateConnectionRequest,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    return service.add_connection(series_id, request.from_block_id, request.to_block_id, request.condition)


@app.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_connection(
    connection_id: str,
    service: SeriesAuthoringService = Depends(get_authoring_service),
):
    service.remove_connection(connection_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Runtime Endpoints ---

@app.put("/visitors/{visitor_id}", response_model=VisitorSnapshot)
def put_visitor(
    visitor_id: str,
    visitor: VisitorSnapshot,
    directory: InMemoryVisitorDirectory = Depends(get_visitor_directory),
):
    """Stores a visitor snapshot in the local visitor directory."""
    if visitor.id != visitor_id:
        raise HTTPException(status_code=400, detail="Visitor id in path and body differ")
    directory.put(visitor)
    return visitor


@app.post("/workspaces/{workspace_id}/visitors/{visitor_id}/triggers", response_model=EnrollmentResponse)
def evaluate_trigger(
    workspace_id: str,
    visitor_id: str,
    trigger: TriggerContext,
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
):
    result = runtime.evaluate_enrollment_for_visitor(workspace_id, visitor_id, trigger)
    return EnrollmentResponse(**asdict(result))


@app.post("/workspaces/{workspace_id}/visitors/{visitor_id}/events", response_model=EventResponse)
def track_event(
    workspace_id: str,
    visitor_id: str,
    request: TrackEventRequest,
    subscriber: SeriesTriggerSubscriber = Depends(get_trigger_subscriber),
    event_log: InMemoryEventLog = Depends(get_event_log),
):
    """Records the event, then enrolls on it and releases rows waiting for it."""
    event_log.track(visitor_id, request.event_name)
    handled = subscriber.on_event_tracked(workspace_id, visitor_id, request.event_name, request.automatic)
    return EventResponse(
        enrollment=EnrollmentResponse(**asdict(handled.enrollment)),
        resume=ResumeResponse(**asdict(handled.resume)),
    )


@app.post("/workspaces/{workspace_id}/visitors/{visitor_id}/attributes", response_model=EnrollmentResponse)
def change_attribute(
    workspace_id: str,
    visitor_id: str,
    request: AttributeChangeRequest,
    subscriber: SeriesTriggerSubscriber = Depends(get_trigger_subscriber),
):
    result = subscriber.on_attribute_changed(
        workspace_id, visitor_id, request.attribute_key, request.from_value, request.to_value
    )
    return EnrollmentResponse(**asdict(result))


@app.post("/sweeps/waiting", response_model=SweepResponse)
def process_waiting(
    request: SweepRequest,
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
):
    result = runtime.process_waiting_progress(request.series_limit, request.waiting_limit_per_series)
    return SweepResponse(**asdict(result))


@app.get("/series/{series_id}/progress/{visitor_id}", response_model=Progress)
def get_progress(
    series_id: str,
    visitor_id: str,
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
):
    progress = runtime.get_progress_for_visitor_series(visitor_id, series_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Progress not found")
    return progress


@app.post("/progress/{progress_id}/exit", response_model=Progress)
def exit_progress(
    progress_id: str,
    request: TerminateRequest,
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
):
    return runtime.exit_progress(progress_id, request.reason or "Exited manually")


@app.post("/progress/{progress_id}/goal", response_model=Progress)
def mark_goal_reached(
    progress_id: str,
    request: TerminateRequest,
    runtime: SeriesRuntimeService = Depends(get_runtime_service),
):
    return runtime.mark_goal_reached(progress_id, request.reason or "Goal marked manually")
