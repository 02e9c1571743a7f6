"""
HTTP API for the HealthTracker application.

The service exposes doctor visit CRUD on top of the versioned store.  Updates
carry the version they were computed against; a stale version is answered
with ``409`` and both sides of the conflict so the caller can choose a
resolution and post it back to ``/resolve``.  Report, chat, SOS and
monitoring endpoints sit beside the visit routes and never touch the
version protocol.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Engine

from healthtracker.alerts import EmergencyAlert, send_emergency_alert
from healthtracker.concurrency import ConcurrencyEngine, UpdateConflict, clean_patch
from healthtracker.config import AppSettings, get_settings, load_environment
from healthtracker.db import create_database_engine, initialise_schema
from healthtracker.errors import (
    InvalidPatchError,
    InvalidVersionError,
    StoreUnavailable,
    VersionConflictError,
    VisitNotFoundError,
)
from healthtracker.events import EventBus, EventType, visit_resource
from healthtracker.notifications_service import EmailNotificationService, Notifier
from healthtracker.observability import ConcurrencyMonitor, configure_logging
from healthtracker.reports import (
    build_monthly_report,
    chat_reply,
    export_visits,
    generate_health_report,
    score_diagnosis,
    visits_context,
)
from healthtracker.resolution import ConflictResolver, ConflictView, Resolution
from healthtracker.store import SqlVisitStore
from healthtracker.time_utils import parse_timestamp

load_environment()
configure_logging(get_settings().log_level)
logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@dataclass
class Services:
    settings: AppSettings
    store: SqlVisitStore
    bus: EventBus
    engine: ConcurrencyEngine
    resolver: ConflictResolver
    notifier: Notifier
    monitor: ConcurrencyMonitor
    generate: Optional[Callable[[str], str]] = None
    chat: Optional[Callable[[List[Dict[str, str]]], str]] = None


def build_services(
    db_engine: Optional[Engine] = None,
    *,
    settings: Optional[AppSettings] = None,
    notifier: Optional[Notifier] = None,
    generate: Optional[Callable[[str], str]] = None,
    chat: Optional[Callable[[List[Dict[str, str]]], str]] = None,
) -> Services:
    """Create the store, event bus, engine and resolver for one database."""

    settings = settings or get_settings()
    db_engine = db_engine or create_database_engine()
    initialise_schema(db_engine)
    bus = EventBus(settings.event_log_capacity)
    monitor = ConcurrencyMonitor().attach(bus)
    store = SqlVisitStore(db_engine)
    engine = ConcurrencyEngine(store, bus)
    return Services(
        settings=settings,
        store=store,
        bus=bus,
        engine=engine,
        resolver=ConflictResolver(engine, max_rounds=settings.max_resolution_rounds),
        notifier=notifier or EmailNotificationService(settings.smtp),
        monitor=monitor,
        generate=generate,
        chat=chat,
    )


_services: Optional[Services] = None


def configure(services: Optional[Services]) -> Optional[Services]:
    """Install *services* for request handling (``None`` resets to lazy defaults)."""

    global _services
    if _services is not None and _services is not services:
        _services.monitor.detach()
    _services = services
    return services


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    services = get_services()
    logger.info("lifespan_startup", database=str(services.store.engine.url))
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete")


app = FastAPI(title="HealthTracker API", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class VisitCreateModel(BaseModel):
    owner_id: str = Field(alias="ownerId", min_length=1)
    fields: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class VisitUpdateModel(BaseModel):
    patch: Dict[str, Any] = Field(default_factory=dict)
    expected_version: int = Field(alias="expectedVersion", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class ConditionalUpdateModel(BaseModel):
    expected_version: int = Field(alias="expectedVersion", ge=1)
    values: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ResolveModel(BaseModel):
    strategy: Resolution
    patch: Dict[str, Any] = Field(default_factory=dict)
    server_version: int = Field(alias="serverVersion", ge=1)
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class HealthReportModel(BaseModel):
    owner_id: str = Field(alias="ownerId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class HealthScoreModel(BaseModel):
    diagnosis: str = Field(min_length=1)
    visit_details: Dict[str, Any] = Field(default_factory=dict, alias="visitDetails")
    visit_id: Optional[str] = Field(default=None, alias="visitId")

    model_config = ConfigDict(populate_by_name=True)


class ChatMessageModel(BaseModel):
    role: str
    content: str = ""


class ChatModel(BaseModel):
    messages: List[ChatMessageModel] = Field(min_length=1)
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    context: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class MonthlyReportModel(BaseModel):
    owner_id: str = Field(alias="ownerId", min_length=1)
    email_address: str = Field(alias="emailAddress", min_length=3)
    include_details: bool = Field(default=False, alias="includeDetails")
    include_prescriptions: bool = Field(default=False, alias="includePrescriptions")

    model_config = ConfigDict(populate_by_name=True)


class SosModel(BaseModel):
    patient_name: str = Field(default="Unknown patient", alias="patientName")
    location: str = "Location unavailable"
    condition: str = "Emergency medical assistance needed"
    contact_number: Optional[str] = Field(default=None, alias="contactNumber")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _conflict_detail(view: ConflictView, message: Optional[str] = None) -> Dict[str, Any]:
    detail = view.to_dict()
    detail["message"] = message or (
        f"This visit was changed elsewhere (now version {view.server_version}). "
        "Choose which changes to keep."
    )
    return detail


@app.exception_handler(VisitNotFoundError)
async def visit_not_found_handler(request: Request, exc: VisitNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": {"message": str(exc), "visitId": exc.visit_id}},
    )


@app.exception_handler(VersionConflictError)
async def version_conflict_handler(request: Request, exc: VersionConflictError) -> JSONResponse:
    view = get_services().resolver.compare(exc.conflict)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": _conflict_detail(view, str(exc))},
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("visit_store_unavailable_request", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"message": "Visit storage is temporarily unavailable"}},
    )


@app.exception_handler(InvalidVersionError)
async def invalid_version_handler(request: Request, exc: InvalidVersionError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": {"message": str(exc), "error": "invalid_version", "visitId": exc.visit_id}},
    )


@app.exception_handler(InvalidPatchError)
async def invalid_patch_handler(request: Request, exc: InvalidPatchError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": {"message": str(exc), "fields": exc.fields}},
    )


# ---------------------------------------------------------------------------
# Visits
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/visits")
async def list_visits(
    owner_id: str = Query(..., alias="ownerId", min_length=1),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    visits = await services.store.list_by_owner(owner_id)
    return [visit.to_dict() for visit in visits]


@app.post("/api/visits", status_code=status.HTTP_201_CREATED)
async def create_visit(
    model: VisitCreateModel, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    record = await services.store.create(model.owner_id, clean_patch(model.fields), visit_id=model.id)
    return record.to_dict()


@app.get("/api/visits/export")
async def export_owner_visits(
    owner_id: str = Query(..., alias="ownerId", min_length=1),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    visits = await services.store.list_by_owner(owner_id)
    logger.info("visits_exported", owner_id=owner_id, count=len(visits))
    return export_visits(owner_id, visits)


@app.get("/api/visits/{visit_id}")
async def get_visit(visit_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    record = await services.store.read(visit_id)
    if record is None:
        raise VisitNotFoundError(visit_id)
    return record.to_dict()


@app.put("/api/visits/{visit_id}")
async def update_visit(
    visit_id: str, model: VisitUpdateModel, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    result = await services.engine.attempt_update(visit_id, model.patch, model.expected_version)
    if isinstance(result, UpdateConflict):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_conflict_detail(services.resolver.compare(result)),
        )
    if result.record is not None:
        return result.record.to_dict()
    return {"id": visit_id, "version": result.version}


@app.post("/api/visits/{visit_id}/conditional-update")
async def conditional_update_visit(
    visit_id: str, model: ConditionalUpdateModel, services: Services = Depends(get_services)
) -> Dict[str, int]:
    values = dict(model.values)
    if "updated_at" in values:
        values["updated_at"] = parse_timestamp(values["updated_at"])
        if values["updated_at"] is None:
            del values["updated_at"]
    rows = await services.store.conditional_update(visit_id, model.expected_version, values)
    return {"rowsAffected": rows}


@app.post("/api/visits/{visit_id}/resolve")
async def resolve_visit_conflict(
    visit_id: str, model: ResolveModel, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    server = await services.store.read(visit_id)
    if server is None:
        raise VisitNotFoundError(visit_id, expected_version=model.server_version)

    conflict = UpdateConflict(
        visit_id=visit_id,
        local_patch=clean_patch(model.patch),
        expected_version=model.expected_version or model.server_version,
        server=server,
    )
    if model.strategy is Resolution.USE_LOCAL and server.version != model.server_version:
        # The caller decided against a server state that has since moved on.
        services.bus.emit(
            EventType.CONFLICT,
            visit_resource(visit_id),
            f"Version conflict detected: expected {model.server_version}, server has {server.version}",
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_conflict_detail(services.resolver.compare(conflict)),
        )

    outcome = await services.resolver.resolve(conflict, model.strategy)
    if outcome.next_conflict is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_conflict_detail(services.resolver.compare(outcome.next_conflict)),
        )
    return {
        "resolution": outcome.resolution.value,
        "record": outcome.record.to_dict() if outcome.record else None,
    }


@app.delete("/api/visits/{visit_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_visit(visit_id: str, services: Services = Depends(get_services)) -> Response:
    if not await services.store.delete(visit_id):
        raise VisitNotFoundError(visit_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Reports and alerts
# ---------------------------------------------------------------------------


@app.post("/api/reports/health")
async def health_report(
    model: HealthReportModel, services: Services = Depends(get_services)
) -> Dict[str, str]:
    visits = await services.store.list_by_owner(model.owner_id)
    report = await asyncio.to_thread(generate_health_report, visits, services.generate)
    return report.to_dict()


@app.post("/api/reports/health-score")
async def health_score(
    model: HealthScoreModel, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    details = dict(model.visit_details)
    if model.visit_id:
        record = await services.store.read(model.visit_id)
        if record is None:
            raise VisitNotFoundError(model.visit_id)
        details = {**record.fields, **details}
    score = await asyncio.to_thread(score_diagnosis, model.diagnosis, details, services.generate)
    logger.info("health_score_computed", visit_id=model.visit_id, score=score.score, source=score.source)
    return score.to_dict()


@app.post("/api/chat")
async def visit_chat(model: ChatModel, services: Services = Depends(get_services)) -> Dict[str, str]:
    context = model.context
    if context is None:
        visits = await services.store.list_by_owner(model.owner_id) if model.owner_id else []
        context = visits_context(visits)
    messages = [message.model_dump() for message in model.messages]
    try:
        reply = await asyncio.to_thread(chat_reply, messages, context, services.chat)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc)},
        ) from exc
    return reply.to_dict()


@app.post("/api/reports/monthly")
async def monthly_report(
    model: MonthlyReportModel, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    visits = await services.store.list_by_owner(model.owner_id)
    report = build_monthly_report(
        visits,
        include_details=model.include_details,
        include_prescriptions=model.include_prescriptions,
    )
    result = await asyncio.to_thread(
        services.notifier.send, model.email_address, report.subject, report.html
    )
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Failed to send monthly report", "error": result.error},
        )
    logger.info("monthly_report_sent", owner_id=model.owner_id, visits=report.visit_count)
    return {
        "success": True,
        "subject": report.subject,
        "visitCount": report.visit_count,
        "periodStart": report.period_start.isoformat(),
        "periodEnd": report.period_end.isoformat(),
    }


@app.post("/api/sos")
async def send_sos(model: SosModel, services: Services = Depends(get_services)) -> Dict[str, Any]:
    recipient = services.settings.emergency_recipient
    if not recipient:
        logger.error("sos_recipient_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Emergency contact is not configured"},
        )
    alert = EmergencyAlert(
        patient_name=model.patient_name,
        condition=model.condition,
        location=model.location,
        contact_number=model.contact_number,
    )
    result = await send_emergency_alert(services.notifier, recipient, alert)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Failed to send emergency alert", "error": result.error},
        )
    return {"success": True, "message": "Emergency alert sent"}


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@app.get("/api/concurrency/events")
async def concurrency_events(
    limit: Optional[int] = Query(default=None, ge=1),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [event.to_dict() for event in services.bus.recent(limit)]


@app.get("/metrics", response_model=None)
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["Services", "app", "build_services", "configure", "get_services"]
