"""REST API for the incident routing engine."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from helpdesk.activity import get_recent as activity_get_recent, start_redis_subscriber
from helpdesk.config import CORS_ORIGINS, REDIS_CONN_TIMEOUT, REDIS_URL, STORE_BACKEND
from helpdesk.dispatch import ArqDispatcher
from helpdesk.engine import get_engine
from helpdesk.errors import EngineError, InfrastructureError, NotFoundError, ValidationError
from helpdesk.models import (
    CategoryItem,
    Incident,
    IncidentCreate,
    IncidentHistory,
    IncidentUpdate,
    TeamAdmin,
    Technician,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop_subscriber = None
    arq_pool = None
    if STORE_BACKEND == "redis":
        # Sweep assignments happen in the worker; mirror its events into this process's log.
        stop_subscriber = start_redis_subscriber()
        try:
            from arq import create_pool
            from arq.connections import RedisSettings
            arq_pool = await create_pool(replace(RedisSettings.from_dsn(REDIS_URL), conn_timeout=REDIS_CONN_TIMEOUT))
        except Exception as e:
            logger.warning("Redis/ARQ pool unavailable: %s. Backfills will run in the API process.", e)
    dispatcher = None
    try:
        dispatcher = get_engine().dispatcher
    except Exception as e:
        logger.warning("Engine not ready at startup: %s", e)
    if arq_pool is not None and isinstance(dispatcher, ArqDispatcher):
        dispatcher.attach(arq_pool, asyncio.get_running_loop())
    try:
        yield
    finally:
        if isinstance(dispatcher, ArqDispatcher):
            dispatcher.detach()
        if arq_pool is not None:
            await arq_pool.close()
        if stop_subscriber is not None:
            stop_subscriber.set()


app = FastAPI(
    title="Incident Routing Engine",
    description="Skill-based round-robin assignment with Tier1 -> Tier2 -> Team-Admin escalation.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, NotFoundError):
        status = 404
    else:
        status = 500
        if isinstance(exc, InfrastructureError):
            logger.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# --- Incidents ---


@app.post("/incidents", response_model=Incident, status_code=201)
def create_incident(payload: IncidentCreate) -> Incident:
    """Create an incident; it is assigned to a Tier1 technician or parked as Pending-Assignment."""
    return get_engine().controller.create_incident(payload)


@app.get("/incidents", response_model=list[Incident])
def list_incidents() -> list[Incident]:
    return get_engine().queries.all()


@app.get("/incidents/assigned-to/{handler}", response_model=list[Incident])
def incidents_assigned_to(handler: str) -> list[Incident]:
    return get_engine().queries.assigned_to(handler)


@app.get("/incidents/raised-by/{informant}", response_model=list[Incident])
def incidents_raised_by(informant: str) -> list[Incident]:
    return get_engine().queries.raised_by(informant)


@app.get("/incidents/by-category/{category}", response_model=list[Incident])
def incidents_by_category(category: str) -> list[Incident]:
    return get_engine().queries.by_category(category)


@app.get("/incidents/by-main-category/{code}", response_model=list[Incident])
def incidents_by_main_category(code: str) -> list[Incident]:
    """Incidents of every category item under one main category (team), newest first."""
    return get_engine().queries.by_main_category_code(code)


@app.get("/incidents/{incident_number}", response_model=Incident)
def get_incident(incident_number: str) -> Incident:
    return get_engine().queries.get(incident_number)


@app.put("/incidents/{incident_number}", response_model=Incident)
def update_incident(incident_number: str, payload: IncidentUpdate) -> Incident:
    """
    Partial update. Category change, assign_tier2 and assign_team_admin run the escalation
    steps; a bare handler is validated as a manual assignment.
    """
    return get_engine().controller.update_incident(incident_number, payload)


@app.get("/incidents/{incident_number}/history", response_model=list[IncidentHistory])
def get_incident_history(incident_number: str) -> list[IncidentHistory]:
    return get_engine().queries.history(incident_number)


@app.get("/dashboard/stats")
def dashboard_stats(
    user_type: Optional[str] = None,
    technician_id: Optional[str] = None,
    admin_id: Optional[str] = None,
) -> dict:
    return get_engine().queries.dashboard_stats(user_type=user_type, technician_id=technician_id, admin_id=admin_id)


class SweepResult(BaseModel):
    assigned: int = Field(..., description="Incidents moved out of a pending status")


@app.post("/sweep", response_model=SweepResult)
def run_sweep() -> SweepResult:
    """Run the pending sweep now (the worker also runs it on a fixed cadence)."""
    return SweepResult(assigned=get_engine().scheduler.run_pending_sweep())


# --- Reference data (technicians, team admins, categories) ---


@app.post("/technicians", response_model=Technician)
def upsert_technician(technician: Technician) -> Technician:
    return get_engine().store.save_technician(technician)


@app.get("/technicians", response_model=list[Technician])
def list_technicians() -> list[Technician]:
    return get_engine().store.list_technicians()


class ActiveFlag(BaseModel):
    active: bool


@app.patch("/technicians/{technician_id}/active", response_model=Technician)
def set_technician_active(technician_id: str, flag: ActiveFlag) -> Technician:
    """Sign a technician in or out."""
    store = get_engine().store
    technician = store.get_technician(technician_id)
    if technician is None:
        raise HTTPException(status_code=404, detail="Technician not found")
    technician.active = flag.active
    return store.save_technician(technician)


@app.post("/team-admins", response_model=TeamAdmin)
def upsert_team_admin(admin: TeamAdmin) -> TeamAdmin:
    return get_engine().store.save_team_admin(admin)


@app.post("/categories", response_model=CategoryItem)
def upsert_category(item: CategoryItem) -> CategoryItem:
    """Register a category item together with its sub-category and main category."""
    if item.sub_category is None or item.sub_category.main_category is None:
        raise HTTPException(status_code=400, detail="Category item needs a sub_category with a main_category")
    return get_engine().store.save_category(item)


@app.get("/categories", response_model=list[CategoryItem])
def list_categories() -> list[CategoryItem]:
    return get_engine().store.list_category_items()


# --- Activity / health ---


@app.get("/activity")
def get_activity(limit: int = 100, recipient: Optional[str] = None) -> dict:
    """Recent incident events; with `recipient`, only those addressed to that user."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_get_recent(limit=limit, recipient=recipient)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
