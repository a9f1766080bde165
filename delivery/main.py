# delivery/main.py
"""
Goal Delivery Orchestrator - Main Application

Hosts the goal event service and the operator API. In an isolated goal
worker (ATOMIST_ISOLATED_GOAL=true) the service executes the worker's
own goal on startup instead of orchestrating goal sets.
"""

import threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException

from .settings import settings
from .db.engine import check_connection
from .api import goals_router
from .engine import GoalEventService, build_service
from .fulfillment.project import GitProjectLoader, LocalProjectLoader, ProjectLoader
from .goals.sql_store import SqlGoalStore
from .logging import get_logger

logger = get_logger(__name__)


def default_project_loader() -> ProjectLoader:
    if settings.project_clone_url:
        return GitProjectLoader(url_template=settings.project_clone_url)
    return LocalProjectLoader(settings.project_root, per_repo=True)


def default_service() -> GoalEventService:
    store = SqlGoalStore(
        registration=settings.registration_name,
        registration_version=settings.registration_version,
    )
    return build_service(store, default_project_loader(), settings)


def _execute_own_goal(service: GoalEventService) -> None:
    try:
        service.execute_own_goal()
    except Exception as e:
        logger.error("isolated_goal_failed", goal=settings.goal_unique_name,
                     goal_set_id=settings.goal_set_id, error=str(e), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Builds the goal event service unless one was installed on app.state,
    and stops it on shutdown.
    """
    if not check_connection():
        logger.warning("database_connection_failed")

    service = getattr(app.state, "service", None)
    if service is None:
        service = default_service()
        app.state.service = service
    service.start()

    if settings.isolated_goal:
        threading.Thread(target=_execute_own_goal, args=(service,), daemon=True,
                         name="isolated-goal").start()

    logger.info("orchestrator_started", registration=settings.registration_name,
                isolated=settings.isolated_goal)

    yield

    service.stop()
    logger.info("orchestrator_stopped")


app = FastAPI(
    title="Goal Delivery Orchestrator",
    description="""
    Drives delivery pipeline goals through their lifecycle.

    Key features:
    - Append-only goal records with provenance
    - Dependency evaluation with transitive skip
    - Container goals on Docker or as Kubernetes jobs
    - Goal signing and verification (RSA-SHA512)
    - Approval and pre-approval voting
    """,
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(goals_router)


@app.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "ok", "service": "goal-delivery-orchestrator"}


@app.get("/health/db")
async def db_health_check():
    """Database health check."""
    if check_connection():
        return {"status": "ok", "database": "connected"}
    else:
        raise HTTPException(status_code=503, detail="Database connection failed")


def run():
    """Run the server (entry point for CLI)."""
    import uvicorn
    uvicorn.run(
        "delivery.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
