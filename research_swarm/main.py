# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run with:
#   uvicorn research_swarm.main:app --reload
#
# The lifespan creates the two process-wide objects every request shares:
#   app.state.registry   — ExpertRegistry (expert sessions and histories)
#   app.state.controller — RunController (single active run)
# Both are in-memory; restarting the process starts with no experts.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from research_swarm.agents.experts import ExpertRegistry
from research_swarm.api import ask, experts
from research_swarm.config import Settings, get_settings, settings
from research_swarm.models.responses import HealthResponse
from research_swarm.services.cancellation import RunController

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.registry = ExpertRegistry()
    app.state.controller = RunController()
    logger.info("%s %s started", settings.app_name, settings.app_version)
    yield
    active = app.state.controller.active
    if active is not None:
        active.cancel()
    logger.info("%s shutting down", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Multi-agent research over uploaded documents and the web: a "
        "planner, per-source experts, a synthesizer and a review board."
    ),
    lifespan=lifespan,
)

app.include_router(experts.router)
app.include_router(ask.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(config: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthResponse(version=config.app_version, service=config.app_name)
