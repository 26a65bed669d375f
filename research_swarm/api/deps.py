# =============================================================================
# API Dependencies — Shared Collaborators for Route Handlers
# =============================================================================
#
# Route handlers never build collaborators themselves. They declare them
# with Depends():
#
# 1. get_registry()       — the process-wide ExpertRegistry
# 2. get_run_controller() — the single-active-run RunController
# 3. get_llm_gateway()    — the configured LLM gateway
#
# Registry and controller are created once in the FastAPI lifespan
# (see main.py) and live on app.state.
#
# DESIGN DECISION: FastAPI dependencies (not module globals) for state.
# Tests swap any of them via app.dependency_overrides without patching.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from research_swarm.agents.experts import ExpertRegistry
from research_swarm.services.cancellation import RunController
from research_swarm.services.llm import LLMGateway, get_gateway

logger = logging.getLogger(__name__)


def get_registry(request: Request) -> ExpertRegistry:
    return request.app.state.registry


def get_run_controller(request: Request) -> RunController:
    return request.app.state.controller


def get_llm_gateway() -> LLMGateway:
    """
    Resolve the configured gateway.

    Raises:
        HTTPException 503: No API key configured for the provider.
    """
    try:
        return get_gateway()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
