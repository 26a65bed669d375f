# =============================================================================
# Ask API — Research Pipeline Endpoints
# =============================================================================
#
# FLOW:
#   POST /ask          → new user turn: intent → clarify → plan → research
#                        → synthesize → review, or a quick answer
#   POST /ask/clarify  → resume after clarification (starts at planning)
#   POST /ask/stop     → cancel the active run
#
# Every run takes a fresh CancellationToken from the RunController; a
# new request supersedes (cancels) whatever was still running, and that
# earlier request returns with outcome "stopped".
#
# This endpoint is thin by design — just request validation, run
# bookkeeping, and response mapping. The pipeline never raises; failures
# come back as outcome "error".
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from research_swarm.agents import orchestrator
from research_swarm.agents.experts import ExpertRegistry
from research_swarm.agents.orchestrator import PipelineResult
from research_swarm.api.deps import get_llm_gateway, get_registry, get_run_controller
from research_swarm.models.requests import AskRequest, ClarifyRequest
from research_swarm.models.responses import AskResponse, StopResponse
from research_swarm.services.cancellation import RunController
from research_swarm.services.llm import LLMGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ask", tags=["Research"])


def _to_response(result: PipelineResult) -> AskResponse:
    return AskResponse(
        outcome=result.outcome,
        answer=result.answer,
        query=result.query,
        thinking=result.thinking,
        plan=result.plan,
        clarification=result.clarification,
        citations=result.citations,
        steps=result.steps,
        result_count=len(result.results),
    )


# ---------------------------------------------------------------------------
# POST /ask — Run the research pipeline
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=AskResponse,
    summary="Ask the research team",
    description=(
        "Classify the question, then either answer it directly from the "
        "experts or run the full plan → research → synthesize → review "
        "pipeline. May instead return clarification questions."
    ),
)
async def ask_endpoint(
    request: AskRequest,
    registry: ExpertRegistry = Depends(get_registry),
    controller: RunController = Depends(get_run_controller),
    gateway: LLMGateway = Depends(get_llm_gateway),
) -> AskResponse:
    logger.info(
        "Ask request: query='%s', experts=%s, urls=%d",
        request.query[:80], request.active_experts, len(request.urls),
    )

    token = controller.start_run()
    try:
        result = await orchestrator.ask(
            request.query,
            gateway=gateway,
            registry=registry,
            token=token,
            active_experts=request.active_experts,
            history=request.history,
            images=[image.to_attachment() for image in request.images],
            urls=request.urls,
        )
    finally:
        controller.finish(token)

    return _to_response(result)


# ---------------------------------------------------------------------------
# POST /ask/clarify — Resume with clarification answers
# ---------------------------------------------------------------------------


@router.post(
    "/clarify",
    response_model=AskResponse,
    summary="Answer clarification questions",
)
async def clarify_endpoint(
    request: ClarifyRequest,
    registry: ExpertRegistry = Depends(get_registry),
    controller: RunController = Depends(get_run_controller),
    gateway: LLMGateway = Depends(get_llm_gateway),
) -> AskResponse:
    token = controller.start_run()
    try:
        result = await orchestrator.resume_with_clarification(
            request.query,
            request.clarification,
            request.answers,
            gateway=gateway,
            registry=registry,
            token=token,
            custom_inputs=request.custom_inputs,
            active_experts=request.active_experts,
            history=request.history,
            images=[image.to_attachment() for image in request.images],
        )
    finally:
        controller.finish(token)

    return _to_response(result)


# ---------------------------------------------------------------------------
# POST /ask/stop — Cancel the active run
# ---------------------------------------------------------------------------


@router.post("/stop", response_model=StopResponse, summary="Stop the active run")
async def stop_endpoint(
    controller: RunController = Depends(get_run_controller),
) -> StopResponse:
    stopped = controller.cancel_active()
    logger.info("Stop requested: %s", "cancelled active run" if stopped else "nothing running")
    return StopResponse(stopped=stopped)
