# =============================================================================
# Experts API — Swarm Initialization and Expert Management
# =============================================================================
#
# FLOW (POST /experts):
#   1. Receive uploaded documents (multipart) + optional URL list
#   2. Start a run (supersedes any active research run)
#   3. Create Web Expert / URL Expert if absent
#   4. Brief one Document Expert per file, in upload order
#   5. Return the roster plus per-file warnings
#
# A file that fails to brief is skipped with a warning; it never fails
# the request. An upload that is empty is a client error (422).
# =============================================================================

from __future__ import annotations

import logging
import mimetypes

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from research_swarm.agents.experts import STANDING_EXPERTS, ExpertRegistry
from research_swarm.api.deps import get_llm_gateway, get_registry, get_run_controller
from research_swarm.models.responses import ExpertListResponse, SwarmInitResponse
from research_swarm.services.cancellation import Aborted, RunController
from research_swarm.services.llm import Attachment, LLMGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/experts", tags=["Experts"])


def _parse_urls(raw: str) -> list[str]:
    """URLs arrive as one form field, separated by newlines or commas."""
    candidates = raw.replace(",", "\n").splitlines()
    return [url.strip() for url in candidates if url.strip()]


# ---------------------------------------------------------------------------
# POST /experts — Initialize the swarm
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=SwarmInitResponse,
    summary="Brief experts on uploaded documents",
    description=(
        "Upload documents (PDF, text, images...) to create one Document "
        "Expert per file. The Web Expert and URL Expert are created on "
        "first use. Already-registered file names are not re-briefed."
    ),
)
async def initialize_experts(
    files: list[UploadFile] = File(default=[]),
    urls: str = Form(default=""),
    registry: ExpertRegistry = Depends(get_registry),
    controller: RunController = Depends(get_run_controller),
    gateway: LLMGateway = Depends(get_llm_gateway),
) -> SwarmInitResponse:
    documents: list[Attachment] = []
    for upload in files:
        data = await upload.read()
        name = upload.filename or "document"
        if not data:
            raise HTTPException(status_code=422, detail=f"File '{name}' is empty")
        mime_type = (
            upload.content_type
            or mimetypes.guess_type(name)[0]
            or "application/octet-stream"
        )
        documents.append(Attachment(data=data, mime_type=mime_type, name=name))

    url_list = _parse_urls(urls)
    logger.info(
        "Swarm initialization: %d file(s), %d URL(s)", len(documents), len(url_list),
    )

    token = controller.start_run()
    try:
        report = await registry.initialize_swarm(gateway, documents, token, url_list)
    except Aborted as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    finally:
        controller.finish(token)

    return SwarmInitResponse(
        experts=report.experts,
        briefed=report.briefed,
        skipped=report.skipped,
        warnings=report.warnings,
    )


# ---------------------------------------------------------------------------
# GET /experts — List registered experts
# ---------------------------------------------------------------------------


@router.get("", response_model=ExpertListResponse, summary="List experts")
async def list_experts(
    registry: ExpertRegistry = Depends(get_registry),
) -> ExpertListResponse:
    return ExpertListResponse(experts=registry.list_experts())


# ---------------------------------------------------------------------------
# DELETE /experts/{name} — Remove an expert
# ---------------------------------------------------------------------------


@router.delete(
    "/{name}",
    response_model=ExpertListResponse,
    summary="Remove an expert",
    description=(
        "Drop an expert session and its history. Web Expert and URL "
        "Expert are recreated on the next initialization."
    ),
)
async def remove_expert(
    name: str,
    registry: ExpertRegistry = Depends(get_registry),
) -> ExpertListResponse:
    if not registry.remove(name):
        raise HTTPException(status_code=404, detail=f"Expert '{name}' not found")
    if name in STANDING_EXPERTS:
        logger.info("Standing expert '%s' removed by user", name)
    return ExpertListResponse(experts=registry.list_experts())
