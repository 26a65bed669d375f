# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API. Plans,
# clarification requests, citations and trace steps reuse the pipeline
# schemas directly, so clients see exactly what the agents produced.
#
# Expert sessions (and their chat histories) are never serialised; the
# API only exposes expert names.
# =============================================================================

from pydantic import BaseModel, Field

from research_swarm.models.schemas import (
    Citation,
    ClarificationRequest,
    CollaborationStep,
    Outcome,
    Plan,
)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class ExpertListResponse(BaseModel):
    """Response for GET /experts."""

    experts: list[str] = Field(description="Registered expert names, in order")


class SwarmInitResponse(BaseModel):
    """
    Response for POST /experts — swarm initialization.

    A document that could not be briefed is listed in `skipped` with a
    matching entry in `warnings`; the rest of the swarm is still usable.
    """

    experts: list[str]
    briefed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class AskResponse(BaseModel):
    """
    Response for POST /ask and POST /ask/clarify.

    outcome:
      quick_answer        — answered without planning
      clarification       — see `clarification`; answer via /ask/clarify
      report              — the approved (or budget-limited) cited report
      needs_clarification — the research lead needs a missing capability
      stopped             — cancelled via /ask/stop or a newer request
      error               — the run failed
    """

    outcome: Outcome
    answer: str
    query: str = Field(description="The query as the pipeline ran it")
    thinking: str = ""
    plan: Plan | None = None
    clarification: ClarificationRequest | None = None
    citations: list[Citation] = Field(default_factory=list)
    steps: list[CollaborationStep] = Field(default_factory=list)
    result_count: int = Field(default=0, description="Expert answers gathered")


class StopResponse(BaseModel):
    """Response for POST /ask/stop."""

    stopped: bool = Field(description="False when no run was active")
