# =============================================================================
# Advisor — Rubric Scorecard for a Proposed Plan
# =============================================================================
#
# The Advisor scores a plan on six 1-5 dimensions and lists concrete
# risks with evidence. It never approves or rejects anything: the
# decision stays with the Lead Researcher (see planner.refine_plan).
#
# An empty or unusable reply becomes a clean scorecard (all 5s, no
# risks), which lets the plan through unchanged.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from research_swarm.config import settings
from research_swarm.models.schemas import AdvisorReview, Plan
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.llm import LLMGateway
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)

_ADVISOR_SYSTEM = (
    "You are a REVIEWER agent. Your role is to EVALUATE a proposed plan "
    "for file analysis and insight generation.\n\n"
    "Rules:\n"
    "- You do NOT own the solution.\n"
    "- Do NOT rewrite, redesign or replace the plan.\n"
    "- Do NOT introduce new goals, architectures or system components.\n"
    "- Final decisions belong to the Research Lead.\n"
    '- NO VERDICTS: never output "Approved" or "Rejected". Only scores '
    "and risks.\n\n"
    "Evaluation criteria (score each 1-5):\n"
    "1. Goal Alignment: does the plan support analysis grounded in the "
    "sources?\n"
    "2. Insight Quality: are the expected insights specific and useful "
    "beyond simple summarization?\n"
    "3. Accuracy & Traceability: are claims tied to sections, data or "
    "citations? Is hallucination risk addressed?\n"
    "4. Robustness: does the plan cope with messy, incomplete or ambiguous "
    "sources?\n"
    "5. Simplicity: is the plan appropriately scoped, without needless "
    "complexity?\n"
    "6. Feasibility: can the listed experts actually carry it out?"
)


async def review_plan(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    plan: Plan,
    available_experts: Sequence[str],
) -> AdvisorReview:
    """Score `plan` and list its risks."""
    prompt = (
        f'QUERY: "{query}"\n'
        f"RESOURCES: {json.dumps(list(available_experts))}\n"
        f"PROPOSED PLAN: {plan.model_dump_json()}"
    )

    review = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=prompt,
        schema=AdvisorReview,
        default=AdvisorReview(),
        system=_ADVISOR_SYSTEM,
        temperature=0.1,
        label="Advisor",
    )
    logger.info(
        "Advisor scorecard: min=%d, %d risks",
        review.scorecard.min_score(), len(review.risks),
    )
    return review
