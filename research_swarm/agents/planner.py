# =============================================================================
# Planner — Lead Researcher Plans and the Advisor/Refiner Gate
# =============================================================================
#
# create_plan() turns the user query into a hierarchical Plan: ordered
# steps of ordered tasks, each assigning one sub-question to one ACTIVE
# expert. The active list is spelled out in the prompt; a task naming
# any other expert is tolerated downstream (the Executor answers it
# with "Error: Expert not assigned.").
#
#   SIMPLE_FACT   → retrieval, summarization, simple questions
#   DEEP_ANALYSIS → comparison, thematic analysis, complex reasoning
#   empty steps   → the answer is already in the conversation history
#
# After an Arbitrator rejection the planner is re-prompted with the
# rejection reason and asked for a full remediation plan.
#
# refine_plan() is the single-shot Advisor gate:
#
#   Advisor scorecard ──▶ min score >= 4 and no risks? ──yes──▶ keep plan
#                                    │ no
#                                    ▼
#                 one more planner call with scorecard/risks
#                 (address each risk or argue against it in
#                  revision_commentary) ──▶ revised plan
#
# The Advisor is not re-run on the revised plan.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from research_swarm.agents.advisor import review_plan
from research_swarm.agents.experts import URL_EXPERT, WEB_EXPERT
from research_swarm.config import settings
from research_swarm.models.schemas import (
    AdvisorReview,
    ChatTurn,
    Plan,
    PlanType,
    Step,
    Task,
)
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.llm import Attachment, LLMGateway
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)

# Gate thresholds: a plan skips refinement only when every score
# reaches this value and the advisor named no risks.
REFINEMENT_MIN_SCORE = 4

_PLANNING_RULES = (
    "DECISION RULES:\n"
    "1. SIMPLE_FACT: retrieval, summarization or simple questions.\n"
    "2. DEEP_ANALYSIS: comparison, thematic analysis or complex reasoning.\n"
    "3. NO-OP RULE: if the answer is already in the history, return empty "
    "steps.\n"
    "4. MULTIMODAL NOTE: the user may have attached images; take them into "
    "account."
)


@dataclass
class PlanRefinement:
    """Result of the Advisor gate."""

    plan: Plan
    review: AdvisorReview
    revised: bool


def render_history(turns: Sequence[ChatTurn], window: int | None = None) -> str:
    """Render the last `window` turns as "ROLE: text" lines."""
    window = settings.history_window if window is None else window
    recent = list(turns)[-window:] if window > 0 else []
    lines = []
    for turn in recent:
        image_note = (
            f" [Attached {turn.image_count} images]" if turn.image_count else ""
        )
        lines.append(f"{turn.role.upper()}: {turn.text or '(Thinking)'}{image_note}")
    return "\n".join(lines)


def needs_refinement(plan: Plan) -> bool:
    """Only deep plans that actually dispatch work go through the Advisor."""
    return plan.is_deep and bool(plan.all_tasks())


def _expert_roster(active_experts: Sequence[str]) -> str:
    roster = "\n".join(f"- {name}" for name in active_experts)
    return (
        "You are ONLY allowed to assign tasks to the ACTIVE EXPERT AGENTS "
        "listed below. Do NOT assign tasks to anything not in this list.\n\n"
        f"ACTIVE EXPERT AGENTS:\n{roster}\n\n"
        "AGENT ROLES:\n"
        f"- {WEB_EXPERT}: broad internet searches, latest news, fact "
        "verification. Citations must include URLs.\n"
        f"- {URL_EXPERT}: ONLY when the user provides specific URLs to "
        "analyze. Not for general search.\n"
        "- [File Name]: deep retrieval from that specific uploaded document."
    )


def _fallback_plan(query: str, active_experts: Sequence[str]) -> Plan:
    """Ask every active expert the query verbatim."""
    return Plan(
        plan_type=PlanType.SIMPLE_FACT,
        thought_process="Planner output was unusable; querying every expert directly.",
        strategy="Direct retrieval from all active experts.",
        steps=[Step(
            title="Direct retrieval",
            description="Ask each active expert the original question.",
            tasks=[
                Task(expert=name, question=query, rationale="Fallback plan")
                for name in active_experts
            ],
        )],
    )


async def create_plan(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    active_experts: Sequence[str],
    history_text: str = "",
    images: Sequence[Attachment] = (),
    prior_failure: str | None = None,
) -> Plan:
    """
    Draft a research plan for `query`.

    Args:
        gateway: LLM gateway.
        token: Cancellation token of the current run.
        query: The user query (with clarification context, if any).
        active_experts: The only experts the plan may target.
        history_text: Rendered conversation history.
        images: Images attached to the query.
        prior_failure: Arbitrator reasoning from a rejected report.

    Returns:
        The plan, or a SIMPLE_FACT fallback that asks every active
        expert the query when the model output is unusable.
    """
    if prior_failure:
        logger.info("Research Lead: recalibrating strategy after rejection...")
    else:
        logger.info("Research Lead: drafting research strategy...")

    prompt = (
        'You are the "Lead Researcher" managing a team of expert agents.\n\n'
        f"{_expert_roster(active_experts)}\n\n"
        f"HISTORY: {history_text}\n"
        f'USER QUERY: "{query}"\n'
    )
    if prior_failure:
        prompt += (
            "\nCRITICAL ALERT: Your previous strategy FAILED the Peer Review.\n"
            f"REASON: {prior_failure}\n"
            "YOUR TASK: Create a full REMEDIATION PLAN that re-researches the "
            "query from scratch, not an incremental patch.\n"
        )
    prompt += f"\nGOAL: Create a structured execution plan for your experts.\n\n{_PLANNING_RULES}"

    plan = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=[prompt, *images],
        schema=Plan,
        default=_fallback_plan(query, active_experts),
        temperature=0.2,
        label="Planner",
    )
    logger.info(
        "Plan: %s, %d steps, %d tasks",
        plan.plan_type.value, len(plan.steps), len(plan.all_tasks()),
    )
    return plan


async def refine_plan(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    plan: Plan,
    active_experts: Sequence[str],
) -> PlanRefinement:
    """Run the Advisor gate once and return the plan that will execute."""
    logger.info("Committee Review: Advisor is scoring the plan...")
    review = await review_plan(gateway, token, query, plan, active_experts)

    if review.scorecard.min_score() >= REFINEMENT_MIN_SCORE and not review.risks:
        logger.info("Committee endorsed the plan (high score). Proceeding.")
        return PlanRefinement(plan=plan, review=review, revised=False)

    logger.info("Research Lead: analyzing low scores / risks...")
    roster = "\n".join(f"- {name}" for name in active_experts)
    prompt = (
        'You are the "Research Lead".\n'
        f"AVAILABLE EXPERTS:\n{roster}\n"
        f'QUERY: "{query}"\n\n'
        f"YOUR INITIAL PLAN: {plan.model_dump_json()}\n\n"
        "REVIEWER FEEDBACK:\n"
        f"Scorecard: {review.scorecard.model_dump_json()}\n"
        f"Key Risks: {json.dumps(review.risks)}\n"
        f"Evidence: {json.dumps(review.evidence)}\n\n"
        "YOUR TASK:\n"
        "1. Debate: evaluate the advice. The reviewer flagged risks or gave "
        "low scores; address each one unless you have a strong "
        "counter-argument. Pay attention to Accuracy & Traceability and "
        "Robustness.\n"
        "2. Finalize: output the FINAL plan (updated or original). In "
        "revision_commentary, state how you addressed each score and risk, "
        "or why you rejected it.\n\n"
        f"{_PLANNING_RULES}"
    )

    refined = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=prompt,
        schema=Plan,
        default=plan,
        temperature=0.2,
        label="Plan refiner",
    )
    return PlanRefinement(plan=refined, review=review, revised=refined is not plan)
