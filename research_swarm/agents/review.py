# =============================================================================
# Review Board — Output Reviewer, Arbitrator, Bounded Debate
# =============================================================================
#
# Two roles audit every synthesized report:
#
#   Output Reviewer (consultant)
#     Observations only: does the report answer the query, does it
#     contain hallucinations, and why. Never a verdict, never a fix.
#
#   Arbitrator (Lead Researcher)
#     Turns the opinion into a verdict:
#       APPROVED            → ship the report
#       INCREMENTAL         → narrow gap: run a small remediation plan,
#                             keep every earlier result, re-synthesize
#       REJECTED            → structural failure: full re-plan
#       DEBATE              → disagree with the reviewer, argue back
#       NEEDS_CLARIFICATION → a missing capability (e.g. no web expert),
#                             not missing facts: ask the user
#
# DEBATE LOOP (deliberate):
#
#   audit ──▶ arbitrate ──DEBATE──▶ audit(with defense) ──▶ arbitrate ...
#                 │
#                 └─ any other verdict ──▶ return
#
# After `max_debate_rounds` defenses (default 2) a further DEBATE is
# overridden by a system APPROVED. The debate counter is per review
# cycle; remediation budgets live in the orchestrator.
#
# Both calls fail open toward approval so a provider hiccup never stalls
# the pipeline in review.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from research_swarm.config import settings
from research_swarm.models.schemas import (
    Arbitration,
    CollaborationStep,
    ExpertResult,
    ReviewOpinion,
    StepKind,
    Verdict,
)
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.llm import LLMGateway
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)

FORCED_APPROVAL_REASONING = (
    "[SYSTEM] Debate limit reached. Overriding the reviewer to proceed with "
    "the current report."
)

# Each gathered answer is cut to this many characters in the
# arbitrator's summary of prior results.
_SUMMARY_ANSWER_CHARS = 200


@dataclass
class ReviewCycle:
    """Outcome of one audit → arbitrate → debate cycle."""

    arbitration: Arbitration
    opinion: ReviewOpinion
    debate_rounds: int = 0
    steps: list[CollaborationStep] = field(default_factory=list)


def _render_debate(debate_history: Sequence[str]) -> str:
    return "\n".join(
        f"Round {index}: {message}" for index, message in enumerate(debate_history, 1)
    )


async def audit_report(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    report: str,
    debate_history: Sequence[str] = (),
) -> ReviewOpinion:
    """Collect the reviewer's observations on `report`."""
    debate_context = ""
    if debate_history:
        debate_context = (
            "\n\nLEAD RESEARCHER'S DEBATE DEFENSE:\n"
            f"{_render_debate(debate_history)}\n\n"
            "Read the defense. Decide whether their logic changes your "
            "opinion or whether you hold your ground."
        )

    prompt = (
        "You are the Peer Review Board Consultant. Review the final "
        "research report.\n\n"
        f'ORIGINAL USER QUERY: "{query}"\n'
        f"REPORT:\n{report}"
        f"{debate_context}\n\n"
        "GOAL: consult the Lead Researcher.\n"
        "1. Does the report fundamentally address the user's request?\n"
        "2. Are there factual claims not grounded in sources? Citations of "
        "external URLs come from web experts and are VALID; only flag "
        "claims with no source or that contradict the facts.\n\n"
        "RULES:\n"
        "- Do NOT give a verdict (no approve/reject).\n"
        "- Do NOT recommend fixes. State your observations only."
    )

    opinion = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=prompt,
        schema=ReviewOpinion,
        default=ReviewOpinion(
            answers_query=True,
            has_hallucinations=False,
            opinion="Auto-approved on error",
        ),
        temperature=0.1,
        label="Output reviewer",
    )
    logger.info(
        "Review opinion: answers_query=%s, hallucinations=%s",
        opinion.answers_query, opinion.has_hallucinations,
    )
    return opinion


async def arbitrate(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    report: str,
    opinion: ReviewOpinion,
    active_experts: Sequence[str],
    debate_history: Sequence[str] = (),
    results: Sequence[ExpertResult] = (),
) -> Arbitration:
    """Turn the reviewer's opinion into a verdict."""
    debate_context = ""
    if debate_history:
        debate_context = (
            "\n\nPREVIOUS DEBATE HISTORY:\n"
            f"{_render_debate(debate_history)}\n\n"
            "You are still arguing with the consultant over these points."
        )

    gathered = ""
    if results:
        summary = "\n".join(
            f'- [{r.expert}] Q: "{r.question}" -> A: '
            f"{r.answer[:_SUMMARY_ANSWER_CHARS]}..."
            for r in results
        )
        gathered = f"\n\nALREADY GATHERED DATA ({len(results)} results):\n{summary}\n"

    prompt = (
        "You are the Lead Researcher. You wrote the report below and the "
        "Peer Review Board Consultant has reviewed it.\n\n"
        f'ORIGINAL QUERY: "{query}"\n'
        f"YOUR REPORT:\n{report}"
        f"{gathered}\n"
        "CONSULTANT OPINION:\n"
        f"Does it answer the query? {opinion.answers_query}\n"
        f"Has hallucinations? {opinion.has_hallucinations}\n"
        f'Opinion details: "{opinion.opinion}"'
        f"{debate_context}\n\n"
        "AVAILABLE EXPERTS (for further research): "
        f"{json.dumps(list(active_experts))}\n\n"
        "TASK:\n"
        "1. Judge the consultant's feedback on OBJECTIVE facts. Do not "
        "default to agreeing; push back on pedantry, misread sources or "
        "false hallucination flags.\n"
        "2. DEBATE: if you disagree, explain your counter-argument in "
        "reasoning. The consultant will reply.\n"
        "3. APPROVED: the report is good enough.\n"
        "4. INCREMENTAL (PREFERRED fix): the report is mostly right but "
        "misses specific data points. Provide a small remediation_plan "
        "targeting ONLY the gap; all gathered data is preserved and merged.\n"
        "5. REJECTED (LAST RESORT): wrong overall approach or widespread "
        "hallucination. Provide a full remediation_plan.\n"
        "   When in doubt, choose INCREMENTAL.\n"
        "6. NEEDS_CLARIFICATION: the gap is real but none of the available "
        "experts can close it (e.g. only static files, but live web data "
        "is needed). Explain the root cause in clarification_message and "
        "ask the user to enable the right expert or provide newer files. "
        "Do not keep rejecting with plans for the same static sources."
    )

    arbitration = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=prompt,
        schema=Arbitration,
        default=Arbitration(verdict=Verdict.APPROVED, reasoning="Auto-approved on error"),
        temperature=0.1,
        label="Arbitrator",
    )
    logger.info("Arbitration verdict: %s", arbitration.verdict.value)
    return arbitration


async def deliberate(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    report: str,
    active_experts: Sequence[str],
    results: Sequence[ExpertResult],
    cycle: int = 1,
) -> ReviewCycle:
    """
    Run one review cycle: audit, arbitrate, and the bounded debate.

    Args:
        cycle: Review cycle number, used as the trace round.

    Returns:
        ReviewCycle whose arbitration is never DEBATE.
    """
    max_rounds = settings.max_debate_rounds
    debate_history: list[str] = []

    logger.info("Consultant reviewing report...")
    opinion = await audit_report(gateway, token, query, report)
    cycle_result = ReviewCycle(arbitration=Arbitration(), opinion=opinion)
    cycle_result.steps.append(
        CollaborationStep.record(StepKind.OUTPUT_REVIEW, cycle, opinion),
    )

    while True:
        logger.info("Lead Researcher deciding next steps...")
        arbitration = await arbitrate(
            gateway, token, query, report, opinion,
            active_experts, debate_history, results,
        )
        cycle_result.steps.append(
            CollaborationStep.record(StepKind.ARBITRATION, cycle, arbitration),
        )

        if arbitration.verdict is not Verdict.DEBATE:
            break

        if cycle_result.debate_rounds >= max_rounds:
            logger.warning("Debate limit reached (%d rounds); forcing approval", max_rounds)
            arbitration = Arbitration(
                verdict=Verdict.APPROVED, reasoning=FORCED_APPROVAL_REASONING,
            )
            cycle_result.steps.append(
                CollaborationStep.record(StepKind.ARBITRATION, cycle, arbitration),
            )
            break

        cycle_result.debate_rounds += 1
        debate_history.append(arbitration.reasoning)
        logger.info(
            "Consultant reviewing Lead's defense (Debate Round %d)...",
            cycle_result.debate_rounds,
        )
        opinion = await audit_report(gateway, token, query, report, debate_history)
        cycle_result.opinion = opinion
        cycle_result.steps.append(
            CollaborationStep.record(StepKind.OUTPUT_REVIEW, cycle, opinion),
        )

    cycle_result.arbitration = arbitration
    return cycle_result
