# =============================================================================
# Research Loop — Execute, Evaluate, Pivot (Bounded)
# =============================================================================
#
# One research phase runs the plan's tasks, then lets the Lead
# Researcher judge whether the gathered facts answer the query:
#
#   round 0:  execute plan ──▶ evaluate ──▶ FINALIZE ──▶ done
#                                   │
#                                   └─▶ CONTINUE_RESEARCH + new_plan
#   round 1..N: execute new_plan ──▶ evaluate ──▶ ...
#
# BOUNDS:
#   - SIMPLE_FACT plans execute exactly once and are never evaluated
#   - at most `max_research_pivots` pivots (default 4 → 5 execution
#     rounds); the last round is not evaluated
#   - CONTINUE_RESEARCH without a new_plan ends the phase
#   - an empty or unusable evaluation means FINALIZE
#
# Results only ever accumulate: each round's batch is appended to the
# phase's results, and the evaluator always sees everything gathered in
# the request so far (prior phases included).
#
# DESIGN DECISION: Plain loop inside one graph node.
# Same reasoning as a bounded retrieval loop: the pivot loop is small,
# strictly sequential, and easier to read (and bound) as Python than as
# graph edges.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from research_swarm.agents.executor import execute_tasks
from research_swarm.agents.experts import ExpertRegistry
from research_swarm.config import settings
from research_swarm.models.schemas import (
    CollaborationStep,
    ExpertResult,
    Plan,
    ResearchEvaluation,
    ResearchStatus,
    StepKind,
)
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.llm import LLMGateway
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)


@dataclass
class ResearchOutcome:
    """What one research phase produced."""

    plan: Plan
    results: list[ExpertResult] = field(default_factory=list)
    rounds: int = 0
    steps: list[CollaborationStep] = field(default_factory=list)


async def evaluate_research(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    plan: Plan,
    results: Sequence[ExpertResult],
    history_text: str = "",
) -> ResearchEvaluation:
    """Decide whether the gathered facts suffice or the strategy must pivot."""
    retrieved = "\n".join(
        f"[{r.expert}]: Q: {r.question} -> A: {r.answer}" for r in results
    )
    prompt = (
        "You are the Research Lead observing the output of your expert "
        "agents.\n"
        f'QUERY: "{query}"\n'
        f"HISTORY: {history_text}\n"
        f'CURRENT PLAN: "{plan.strategy}"\n\n'
        f"RETRIEVED DATA:\n{retrieved}\n\n"
        "TASK:\n"
        "1. Analyze whether the retrieved facts are sufficient to fully "
        "answer the main query.\n"
        "2. If facts are incomplete, or experts reported \"Not found\", "
        "pivot: set status to CONTINUE_RESEARCH and propose a new plan in "
        "new_plan assigning additional tasks to the active experts (proxy "
        "metrics, different sections, alternative keywords).\n"
        "3. If the data is sufficient, set status to FINALIZE and "
        "summarize what was found in gap_analysis."
    )

    evaluation = await call_structured(
        gateway,
        token,
        model=settings.lead_model,
        contents=prompt,
        schema=ResearchEvaluation,
        default=ResearchEvaluation(
            status=ResearchStatus.FINALIZE, gap_analysis="Auto-proceed.",
        ),
        temperature=0.1,
        thinking_budget=settings.evaluator_thinking_budget or None,
        label="Research evaluator",
    )
    logger.info(
        "Research evaluation: %s (%s)",
        evaluation.status.value, evaluation.gap_analysis[:80],
    )
    return evaluation


async def run_research(
    gateway: LLMGateway,
    registry: ExpertRegistry,
    token: CancellationToken,
    query: str,
    plan: Plan,
    history_text: str = "",
    prior_results: Sequence[ExpertResult] = (),
) -> ResearchOutcome:
    """
    Run one bounded research phase starting from `plan`.

    Args:
        gateway: LLM gateway (evaluator calls).
        registry: Expert registry (task dispatch).
        token: Cancellation token of the current run.
        query: The user query.
        plan: The plan to execute first.
        history_text: Rendered conversation history.
        prior_results: Results gathered earlier in this request.

    Returns:
        ResearchOutcome with the last working plan, the results gathered
        in this phase (declaration order, round by round), the number of
        execution rounds, and the collaboration trace.
    """
    max_pivots = settings.max_research_pivots
    outcome = ResearchOutcome(plan=plan)
    research_round = 0

    while True:
        if research_round == 0:
            logger.info("Deploying Team (Round 1)...")
        else:
            logger.info("Research Pivot (Round %d): testing new angle...", research_round + 1)

        working = outcome.plan
        outcome.steps.append(CollaborationStep.record(
            StepKind.EXECUTION_DISPATCH,
            research_round + 1,
            {"tasks": [task.model_dump() for task in working.all_tasks()]},
        ))

        batch = await execute_tasks(working, registry, token)
        outcome.results.extend(batch)
        outcome.rounds += 1
        outcome.steps.append(CollaborationStep.record(
            StepKind.EXECUTION_RESULTS,
            research_round + 1,
            {"results": [result.model_dump() for result in batch]},
        ))

        if not working.is_deep:
            break
        if research_round >= max_pivots:
            logger.info("Research round budget exhausted; proceeding to synthesis")
            break

        evaluation = await evaluate_research(
            gateway, token, query, working,
            [*prior_results, *outcome.results], history_text,
        )
        outcome.steps.append(CollaborationStep.record(
            StepKind.RESEARCH_EVALUATION, research_round + 1, evaluation,
        ))

        if (
            evaluation.status is ResearchStatus.CONTINUE_RESEARCH
            and evaluation.new_plan is not None
        ):
            outcome.plan = evaluation.new_plan
            research_round += 1
            continue
        break

    logger.info(
        "Research phase complete: %d rounds, %d new results",
        outcome.rounds, len(outcome.results),
    )
    return outcome
