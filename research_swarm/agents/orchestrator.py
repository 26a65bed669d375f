# =============================================================================
# LangGraph Orchestrator — The Research Pipeline State Machine
# =============================================================================
#
# The orchestrator wires every role into one LangGraph StateGraph and
# owns the control decisions between them: which path a query takes,
# when research stops, and what each Arbitrator verdict leads to.
#
# GRAPH TOPOLOGY:
#
#   START ─┬─▶ classify ─┬─▶ quick_answer ─▶ END
#          │             └─▶ clarify ─┬─▶ END          (questions for user)
#          │                          └─▶ plan
#          └─(resume)────────────────────▶ plan
#   plan ─┬─▶ refine ─▶ research                       (deep plan w/ tasks)
#         └─▶ research
#   research ─▶ synthesize ─▶ review ─┬─▶ finalize ─▶ END
#                                     ├─▶ remediate ─▶ synthesize
#                                     └─▶ replan ─▶ research
#
# LOOP BUDGETS (each its own counter, each in settings):
#   research pivots   — inside the research node, reset on every replan
#   debate rounds     — inside the review node, reset per review cycle
#   remediation       — shared by remediate and replan; checked before
#                       and incremented at the start of every cycle
#
# DESIGN DECISION: Bounded inner loops live inside nodes.
# The research pivot loop and the debate loop are short sequential
# loops; the graph only models the transitions that change what runs
# next (verdict routing), so every edge here is a real decision.
#
# DESIGN DECISION: Append-only channels for results and trace.
# `results` and `steps` use operator.add reducers. A node can only add
# to them, so a restart can never shrink the accumulated result set.
#
# DESIGN DECISION: Collaborators injected through the state.
# Gateway, ExpertRegistry and CancellationToken travel in the state so
# tests run the real graph against scripted fakes. They are not
# serialisable; no checkpointer is configured on the graph.
#
# DESIGN DECISION: Graph compiled once at module level.
# =============================================================================

from __future__ import annotations

import logging
import operator
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Annotated

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from research_swarm.agents.clarifier import (
    generate_clarification,
    render_clarified_query,
)
from research_swarm.agents.executor import execute_tasks
from research_swarm.agents.experts import URL_EXPERT, ExpertRegistry
from research_swarm.agents.intent import answer_quickly, classify_intent
from research_swarm.agents.planner import (
    create_plan,
    needs_refinement,
    refine_plan,
    render_history,
)
from research_swarm.agents.research import run_research
from research_swarm.agents.review import deliberate
from research_swarm.agents.synthesizer import synthesize_report
from research_swarm.config import settings
from research_swarm.models.schemas import (
    Arbitration,
    ChatTurn,
    Citation,
    ClarificationRequest,
    CollaborationStep,
    ExpertResult,
    IntentClassification,
    IntentType,
    Outcome,
    Plan,
    Report,
    StepKind,
    Verdict,
)
from research_swarm.services.cancellation import Aborted, CancellationToken
from research_swarm.services.citations import extract_citations
from research_swarm.services.llm import Attachment, LLMGateway

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Execution stopped by user."
ERROR_MESSAGE = "Sorry, the research team encountered an error."
NEEDS_HELP_FALLBACK = (
    "I need more information or specific expert agents to complete this request."
)
DEFAULT_URL_INSTRUCTION = (
    "Please pull the precise facts, figures, and insights from these URLs. "
    "No filler."
)


# ---------------------------------------------------------------------------
# State Schema
# ---------------------------------------------------------------------------


class ResearchState(TypedDict, total=False):
    """
    State that flows through the research graph.

    Uses total=False so nodes only return the keys they update.
    """

    # --- Input (set by caller) ---
    query: str
    images: list[Attachment]
    history_text: str
    active_experts: list[str]
    resume: bool  # clarification answered: skip intent and clarifier

    # --- Injected collaborators ---
    gateway: LLMGateway
    registry: ExpertRegistry
    token: CancellationToken

    # --- Intermediate (set by nodes) ---
    intent: IntentClassification
    clarification: ClarificationRequest
    plan: Plan
    research_rounds: int
    remediation_attempt: int
    report: Report
    arbitration: Arbitration

    # --- Append-only channels ---
    results: Annotated[list[ExpertResult], operator.add]
    steps: Annotated[list[CollaborationStep], operator.add]

    # --- Output ---
    outcome: Outcome
    answer: str


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------
# Each node receives the full state and returns a partial update dict.
# ---------------------------------------------------------------------------


async def classify_node(state: ResearchState) -> dict:
    """Pick the quick path or the full research pipeline."""
    intent = await classify_intent(
        state["gateway"], state["token"], state["query"],
        state["active_experts"], state.get("images", []),
    )
    return {"intent": intent}


async def quick_answer_node(state: ResearchState) -> dict:
    answer = await answer_quickly(
        state["gateway"], state["registry"], state["token"], state["query"],
        state["active_experts"], state.get("images", []),
    )
    return {"outcome": Outcome.QUICK_ANSWER, "answer": answer}


async def clarify_node(state: ResearchState) -> dict:
    """Ask the user to disambiguate, or let the pipeline continue."""
    request = await generate_clarification(
        state["gateway"], state["token"], state["query"],
        state["active_experts"], state.get("images", []),
    )
    update: dict = {"clarification": request}
    if request.requires_clarification:
        update["outcome"] = Outcome.CLARIFICATION
        update["answer"] = ""
    return update


async def plan_node(state: ResearchState) -> dict:
    plan = await create_plan(
        state["gateway"], state["token"], state["query"],
        state["active_experts"], state.get("history_text", ""),
        state.get("images", []),
    )
    return {
        "plan": plan,
        "steps": [CollaborationStep.record(StepKind.PLAN, 0, plan)],
    }


async def refine_node(state: ResearchState) -> dict:
    """Pre-execution Advisor gate for the initial plan."""
    refinement = await refine_plan(
        state["gateway"], state["token"], state["query"],
        state["plan"], state["active_experts"],
    )
    steps = [CollaborationStep.record(StepKind.ADVISOR_REVIEW, 1, refinement.review)]
    if refinement.revised:
        steps.append(CollaborationStep.record(StepKind.PLAN, 1, refinement.plan))
    return {"plan": refinement.plan, "steps": steps}


async def research_node(state: ResearchState) -> dict:
    """One bounded research phase; the pivot counter starts at zero."""
    outcome = await run_research(
        state["gateway"], state["registry"], state["token"], state["query"],
        state["plan"], state.get("history_text", ""),
        prior_results=state.get("results", []),
    )
    return {
        "plan": outcome.plan,
        "research_rounds": outcome.rounds,
        "results": outcome.results,
        "steps": outcome.steps,
    }


async def synthesize_node(state: ResearchState) -> dict:
    logger.info("Synthesizing final report...")
    report = await synthesize_report(
        state["gateway"], state["token"], state["query"], state["plan"],
        state.get("history_text", ""), state.get("results", []),
    )
    return {"report": report}


async def review_node(state: ResearchState) -> dict:
    """Audit → arbitrate → bounded debate on the current report."""
    cycle = await deliberate(
        state["gateway"], state["token"], state["query"],
        state["report"].content, state["active_experts"],
        state.get("results", []),
        cycle=state.get("remediation_attempt", 0) + 1,
    )
    return {"arbitration": cycle.arbitration, "steps": cycle.steps}


async def remediate_node(state: ResearchState) -> dict:
    """
    INCREMENTAL verdict: run only the remediation plan's tasks.

    The working plan is kept; new answers are appended to everything
    gathered so far and the report is re-synthesized from the full set.
    """
    attempt = state.get("remediation_attempt", 0) + 1
    remediation = state["arbitration"].remediation_plan or Plan()
    logger.info(
        "Lead Researcher: running targeted follow-up (attempt %d/%d)...",
        attempt, settings.max_remediation_attempts,
    )

    steps = [CollaborationStep.record(
        StepKind.EXECUTION_DISPATCH, attempt,
        {"tasks": [task.model_dump() for task in remediation.all_tasks()]},
    )]
    new_results = await execute_tasks(remediation, state["registry"], state["token"])
    steps.append(CollaborationStep.record(
        StepKind.EXECUTION_RESULTS, attempt,
        {"results": [result.model_dump() for result in new_results]},
    ))

    return {
        "remediation_attempt": attempt,
        "results": new_results,
        "steps": steps,
    }


async def replan_node(state: ResearchState) -> dict:
    """
    REJECTED verdict: replace the plan (never the results) and restart
    research. A remediation plan with tasks goes through the Advisor
    gate first; without one, the Planner re-plans from the rejection.
    """
    attempt = state.get("remediation_attempt", 0) + 1
    arbitration = state["arbitration"]
    logger.info(
        "Lead Researcher decided to re-research (full restart %d/%d)...",
        attempt, settings.max_remediation_attempts,
    )

    steps: list[CollaborationStep] = []
    plan = arbitration.remediation_plan
    if plan is None:
        plan = await create_plan(
            state["gateway"], state["token"], state["query"],
            state["active_experts"], state.get("history_text", ""),
            state.get("images", []), prior_failure=arbitration.reasoning,
        )
        steps.append(CollaborationStep.record(StepKind.PLAN, attempt, plan))

    if plan.all_tasks():
        logger.info("Committee Session: reviewing remediation plan...")
        refinement = await refine_plan(
            state["gateway"], state["token"], state["query"],
            plan, state["active_experts"],
        )
        steps.append(CollaborationStep.record(
            StepKind.ADVISOR_REVIEW, attempt, refinement.review,
        ))
        plan = refinement.plan

    steps.append(CollaborationStep.record(StepKind.PLAN, attempt, plan))
    return {
        "plan": plan,
        "remediation_attempt": attempt,
        "research_rounds": 0,
        "steps": steps,
    }


async def finalize_node(state: ResearchState) -> dict:
    """Turn the last verdict into the user-facing answer."""
    arbitration = state["arbitration"]
    report = state["report"]

    if arbitration.verdict is Verdict.NEEDS_CLARIFICATION:
        logger.info("Lead Researcher needs help from the user")
        return {
            "outcome": Outcome.NEEDS_CLARIFICATION,
            "answer": arbitration.clarification_message or NEEDS_HELP_FALLBACK,
        }

    if arbitration.verdict in (Verdict.INCREMENTAL, Verdict.REJECTED):
        logger.warning(
            "%s verdict not actionable (attempt %d/%d, plan=%s); "
            "delivering current report",
            arbitration.verdict.value, state.get("remediation_attempt", 0),
            settings.max_remediation_attempts,
            arbitration.remediation_plan is not None,
        )
    return {"outcome": Outcome.REPORT, "answer": report.content}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_start(state: ResearchState) -> str:
    return "plan" if state.get("resume") else "classify"


def _route_after_classify(state: ResearchState) -> str:
    if state["intent"].type is IntentType.QUICK_ANSWER:
        return "quick_answer"
    return "clarify"


def _route_after_clarify(state: ResearchState) -> str:
    if state["clarification"].requires_clarification:
        return END
    return "plan"


def _route_after_plan(state: ResearchState) -> str:
    return "refine" if needs_refinement(state["plan"]) else "research"


def _route_after_review(state: ResearchState) -> str:
    """
    Verdict → next node. APPROVED, NEEDS_CLARIFICATION, an exhausted
    remediation budget, and an INCREMENTAL verdict without a plan all
    finalize. DEBATE never reaches here (resolved inside review).
    """
    arbitration = state["arbitration"]
    budget_left = (
        state.get("remediation_attempt", 0) < settings.max_remediation_attempts
    )

    if arbitration.verdict is Verdict.INCREMENTAL:
        if budget_left and arbitration.remediation_plan is not None:
            return "remediate"
        return "finalize"
    if arbitration.verdict is Verdict.REJECTED:
        return "replan" if budget_left else "finalize"
    return "finalize"


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(ResearchState)
_builder.add_node("classify", classify_node)
_builder.add_node("quick_answer", quick_answer_node)
_builder.add_node("clarify", clarify_node)
_builder.add_node("plan", plan_node)
_builder.add_node("refine", refine_node)
_builder.add_node("research", research_node)
_builder.add_node("synthesize", synthesize_node)
_builder.add_node("review", review_node)
_builder.add_node("remediate", remediate_node)
_builder.add_node("replan", replan_node)
_builder.add_node("finalize", finalize_node)

_builder.add_conditional_edges(START, _route_start, ["classify", "plan"])
_builder.add_conditional_edges(
    "classify", _route_after_classify, ["quick_answer", "clarify"],
)
_builder.add_edge("quick_answer", END)
_builder.add_conditional_edges("clarify", _route_after_clarify, ["plan", END])
_builder.add_conditional_edges("plan", _route_after_plan, ["refine", "research"])
_builder.add_edge("refine", "research")
_builder.add_edge("research", "synthesize")
_builder.add_edge("synthesize", "review")
_builder.add_conditional_edges(
    "review", _route_after_review, ["finalize", "remediate", "replan"],
)
_builder.add_edge("remediate", "synthesize")
_builder.add_edge("replan", "research")
_builder.add_edge("finalize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass
class PipelineResult:
    """Everything one user turn produced, ready for the API layer."""

    outcome: Outcome
    answer: str
    query: str
    thinking: str = ""
    plan: Plan | None = None
    clarification: ClarificationRequest | None = None
    citations: list[Citation] = field(default_factory=list)
    steps: list[CollaborationStep] = field(default_factory=list)
    results: list[ExpertResult] = field(default_factory=list)


def with_target_urls(query: str, urls: Sequence[str], active_experts: Sequence[str]) -> str:
    """
    Prefix the query with a [Target URLs: ...] block.

    Only applies when the URL Expert is active and URLs were given; an
    empty query gets a default extraction instruction.
    """
    if URL_EXPERT not in active_experts or not urls:
        return query
    listing = "\n".join(f"- {url}" for url in urls)
    return f"[Target URLs:\n{listing}]\n\n{query or DEFAULT_URL_INSTRUCTION}"


async def ask(
    query: str,
    *,
    gateway: LLMGateway,
    registry: ExpertRegistry,
    token: CancellationToken,
    active_experts: Sequence[str] | None = None,
    history: Sequence[ChatTurn] = (),
    images: Sequence[Attachment] = (),
    urls: Sequence[str] = (),
) -> PipelineResult:
    """
    Entry point: run the research graph for one user turn.

    Args:
        query: The user's message.
        gateway: LLM gateway.
        registry: The process-wide expert registry.
        token: Cancellation token for this run (from RunController).
        active_experts: Experts this turn may use (default: all).
        history: Prior chat turns.
        images: Images attached to the message.
        urls: URLs for the URL Expert to target.

    Returns:
        PipelineResult. Never raises: cancellation and failures are
        reported through `outcome`.
    """
    active = registry.resolve_active(active_experts)
    effective_query = with_target_urls(query, urls, active)

    logger.info(
        "Invoking research graph: query='%s', experts=%d",
        effective_query[:80], len(active),
    )
    return await _run(effective_query, {
        "query": effective_query,
        "images": list(images),
        "history_text": render_history(history),
        "active_experts": active,
        "resume": False,
        "gateway": gateway,
        "registry": registry,
        "token": token,
        "results": [],
        "steps": [],
    })


async def resume_with_clarification(
    query: str,
    clarification: ClarificationRequest,
    answers: Mapping[str, Sequence[str]],
    *,
    gateway: LLMGateway,
    registry: ExpertRegistry,
    token: CancellationToken,
    custom_inputs: Mapping[str, str] | None = None,
    active_experts: Sequence[str] | None = None,
    history: Sequence[ChatTurn] = (),
    images: Sequence[Attachment] = (),
) -> PipelineResult:
    """
    Continue a run that stopped for clarification.

    The answers are rendered onto the original query and the graph
    starts at planning, skipping intent and clarification.
    """
    clarified = render_clarified_query(query, clarification, answers, custom_inputs)
    active = registry.resolve_active(active_experts)

    logger.info("Resuming with clarification: %d answered", len(answers))
    return await _run(clarified, {
        "query": clarified,
        "images": list(images),
        "history_text": render_history(history),
        "active_experts": active,
        "resume": True,
        "gateway": gateway,
        "registry": registry,
        "token": token,
        "results": [],
        "steps": [],
    })


async def _run(query: str, initial_state: ResearchState) -> PipelineResult:
    try:
        state = await graph.ainvoke(
            initial_state,
            config={"recursion_limit": settings.graph_recursion_limit},
        )
    except Aborted:
        logger.info("Run stopped by user")
        return PipelineResult(outcome=Outcome.STOPPED, answer=STOPPED_MESSAGE, query=query)
    except Exception:
        logger.exception("Research graph failed")
        return PipelineResult(outcome=Outcome.ERROR, answer=ERROR_MESSAGE, query=query)

    outcome = state.get("outcome", Outcome.REPORT)
    answer = state.get("answer", "")
    report = state.get("report")

    result = PipelineResult(
        outcome=outcome,
        answer=answer,
        query=query,
        thinking=report.thinking if report else "",
        plan=state.get("plan"),
        clarification=(
            state.get("clarification") if outcome is Outcome.CLARIFICATION else None
        ),
        citations=extract_citations(answer),
        steps=state.get("steps", []),
        results=state.get("results", []),
    )
    logger.info(
        "Research graph complete: outcome=%s, results=%d, steps=%d",
        outcome.value, len(result.results), len(result.steps),
    )
    return result
