# =============================================================================
# Pipeline Schemas — Structured Gateway Contracts (Pydantic V2)
# =============================================================================
#
# Every structured-output Gateway call is described by one of these
# models. They serve two purposes:
# 1. The JSON schema sent to the model (model_json_schema())
# 2. Validation of the parsed reply (model_validate())
#
# Models are deliberately lenient (defaults on almost every field): a
# reply that parses but omits an optional field should still be usable.
# A reply that fails validation falls back to the call site's default.
#
# Also defined here: the non-LLM records that flow between stages
# (ExpertResult, Report, CollaborationStep, Citation).
# =============================================================================

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class PlanType(str, enum.Enum):
    """SIMPLE_FACT = retrieval / summarisation; DEEP_ANALYSIS = synthesis."""

    SIMPLE_FACT = "SIMPLE_FACT"
    DEEP_ANALYSIS = "DEEP_ANALYSIS"


class Task(BaseModel):
    """One sub-question assigned to one expert."""

    expert: str = Field(description="Exact name of an ACTIVE expert agent")
    question: str = Field(description="The specific question for that expert")
    rationale: str = ""


class Step(BaseModel):
    title: str = ""
    description: str = ""
    tasks: list[Task] = Field(default_factory=list)


class Plan(BaseModel):
    """
    A hierarchical research plan: ordered steps of ordered tasks.

    Empty steps are allowed (the answer is already in the history).
    """

    plan_type: PlanType = PlanType.DEEP_ANALYSIS
    thought_process: str = ""
    strategy: str = Field(default="", description="Strategy explanation")
    revision_commentary: str | None = Field(
        default=None,
        description=(
            "If this is a revised plan, explain how you addressed the "
            "reviewer's feedback, or why you rejected it."
        ),
    )
    steps: list[Step] = Field(default_factory=list)

    def all_tasks(self) -> list[Task]:
        """Flatten every step's tasks, keeping declaration order."""
        return [task for step in self.steps for task in step.tasks]

    @property
    def is_deep(self) -> bool:
        return self.plan_type is PlanType.DEEP_ANALYSIS


# ---------------------------------------------------------------------------
# Advisor
# ---------------------------------------------------------------------------


class Scorecard(BaseModel):
    """Six rubric dimensions, each scored 1-5."""

    goal_alignment: int = 5
    insight_quality: int = 5
    accuracy_traceability: int = 5
    robustness: int = 5
    simplicity: int = 5
    feasibility: int = 5

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        try:
            score = int(value)
        except (TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"score must be an integer, got {value!r}") from e
        return max(1, min(5, score))

    def min_score(self) -> int:
        return min(self.model_dump().values())


class AdvisorReview(BaseModel):
    """Scores and risks only — the advisor never issues a verdict."""

    scorecard: Scorecard = Field(default_factory=Scorecard)
    risks: list[str] = Field(default_factory=list)
    evidence: list[str] = Field(
        default_factory=list,
        description="Quote or step number from the plan for each risk",
    )


# ---------------------------------------------------------------------------
# Intent & Clarification
# ---------------------------------------------------------------------------


class IntentType(str, enum.Enum):
    QUICK_ANSWER = "QUICK_ANSWER"
    DEEP_RESEARCH = "DEEP_RESEARCH"


class IntentClassification(BaseModel):
    type: IntentType = IntentType.DEEP_RESEARCH
    reasoning: str = ""


class ClarificationOption(BaseModel):
    id: str
    text: str
    is_custom_input: bool = Field(
        default=False,
        description="True for a last option that lets the user type",
    )


class ClarificationQuestion(BaseModel):
    id: str
    text: str
    multiple_choice: bool = False
    options: list[ClarificationOption] = Field(default_factory=list)


class ClarificationRequest(BaseModel):
    requires_clarification: bool = False
    questions: list[ClarificationQuestion] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Research Evaluation
# ---------------------------------------------------------------------------


class ResearchStatus(str, enum.Enum):
    CONTINUE_RESEARCH = "CONTINUE_RESEARCH"
    FINALIZE = "FINALIZE"


class ResearchEvaluation(BaseModel):
    status: ResearchStatus = ResearchStatus.FINALIZE
    gap_analysis: str = ""
    new_plan: Plan | None = Field(
        default=None,
        description="Only when status is CONTINUE_RESEARCH",
    )


# ---------------------------------------------------------------------------
# Output Review & Arbitration
# ---------------------------------------------------------------------------


class ReviewOpinion(BaseModel):
    """The reviewer's observations. Never a verdict, never a fix."""

    answers_query: bool = True
    has_hallucinations: bool = False
    opinion: str = ""


class Verdict(str, enum.Enum):
    APPROVED = "APPROVED"
    INCREMENTAL = "INCREMENTAL"
    REJECTED = "REJECTED"
    DEBATE = "DEBATE"
    NEEDS_CLARIFICATION = "NEEDS_CLARIFICATION"


class Arbitration(BaseModel):
    verdict: Verdict = Verdict.APPROVED
    reasoning: str = ""
    remediation_plan: Plan | None = Field(
        default=None,
        description="Required when INCREMENTAL or REJECTED",
    )
    clarification_message: str | None = Field(
        default=None,
        description="Only when NEEDS_CLARIFICATION: a message to the user",
    )


# ---------------------------------------------------------------------------
# Inter-stage Records
# ---------------------------------------------------------------------------


class ExpertResult(BaseModel):
    """One (expert, question, answer) triple of the accumulated result set."""

    expert: str
    question: str
    answer: str


class ChatTurn(BaseModel):
    """One prior turn of the conversation, as the UI recorded it."""

    role: str
    text: str = ""
    image_count: int = 0


class Report(BaseModel):
    """Synthesizer output: reasoning segment split from the cited body."""

    thinking: str = ""
    content: str = ""


class Citation(BaseModel):
    """A parsed <claim> tag."""

    source: str
    quote: str = ""
    page: str | None = None
    logic: str | None = None
    text: str = ""


class Outcome(str, enum.Enum):
    """How one user turn ended."""

    QUICK_ANSWER = "quick_answer"
    CLARIFICATION = "clarification"
    REPORT = "report"
    NEEDS_CLARIFICATION = "needs_clarification"
    STOPPED = "stopped"
    ERROR = "error"


class StepKind(str, enum.Enum):
    PLAN = "plan"
    ADVISOR_REVIEW = "advisor_review"
    EXECUTION_DISPATCH = "execution_dispatch"
    EXECUTION_RESULTS = "execution_results"
    RESEARCH_EVALUATION = "research_evaluation"
    OUTPUT_REVIEW = "output_review"
    ARBITRATION = "arbitration"


class CollaborationStep(BaseModel):
    """Immutable, timestamped trace entry. Observability only."""

    model_config = ConfigDict(frozen=True)

    kind: StepKind
    round: int
    content: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def record(cls, kind: StepKind, round: int, content: BaseModel | dict) -> CollaborationStep:
        payload = content.model_dump(mode="json") if isinstance(content, BaseModel) else content
        return cls(kind=kind, round=round, content=payload)
