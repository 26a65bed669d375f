# =============================================================================
# Unit Tests — Agents
# =============================================================================
#
# Tests each role in isolation: intent & quick answer, clarifier,
# planner & advisor gate, research loop, synthesizer, review board.
# Every gateway call is served by the scripted FakeGateway.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from fakes import FakeGateway, add_expert, echo
from pydantic import ValidationError

from research_swarm.agents.clarifier import (
    CUSTOM_INPUT_PLACEHOLDER,
    DEFAULT_OPTION_TEXT,
    generate_clarification,
    render_clarified_query,
)
from research_swarm.agents.experts import ExpertRegistry
from research_swarm.agents.intent import (
    GREETING_REPLY,
    NO_EXPERTS_REPLY,
    answer_quickly,
    classify_intent,
    is_greeting,
)
from research_swarm.agents.planner import (
    create_plan,
    needs_refinement,
    refine_plan,
    render_history,
)
from research_swarm.agents.research import run_research
from research_swarm.agents.review import FORCED_APPROVAL_REASONING, deliberate
from research_swarm.agents.synthesizer import (
    SYNTHESIS_FAILED,
    format_expert_reports,
    synthesize_report,
)
from research_swarm.config import settings
from research_swarm.models.schemas import (
    AdvisorReview,
    Arbitration,
    ChatTurn,
    ClarificationOption,
    ClarificationQuestion,
    ClarificationRequest,
    ExpertResult,
    IntentClassification,
    IntentType,
    Plan,
    PlanType,
    ResearchEvaluation,
    ResearchStatus,
    ReviewOpinion,
    Scorecard,
    Step,
    StepKind,
    Task,
    Verdict,
)
from research_swarm.services.cancellation import CancellationToken


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _plan(*tasks: tuple[str, str], plan_type=PlanType.DEEP_ANALYSIS, strategy="") -> Plan:
    return Plan(
        plan_type=plan_type,
        strategy=strategy,
        steps=[Step(title="s", tasks=[Task(expert=e, question=q) for e, q in tasks])],
    )


# ---------------------------------------------------------------------------
# Test: Intent & Quick Answer
# ---------------------------------------------------------------------------


class TestIntent:
    """Tests for intent classification and the quick-answer path."""

    def test_is_greeting(self):
        assert is_greeting("Hi there")
        assert is_greeting("hello!")
        assert not is_greeting("Hello, can you compare revenue across both reports?")
        assert not is_greeting("What is revenue?")

    def test_classify_defaults_to_deep_research(self):
        intent = _run(classify_intent(FakeGateway(), CancellationToken(), "q", ["a.pdf"]))
        assert intent.type is IntentType.DEEP_RESEARCH
        assert intent.reasoning == "Default"

    def test_classify_quick(self):
        gateway = FakeGateway({IntentClassification: [
            IntentClassification(type=IntentType.QUICK_ANSWER, reasoning="lookup"),
        ]})
        intent = _run(classify_intent(gateway, CancellationToken(), "Who is CEO?", ["a.pdf"]))
        assert intent.type is IntentType.QUICK_ANSWER
        assert gateway.calls[0].model == settings.fast_model

    def test_greeting_needs_no_gateway_call(self):
        gateway = FakeGateway()
        answer = _run(answer_quickly(
            gateway, ExpertRegistry(), CancellationToken(), "hi", [],
        ))
        assert answer == GREETING_REPLY
        assert gateway.calls == []

    def test_no_active_experts(self):
        answer = _run(answer_quickly(
            FakeGateway(), ExpertRegistry(), CancellationToken(), "Who is CEO?", [],
        ))
        assert answer == NO_EXPERTS_REPLY

    def test_quick_answer_uses_expert_context(self):
        registry = ExpertRegistry()
        add_expert(registry, "a.pdf", 'CEO is Ann [[Page: 2 | Quote: "Ann, CEO"]]')
        add_expert(registry, "b.pdf", RuntimeError("down"))
        gateway = FakeGateway({None: ['<claim source="a.pdf" quote="Ann, CEO">Ann</claim>']})

        answer = _run(answer_quickly(
            gateway, registry, CancellationToken(), "Who is CEO?", ["a.pdf", "b.pdf"],
        ))
        assert answer.startswith("<claim")
        prompt = gateway.calls[0].prompt
        assert '[a.pdf]: <claim source="a.pdf" page="2" quote="Ann, CEO">' in prompt
        assert "[b.pdf]: Error retrieving." in prompt

    def test_quick_answer_empty_reply(self):
        registry = ExpertRegistry()
        add_expert(registry, "a.pdf", "x")
        answer = _run(answer_quickly(
            FakeGateway(), registry, CancellationToken(), "Who is CEO?", ["a.pdf"],
        ))
        assert answer == "No response generated."


# ---------------------------------------------------------------------------
# Test: Clarifier
# ---------------------------------------------------------------------------


def _question(qid: str, *options: ClarificationOption) -> ClarificationQuestion:
    return ClarificationQuestion(id=qid, text=f"Question {qid}?", options=list(options))


class TestClarifier:
    """Tests for clarification generation and answer rendering."""

    def test_default_option_inserted(self):
        reply = ClarificationRequest(
            requires_clarification=True,
            questions=[_question(
                "q1",
                ClarificationOption(id="a", text="2023"),
                ClarificationOption(id="b", text="2024"),
            )],
        )
        gateway = FakeGateway({ClarificationRequest: [reply]})
        request = _run(generate_clarification(gateway, CancellationToken(), "compare", ["a.pdf"]))
        options = request.questions[0].options
        assert options[0].text == DEFAULT_OPTION_TEXT
        assert [o.text for o in options[1:]] == ["2023", "2024"]

    def test_limits_enforced(self):
        many_options = [ClarificationOption(id=str(i), text=f"opt {i}") for i in range(8)]
        reply = ClarificationRequest(
            requires_clarification=True,
            questions=[_question(f"q{i}", *many_options) for i in range(6)],
        )
        gateway = FakeGateway({ClarificationRequest: [reply]})
        request = _run(generate_clarification(gateway, CancellationToken(), "summarize", []))
        assert len(request.questions) == 4
        assert all(len(q.options) == 5 for q in request.questions)

    def test_custom_option_survives_trimming(self):
        years = [ClarificationOption(id=f"y{i}", text=f"Year {i}") for i in range(4)]
        other = ClarificationOption(id="other", text="Other", is_custom_input=True)
        reply = ClarificationRequest(
            requires_clarification=True, questions=[_question("year", *years, other)],
        )
        gateway = FakeGateway({ClarificationRequest: [reply]})
        request = _run(generate_clarification(gateway, CancellationToken(), "compare", []))
        options = request.questions[0].options
        assert [o.text for o in options] == [
            DEFAULT_OPTION_TEXT, "Year 0", "Year 1", "Year 2", "Other",
        ]
        assert options[-1].is_custom_input

    def test_no_questions_means_no_clarification(self):
        gateway = FakeGateway({ClarificationRequest: ['{"requires_clarification": true}']})
        request = _run(generate_clarification(gateway, CancellationToken(), "q", []))
        assert request.requires_clarification is False

    def test_failure_means_no_clarification(self):
        gateway = FakeGateway({ClarificationRequest: ["not json"]})
        request = _run(generate_clarification(gateway, CancellationToken(), "q", []))
        assert request.requires_clarification is False

    def test_render_answers(self):
        request = ClarificationRequest(
            requires_clarification=True,
            questions=[
                _question(
                    "year",
                    ClarificationOption(id="y1", text="2023"),
                    ClarificationOption(id="y2", text="2024"),
                ),
                _question(
                    "focus",
                    ClarificationOption(id="f1", text="Revenue"),
                    ClarificationOption(id="f2", text="Other", is_custom_input=True),
                ),
                _question("skip", ClarificationOption(id="s1", text="Ignored")),
            ],
        )
        rendered = render_clarified_query(
            "What changed?",
            request,
            {"year": ["y1", "y2"], "focus": ["f2"]},
            {"focus": "Headcount"},
        )
        assert rendered == (
            "What changed?\n\n[User Clarification Context]:\n"
            'Question: "Question year?"\nAnswer: 2023, 2024\n\n'
            'Question: "Question focus?"\nAnswer: Headcount'
        )

    def test_custom_input_placeholder(self):
        request = ClarificationRequest(
            requires_clarification=True,
            questions=[_question(
                "q", ClarificationOption(id="o", text="Other", is_custom_input=True),
            )],
        )
        rendered = render_clarified_query("Q", request, {"q": ["o"]})
        assert rendered.endswith(f"Answer: {CUSTOM_INPUT_PLACEHOLDER}")

    def test_no_answers_keeps_query(self):
        request = ClarificationRequest(
            requires_clarification=True,
            questions=[_question("q", ClarificationOption(id="o", text="x"))],
        )
        assert render_clarified_query("Q", request, {}) == "Q"


# ---------------------------------------------------------------------------
# Test: Planner & Advisor Gate
# ---------------------------------------------------------------------------


class TestPlanner:
    """Tests for plan creation, history rendering and refinement."""

    def test_render_history_window(self):
        turns = [ChatTurn(role="user", text=f"m{i}") for i in range(12)]
        lines = render_history(turns, window=10).splitlines()
        assert len(lines) == 10
        assert lines[0] == "USER: m2"

    def test_render_history_placeholders(self):
        text = render_history([ChatTurn(role="model", text="", image_count=2)])
        assert text == "MODEL: (Thinking) [Attached 2 images]"

    def test_unusable_plan_falls_back(self):
        gateway = FakeGateway({Plan: ["I refuse"]})
        plan = _run(create_plan(gateway, CancellationToken(), "q", ["a.pdf", "b.pdf"]))
        assert plan.plan_type is PlanType.SIMPLE_FACT
        assert [(t.expert, t.question) for t in plan.all_tasks()] == [
            ("a.pdf", "q"), ("b.pdf", "q"),
        ]

    def test_prior_failure_in_prompt(self):
        gateway = FakeGateway({Plan: [_plan(("a.pdf", "q"))]})
        _run(create_plan(
            gateway, CancellationToken(), "q", ["a.pdf"],
            prior_failure="Used the wrong fiscal year",
        ))
        assert "REASON: Used the wrong fiscal year" in gateway.calls[0].prompt

    def test_needs_refinement(self):
        assert needs_refinement(_plan(("a.pdf", "q")))
        assert not needs_refinement(_plan(("a.pdf", "q"), plan_type=PlanType.SIMPLE_FACT))
        assert not needs_refinement(Plan(steps=[]))

    def test_high_scores_bypass_refinement(self):
        gateway = FakeGateway()
        plan = _plan(("a.pdf", "q"))
        refinement = _run(refine_plan(gateway, CancellationToken(), "q", plan, ["a.pdf"]))
        assert refinement.plan is plan
        assert refinement.revised is False
        assert len(gateway.calls) == 1

    def test_risks_trigger_one_refinement(self):
        revised = _plan(("a.pdf", "q"), ("a.pdf", "check units"))
        gateway = FakeGateway({
            AdvisorReview: [AdvisorReview(
                scorecard=Scorecard(robustness=2), risks=["No unit check"],
            )],
            Plan: [revised],
        })
        refinement = _run(refine_plan(
            gateway, CancellationToken(), "q", _plan(("a.pdf", "q")), ["a.pdf"],
        ))
        assert refinement.revised is True
        assert len(refinement.plan.all_tasks()) == 2
        assert "No unit check" in gateway.calls_for(Plan)[0].prompt

    def test_failed_refinement_keeps_plan(self):
        gateway = FakeGateway({
            AdvisorReview: [AdvisorReview(scorecard=Scorecard(simplicity=1))],
            Plan: ["garbage"],
        })
        plan = _plan(("a.pdf", "q"))
        refinement = _run(refine_plan(gateway, CancellationToken(), "q", plan, ["a.pdf"]))
        assert refinement.plan is plan
        assert refinement.revised is False

    def test_scorecard_clamped(self):
        assert Scorecard(goal_alignment=9, feasibility=0).min_score() == 1
        assert Scorecard(goal_alignment=9).goal_alignment == 5

    def test_scorecard_rejects_non_numeric(self):
        with pytest.raises(ValidationError):
            Scorecard(robustness=None)
        with pytest.raises(ValidationError):
            Scorecard(feasibility=float("inf"))

    def test_null_score_uses_default_review(self):
        gateway = FakeGateway({AdvisorReview: [
            '{"scorecard": {"robustness": null}, "risks": ["stale data"]}',
        ]})
        plan = _plan(("a.pdf", "q"))
        refinement = _run(refine_plan(gateway, CancellationToken(), "q", plan, ["a.pdf"]))
        assert refinement.review.scorecard.min_score() == 5
        assert refinement.review.risks == []
        assert refinement.plan is plan
        assert gateway.calls_for(Plan) == []


# ---------------------------------------------------------------------------
# Test: Research Loop
# ---------------------------------------------------------------------------


class TestResearchLoop:
    """Tests for execute → evaluate → pivot and its bounds."""

    def _registry(self) -> ExpertRegistry:
        registry = ExpertRegistry()
        add_expert(registry, "a.pdf", echo("a"))
        return registry

    def test_simple_fact_runs_once_without_evaluation(self):
        gateway = FakeGateway()
        outcome = _run(run_research(
            gateway, self._registry(), CancellationToken(), "q",
            _plan(("a.pdf", "q1"), plan_type=PlanType.SIMPLE_FACT),
        ))
        assert outcome.rounds == 1
        assert [r.answer for r in outcome.results] == ["a: q1"]
        assert gateway.calls == []

    def test_pivots_are_bounded(self):
        pivots = [
            ResearchEvaluation(
                status=ResearchStatus.CONTINUE_RESEARCH,
                new_plan=_plan(("a.pdf", f"pivot {i}")),
            )
            for i in range(10)
        ]
        gateway = FakeGateway({ResearchEvaluation: pivots})
        with patch.object(settings, "max_research_pivots", 4):
            outcome = _run(run_research(
                gateway, self._registry(), CancellationToken(), "q", _plan(("a.pdf", "q0")),
            ))
        assert outcome.rounds == 5
        assert len(gateway.calls_for(ResearchEvaluation)) == 4
        assert [r.question for r in outcome.results] == [
            "q0", "pivot 0", "pivot 1", "pivot 2", "pivot 3",
        ]
        assert outcome.plan.all_tasks()[0].question == "pivot 3"

    def test_continue_without_plan_stops(self):
        gateway = FakeGateway({ResearchEvaluation: [
            ResearchEvaluation(status=ResearchStatus.CONTINUE_RESEARCH),
        ]})
        outcome = _run(run_research(
            gateway, self._registry(), CancellationToken(), "q", _plan(("a.pdf", "q0")),
        ))
        assert outcome.rounds == 1

    def test_evaluator_sees_prior_results(self):
        gateway = FakeGateway()
        prior = [ExpertResult(expert="b.pdf", question="old", answer="earlier finding")]
        outcome = _run(run_research(
            gateway, self._registry(), CancellationToken(), "q",
            _plan(("a.pdf", "q0")), prior_results=prior,
        ))
        prompt = gateway.calls_for(ResearchEvaluation)[0].prompt
        assert "earlier finding" in prompt
        assert "a: q0" in prompt
        assert [r.expert for r in outcome.results] == ["a.pdf"]

    def test_trace_steps(self):
        outcome = _run(run_research(
            FakeGateway(), self._registry(), CancellationToken(), "q", _plan(("a.pdf", "q0")),
        ))
        assert [s.kind for s in outcome.steps] == [
            StepKind.EXECUTION_DISPATCH,
            StepKind.EXECUTION_RESULTS,
            StepKind.RESEARCH_EVALUATION,
        ]
        assert outcome.steps[2].content["gap_analysis"] == "Auto-proceed."


# ---------------------------------------------------------------------------
# Test: Synthesizer
# ---------------------------------------------------------------------------


class TestSynthesizer:
    """Tests for the cited final report."""

    def test_format_normalizes_brackets(self):
        text = format_expert_reports([
            ExpertResult(expert="a.pdf", question="q", answer='Rev 5 [[Page: 1 | Quote: "rev 5"]]'),
        ])
        assert text.startswith('SOURCE: "a.pdf"\nCONTENT: <claim source="a.pdf"')

    def test_report_split_and_attributed(self):
        results = [ExpertResult(expert="a.pdf", question="q", answer="rev 5 in FY24")]
        gateway = FakeGateway({None: [
            "<thinking>Only one source.</thinking>\n"
            'Revenue was 5 [[Page: 1 | Quote: "rev 5"]]',
        ]})
        report = _run(synthesize_report(
            gateway, CancellationToken(), "q", _plan(("a.pdf", "q")), "", results,
        ))
        assert report.thinking == "Only one source."
        assert report.content.startswith('<claim source="a.pdf" page="1" quote="rev 5">')
        assert gateway.calls[0].config.thinking_budget == (
            settings.synthesis_thinking_budget_deep or None
        )

    def test_empty_reply(self):
        report = _run(synthesize_report(
            FakeGateway(), CancellationToken(), "q", Plan(), "", [],
        ))
        assert report.content == SYNTHESIS_FAILED


# ---------------------------------------------------------------------------
# Test: Review Board
# ---------------------------------------------------------------------------


class TestDeliberate:
    """Tests for audit → arbitrate → bounded debate."""

    def _deliberate(self, gateway):
        return _run(deliberate(
            gateway, CancellationToken(), "q", "report", ["a.pdf"], [],
        ))

    def test_errors_auto_approve(self):
        cycle = self._deliberate(FakeGateway())
        assert cycle.arbitration.verdict is Verdict.APPROVED
        assert cycle.arbitration.reasoning == "Auto-approved on error"
        assert cycle.opinion.opinion == "Auto-approved on error"

    def test_debate_then_verdict(self):
        gateway = FakeGateway({
            ReviewOpinion: [
                ReviewOpinion(has_hallucinations=True, opinion="Figure X unsourced"),
                ReviewOpinion(opinion="Fair point"),
            ],
            Arbitration: [
                Arbitration(verdict=Verdict.DEBATE, reasoning="X is on page 4"),
                Arbitration(verdict=Verdict.APPROVED, reasoning="Agreed"),
            ],
        })
        cycle = self._deliberate(gateway)
        assert cycle.debate_rounds == 1
        assert cycle.arbitration.verdict is Verdict.APPROVED
        assert cycle.opinion.opinion == "Fair point"
        assert "Round 1: X is on page 4" in gateway.calls_for(ReviewOpinion)[1].prompt

    def test_debate_limit_forces_approval(self):
        gateway = FakeGateway({Arbitration: [
            Arbitration(verdict=Verdict.DEBATE, reasoning=f"no {i}") for i in range(5)
        ]})
        with patch.object(settings, "max_debate_rounds", 2):
            cycle = self._deliberate(gateway)
        assert cycle.debate_rounds == 2
        assert cycle.arbitration.verdict is Verdict.APPROVED
        assert cycle.arbitration.reasoning == FORCED_APPROVAL_REASONING
        assert len(gateway.calls_for(ReviewOpinion)) == 3
        assert len(gateway.calls_for(Arbitration)) == 3

    def test_remediation_verdict_returned(self):
        remediation = _plan(("a.pdf", "find Q4"))
        gateway = FakeGateway({Arbitration: [
            Arbitration(verdict=Verdict.INCREMENTAL, remediation_plan=remediation),
        ]})
        cycle = self._deliberate(gateway)
        assert cycle.arbitration.verdict is Verdict.INCREMENTAL
        assert cycle.arbitration.remediation_plan.all_tasks()[0].question == "find Q4"
        assert [s.kind for s in cycle.steps] == [StepKind.OUTPUT_REVIEW, StepKind.ARBITRATION]
