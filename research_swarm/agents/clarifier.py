# =============================================================================
# Clarifier — Human-in-the-Loop Disambiguation Before Planning
# =============================================================================
#
# Reached only for DEEP_RESEARCH queries. One fast-model call decides
# whether the query is too vague to plan ("summarize", "compare them")
# and, if so, produces 3-4 questions with 3-5 options each:
#
#   - first option is always a "Let the research team decide" default
#   - the last option may be free text (is_custom_input=True)
#
# Control then returns to the caller. When the user answers, the
# original query is re-run through planning with the answers appended
# (render_clarified_query); unanswered questions are left out.
#
# Empty or unparseable output means "no clarification needed": the
# pipeline proceeds rather than blocking the user.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence

from research_swarm.config import settings
from research_swarm.models.schemas import (
    ClarificationOption,
    ClarificationQuestion,
    ClarificationRequest,
)
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.llm import Attachment, LLMGateway
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)

DEFAULT_OPTION_TEXT = "Let the research team decide"
CUSTOM_INPUT_PLACEHOLDER = "Custom Input"

_DEFAULT_PREFIX = "let the research team"

_MAX_QUESTIONS = 4
_MAX_OPTIONS = 5


async def generate_clarification(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    active_experts: Sequence[str],
    images: Sequence[Attachment] = (),
) -> ClarificationRequest:
    """Ask the model whether `query` needs disambiguation first."""
    prompt = (
        "You are a Research Lead preparing to analyze these sources: "
        f"{json.dumps(list(active_experts))}.\n"
        f'User Query: "{query}"\n\n'
        "TASK: Decide whether you need to clarify the user's intent to "
        "give a better answer.\n\n"
        '1. If the query is vague (e.g. "summarize", "what\'s important", '
        '"compare them"), write 3 to 4 distinct clarification questions.\n'
        "   - Decide whether each question is single-choice (e.g. \"Which "
        "year?\") or multiple-choice (e.g. \"Which departments?\").\n"
        "   - Each question has 3 to 5 options.\n"
        f'   - The FIRST option of every question must be "{DEFAULT_OPTION_TEXT}" '
        "optionally followed by context (e.g. \"Let the research team pick "
        'the key years").\n'
        "   - Where relevant, add an \"Other\" option as the last choice "
        "with is_custom_input=true.\n"
        "2. If the query is already specific (e.g. \"What was Company X's "
        "revenue in 2023?\"), set requires_clarification to false."
    )

    request = await call_structured(
        gateway,
        token,
        model=settings.fast_model,
        contents=[prompt, *images],
        schema=ClarificationRequest,
        default=ClarificationRequest(requires_clarification=False),
        temperature=0.3,
        label="Clarifier",
    )
    request = _normalize(request)
    logger.info(
        "Clarification %s (%d questions)",
        "required" if request.requires_clarification else "not required",
        len(request.questions),
    )
    return request


def _normalize(request: ClarificationRequest) -> ClarificationRequest:
    """
    Enforce the question/option limits and the leading default option.

    Options are trimmed from the middle: the default stays first and a
    trailing custom-input option stays last.
    """
    if not request.requires_clarification or not request.questions:
        return ClarificationRequest(requires_clarification=False)

    questions: list[ClarificationQuestion] = []
    for question in request.questions[:_MAX_QUESTIONS]:
        options = list(question.options)
        if not options or not options[0].text.lower().startswith(_DEFAULT_PREFIX):
            options.insert(0, ClarificationOption(
                id=f"{question.id}-decide", text=DEFAULT_OPTION_TEXT,
            ))
        default, middle = options[0], options[1:]
        custom = [middle.pop()] if middle and middle[-1].is_custom_input else []
        kept = [default, *middle[:_MAX_OPTIONS - 1 - len(custom)], *custom]
        questions.append(question.model_copy(update={"options": kept}))

    return ClarificationRequest(requires_clarification=True, questions=questions)


def render_clarified_query(
    query: str,
    request: ClarificationRequest,
    answers: Mapping[str, Sequence[str]],
    custom_inputs: Mapping[str, str] | None = None,
) -> str:
    """
    Append the user's clarification answers to the original query.

    Args:
        query: The original query text.
        request: The clarification request that was shown to the user.
        answers: Question id → selected option ids.
        custom_inputs: Question id → text typed into a custom option.

    Returns:
        The augmented query, or `query` unchanged when nothing was answered.

    Example:
        What changed?

        [User Clarification Context]:
        Question: "Which year?"
        Answer: 2023, 2024
    """
    custom_inputs = custom_inputs or {}
    blocks: list[str] = []

    for question in request.questions:
        selected = answers.get(question.id) or []
        if not selected:
            continue
        options = {option.id: option for option in question.options}
        rendered = []
        for option_id in selected:
            option = options.get(option_id)
            if option is not None and option.is_custom_input:
                rendered.append(custom_inputs.get(question.id) or CUSTOM_INPUT_PLACEHOLDER)
            else:
                rendered.append(option.text if option is not None else option_id)
        blocks.append(f'Question: "{question.text}"\nAnswer: {", ".join(rendered)}')

    if not blocks:
        return query
    return f"{query}\n\n[User Clarification Context]:\n" + "\n\n".join(blocks)
