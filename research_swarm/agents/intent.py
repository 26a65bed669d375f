# =============================================================================
# Intent Classifier & Quick Answer — Short-Circuit Before the Full Pipeline
# =============================================================================
#
# Not every message deserves planning, review and arbitration. The
# classifier makes one fast-model call and picks a path:
#
#   QUICK_ANSWER  → greetings, general questions, single-step lookups
#                   ("Who is the CEO?", "What is the report date?")
#   DEEP_RESEARCH → multi-part comparisons, thematic synthesis, tables or
#                   long formats, vague requests that need clarification
#
# On empty or unparseable output the classifier picks DEEP_RESEARCH:
# the thorough path is the safe one.
#
# QUICK PATH (answer_quickly):
#   1. Greeting ("hi", "hello", ... under 5 words) → canned reply, no calls
#   2. No active experts → canned "please upload a file" reply
#   3. Otherwise ask every active expert the raw query in parallel and
#      synthesize one concise, cited answer with the fast model
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Sequence

from research_swarm.agents.experts import ExpertRegistry
from research_swarm.agents.synthesizer import CITATION_RULES
from research_swarm.config import settings
from research_swarm.models.schemas import IntentClassification, IntentType
from research_swarm.services.cancellation import Aborted, CancellationToken
from research_swarm.services.citations import normalize_bracket_citations
from research_swarm.services.llm import Attachment, GatewayConfig, LLMGateway
from research_swarm.services.retry import with_retry
from research_swarm.services.structured import call_structured

logger = logging.getLogger(__name__)

GREETING_REPLY = (
    "Hello! I am ready to analyze your documents. What would you like to know?"
)
NO_EXPERTS_REPLY = (
    "I can help you analyze documents, but none are currently active. "
    "Please upload a file."
)
_NO_RESPONSE = "No response generated."
_EXPERT_ERROR = "Error retrieving."

_GREETING_PATTERN = re.compile(r"^(hi|hello|hey|greetings)", re.IGNORECASE)


def is_greeting(text: str) -> bool:
    return bool(_GREETING_PATTERN.match(text.strip())) and len(text.split()) < 5


async def classify_intent(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    active_experts: Sequence[str],
    images: Sequence[Attachment] = (),
) -> IntentClassification:
    """Decide between the quick path and the full research pipeline."""
    prompt = (
        "You are an Intent Classifier.\n"
        f'User Query: "{query}"\n'
        f"Available Documents: {json.dumps(list(active_experts))}\n\n"
        "Decide the processing path:\n\n"
        "1. QUICK_ANSWER:\n"
        '   - Simple greetings ("Hi", "Hello").\n'
        "   - General questions NOT requiring specific document data.\n"
        "   - Simple document lookups (e.g. \"Who is the CEO?\", \"What is "
        "the date of the report?\").\n"
        "   - Questions a single-step search can answer.\n\n"
        "2. DEEP_RESEARCH:\n"
        "   - Complex multi-part questions (e.g. comparing revenue growth "
        "between two companies).\n"
        "   - Thematic analysis or synthesis (e.g. key risks and how they "
        "are mitigated).\n"
        "   - Requests for tables, long summaries or specific formats.\n"
        "   - Vague questions that might need clarification."
    )

    intent = await call_structured(
        gateway,
        token,
        model=settings.fast_model,
        contents=[prompt, *images],
        schema=IntentClassification,
        default=IntentClassification(type=IntentType.DEEP_RESEARCH, reasoning="Default"),
        temperature=0.1,
        label="Intent classifier",
    )
    logger.info("Intent: %s (%s)", intent.type.value, intent.reasoning[:80])
    return intent


async def answer_quickly(
    gateway: LLMGateway,
    registry: ExpertRegistry,
    token: CancellationToken,
    query: str,
    active_experts: Sequence[str],
    images: Sequence[Attachment] = (),
) -> str:
    """
    Answer without planning: fan the query out, then one short synthesis.

    Expert failures become "Error retrieving." context lines rather than
    failing the answer; only cancellation propagates.
    """
    token.raise_if_cancelled()

    if is_greeting(query):
        return GREETING_REPLY

    targets = [name for name in active_experts if name in registry]
    if not targets:
        return NO_EXPERTS_REPLY

    logger.info("Quick Retrieval: scanning %d experts...", len(targets))

    async def _consult(name: str) -> tuple[str, str]:
        expert = registry.get(name)
        if expert is None:
            return name, _EXPERT_ERROR
        try:
            text = await expert.ask([query, *images], token)
        except Aborted:
            raise
        except Exception as e:
            logger.warning("Quick retrieval from '%s' failed: %s", name, e)
            return name, _EXPERT_ERROR
        return name, normalize_bracket_citations(text, name)

    answers = await asyncio.gather(*(_consult(name) for name in targets))

    context = "\n\n".join(f"[{name}]: {text}" for name, text in answers)
    prompt = (
        "You are a helpful assistant.\n"
        f'User Query: "{query}"\n\n'
        f"Context from Documents:\n{context}\n\n"
        "Task: Answer the user's question concisely based on the context. "
        'If the context says "Not found", simply state that.\n\n'
        f"{CITATION_RULES}\n\n"
        "Ensure every claim is properly closed with </claim>."
    )

    logger.info("Synthesizing quick answer...")
    response = await with_retry(
        lambda: gateway.generate(settings.fast_model, [prompt, *images], GatewayConfig()),
        token,
        label="Quick answer",
    )
    return response.text or _NO_RESPONSE
