# =============================================================================
# Synthesizer — Cited Final Report from All Accumulated Expert Answers
# =============================================================================
#
# The Lead Researcher writes one report that answers the ORIGINAL query
# from every expert answer gathered so far (all research rounds plus any
# incremental remediation), not just the latest batch.
#
# OUTPUT CONTRACT:
#   <thinking>synthesis logic</thinking>
#   Report body where every factual sentence is wrapped in
#   <claim source=".." page=".." quote=".." logic="..">claim</claim>
#
# CITATION HANDLING:
#   1. Before prompting, each document expert's [[Page | Quote]]
#      citations become claim tags with source = that expert's name,
#      so the model copies real sources instead of inventing labels.
#   2. URLs already cited by the Web/URL experts are kept verbatim.
#   3. Bracket citations the model still echoes back are attributed to
#      the expert whose answer contains the quoted text.
#
# DESIGN DECISION: Free-text call, not structured output.
# The report is markdown with inline tags; forcing it through a JSON
# schema would cost escaping fidelity for no validation benefit.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from research_swarm.config import settings
from research_swarm.models.schemas import ExpertResult, Plan, Report
from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.citations import (
    attribute_bracket_citations,
    normalize_bracket_citations,
    split_thinking,
)
from research_swarm.services.llm import GatewayConfig, LLMGateway
from research_swarm.services.retry import with_retry

logger = logging.getLogger(__name__)

SYNTHESIS_FAILED = "Synthesis failed."

# Shared with the quick-answer path in intent.py
CITATION_RULES = (
    "CITATION RULES:\n"
    "- EVERY fact or claim MUST be wrapped in a <claim> tag. Wrap the "
    "actual text; never append a tag after it or self-close it.\n"
    '- Attributes: source="filename or URL", page="X", '
    'quote="exact substring".\n'
    "- If an expert report already cites a specific URL, use THAT EXACT "
    "URL as the source. Never use an agent name such as \"Web Expert\" "
    "when a real URL is available, and never truncate or simplify URLs.\n"
    "- Keep the source of an existing <claim> tag unchanged.\n"
    '- If a conclusion is derived rather than quoted, add logic="reasoning '
    'used".\n\n'
    "Example:\n"
    '<claim source="Doc.pdf" page="10" quote="Project starts June" '
    'logic="Inferred from Q2 timeline">Start Date: June</claim>\n'
    '<claim source="https://example.com/news/launch" quote="launched July">'
    "Launched in July</claim>"
)


def format_expert_reports(results: Sequence[ExpertResult]) -> str:
    """Render results for a prompt, with bracket citations normalized."""
    return "\n\n".join(
        f'SOURCE: "{r.expert}"\n'
        f"CONTENT: {normalize_bracket_citations(r.answer, r.expert)}"
        for r in results
    )


async def synthesize_report(
    gateway: LLMGateway,
    token: CancellationToken,
    query: str,
    plan: Plan,
    history_text: str,
    results: Sequence[ExpertResult],
) -> Report:
    """
    Write the final cited report.

    Args:
        gateway: LLM gateway.
        token: Cancellation token of the current run.
        query: The original user query (with clarification context).
        plan: The plan currently in force (mode + strategy).
        history_text: Rendered conversation history.
        results: The full accumulated result set.

    Returns:
        Report with the reasoning segment split from the cited body.
    """
    is_deep = plan.is_deep
    budget = (
        settings.synthesis_thinking_budget_deep if is_deep
        else settings.synthesis_thinking_budget_simple
    )

    prompt = (
        "You are the Research Lead.\n"
        f"MODE: {'DEEP ANALYSIS' if is_deep else 'PRECISE ANSWER'}\n"
        f'ORIGINAL USER QUERY: "{query}"\n'
        f'STRATEGY: "{plan.strategy}"\n'
        f"HISTORY: {history_text}\n\n"
        "ALL EXPERT REPORTS (accumulated from all rounds):\n"
        f"{format_expert_reports(results)}\n\n"
        "TASK: Synthesize a comprehensive final report that fully answers "
        "the ORIGINAL USER QUERY using ALL the gathered expert reports. Do "
        "not just answer the latest follow-up task; give the complete "
        "answer.\n\n"
        "PRIORITIZATION RULE: The user's files are the primary source of "
        "truth. Use web resources (URLs) only to fill gaps the files do "
        "not cover.\n\n"
        "OUTPUT FORMAT:\n"
        "1. First line: <thinking>Explain synthesis logic here...</thinking>\n"
        "2. Then the detailed response.\n"
        "3. In Markdown tables, wrap the VALUES inside cells in <claim> "
        "tags.\n\n"
        f"{CITATION_RULES}"
    )

    logger.info(
        "Synthesizing final report: mode=%s, %d expert results",
        "deep" if is_deep else "precise", len(results),
    )

    response = await with_retry(
        lambda: gateway.generate(
            settings.lead_model,
            prompt,
            GatewayConfig(thinking_budget=budget or None),
        ),
        token,
        base_delay=settings.synthesis_retry_base_delay_seconds,
        label="Synthesizer",
    )

    raw = response.text or SYNTHESIS_FAILED
    if not response.text:
        logger.warning("Synthesizer returned no text")

    thinking, content = split_thinking(raw)
    content = attribute_bracket_citations(content, results)
    return Report(thinking=thinking, content=content)
