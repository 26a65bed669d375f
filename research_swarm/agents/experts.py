# =============================================================================
# Expert Registry — Named, Independently-Stateful Expert Sessions
# =============================================================================
#
# An "expert" is a long-lived chat session scoped to one source:
#
#   <file name>   — one per uploaded document, briefed once with the file
#   Web Expert    — broad web research (server-side web search tool)
#   URL Expert    — deep dives into user-supplied URLs
#
# Sessions keep their own turn history for the lifetime of the process,
# so a document is uploaded to the model once and every later question
# reuses that context.
#
# DESIGN DECISION: One registry object, injected everywhere.
# The FastAPI lifespan creates a single ExpertRegistry and the driver
# threads it through the graph state. Callers look experts up by name
# on every use and never hold on to an ExpertSession between calls.
#
# DESIGN DECISION: One lock per session.
# A session's history is not safe under interleaved sends, so
# ExpertSession.ask() serializes messages to the same expert. Fan-out
# parallelism happens across distinct experts only.
#
# DESIGN DECISION: The URL Expert's URL list is fixed at creation.
# Later URLs reach it through the per-query "[Target URLs: ...]" prefix
# (see orchestrator.py), not by re-briefing the session.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from research_swarm.config import settings
from research_swarm.services.cancellation import Aborted, CancellationToken
from research_swarm.services.llm import (
    Attachment,
    ChatSession,
    Content,
    GatewayConfig,
    LLMGateway,
)
from research_swarm.services.retry import with_retry

logger = logging.getLogger(__name__)

WEB_EXPERT = "Web Expert"
URL_EXPERT = "URL Expert"
STANDING_EXPERTS = (WEB_EXPERT, URL_EXPERT)

READY_PROMPT = "Confirm you have reviewed the document and are ready."


# ---------------------------------------------------------------------------
# Expert System Prompts
# ---------------------------------------------------------------------------

_WEB_EXPERT_SYSTEM = (
    "You are a Deep Web Research Agent. Search the web for comprehensive "
    "and accurate information to answer the user's queries.\n\n"
    "Rules:\n"
    "- If you cannot find the answer, state \"Information not found based "
    "on current available sources.\" Never guess.\n"
    "- Every claim, fact or number must carry the exact source URL, using "
    "this tag format:\n"
    '  <claim source="URL" quote="exact text match">fact</claim>\n'
    "- Cite the deepest URL where the information appears, never just the "
    "root domain.\n"
    "- Only cite URLs that exist and point directly at the information."
)

_URL_EXPERT_SYSTEM = (
    "You are a URL Expert. You are only activated when the user provides "
    "specific URLs.\n"
    "{url_context}"
    "Deep dive into those URLs to extract key information, metrics and "
    "insights. Do not search the broader web unless asked to verify a "
    "URL's content.\n\n"
    "Rules:\n"
    "- Only report facts found on the provided URLs or through "
    "verification search.\n"
    "- Every claim, fact or number must carry the source URL, using this "
    "tag format:\n"
    '  <claim source="URL" quote="exact text match">fact</claim>'
)

_DOCUMENT_EXPERT_SYSTEM = (
    'You are a specialized Document Expert dedicated ONLY to the file: '
    '"{name}".\n'
    "Answer questions strictly based on the provided document.\n\n"
    "Citation rules:\n"
    "- Every claim, number or fact must have a citation.\n"
    "- When citing numbers, include the fiscal year or period if the "
    "document gives one.\n"
    "- Use this exact format: [[Page: X | Quote: \"exact text match\"]]\n"
    "  Example: Revenue was $611.3B in FY2024 "
    "[[Page: 45 | Quote: \"Net sales... $611.3 billion\"]]\n\n"
    'If the information is not in the document, state "Not found in '
    'document".'
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ExpertSession:
    """A named chat session plus the lock that serializes its turns."""

    name: str
    session: ChatSession
    ready: bool = True
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def ask(
        self,
        message: str | Sequence[Content],
        token: CancellationToken,
        base_delay: float | None = None,
    ) -> str:
        """
        Send one turn through the Retry Envelope and return the reply text.

        Raises:
            Aborted: The run was cancelled.
            RetryExhausted: The provider stayed rate-limited.
        """
        async with self._lock:
            response = await with_retry(
                lambda: self.session.send(message),
                token,
                base_delay=base_delay,
                label=f"Expert '{self.name}'",
            )
        return response.text


@dataclass
class BriefingReport:
    """Outcome of one swarm initialization, including per-file alerts."""

    experts: list[str] = field(default_factory=list)
    briefed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ExpertRegistry:
    """
    The name → ExpertSession table for the whole process.

    add/remove for a name must not race a lookup of the same name; the
    single-active-run rule in RunController keeps pipeline lookups and
    API-driven changes from overlapping in practice.
    """

    def __init__(self) -> None:
        self._experts: dict[str, ExpertSession] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._experts

    def __len__(self) -> int:
        return len(self._experts)

    def list_experts(self) -> list[str]:
        """Registered names in registration order (no duplicates)."""
        return list(self._experts)

    def get(self, name: str) -> ExpertSession | None:
        return self._experts.get(name)

    def remove(self, name: str) -> bool:
        """Drop an expert. Returns False when the name was not registered."""
        removed = self._experts.pop(name, None)
        if removed is not None:
            logger.info("Removed expert '%s'", name)
        return removed is not None

    def resolve_active(self, selection: Iterable[str] | None = None) -> list[str]:
        """
        Narrow the registry to the experts a request may use.

        Unregistered names are ignored; an empty or missing selection
        means every registered expert.
        """
        wanted = [name for name in (selection or []) if name in self._experts]
        if not wanted:
            return self.list_experts()
        return list(dict.fromkeys(wanted))

    # --- Swarm initialization ---

    def ensure_standing_experts(
        self,
        gateway: LLMGateway,
        urls: Sequence[str] = (),
    ) -> list[str]:
        """
        Create the Web Expert and URL Expert if absent.

        `urls` only matters when the URL Expert is created here; an
        existing URL Expert keeps the list it was created with.

        Returns:
            Names of the experts created by this call.
        """
        created: list[str] = []
        tools = _web_tools(gateway)

        if WEB_EXPERT not in self._experts:
            session = gateway.create_session(
                settings.web_expert_model,
                GatewayConfig(
                    system_instruction=_WEB_EXPERT_SYSTEM,
                    temperature=0.1,
                    tools=tools,
                ),
            )
            self._experts[WEB_EXPERT] = ExpertSession(WEB_EXPERT, session)
            created.append(WEB_EXPERT)

        if URL_EXPERT not in self._experts:
            url_context = (
                "The following URLs have been provided for your analysis:\n"
                + "\n".join(urls) + "\n"
                if urls else ""
            )
            session = gateway.create_session(
                settings.web_expert_model,
                GatewayConfig(
                    system_instruction=_URL_EXPERT_SYSTEM.format(url_context=url_context),
                    temperature=0.1,
                    tools=tools,
                ),
            )
            self._experts[URL_EXPERT] = ExpertSession(URL_EXPERT, session)
            created.append(URL_EXPERT)
        elif urls:
            logger.info(
                "URL Expert already exists; %d new URL(s) will be passed "
                "per query instead of re-briefing", len(urls),
            )

        if created:
            logger.info("Created standing experts: %s", ", ".join(created))
        return created

    async def brief_document_expert(
        self,
        gateway: LLMGateway,
        document: Attachment,
        token: CancellationToken,
    ) -> str | None:
        """
        Create and brief the expert for one document.

        The session is registered only after the model confirmed it has
        read the file. A name that is already registered is left alone.

        Returns:
            None on success (or no-op), otherwise a user-facing warning.

        Raises:
            Aborted: The run was cancelled.
        """
        name = document.name
        if name in self._experts:
            logger.info("Expert '%s' already briefed, skipping", name)
            return None

        token.raise_if_cancelled()
        session = gateway.create_session(
            settings.expert_model,
            GatewayConfig(
                system_instruction=_DOCUMENT_EXPERT_SYSTEM.format(name=name),
                temperature=0.2,
                thinking_budget=settings.expert_thinking_budget or None,
            ),
        )

        try:
            await with_retry(
                lambda: session.send([document, READY_PROMPT]),
                token,
                base_delay=settings.briefing_retry_base_delay_seconds,
                label=f"Briefing '{name}'",
            )
        except Aborted:
            raise
        except Exception as e:
            logger.warning("Failed to brief expert for '%s': %s", name, e)
            return (
                f"Failed to load {name}. Please check your API key and "
                f"connection. Error: {e}"
            )

        self._experts[name] = ExpertSession(name, session)
        logger.info("Briefed Document Expert for '%s'", name)
        return None

    async def initialize_swarm(
        self,
        gateway: LLMGateway,
        documents: Sequence[Attachment],
        token: CancellationToken,
        urls: Sequence[str] = (),
    ) -> BriefingReport:
        """
        Bring the swarm up: standing experts first, then one briefing per
        document, in order. A failed briefing is reported and skipped.
        """
        report = BriefingReport()
        self.ensure_standing_experts(gateway, urls)

        for index, document in enumerate(documents, 1):
            logger.info(
                "Briefing Document Expert for %s (%d/%d)...",
                document.name, index, len(documents),
            )
            already_known = document.name in self._experts
            warning = await self.brief_document_expert(gateway, document, token)
            if warning:
                report.warnings.append(warning)
                report.skipped.append(document.name)
            elif not already_known:
                report.briefed.append(document.name)

        report.experts = self.list_experts()
        logger.info(
            "Research team ready: %d experts (%d briefed, %d failed)",
            len(report.experts), len(report.briefed), len(report.skipped),
        )
        return report


def _web_tools(gateway: Any) -> list[dict[str, Any]] | None:
    if not settings.web_search_enabled:
        return None
    if not getattr(gateway, "supports_web_search", False):
        return None
    return [{
        "type": "web_search_20250305",
        "name": "web_search",
        "max_uses": settings.web_search_max_uses,
    }]
