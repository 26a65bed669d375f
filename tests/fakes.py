# =============================================================================
# Test Fakes — Scripted LLM Gateway and Chat Sessions
# =============================================================================
#
# FakeGateway replays canned replies per structured-output schema:
#
#   gateway = FakeGateway({
#       IntentClassification: [IntentClassification(type="QUICK_ANSWER")],
#       None: ["free-text reply"],           # synthesis / quick answer
#   })
#
# Replies may be strings, pydantic models (serialised to JSON), or
# exceptions (raised). An exhausted queue returns empty text, which every
# structured call site turns into its default.
#
# Expert sessions are FakeSession objects with a fixed or computed reply.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from research_swarm.agents.experts import ExpertRegistry, ExpertSession
from research_swarm.services.llm import GatewayConfig, GatewayResponse


@dataclass
class GenerateCall:
    model: str
    contents: Any
    config: GatewayConfig | None

    @property
    def prompt(self) -> str:
        if isinstance(self.contents, str):
            return self.contents
        return "\n".join(item for item in self.contents if isinstance(item, str))


class FakeSession:
    """Chat session whose reply is fixed, computed, or an exception."""

    def __init__(self, reply: Any = "Ready.", delay: float = 0.0) -> None:
        self.reply = reply
        self.delay = delay
        self.history: list[dict[str, Any]] = []
        self.sent: list[Any] = []
        self.model = ""
        self.config: GatewayConfig | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, message: Any) -> GatewayResponse:
        self.sent.append(message)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            reply = self.reply(message) if callable(self.reply) else self.reply
        finally:
            self.in_flight -= 1
        if isinstance(reply, BaseException):
            raise reply
        self.history.append({"role": "user", "content": message})
        self.history.append({"role": "assistant", "content": reply})
        return GatewayResponse(text=reply, model=self.model or "fake")


class FakeGateway:
    """Scripted LLMGateway that records every call."""

    supports_web_search = False

    def __init__(
        self,
        script: dict[type[BaseModel] | None, list[Any]] | None = None,
        session_reply: Any = "Ready.",
    ) -> None:
        self.script = {schema: list(replies) for schema, replies in (script or {}).items()}
        self.session_reply = session_reply
        self.calls: list[GenerateCall] = []
        self.sessions: list[FakeSession] = []

    def queue(self, schema: type[BaseModel] | None, *replies: Any) -> None:
        self.script.setdefault(schema, []).extend(replies)

    def calls_for(self, schema: type[BaseModel] | None) -> list[GenerateCall]:
        return [
            call for call in self.calls
            if (call.config.response_schema if call.config else None) is schema
        ]

    async def generate(
        self,
        model: str,
        contents: Any,
        config: GatewayConfig | None = None,
    ) -> GatewayResponse:
        schema = config.response_schema if config else None
        self.calls.append(GenerateCall(model, contents, config))
        replies = self.script.get(schema) or []
        if not replies:
            return GatewayResponse(text="", model=model)
        reply = replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, BaseModel):
            reply = reply.model_dump_json()
        return GatewayResponse(text=reply, model=model)

    def create_session(self, model: str, config: GatewayConfig | None = None) -> FakeSession:
        session = FakeSession(self.session_reply)
        session.model = model
        session.config = config
        self.sessions.append(session)
        return session


def add_expert(registry: ExpertRegistry, name: str, reply: Any, delay: float = 0.0) -> FakeSession:
    """Register a ready expert backed by a FakeSession."""
    session = FakeSession(reply, delay=delay)
    registry._experts[name] = ExpertSession(name, session)
    return session


def echo(prefix: str):
    """Reply builder: '<prefix>: <question>' for plain-text turns."""
    def _reply(message: Any) -> str:
        text = message if isinstance(message, str) else next(
            (item for item in message if isinstance(item, str)), "",
        )
        return f"{prefix}: {text}"
    return _reply
