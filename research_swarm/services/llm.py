# =============================================================================
# LLM Gateway — Stateless Calls and Stateful Chat Sessions
# =============================================================================
#
# The research pipeline talks to language models through two primitives:
#
#   generate(model, contents, config)  → one-shot request/response,
#       optionally in structured-output mode (config.response_schema)
#   create_session(model, config)      → a ChatSession that owns an
#       append-only turn history; each send() adds exactly one user turn
#       and one model turn
#
# Concrete implementations exist for Anthropic (Claude) and any
# OpenAI-compatible API. Everything above this module only sees the
# LLMGateway / ChatSession protocols, so tests substitute scripted fakes.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Any object with the right `generate()` / `create_session()` methods
# works as a gateway, including the fakes in tests/fakes.py.
#
# DESIGN DECISION: Cancellation is not a gateway concern.
# The Retry Envelope races every call against the run's token and
# cancels the underlying task, so adapters stay plain async SDK calls.
#
# ARCHITECTURE:
#   LLMGateway (Protocol)
#   ├── AnthropicGateway         — Claude via native Anthropic SDK
#   ├── OpenAICompatibleGateway  — Any OpenAI-compatible API
#   └── get_gateway()            — Lazy singleton factory, reads config
#   ChatSession (Protocol)
#   └── GatewaySession           — history-owning session for both
# =============================================================================

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from pydantic import BaseModel

from research_swarm.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Attachment:
    """
    An opaque binary blob sent alongside text: a briefed document or an
    image attached to the user's query.
    """

    data: bytes
    mime_type: str
    name: str = ""

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


Content = Union[str, Attachment]


@dataclass
class GatewayConfig:
    """Per-call options. Unset fields fall back to provider defaults."""

    system_instruction: str | None = None
    response_schema: type[BaseModel] | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    thinking_budget: int | None = None
    tools: list[dict[str, Any]] | None = None


@dataclass
class GatewayResponse:
    """Standardised response from any provider."""

    text: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Protocol Definitions
# ---------------------------------------------------------------------------


class ChatSession(Protocol):
    """A multi-turn conversation whose history the session owns."""

    history: list[dict[str, Any]]

    async def send(self, message: str | Sequence[Content]) -> GatewayResponse:
        """Send one user turn and return the model's reply."""
        ...


class LLMGateway(Protocol):
    """The external LLM boundary consumed by every pipeline stage."""

    async def generate(
        self,
        model: str,
        contents: str | Sequence[Content],
        config: GatewayConfig | None = None,
    ) -> GatewayResponse:
        """
        Stateless completion.

        When `config.response_schema` is set, the returned text is
        expected to be JSON conforming to that pydantic model's schema.
        Schema violations are the caller's problem.
        """
        ...

    def create_session(
        self,
        model: str,
        config: GatewayConfig | None = None,
    ) -> ChatSession:
        """Open a new stateful chat session."""
        ...


# ---------------------------------------------------------------------------
# Shared Helpers
# ---------------------------------------------------------------------------


def _as_contents(contents: str | Sequence[Content]) -> list[Content]:
    if isinstance(contents, (str, Attachment)):
        return [contents]
    return list(contents)


def _system_prompt(config: GatewayConfig) -> str | None:
    """
    Merge the system instruction with the structured-output contract.

    Neither SDK enforces an arbitrary JSON schema on every model, so the
    schema is spelled out in the system prompt.
    """
    parts: list[str] = []
    if config.system_instruction:
        parts.append(config.system_instruction.strip())
    if config.response_schema is not None:
        schema = json.dumps(config.response_schema.model_json_schema())
        parts.append(
            "Respond with ONLY valid JSON (no markdown, no explanation) "
            f"conforming to this JSON schema:\n{schema}"
        )
    return "\n\n".join(parts) or None


def _decode_text(attachment: Attachment) -> str:
    header = f"--- {attachment.name} ---\n" if attachment.name else ""
    return header + attachment.data.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Session — shared by both providers
# ---------------------------------------------------------------------------


class GatewaySession:
    """
    Chat session backed by a gateway's message format.

    The user turn is only committed to history once the model answered,
    so a failed or cancelled send leaves the history untouched.
    """

    def __init__(
        self,
        gateway: AnthropicGateway | OpenAICompatibleGateway,
        model: str,
        config: GatewayConfig,
    ) -> None:
        self._gateway = gateway
        self._model = model
        self._config = config
        self.history: list[dict[str, Any]] = []

    async def send(self, message: str | Sequence[Content]) -> GatewayResponse:
        user_turn = {
            "role": "user",
            "content": self._gateway._content_parts(_as_contents(message)),
        }
        response = await self._gateway._complete(
            self._model, [*self.history, user_turn], self._config,
        )
        self.history.append(user_turn)
        self.history.append({
            "role": "assistant",
            "content": response.text or "(no response)",
        })
        return response


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicGateway:
    """
    Anthropic Claude gateway using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".

    Extended thinking requires temperature to be left unset and
    max_tokens to exceed the thinking budget; both are adjusted here.
    """

    def __init__(self, api_key: str | None = None) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._max_tokens = settings.llm_max_tokens
        logger.info("Initialized AnthropicGateway")

    @property
    def supports_web_search(self) -> bool:
        return True

    def _content_parts(self, contents: list[Content]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for item in contents:
            if isinstance(item, str):
                parts.append({"type": "text", "text": item})
            elif item.mime_type.startswith("image/"):
                parts.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": item.mime_type,
                        "data": item.base64_data,
                    },
                })
            elif item.mime_type == "application/pdf":
                parts.append({
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": "application/pdf",
                        "data": item.base64_data,
                    },
                })
            else:
                parts.append({"type": "text", "text": _decode_text(item)})
        return parts

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        config: GatewayConfig,
    ) -> GatewayResponse:
        max_tokens = config.max_output_tokens or self._max_tokens
        kwargs: dict = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
        }

        system = _system_prompt(config)
        if system:
            kwargs["system"] = system
        if config.tools:
            kwargs["tools"] = config.tools

        if config.thinking_budget:
            budget = max(config.thinking_budget, 1024)
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            kwargs["max_tokens"] = max(max_tokens, budget + 1024)
        elif config.temperature is not None:
            kwargs["temperature"] = config.temperature

        response = await self._client.messages.create(**kwargs)

        # Web search and thinking interleave other block types with text
        text = "".join(
            block.text for block in response.content if block.type == "text"
        )

        return GatewayResponse(
            text=text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def generate(
        self,
        model: str,
        contents: str | Sequence[Content],
        config: GatewayConfig | None = None,
    ) -> GatewayResponse:
        """One-shot completion using Claude."""
        messages = [{
            "role": "user",
            "content": self._content_parts(_as_contents(contents)),
        }]
        return await self._complete(model, messages, config or GatewayConfig())

    def create_session(
        self,
        model: str,
        config: GatewayConfig | None = None,
    ) -> GatewaySession:
        return GatewaySession(self, model, config or GatewayConfig())


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, GLM, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleGateway:
    """
    Gateway for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key

    Server-side tools and thinking budgets are not portable across
    OpenAI-compatible providers and are not forwarded.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleGateway (base_url=%s)",
            resolved_base_url or "https://api.openai.com/v1",
        )

    @property
    def supports_web_search(self) -> bool:
        return False

    def _content_parts(self, contents: list[Content]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for item in contents:
            if isinstance(item, str):
                parts.append({"type": "text", "text": item})
                continue
            data_url = f"data:{item.mime_type};base64,{item.base64_data}"
            if item.mime_type.startswith("image/"):
                parts.append({"type": "image_url", "image_url": {"url": data_url}})
            elif item.mime_type == "application/pdf":
                parts.append({
                    "type": "file",
                    "file": {
                        "filename": item.name or "document.pdf",
                        "file_data": data_url,
                    },
                })
            else:
                parts.append({"type": "text", "text": _decode_text(item)})
        return parts

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        config: GatewayConfig,
    ) -> GatewayResponse:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, Any]] = []
        system = _system_prompt(config)
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        kwargs: dict = {
            "model": model,
            "messages": all_messages,
            "max_tokens": config.max_output_tokens or self._max_tokens,
        }
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.response_schema is not None:
            kwargs["response_format"] = {"type": "json_object"}
        if config.tools:
            logger.debug("Ignoring %d tool(s) for OpenAI-compatible provider", len(config.tools))

        response = await self._client.chat.completions.create(**kwargs)

        content = response.choices[0].message.content or ""
        usage = response.usage

        return GatewayResponse(
            text=content,
            model=response.model or model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def generate(
        self,
        model: str,
        contents: str | Sequence[Content],
        config: GatewayConfig | None = None,
    ) -> GatewayResponse:
        """One-shot completion using an OpenAI-compatible API."""
        messages = [{
            "role": "user",
            "content": self._content_parts(_as_contents(contents)),
        }]
        return await self._complete(model, messages, config or GatewayConfig())

    def create_session(
        self,
        model: str,
        config: GatewayConfig | None = None,
    ) -> GatewaySession:
        return GatewaySession(self, model, config or GatewayConfig())


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — avoid re-creating the SDK client on every request
_gateway: AnthropicGateway | OpenAICompatibleGateway | None = None


def get_gateway() -> AnthropicGateway | OpenAICompatibleGateway:
    """
    Return the configured gateway.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicGateway (Claude)
    - "openai_compatible" → OpenAICompatibleGateway

    Raises:
        ValueError: No API key configured for the selected provider.
    """
    global _gateway
    if _gateway is None:
        if settings.llm_provider == "openai_compatible":
            _gateway = OpenAICompatibleGateway()
        else:
            _gateway = AnthropicGateway()
    return _gateway
