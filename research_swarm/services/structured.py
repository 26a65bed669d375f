# =============================================================================
# Structured Calls — Retry, Parse, Validate, Fall Back
# =============================================================================
#
# Every structured-output stage (intent, clarifier, planner, advisor,
# research evaluator, reviewer, arbitrator) makes the same kind of call:
#
#   1. Gateway.generate() inside the Retry Envelope
#   2. Empty text                    → call-site default
#   3. parse_lenient() fails         → call-site default (logged)
#   4. pydantic validation fails     → call-site default (logged)
#
# Aborted and RetryExhausted propagate untouched; every other failure
# mode converges on the default, so the pipeline always moves forward.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from research_swarm.services.cancellation import CancellationToken
from research_swarm.services.json_repair import Unparseable, parse_lenient
from research_swarm.services.llm import Content, GatewayConfig, LLMGateway
from research_swarm.services.retry import with_retry

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


async def call_structured(
    gateway: LLMGateway,
    token: CancellationToken,
    *,
    model: str,
    contents: str | Sequence[Content],
    schema: type[M],
    default: M,
    system: str | None = None,
    temperature: float | None = None,
    thinking_budget: int | None = None,
    base_delay: float | None = None,
    label: str,
) -> M:
    """
    Run one structured-output call and return a validated model.

    Args:
        gateway: LLM gateway.
        token: Cancellation token of the current run.
        model: Model identifier.
        contents: Prompt text, optionally followed by attachments.
        schema: Pydantic model describing the expected JSON.
        default: Returned when the reply is empty or unusable.
        system: Optional system instruction.
        temperature: Sampling temperature.
        thinking_budget: Optional extended-thinking budget.
        base_delay: Retry backoff base (default from settings).
        label: Stage name for log lines.

    Raises:
        Aborted: The run was cancelled.
        RetryExhausted: The provider stayed rate-limited/overloaded.
    """
    config = GatewayConfig(
        system_instruction=system,
        response_schema=schema,
        temperature=temperature,
        thinking_budget=thinking_budget,
    )

    response = await with_retry(
        lambda: gateway.generate(model, contents, config),
        token,
        base_delay=base_delay,
        label=label,
    )

    if not response.text:
        logger.warning("%s: empty response, using default", label)
        return default

    try:
        return schema.model_validate(parse_lenient(response.text))
    except Unparseable as e:
        logger.warning("%s: unparseable response (%s), using default", label, e)
    except ValidationError as e:
        logger.warning(
            "%s: response failed validation (%d errors), using default",
            label, e.error_count(),
        )
    return default
