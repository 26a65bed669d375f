# =============================================================================
# Unit Tests — Services (cancellation, retry, lenient JSON, structured calls)
# =============================================================================
#
# No network, no API keys: gateway calls are plain coroutines or the
# scripted FakeGateway from tests/fakes.py.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeGateway

from research_swarm.models.schemas import AdvisorReview, IntentClassification, IntentType
from research_swarm.services.cancellation import (
    Aborted,
    CancellationToken,
    RunController,
)
from research_swarm.services.json_repair import Unparseable, balance_json, parse_lenient
from research_swarm.services.retry import RetryExhausted, is_transient, with_retry
from research_swarm.services.structured import call_structured


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _flaky(failures: list[BaseException], result: str = "ok"):
    """Operation factory that raises each queued error once, then succeeds."""
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return _operation, calls


# ---------------------------------------------------------------------------
# Test: Cancellation
# ---------------------------------------------------------------------------


class TestCancellationToken:
    """Tests for the per-request cancellation token."""

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(Aborted):
            token.raise_if_cancelled()

    def test_run_returns_result(self):
        async def _go():
            token = CancellationToken()
            return await token.run(asyncio.sleep(0, result="done"))

        assert _run(_go()) == "done"

    def test_run_aborts_in_flight_call(self):
        async def _go():
            token = CancellationToken()
            inner = asyncio.ensure_future(asyncio.sleep(10))
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            with pytest.raises(Aborted):
                await token.run(inner)
            await asyncio.sleep(0)
            return inner.cancelled()

        assert _run(_go()) is True

    def test_sleep_interrupted(self):
        async def _go():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            await token.sleep(10)

        with pytest.raises(Aborted):
            _run(_go())

    def test_aborted_default_message(self):
        assert str(Aborted()) == "Execution stopped by user."


class TestRunController:
    """Tests for the single-active-run rule."""

    def test_new_run_supersedes_previous(self):
        controller = RunController()
        first = controller.start_run()
        second = controller.start_run()
        assert first.cancelled
        assert not second.cancelled
        assert controller.active is second

    def test_cancel_active(self):
        controller = RunController()
        assert controller.cancel_active() is False
        token = controller.start_run()
        assert controller.cancel_active() is True
        assert token.cancelled
        assert controller.cancel_active() is False

    def test_finish_keeps_successor(self):
        controller = RunController()
        first = controller.start_run()
        second = controller.start_run()
        controller.finish(first)
        assert controller.active is second
        controller.finish(second)
        assert controller.active is None


# ---------------------------------------------------------------------------
# Test: Retry Envelope
# ---------------------------------------------------------------------------


class TestIsTransient:
    """Tests for rate-limit / overload classification."""

    def test_status_codes(self):
        assert is_transient(_StatusError(429))
        assert is_transient(_StatusError(503))
        assert is_transient(_StatusError(529))
        assert not is_transient(_StatusError(400))

    def test_message_markers(self):
        assert is_transient(Exception("Resource exhausted: quota exceeded"))
        assert is_transient(Exception("Overloaded"))
        assert not is_transient(ValueError("bad request"))


class TestWithRetry:
    """Tests for bounded exponential backoff."""

    def test_succeeds_after_transient_failures(self):
        operation, calls = _flaky([_StatusError(429), _StatusError(503)])
        result = _run(with_retry(operation, CancellationToken(), max_attempts=3))
        assert result == "ok"
        assert calls["count"] == 3

    def test_exhausted_after_max_attempts(self):
        errors = [_StatusError(429) for _ in range(5)]
        operation, calls = _flaky(errors)
        with pytest.raises(RetryExhausted) as exc_info:
            _run(with_retry(operation, CancellationToken(), max_attempts=3))
        assert calls["count"] == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, _StatusError)

    def test_non_transient_is_not_retried(self):
        operation, calls = _flaky([ValueError("schema mismatch")])
        with pytest.raises(ValueError):
            _run(with_retry(operation, CancellationToken(), max_attempts=3))
        assert calls["count"] == 1

    def test_cancelled_token_issues_no_calls(self):
        operation, calls = _flaky([])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Aborted):
            _run(with_retry(operation, token))
        assert calls["count"] == 0

    def test_cancel_during_backoff(self):
        async def _go():
            token = CancellationToken()
            operation, calls = _flaky([_StatusError(429), _StatusError(429)])
            asyncio.get_running_loop().call_later(0.02, token.cancel)
            with pytest.raises(Aborted):
                await with_retry(operation, token, max_attempts=3, base_delay=10)
            return calls["count"]

        assert _run(_go()) == 1


# ---------------------------------------------------------------------------
# Test: Lenient JSON
# ---------------------------------------------------------------------------


class TestParseLenient:
    """Tests for the four parse strategies."""

    def test_plain_json(self):
        assert parse_lenient('{"a": 1}') == {"a": 1}

    def test_markdown_fences(self):
        assert parse_lenient('```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_around_object(self):
        text = 'Here is the plan: {"a": {"b": 2}} Let me know.'
        assert parse_lenient(text) == {"a": {"b": 2}}

    def test_truncated_object(self):
        assert parse_lenient('{"a": [1, 2') == {"a": [1, 2]}

    def test_truncated_string(self):
        assert parse_lenient('{"status": "FINALIZE", "gap_analysis": "mostly do') == {
            "status": "FINALIZE",
            "gap_analysis": "mostly do",
        }

    def test_brackets_inside_strings_ignored(self):
        assert balance_json('{"q": "a [b {c", "x": [1') == '{"q": "a [b {c", "x": [1]}'

    def test_empty_raises(self):
        with pytest.raises(Unparseable):
            parse_lenient("   ")

    def test_garbage_raises(self):
        with pytest.raises(Unparseable):
            parse_lenient("I could not produce a plan, sorry")


# ---------------------------------------------------------------------------
# Test: Structured Calls
# ---------------------------------------------------------------------------


class TestCallStructured:
    """Tests for retry → parse → validate → default."""

    def _call(self, gateway):
        return _run(call_structured(
            gateway,
            CancellationToken(),
            model="fast",
            contents="classify",
            schema=IntentClassification,
            default=IntentClassification(type=IntentType.DEEP_RESEARCH, reasoning="Default"),
            label="test",
        ))

    def test_valid_reply(self):
        gateway = FakeGateway({IntentClassification: [
            '```json\n{"type": "QUICK_ANSWER", "reasoning": "greeting"}\n```',
        ]})
        result = self._call(gateway)
        assert result.type is IntentType.QUICK_ANSWER
        assert gateway.calls[0].config.response_schema is IntentClassification

    def test_empty_reply_uses_default(self):
        result = self._call(FakeGateway())
        assert result.reasoning == "Default"

    def test_invalid_enum_uses_default(self):
        gateway = FakeGateway({IntentClassification: ['{"type": "MAYBE"}']})
        assert self._call(gateway).reasoning == "Default"

    def test_unparseable_uses_default(self):
        gateway = FakeGateway({IntentClassification: ["no json here"]})
        assert self._call(gateway).type is IntentType.DEEP_RESEARCH

    def test_non_numeric_score_uses_default(self):
        default = AdvisorReview()
        for payload in ('{"scorecard": {"goal_alignment": null}}',
                        '{"scorecard": {"feasibility": [3]}}'):
            gateway = FakeGateway({AdvisorReview: [payload]})
            result = _run(call_structured(
                gateway,
                CancellationToken(),
                model="smart",
                contents="review",
                schema=AdvisorReview,
                default=default,
                label="test",
            ))
            assert result is default

    def test_retry_exhaustion_propagates(self):
        gateway = FakeGateway({IntentClassification: [_StatusError(429)] * 3})
        with pytest.raises(RetryExhausted):
            self._call(gateway)
