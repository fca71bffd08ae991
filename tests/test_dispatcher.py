"""Tests for the request dispatcher."""

from __future__ import annotations

import asyncio
import json
import random
import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import patch

import pytest

from llmchat.cancellation import CancelToken
from llmchat.config import ChatConfig
from llmchat.dispatcher import RequestDispatcher, timestamp_message, truncate_for_request
from llmchat.errors import (
    APIError,
    DecodeError,
    RequestCancelled,
    RetriesExhaustedError,
    TransportError,
)
from llmchat.messages import ChatMessage, ChatRole
from llmchat.ratelimit import RateLimiter
from llmchat.retry import RetryPolicy
from llmchat.telemetry import ChatTracer, get_default_tracer, set_default_tracer
from llmchat.transport import ChatTransport

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _sse(*fragments: str, done: bool = True) -> list[bytes]:
    lines = [
        ("data: " + json.dumps({"choices": [{"delta": {"content": f}}]}) + "\n").encode()
        for f in fragments
    ]
    if done:
        lines.append(b"data: [DONE]\n")
    return lines


class ScriptedTransport(ChatTransport):
    """Plays back one outcome per call; the last outcome repeats."""

    def __init__(self, *outcomes: list[bytes] | BaseException) -> None:
        self._outcomes = list(outcomes)
        self.payloads: list[dict[str, Any]] = []
        self.call_times: list[float] = []

    async def stream_lines(self, payload: dict[str, Any]):
        self.payloads.append(payload)
        self.call_times.append(time.monotonic())
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        for line in outcome:
            yield line


class HangingTransport(ChatTransport):
    """Yields one fragment, then blocks until cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.closed = False
        self.calls = 0

    async def stream_lines(self, payload: dict[str, Any]):
        self.calls += 1
        self.started.set()
        try:
            yield _sse("partial", done=False)[0]
            await asyncio.sleep(30)
        finally:
            self.closed = True


FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _config(**kwargs: Any) -> ChatConfig:
    return ChatConfig(groq_api_key="test-key", **kwargs)


def _dispatcher(
    transport: ChatTransport,
    *,
    policy: RetryPolicy | None = None,
    limiter: RateLimiter | None = None,
    **config_kwargs: Any,
) -> RequestDispatcher:
    return RequestDispatcher(
        transport,
        _config(**config_kwargs),
        limiter=limiter or RateLimiter(1000),
        policy=policy or RetryPolicy(max_attempts=3, initial_backoff=0.05),
        clock=lambda: FIXED_NOW,
        rng=random.Random(0),
    )


def _user(text: str) -> ChatMessage:
    return ChatMessage(role=ChatRole.USER, content=text)


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


def test_timestamp_message_format() -> None:
    msg = timestamp_message(FIXED_NOW)
    assert msg.role is ChatRole.SYSTEM
    assert msg.content == "Current date and time: 2026-01-02 03:04:05 UTC"


def test_truncate_keeps_newest_that_fit() -> None:
    msgs = [_user("a b c"), _user("d e"), _user("f g h")]
    kept = truncate_for_request(msgs, 5)
    assert [m.content for m in kept] == ["d e", "f g h"]


def test_truncate_stops_at_first_message_that_does_not_fit() -> None:
    msgs = [_user("x"), _user("big big big big big big"), _user("y")]
    assert [m.content for m in truncate_for_request(msgs, 3)] == ["y"]


def test_truncate_everything_fits() -> None:
    msgs = [_user("one"), _user("two")]
    assert truncate_for_request(msgs, 100) == msgs


def test_build_messages_prepends_timestamp() -> None:
    dispatcher = _dispatcher(ScriptedTransport([]), max_request_tokens=5)
    built = dispatcher.build_messages([_user("a b c"), _user("d e"), _user("f g h")])
    assert built[0].content.startswith("Current date and time: ")
    assert [m.content for m in built[1:]] == ["d e", "f g h"]


def test_build_request_payload_fields() -> None:
    dispatcher = _dispatcher(ScriptedTransport([]))
    payload = dispatcher.build_request([_user("hello")]).to_payload()
    assert payload["model"] == "llama3-70b-8192"
    assert payload["temperature"] == 0.7
    assert payload["top_p"] == 0.9
    assert payload["max_tokens"] == 8000
    assert payload["stream"] is True
    assert payload["stop"] == ["<|eot_id|>", "<|end_of_text|>"]
    assert payload["messages"][0]["role"] == "system"
    assert payload["messages"][1] == {"role": "user", "content": "hello"}


# ---------------------------------------------------------------------------
# send()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_returns_decoded_text() -> None:
    transport = ScriptedTransport(_sse("Hi", " there"))
    text = await _dispatcher(transport).send([_user("hello")])
    assert text == "Hi there"
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_send_retries_then_succeeds_with_backoff() -> None:
    transport = ScriptedTransport(
        TransportError("connection reset"),
        TransportError("connection reset"),
        _sse("ok"),
    )
    text = await _dispatcher(transport).send([_user("hello")])
    assert text == "ok"
    assert len(transport.call_times) == 3
    first_gap = transport.call_times[1] - transport.call_times[0]
    second_gap = transport.call_times[2] - transport.call_times[1]
    assert first_gap >= 0.05
    assert second_gap >= 0.1


@pytest.mark.asyncio
async def test_send_gives_up_after_max_attempts() -> None:
    transport = ScriptedTransport(TransportError("down"))
    with pytest.raises(RetriesExhaustedError) as info:
        await _dispatcher(transport).send([_user("hello")])
    assert info.value.attempts == 3
    assert isinstance(info.value.last_error, TransportError)
    assert len(transport.payloads) == 3


@pytest.mark.asyncio
async def test_non_success_status_is_retried() -> None:
    transport = ScriptedTransport(APIError(503, "busy"), _sse("back"))
    assert await _dispatcher(transport).send([_user("hi")]) == "back"
    assert len(transport.payloads) == 2


@pytest.mark.asyncio
async def test_status_error_surfaces_after_exhaustion() -> None:
    transport = ScriptedTransport(APIError(401, '{"error": "bad key"}'))
    policy = RetryPolicy(max_attempts=2, initial_backoff=0.01)
    with pytest.raises(RetriesExhaustedError) as info:
        await _dispatcher(transport, policy=policy).send([_user("hi")])
    assert isinstance(info.value.last_error, APIError)
    assert info.value.last_error.status == 401
    assert info.value.last_error.body == '{"error": "bad key"}'


@pytest.mark.asyncio
async def test_decode_failure_is_not_resent() -> None:
    transport = ScriptedTransport([b"data: {broken\n"], _sse("fine"))
    with pytest.raises(DecodeError):
        await _dispatcher(transport).send([_user("hi")])
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_decode_failure_has_no_partial_text() -> None:
    transport = ScriptedTransport(_sse("partial", done=False) + [b"data: {broken\n"])
    with pytest.raises(DecodeError) as info:
        await _dispatcher(transport).send([_user("hi")])
    assert "partial" not in str(info.value)
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_retry_and_decode_stats_are_recorded_as_events() -> None:
    transport = ScriptedTransport(TransportError("connection reset"), _sse("a", "b"))
    tracer = ChatTracer()
    original = get_default_tracer()
    set_default_tracer(tracer)
    try:
        with patch.object(tracer, "record_event") as record_event:
            assert await _dispatcher(transport).send([_user("hi")]) == "ab"
    finally:
        set_default_tracer(original)

    events = {call.args[0]: call.args[1] for call in record_event.call_args_list}
    assert events["dispatch/retry"]["dispatch.attempt"] == 1
    assert events["dispatch/retry"]["error.type"] == "TransportError"
    assert events["dispatch/retry"]["dispatch.backoff_s"] >= 0.05
    assert events["stream/decoded"] == {
        "stream.fragments": 2,
        "stream.malformed_records": 0,
        "stream.completed": True,
    }


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_retried() -> None:
    transport = ScriptedTransport(ValueError("bug"))
    with pytest.raises(ValueError, match="bug"):
        await _dispatcher(transport).send([_user("hi")])
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_timeout_becomes_transport_error() -> None:
    transport = HangingTransport()
    policy = RetryPolicy(max_attempts=1, initial_backoff=0.01)
    dispatcher = _dispatcher(transport, policy=policy, request_timeout=0.05)
    with pytest.raises(RetriesExhaustedError) as info:
        await dispatcher.send([_user("hi")])
    assert isinstance(info.value.last_error, TransportError)
    assert "timed out" in str(info.value.last_error)
    assert transport.closed


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_during_rate_limit_wait() -> None:
    limiter = RateLimiter(0.2)
    await limiter.acquire()  # next slot is 5 s away
    transport = ScriptedTransport(_sse("never"))
    token = CancelToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)

    start = time.monotonic()
    with pytest.raises(RequestCancelled):
        await _dispatcher(transport, limiter=limiter).send([_user("hi")], token)
    assert time.monotonic() - start < 1.0
    assert transport.payloads == []


@pytest.mark.asyncio
async def test_cancel_during_http_call_aborts_stream() -> None:
    transport = HangingTransport()
    token = CancelToken()
    dispatcher = _dispatcher(transport)

    task = asyncio.create_task(dispatcher.send([_user("hi")], token))
    await asyncio.wait_for(transport.started.wait(), timeout=1)
    token.cancel("interrupted")

    with pytest.raises(RequestCancelled):
        await asyncio.wait_for(task, timeout=1)
    assert transport.closed
    assert transport.calls == 1


@pytest.mark.asyncio
async def test_cancel_during_backoff_sleep() -> None:
    transport = ScriptedTransport(TransportError("down"))
    policy = RetryPolicy(max_attempts=3, initial_backoff=5.0)
    token = CancelToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)

    start = time.monotonic()
    with pytest.raises(RequestCancelled):
        await _dispatcher(transport, policy=policy).send([_user("hi")], token)
    assert time.monotonic() - start < 1.0
    assert len(transport.payloads) == 1
