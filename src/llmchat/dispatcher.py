"""Request dispatcher — builds truncated requests and retries failed attempts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
)

from .cancellation import CancelToken
from .config import ChatConfig
from .decoder import StreamDecoder
from .errors import APIError, RetriesExhaustedError, TransportError
from .messages import ChatMessage, ChatRequest, ChatRole
from .ratelimit import RateLimiter
from .retry import RetryPolicy
from .telemetry import (
    record_retry,
    record_stream_stats,
    trace_dispatch_attempt,
    trace_stream_decode,
)
from .tokens import estimate_tokens
from .transport import ChatTransport

logger = logging.getLogger(__name__)

# Retried failures. A decode error on a 200 stream and RequestCancelled propagate.
_RETRYABLE = (TransportError, APIError)


def truncate_for_request(
    messages: Sequence[ChatMessage],
    max_tokens: int,
) -> list[ChatMessage]:
    """Keep the newest messages whose estimates fit in ``max_tokens``.

    Walks from the newest message backwards and stops at the first one that
    would push the total over the ceiling; order is preserved.
    """
    kept: list[ChatMessage] = []
    total = 0
    for message in reversed(messages):
        tokens = estimate_tokens(message.content)
        if total + tokens > max_tokens:
            break
        total += tokens
        kept.append(message)
    kept.reverse()
    return kept


def timestamp_message(now: datetime) -> ChatMessage:
    """System message giving the model the current wall-clock time."""
    stamp = now.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
    return ChatMessage(role=ChatRole.SYSTEM, content=f"Current date and time: {stamp}")


class RequestDispatcher:
    """Sends a conversation view to the API and returns the assembled reply.

    Every attempt first takes a slot from the :class:`RateLimiter`, so
    backoff sleeps and rate limiting compose. Transport and status failures
    are retried per the :class:`RetryPolicy`. A stream that arrived with a
    200 but fails to decode is not re-sent, and cancellation is never
    retried. A call either returns the full text or raises, there is
    no partial result.
    """

    def __init__(
        self,
        transport: ChatTransport,
        config: ChatConfig,
        limiter: RateLimiter | None = None,
        policy: RetryPolicy | None = None,
        decoder_factory: Callable[[], StreamDecoder] = StreamDecoder,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._limiter = limiter or RateLimiter(config.requests_per_second)
        self._policy = policy or config.retry
        self._decoder_factory = decoder_factory
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_messages(self, view: Sequence[ChatMessage]) -> list[ChatMessage]:
        """Timestamp system message followed by the right-truncated view."""
        kept = truncate_for_request(view, self._config.max_request_tokens)
        if len(kept) < len(view):
            logger.debug("Sending %d of %d messages", len(kept), len(view))
        return [timestamp_message(self._clock()), *kept]

    def build_request(self, view: Sequence[ChatMessage]) -> ChatRequest:
        cfg = self._config
        return ChatRequest(
            model=cfg.model,
            messages=self.build_messages(view),
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            top_p=cfg.top_p,
            stream=True,
            stop=cfg.stop,
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        view: Sequence[ChatMessage],
        cancel: CancelToken | None = None,
    ) -> str:
        """Send ``view`` and return the assistant text.

        Raises:
            RetriesExhaustedError: every attempt failed; carries the last error.
            DecodeError: the 200 response stream ended dirty.
            RequestCancelled: ``cancel`` fired during a wait or the HTTP call.
        """
        cancel = cancel or CancelToken()
        payload = self.build_request(view).to_payload()
        policy = self._policy

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(_RETRYABLE),
            sleep=cancel.sleep,
            before_sleep=self._log_retry,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    await self._limiter.acquire(cancel)
                    with trace_dispatch_attempt(number, self._config.model):
                        text = await cancel.run(self._attempt(payload))
        except RetryError as exc:
            last = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number
            logger.error("Giving up after %d attempt(s): %s", attempts, last)
            raise RetriesExhaustedError(attempts, last) from last
        return text

    async def _attempt(self, payload: dict[str, Any]) -> str:
        decoder = self._decoder_factory()
        try:
            return await asyncio.wait_for(
                self._stream_and_decode(payload, decoder),
                timeout=self._config.request_timeout,
            )
        except TimeoutError as exc:
            msg = f"request timed out after {self._config.request_timeout}s"
            raise TransportError(msg) from exc

    async def _stream_and_decode(self, payload: dict[str, Any], decoder: StreamDecoder) -> str:
        with trace_stream_decode():
            try:
                async with contextlib.aclosing(self._transport.stream_lines(payload)) as lines:
                    return await decoder.decode_async(lines)
            finally:
                record_stream_stats(
                    decoder.fragment_count,
                    decoder.malformed_records,
                    completed=decoder.done,
                )

    def _wait(self, retry_state: RetryCallState) -> float:
        return self._policy.delay_for(retry_state.attempt_number, self._rng)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Attempt %d/%d failed (%s). Retrying in %.2fs",
            retry_state.attempt_number,
            self._policy.max_attempts,
            exc,
            delay,
        )
        record_retry(retry_state.attempt_number, delay, exc)
