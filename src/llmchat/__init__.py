"""llmchat — streaming terminal client for hosted chat-completion APIs."""

from __future__ import annotations

__version__ = "0.1.0"

from .cancellation import CancelToken
from .config import ChatConfig, load_config, load_system_prompt
from .conversation import ConversationStore, StoreSummary
from .decoder import StreamChunk, StreamDecoder
from .dispatcher import RequestDispatcher, timestamp_message, truncate_for_request
from .errors import (
    APIError,
    ChatError,
    ConfigError,
    DecodeError,
    PersistenceError,
    RequestCancelled,
    RetriesExhaustedError,
    TransportError,
)
from .messages import ChatMessage, ChatRequest, ChatRole
from .persistence import history_filename, load_conversation, save_conversation
from .ratelimit import RateLimiter
from .retry import RetryPolicy, backoff_delay, jittered
from .rwlock import ReadWriteLock
from .session import ChatSession, Renderer, SessionState, TurnOutcome
from .telemetry import (
    ChatTracer,
    TelemetryConfig,
    trace_chat_turn,
    trace_dispatch_attempt,
    trace_stream_decode,
)
from .tokens import estimate_message_tokens, estimate_tokens
from .transport import AiohttpTransport, ChatTransport

__all__ = [
    "APIError",
    "AiohttpTransport",
    "CancelToken",
    "ChatConfig",
    "ChatError",
    "ChatMessage",
    "ChatRequest",
    "ChatRole",
    "ChatSession",
    "ChatTracer",
    "ChatTransport",
    "ConfigError",
    "ConversationStore",
    "DecodeError",
    "PersistenceError",
    "RateLimiter",
    "ReadWriteLock",
    "Renderer",
    "RequestCancelled",
    "RequestDispatcher",
    "RetriesExhaustedError",
    "RetryPolicy",
    "SessionState",
    "StoreSummary",
    "StreamChunk",
    "StreamDecoder",
    "TelemetryConfig",
    "TransportError",
    "TurnOutcome",
    "backoff_delay",
    "estimate_message_tokens",
    "estimate_tokens",
    "history_filename",
    "jittered",
    "load_config",
    "load_conversation",
    "load_system_prompt",
    "save_conversation",
    "timestamp_message",
    "trace_chat_turn",
    "trace_dispatch_attempt",
    "trace_stream_decode",
    "truncate_for_request",
]
