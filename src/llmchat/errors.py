"""Exception hierarchy for the chat client."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by llmchat."""


class ConfigError(ChatError):
    """Missing or invalid configuration (credential, prompt file, values)."""


class TransportError(ChatError):
    """Network failure or timeout while talking to the completion endpoint."""


class APIError(ChatError):
    """The completion endpoint answered with a non-success status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"API request failed with status {status}: {body}")


class DecodeError(ChatError):
    """The response stream ended without a terminator after a malformed record."""


class PersistenceError(ChatError):
    """Saving or loading a conversation file failed."""


class RequestCancelled(ChatError):
    """The shared cancellation signal fired while work was pending."""


class RetriesExhaustedError(ChatError):
    """Every attempt allowed by the retry policy failed."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"request failed after {attempts} attempt(s): {last_error}")
