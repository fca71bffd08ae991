"""Conversation data types — roles, messages and the outbound request body."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChatMessage(BaseModel):
    """Single message in a conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: ChatRole
    content: str
    created_at: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, str]:
        """Return the ``{role, content}`` form sent to the API and persisted."""
        return {"role": self.role.value, "content": self.content}


class ChatRequest(BaseModel):
    """Request payload sent to the completion endpoint."""

    model: str
    messages: list[ChatMessage]
    temperature: float
    max_tokens: int
    top_p: float
    stream: bool = True
    stop: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON body expected by the chat-completions API."""
        return {
            "messages": [m.to_wire() for m in self.messages],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "stream": self.stream,
            "stop": list(self.stop),
        }
