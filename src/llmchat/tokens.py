"""Token estimation — whitespace word count as a cheap proxy for model tokens."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .messages import ChatMessage


def estimate_tokens(text: str) -> int:
    """Estimate token count from text.

    This is an approximation: the number of whitespace-delimited
    words. It will not agree with the remote model's tokenizer, and nothing
    in llmchat assumes that it does. Both the storage and outbound ceilings
    are expressed in these units.
    """
    if not text:
        return 0
    return len(text.split())


def estimate_message_tokens(messages: Iterable[ChatMessage]) -> int:
    """Sum the token estimates of a sequence of messages."""
    return sum(estimate_tokens(m.content) for m in messages)
