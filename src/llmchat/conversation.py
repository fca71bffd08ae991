"""Bounded conversation buffer with token-aware truncation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .messages import ChatMessage, ChatRole
from .rwlock import ReadWriteLock
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class StoreSummary:
    """Snapshot statistics printed after a load."""

    message_count: int
    token_count: int
    max_tokens: int
    recent: list[tuple[str, str]] = field(default_factory=list)


def _clip(text: str, width: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= width:
        return flat
    return flat[: max(width - 3, 0)] + "..."


class ConversationStore:
    """Ordered message history with a running token count.

    ``token_count`` is always the sum of the token estimates of the retained
    messages. The message at index 0 (normally the seeded system prompt) is
    never evicted; everything after it is evicted oldest-first, in
    user/assistant pairs, until the count is back under ``max_tokens``.

    All mutation goes through :meth:`append_message` and :meth:`replace_all`
    under the write side of a :class:`ReadWriteLock`; readers
    (:meth:`snapshot`, :meth:`summary`) share the read side.
    """

    def __init__(self, max_tokens: int = 8000, system_prompt: str | None = None) -> None:
        if max_tokens <= 0:
            msg = "max_tokens must be positive"
            raise ValueError(msg)
        self._max_tokens = max_tokens
        self._messages: list[ChatMessage] = []
        self._token_count = 0
        self._lock = ReadWriteLock()
        if system_prompt is not None:
            self.append_message(ChatRole.SYSTEM, system_prompt)

    # -- readers ------------------------------------------------------------

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def token_count(self) -> int:
        with self._lock.read():
            return self._token_count

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._messages)

    def snapshot(self) -> list[ChatMessage]:
        """Return a copy of the history; later mutations are not reflected."""
        with self._lock.read():
            return list(self._messages)

    def summary(self, last_n: int = 4, width: int = 60) -> StoreSummary:
        """Return counts plus the last ``last_n`` messages clipped to ``width``."""
        with self._lock.read():
            recent = self._messages[-last_n:] if last_n > 0 else []
            return StoreSummary(
                message_count=len(self._messages),
                token_count=self._token_count,
                max_tokens=self._max_tokens,
                recent=[(m.role.value, _clip(m.content, width)) for m in recent],
            )

    # -- writers ------------------------------------------------------------

    def append_message(self, role: ChatRole | str, content: str) -> ChatMessage:
        """Append a message, then truncate synchronously under the same lock."""
        message = ChatMessage(role=ChatRole(role), content=content)
        with self._lock.write():
            self._token_count += estimate_tokens(content)
            self._messages.append(message)
            self._truncate()
        return message

    def replace_all(
        self,
        messages: Iterable[ChatMessage],
        token_count: int | None = None,
    ) -> None:
        """Atomically replace the whole history, enforcing ``max_tokens``.

        When ``token_count`` is omitted (the load path) the messages are
        replayed one by one with the same truncation as
        :meth:`append_message`, so the result equals appending them to an
        empty store. An explicit ``token_count`` is installed as given and
        the history is truncated once.
        """
        new_messages = list(messages)
        with self._lock.write():
            if token_count is not None:
                self._messages = new_messages
                self._token_count = token_count
                self._truncate()
                return
            self._messages = []
            self._token_count = 0
            for message in new_messages:
                self._token_count += estimate_tokens(message.content)
                self._messages.append(message)
                self._truncate()

    def _truncate(self) -> None:
        """Evict oldest messages after index 0 in pairs. Caller holds the write lock."""
        while self._token_count > self._max_tokens and len(self._messages) > 1:
            for _ in range(2):
                if len(self._messages) <= 1:
                    break
                evicted = self._messages.pop(1)
                self._token_count -= estimate_tokens(evicted.content)
                logger.debug(
                    "Evicted %s message (%d tokens), %d tokens retained",
                    evicted.role.value,
                    estimate_tokens(evicted.content),
                    self._token_count,
                )
