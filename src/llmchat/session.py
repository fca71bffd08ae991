"""Chat session — drives one user turn at a time against the dispatcher."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import StrEnum
from pathlib import Path

from .cancellation import CancelToken
from .conversation import ConversationStore, StoreSummary
from .dispatcher import RequestDispatcher
from .errors import ChatError, PersistenceError, RequestCancelled, RetriesExhaustedError
from .messages import ChatRole
from .persistence import load_conversation, resolve_history_path, save_conversation
from .telemetry import trace_chat_turn

logger = logging.getLogger(__name__)

EXIT_KEYWORD = "exit"
SAVE_COMMAND = "/save"
LOAD_COMMAND = "/load"


class SessionState(StrEnum):
    IDLE = "idle"
    AWAITING = "awaiting"


class TurnOutcome(StrEnum):
    CONTINUE = "continue"
    EXIT = "exit"


class Renderer(ABC):
    """Where the session sends everything the user sees."""

    @abstractmethod
    async def render_assistant(self, text: str) -> None:
        """Display a completed assistant reply."""

    @abstractmethod
    def show_error(self, message: str) -> None: ...

    @abstractmethod
    def show_info(self, message: str) -> None: ...

    @abstractmethod
    def show_summary(self, summary: StoreSummary) -> None: ...

    def show_thinking(self) -> None:  # noqa: B027
        """Indicate that a request is in flight."""

    def clear_thinking(self) -> None:  # noqa: B027
        """Remove the in-flight indicator."""


class ChatSession:
    """Two-state loop: ``idle`` waits for input, ``awaiting`` has a request in flight.

    Commands (``exit``, ``/save``, ``/load <name>``) are handled while idle
    and never enter ``awaiting``. A failed turn keeps the user message in
    the history; only the assistant reply is missing.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: RequestDispatcher,
        renderer: Renderer,
        history_dir: Path | str = ".",
        cancel: CancelToken | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._renderer = renderer
        self._history_dir = Path(history_dir)
        self._cancel = cancel or CancelToken()
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    async def handle_input(self, line: str) -> TurnOutcome:
        """Process one line of user input."""
        stripped = line.strip()
        if not stripped:
            return TurnOutcome.CONTINUE
        if stripped.lower() == EXIT_KEYWORD:
            return TurnOutcome.EXIT
        if stripped.startswith("/"):
            self._handle_command(stripped)
            return TurnOutcome.CONTINUE

        await self._run_turn(stripped)
        return TurnOutcome.CONTINUE

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _handle_command(self, command_line: str) -> None:
        command, _, argument = command_line.partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == SAVE_COMMAND:
            self.save()
        elif command == LOAD_COMMAND:
            if not argument:
                self._renderer.show_error("Usage: /load <name>")
                return
            self.load(argument)
        else:
            self._renderer.show_error(f"Unknown command: {command}")

    def save(self) -> Path | None:
        try:
            path = save_conversation(self._store.snapshot(), self._history_dir)
        except PersistenceError as exc:
            self._renderer.show_error(str(exc))
            return None
        self._renderer.show_info(f"Conversation saved to {path}")
        return path

    def load(self, name: str) -> bool:
        path = resolve_history_path(name, self._history_dir)
        try:
            messages = load_conversation(path)
        except PersistenceError as exc:
            self._renderer.show_error(str(exc))
            return False
        self._store.replace_all(messages)
        self._renderer.show_info(f"Conversation loaded from {path}")
        self._renderer.show_summary(self._store.summary())
        return True

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _run_turn(self, text: str) -> None:
        self._cancel.reset()
        self._state = SessionState.AWAITING
        self._store.append_message(ChatRole.USER, text)
        view = self._store.snapshot()
        self._renderer.show_thinking()
        try:
            with trace_chat_turn(len(view)):
                reply = await self._dispatcher.send(view, self._cancel)
        except RequestCancelled:
            logger.info("Turn cancelled")
            self._renderer.clear_thinking()
            self._renderer.show_error("Request cancelled")
            return
        except RetriesExhaustedError as exc:
            self._renderer.clear_thinking()
            self._renderer.show_error(f"AI request failed: {exc.last_error}")
            return
        except ChatError as exc:
            self._renderer.clear_thinking()
            self._renderer.show_error(f"AI request failed: {exc}")
            return
        finally:
            self._state = SessionState.IDLE

        self._renderer.clear_thinking()
        self._store.append_message(ChatRole.ASSISTANT, reply)
        await self._renderer.render_assistant(reply)
