"""Conversation files — JSON arrays of ``{role, content}`` records."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import PersistenceError
from .messages import ChatMessage, ChatRole

logger = logging.getLogger(__name__)

FILE_PREFIX = "conversation_"
FILE_SUFFIX = ".json"


class PersistedMessage(BaseModel):
    """On-disk shape of one message. Timestamps are not persisted."""

    role: ChatRole
    content: str


_FILE_ADAPTER = TypeAdapter(list[PersistedMessage])


def history_filename(now: datetime | None = None) -> str:
    """File name derived from the current timestamp."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{FILE_PREFIX}{stamp}{FILE_SUFFIX}"


def resolve_history_path(name: str, directory: Path | str) -> Path:
    """Resolve a ``/load`` argument; bare names live in ``directory``."""
    candidate = Path(name).expanduser()
    if candidate.suffix != FILE_SUFFIX:
        candidate = candidate.with_name(candidate.name + FILE_SUFFIX)
    if candidate.is_absolute() or candidate.parent != Path("."):
        return candidate
    return Path(directory) / candidate


def save_conversation(
    messages: Iterable[ChatMessage],
    directory: Path | str,
    now: datetime | None = None,
) -> Path:
    """Write ``messages`` to a new timestamped file and return its path."""
    records = [m.to_wire() for m in messages]
    target = Path(directory) / history_filename(now)
    tmp_path = target.with_suffix(".tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(target)
    except OSError as exc:
        msg = f"Could not save conversation to {target}: {exc}"
        raise PersistenceError(msg) from exc
    logger.info("Saved %d messages to %s", len(records), target)
    return target


def load_conversation(path: Path | str) -> list[ChatMessage]:
    """Read a conversation file.

    Raises:
        PersistenceError: the file is missing, unreadable, not JSON, or not
            an array of ``{role, content}`` objects.
    """
    source = Path(path)
    try:
        raw = source.read_bytes()
    except OSError as exc:
        msg = f"Could not read conversation file {source}: {exc}"
        raise PersistenceError(msg) from exc
    try:
        records = _FILE_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        msg = f"Invalid conversation file {source}: {exc.error_count()} error(s)"
        raise PersistenceError(msg) from exc

    messages = [ChatMessage(role=r.role, content=r.content) for r in records]
    logger.info("Loaded %d messages from %s", len(messages), source)
    return messages
