"""Tests for conversation save/load."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from llmchat.conversation import ConversationStore
from llmchat.errors import PersistenceError
from llmchat.messages import ChatMessage, ChatRole
from llmchat.persistence import (
    history_filename,
    load_conversation,
    resolve_history_path,
    save_conversation,
)


def _messages() -> list[ChatMessage]:
    return [
        ChatMessage(role=ChatRole.SYSTEM, content="You are helpful."),
        ChatMessage(role=ChatRole.USER, content="Hi"),
        ChatMessage(role=ChatRole.ASSISTANT, content="Hello! How can I help?"),
    ]


def test_history_filename_format() -> None:
    name = history_filename(datetime(2026, 3, 4, 5, 6, 7))
    assert name == "conversation_20260304_050607.json"


def test_save_writes_role_content_array(tmp_path: Path) -> None:
    path = save_conversation(_messages(), tmp_path, now=datetime(2026, 3, 4, 5, 6, 7))
    assert path == tmp_path / "conversation_20260304_050607.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == [
        {"role": "system", "content": "You are helpful."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello! How can I help?"},
    ]
    assert not list(tmp_path.glob("*.tmp"))


def test_save_creates_missing_directory(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "history"
    path = save_conversation(_messages(), target)
    assert path.parent == target
    assert path.exists()


def test_save_into_file_path_raises(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(PersistenceError, match="Could not save"):
        save_conversation(_messages(), blocker)


def test_load_restores_roles_and_content(tmp_path: Path) -> None:
    path = save_conversation(_messages(), tmp_path)
    loaded = load_conversation(path)
    assert [(m.role, m.content) for m in loaded] == [(m.role, m.content) for m in _messages()]


def test_loaded_store_token_count_matches_replayed_appends(tmp_path: Path) -> None:
    original = ConversationStore(max_tokens=50, system_prompt="be brief")
    for i in range(6):
        original.append_message(ChatRole.USER, f"question number {i} here")
        original.append_message(ChatRole.ASSISTANT, f"answer {i}")
    path = save_conversation(original.snapshot(), tmp_path)

    restored = ConversationStore(max_tokens=50)
    restored.replace_all(load_conversation(path))

    replayed = ConversationStore(max_tokens=50, system_prompt="be brief")
    for message in original.snapshot()[1:]:
        replayed.append_message(message.role, message.content)

    assert restored.token_count == replayed.token_count
    assert [m.content for m in restored.snapshot()] == [m.content for m in original.snapshot()]


def test_unicode_round_trips(tmp_path: Path) -> None:
    messages = [ChatMessage(role=ChatRole.USER, content="naïve café 東京")]
    path = save_conversation(messages, tmp_path)
    assert "東京" in path.read_text(encoding="utf-8")
    assert load_conversation(path)[0].content == "naïve café 東京"


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(PersistenceError, match="Could not read"):
        load_conversation(tmp_path / "nope.json")


@pytest.mark.parametrize(
    "content",
    [
        "not json at all",
        '{"role": "user", "content": "not a list"}',
        '[{"role": "robot", "content": "x"}]',
        '[{"role": "user"}]',
    ],
)
def test_load_rejects_invalid_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "bad.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(PersistenceError, match="Invalid conversation file"):
        load_conversation(path)


def test_load_empty_array(tmp_path: Path) -> None:
    path = tmp_path / "empty.json"
    path.write_text("[]", encoding="utf-8")
    assert load_conversation(path) == []


# ---------------------------------------------------------------------------
# resolve_history_path
# ---------------------------------------------------------------------------


def test_resolve_bare_name_in_directory(tmp_path: Path) -> None:
    assert resolve_history_path("conversation_1", tmp_path) == tmp_path / "conversation_1.json"


def test_resolve_keeps_json_suffix(tmp_path: Path) -> None:
    assert resolve_history_path("chat.json", tmp_path) == tmp_path / "chat.json"


def test_resolve_relative_path_with_parent_is_untouched(tmp_path: Path) -> None:
    assert resolve_history_path("saved/chat", tmp_path) == Path("saved/chat.json")


def test_resolve_absolute_path(tmp_path: Path) -> None:
    target = tmp_path / "elsewhere" / "chat.json"
    assert resolve_history_path(str(target), Path("ignored")) == target
