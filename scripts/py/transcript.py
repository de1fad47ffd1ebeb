from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from config import JSONL_TAIL_LINES


logger = logging.getLogger(__name__)

TAIL_BLOCK_BYTES = 64 * 1024
TOOL_INPUT_PREVIEW_CHARS = 50
TOOL_RESULT_PREVIEW_CHARS = 80


class TranscriptError(RuntimeError):
    pass


class ItemKind(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    PROGRESS = "progress"
    OTHER = "other"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    ItemKind.USER: "USER",
    ItemKind.ASSISTANT: "ASST",
    ItemKind.TOOL_USE: "TOOL",
    ItemKind.TOOL_RESULT: "RSLT",
    ItemKind.SYSTEM: "SYS ",
    ItemKind.PROGRESS: "PROG",
    ItemKind.OTHER: "    ",
}


@dataclass(frozen=True)
class TranscriptItem:
    timestamp: datetime | None
    kind: ItemKind
    text: str


@dataclass
class TranscriptState:
    path: Path
    tail_lines: int = JSONL_TAIL_LINES
    length: int = 0
    items: list[TranscriptItem] = field(default_factory=list)


def _first_nonempty(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _take(text: str, limit: int) -> str:
    return text[:limit]


def _tool_use_text(segment: dict[str, Any]) -> str:
    name = _first_nonempty(segment.get("name")) or "unknown"
    summary = ""
    payload = segment.get("input")
    if isinstance(payload, dict):
        # First string-valued field gives enough context (file_path, command, pattern...).
        for key, value in payload.items():
            if isinstance(value, str):
                summary = f"{key}: {_take(value, TOOL_INPUT_PREVIEW_CHARS)}"
                break
    if not summary:
        return name
    return f"{name} ({summary})"


def _tool_result_text(segment: dict[str, Any]) -> str:
    content = segment.get("content")
    if isinstance(content, str):
        return _take(content, TOOL_RESULT_PREVIEW_CHARS)
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                return _take(part["text"], TOOL_RESULT_PREVIEW_CHARS)
    return "[result]"


def _message_content(envelope: dict[str, Any]) -> Any:
    message = envelope.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content", "")


def _message_items(envelope: dict[str, Any], timestamp: datetime | None, kind: ItemKind) -> list[TranscriptItem]:
    content = _message_content(envelope)
    if isinstance(content, str):
        if not content:
            return []
        return [TranscriptItem(timestamp, kind, content)]
    if not isinstance(content, list):
        return []

    items: list[TranscriptItem] = []
    for segment in content:
        if not isinstance(segment, dict):
            continue
        segment_type = segment.get("type")
        if segment_type == "text":
            text = segment.get("text")
            if isinstance(text, str) and text:
                items.append(TranscriptItem(timestamp, kind, text))
        elif segment_type == "tool_use":
            items.append(TranscriptItem(timestamp, ItemKind.TOOL_USE, _tool_use_text(segment)))
        elif segment_type == "tool_result":
            items.append(TranscriptItem(timestamp, ItemKind.TOOL_RESULT, _tool_result_text(segment)))
    return items


def _system_text(envelope: dict[str, Any]) -> str:
    content = _message_content(envelope)
    if isinstance(content, str) and content:
        return content
    if isinstance(content, list):
        for segment in content:
            if isinstance(segment, dict) and segment.get("type") == "text":
                text = segment.get("text")
                if isinstance(text, str) and text:
                    return text
    return _first_nonempty(envelope.get("content"))


def parse_envelope(envelope: Any) -> list[TranscriptItem]:
    """Turn one decoded JSONL envelope into zero or more display items."""
    if not isinstance(envelope, dict):
        return []

    kind = envelope.get("type")
    timestamp = _parse_timestamp(envelope.get("timestamp"))

    if kind == "user":
        return _message_items(envelope, timestamp, ItemKind.USER)
    if kind == "assistant":
        return _message_items(envelope, timestamp, ItemKind.ASSISTANT)
    if kind == "system":
        text = _system_text(envelope)
        return [TranscriptItem(timestamp, ItemKind.SYSTEM, text)] if text else []
    if kind == "progress":
        text = _first_nonempty(envelope.get("content"))
        return [TranscriptItem(timestamp, ItemKind.PROGRESS, text)] if text else []
    return []


def parse_line(line: str) -> list[TranscriptItem]:
    text = line.strip()
    if not text or not text.startswith("{"):
        return []
    try:
        envelope = json.loads(text)
    except json.JSONDecodeError:
        # Writers flush line by line; a torn or corrupt line is simply skipped.
        return []
    return parse_envelope(envelope)


def parse_lines(lines: list[bytes]) -> list[TranscriptItem]:
    items: list[TranscriptItem] = []
    for raw in lines:
        items.extend(parse_line(raw.decode("utf-8", errors="replace")))
    return items


def _complete_prefix_length(data: bytes) -> int:
    """Length of ``data`` up to and including its last newline."""
    return data.rfind(b"\n") + 1


def _split_lines(complete: bytes) -> list[bytes]:
    if not complete:
        return []
    return complete[:-1].split(b"\n")


def read_tail_lines(path: Path, max_lines: int, block_size: int = TAIL_BLOCK_BYTES) -> tuple[list[bytes], int]:
    """Return the last ``max_lines`` complete lines and the byte offset they end at.

    Seeks backwards from the end of the file one block at a time, so startup
    cost depends on the tail size rather than the length of the log.
    """
    with path.open("rb") as handle:
        handle.seek(0, os.SEEK_END)
        size = handle.tell()
        position = size
        chunks: list[bytes] = []
        newlines = 0
        while position > 0 and newlines <= max_lines:
            step = min(block_size, position)
            position -= step
            handle.seek(position)
            chunk = handle.read(step)
            chunks.append(chunk)
            newlines += chunk.count(b"\n")

    data = b"".join(reversed(chunks))
    end = _complete_prefix_length(data)
    complete = data[:end]
    lines = _split_lines(complete)
    if position > 0 and lines:
        # The first line is cut by the block boundary unless we reached the start.
        lines = lines[1:]
    return lines[-max_lines:] if max_lines > 0 else [], position + end


def open_transcript(path: str | Path, tail_lines: int = JSONL_TAIL_LINES) -> TranscriptState:
    state = TranscriptState(path=Path(path), tail_lines=tail_lines)
    _load_tail(state)
    return state


def _load_tail(state: TranscriptState) -> None:
    state.items = []
    state.length = 0
    if not state.path.is_file():
        return
    try:
        lines, end = read_tail_lines(state.path, state.tail_lines)
    except OSError as exc:
        raise TranscriptError(f"unable to read {state.path}: {exc}") from exc
    items = parse_lines(lines)
    state.items = items[-state.tail_lines:]
    state.length = end
    logger.debug("loaded %d items from %s", len(state.items), state.path)


def poll_appended(state: TranscriptState) -> bool:
    """Parse bytes appended since the last read; True when ``state.items`` changed."""
    try:
        size = state.path.stat().st_size
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise TranscriptError(f"unable to stat {state.path}: {exc}") from exc

    if size < state.length:
        logger.info("%s shrank (%d < %d), reloading", state.path, size, state.length)
        had_items = bool(state.items)
        _load_tail(state)
        return had_items or bool(state.items)

    if size == state.length:
        return False

    if state.length == 0 and not state.items:
        # First content since open: start from the tail, not the whole file.
        _load_tail(state)
        return bool(state.items)

    try:
        with state.path.open("rb") as handle:
            handle.seek(state.length)
            data = handle.read(size - state.length)
    except OSError as exc:
        raise TranscriptError(f"unable to read {state.path}: {exc}") from exc

    consumed = _complete_prefix_length(data)
    if consumed == 0:
        return False
    state.length += consumed

    new_items = parse_lines(_split_lines(data[:consumed]))
    if not new_items:
        return False
    state.items.extend(new_items)
    return True


def format_item(item: TranscriptItem, width: int = 0) -> str:
    stamp = item.timestamp.strftime("%H:%M:%S") if item.timestamp else "--:--:--"
    text = " ".join(item.text.split())
    if width and len(text) > width:
        text = f"{text[:width - 3]}..."
    return f"{stamp} {item.kind.label} {text}"
