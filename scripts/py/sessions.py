from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

SESSION_INDEX_FILE = "sessions-index.json"


class LoaderError(RuntimeError):
    pass


@dataclass(frozen=True)
class SessionEntry:
    session_id: str
    path: Path
    summary: str = ""
    first_prompt: str = ""
    message_count: int = 0
    modified: str = ""
    git_branch: str = ""

    def display_name(self) -> str:
        text = self.summary or self.first_prompt or self.session_id
        text = " ".join(text.split())
        if len(text) > 60:
            return f"{text[:57]}..."
        return text


@dataclass(frozen=True)
class SubagentInfo:
    agent_id: str
    path: Path


def read_json_file(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise LoaderError(f"invalid JSON in {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise LoaderError(f"invalid UTF-8 in {path}: {exc}") from exc
    except OSError as exc:
        raise LoaderError(f"unable to read {path}: {exc}") from exc


def _mtime_iso(path: Path) -> str:
    try:
        stamp = path.stat().st_mtime
    except OSError:
        return ""
    return datetime.fromtimestamp(stamp, tz=timezone.utc).isoformat()


def _entry_from_index(row: dict[str, Any], sessions_dir: Path) -> SessionEntry | None:
    session_id = row.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return None
    full_path = row.get("fullPath")
    path = Path(full_path) if isinstance(full_path, str) and full_path else sessions_dir / f"{session_id}.jsonl"
    count = row.get("messageCount")
    return SessionEntry(
        session_id=session_id,
        path=path,
        summary=str(row.get("summary") or ""),
        first_prompt=str(row.get("firstPrompt") or ""),
        message_count=count if isinstance(count, int) else 0,
        modified=str(row.get("modified") or ""),
        git_branch=str(row.get("gitBranch") or ""),
    )


def load_sessions(sessions_dir: str | Path) -> list[SessionEntry]:
    """Sessions for one project, newest first.

    Entries come from ``sessions-index.json`` when present; transcripts on
    disk that the index does not know about yet are appended from a
    directory scan so a freshly started session shows up immediately.
    """
    base = Path(sessions_dir)
    if not base.is_dir():
        return []

    entries: dict[str, SessionEntry] = {}
    index_path = base / SESSION_INDEX_FILE
    if index_path.is_file():
        payload = read_json_file(index_path)
        rows = payload.get("entries") if isinstance(payload, dict) else payload
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict) or row.get("isSidechain"):
                continue
            entry = _entry_from_index(row, base)
            if entry is not None:
                entries[entry.session_id] = entry

    for transcript in base.glob("*.jsonl"):
        if transcript.stem in entries:
            continue
        entries[transcript.stem] = SessionEntry(
            session_id=transcript.stem,
            path=transcript,
            modified=_mtime_iso(transcript),
        )

    return sorted(entries.values(), key=lambda e: e.modified, reverse=True)


def find_subagents(sessions_dir: str | Path, session_id: str) -> list[SubagentInfo]:
    """Subagent transcripts under ``<sessions_dir>/<session_id>/subagents``."""
    subagents_dir = Path(sessions_dir) / session_id / "subagents"
    if not subagents_dir.is_dir():
        return []

    results: list[SubagentInfo] = []
    for path in subagents_dir.glob("*.jsonl"):
        stem = path.stem
        agent_id = stem[len("agent-"):] if stem.startswith("agent-") else stem
        if agent_id:
            results.append(SubagentInfo(agent_id=agent_id, path=path))
    return sorted(results, key=lambda info: info.agent_id)
