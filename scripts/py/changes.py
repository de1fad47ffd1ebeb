from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class SessionIndexChanged:
    pass


@dataclass(frozen=True)
class TranscriptAppended:
    path: str


@dataclass(frozen=True)
class SubagentTranscriptAppended:
    path: str


@dataclass(frozen=True)
class TeamConfigChanged:
    team: str


@dataclass(frozen=True)
class TeamInboxChanged:
    team: str
    agent: str = ""


@dataclass(frozen=True)
class TaskFileChanged:
    team: str


@dataclass(frozen=True)
class TodoFileChanged:
    path: str


@dataclass(frozen=True)
class GitRepoChanged:
    pass


@dataclass(frozen=True)
class PlanFileChanged:
    path: str


Change = Union[
    SessionIndexChanged,
    TranscriptAppended,
    SubagentTranscriptAppended,
    TeamConfigChanged,
    TeamInboxChanged,
    TaskFileChanged,
    TodoFileChanged,
    GitRepoChanged,
    PlanFileChanged,
]

GIT_NOISE = object()


def normalize_path(path: str) -> str:
    return str(path).replace("\\", "/")


def segment_after(path: str, prefix: str) -> str:
    """First path segment following ``prefix`` (e.g. the team name after ``teams/``)."""
    idx = path.find(prefix)
    if idx < 0:
        return ""
    rest = path[idx + len(prefix):]
    return rest.split("/", 1)[0]


def _in_git_dir(path: str) -> bool:
    return "/.git/" in path or path.endswith("/.git")


def _git_change(path: str, _encoded: str) -> object:
    if path.endswith("/HEAD") or path.endswith("/index") or "/refs/" in path:
        return GitRepoChanged()
    return GIT_NOISE


def _project_prefix(encoded: str) -> str:
    return f"projects/{encoded}/"


def _is_session_index(path: str, encoded: str) -> bool:
    return path.endswith(f"{_project_prefix(encoded)}sessions-index.json")


def _is_subagent_transcript(path: str, encoded: str) -> bool:
    return _project_prefix(encoded) in path and "/subagents/" in path and path.endswith(".jsonl")


def _is_transcript(path: str, encoded: str) -> bool:
    return _project_prefix(encoded) in path and path.endswith(".jsonl")


def _is_team_config(path: str, _encoded: str) -> bool:
    team = segment_after(path, "teams/")
    return bool(team) and path.endswith(f"teams/{team}/config.json")


def _is_team_inbox(path: str, _encoded: str) -> bool:
    team = segment_after(path, "teams/")
    return bool(team) and f"teams/{team}/inboxes/" in path


def _team_inbox(path: str, _encoded: str) -> TeamInboxChanged:
    team = segment_after(path, "teams/")
    agent = segment_after(path, f"teams/{team}/inboxes/")
    return TeamInboxChanged(team, PurePosixPath(agent).stem if agent else "")


def _is_task_file(path: str, _encoded: str) -> bool:
    team = segment_after(path, "tasks/")
    return bool(team) and f"tasks/{team}/" in path and path.endswith(".json")


def _is_todo_file(path: str, _encoded: str) -> bool:
    return "todos/" in path and path.endswith(".json")


def _is_plan_file(path: str, _encoded: str) -> bool:
    return "plans/" in path and path.endswith(".md")


Rule = tuple[Callable[[str, str], bool], Callable[[str, str], object]]

# Evaluated top to bottom; the first matching predicate decides the change.
CLASSIFY_RULES: list[Rule] = [
    (lambda p, _e: _in_git_dir(p), _git_change),
    (_is_session_index, lambda _p, _e: SessionIndexChanged()),
    (_is_subagent_transcript, lambda p, _e: SubagentTranscriptAppended(p)),
    (_is_transcript, lambda p, _e: TranscriptAppended(p)),
    (_is_team_config, lambda p, _e: TeamConfigChanged(segment_after(p, "teams/"))),
    (_is_team_inbox, _team_inbox),
    (_is_task_file, lambda p, _e: TaskFileChanged(segment_after(p, "tasks/"))),
    (_is_todo_file, lambda p, _e: TodoFileChanged(p)),
    (_is_plan_file, lambda p, _e: PlanFileChanged(p)),
]


def classify_change(path: str, encoded_project: str) -> Optional[Change]:
    normalized = normalize_path(path)
    for predicate, build in CLASSIFY_RULES:
        if not predicate(normalized, encoded_project):
            continue
        change = build(normalized, encoded_project)
        if change is GIT_NOISE:
            return None
        return change  # type: ignore[return-value]
    return None


def change_kind(change: Change) -> str:
    return type(change).__name__


def change_to_dict(change: Change) -> dict[str, str]:
    payload = {"kind": change_kind(change)}
    payload.update({key: str(value) for key, value in vars(change).items()})
    return payload
