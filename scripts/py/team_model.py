from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sessions import LoaderError, read_json_file


AGENT_STARTING = "starting"
AGENT_WORKING = "working"
AGENT_IDLE = "idle"
AGENT_SHUT_DOWN = "shut down"

AGENT_STATUS_ICONS = {
    AGENT_STARTING: "[~]",
    AGENT_WORKING: "[>]",
    AGENT_IDLE: "[z]",
    AGENT_SHUT_DOWN: "[x]",
}


@dataclass(frozen=True)
class TeamMember:
    name: str
    agent_id: str = ""
    agent_type: str = ""
    model: str = ""
    cwd: str = ""


@dataclass
class Team:
    dir_name: str
    name: str
    description: str = ""
    lead_agent_id: str = ""
    members: list[TeamMember] = field(default_factory=list)

    def lead_name(self) -> str:
        for member in self.members:
            if self.lead_agent_id and member.agent_id == self.lead_agent_id:
                return member.name
        for member in self.members:
            if member.name == "team-lead" or member.agent_type == "team-lead":
                return member.name
        return self.members[0].name if self.members else ""


@dataclass(frozen=True)
class Task:
    id: str
    subject: str
    status: str = "pending"
    owner: str = ""
    description: str = ""
    blocked_by: tuple[str, ...] = ()


@dataclass(frozen=True)
class InboxMessage:
    sender: str
    text: str
    timestamp: str = ""
    read: bool = False

    def message_type(self) -> str:
        payload = _structured_payload(self.text)
        if payload is None:
            return ""
        return str(payload.get("type") or "")

    def display_text(self) -> str:
        payload = _structured_payload(self.text)
        if payload is None:
            return self.text
        return format_structured_message(payload)


def _structured_payload(text: str) -> dict[str, Any] | None:
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def format_structured_message(payload: dict[str, Any]) -> str:
    msg_type = str(payload.get("type") or "")
    if msg_type == "task_assignment":
        return f"[Task #{payload.get('taskId') or '?'}] {payload.get('subject') or '(no subject)'}"
    if msg_type == "idle_notification":
        return f"{payload.get('from') or payload.get('agentName') or 'agent'} is idle"
    if msg_type == "shutdown_request":
        return "Shutdown requested"
    if msg_type == "shutdown_approved":
        return "Shutdown approved"
    if msg_type == "plan_approval_request":
        return f"Plan approval requested by {payload.get('from') or 'agent'}"
    if msg_type == "plan_approval_response":
        if payload.get("approve") is True:
            return "Plan approved"
        content = str(payload.get("content") or "")
        return f"Plan rejected: {content}" if content else "Plan rejected"
    if msg_type == "task_completed":
        return f"Task #{payload.get('taskId') or '?'} completed"
    if msg_type == "message" and isinstance(payload.get("content"), str):
        return payload["content"]

    content = payload.get("content") or payload.get("subject")
    if isinstance(content, str):
        return f"[{msg_type}] {content}"
    return json.dumps(payload, ensure_ascii=False)


def _member_from_row(row: dict[str, Any]) -> TeamMember | None:
    name = row.get("name")
    if not isinstance(name, str) or not name:
        return None
    return TeamMember(
        name=name,
        agent_id=str(row.get("agentId") or ""),
        agent_type=str(row.get("agentType") or ""),
        model=str(row.get("model") or ""),
        cwd=str(row.get("cwd") or ""),
    )


def load_team(team_dir: Path) -> Team | None:
    config_path = team_dir / "config.json"
    if not config_path.is_file():
        return None
    payload = read_json_file(config_path)
    if not isinstance(payload, dict):
        raise LoaderError(f"invalid team config (expected object): {config_path}")

    members = []
    for row in payload.get("members") or []:
        if isinstance(row, dict):
            member = _member_from_row(row)
            if member is not None:
                members.append(member)

    return Team(
        dir_name=team_dir.name,
        name=str(payload.get("name") or team_dir.name),
        description=str(payload.get("description") or ""),
        lead_agent_id=str(payload.get("leadAgentId") or ""),
        members=members,
    )


def load_teams(teams_dir: str | Path, project_dir: str | Path | None = None) -> list[Team]:
    """Teams sorted by name; with ``project_dir`` only teams working in that tree."""
    base = Path(teams_dir)
    if not base.is_dir():
        return []

    project = str(project_dir) if project_dir else ""
    teams: list[Team] = []
    for team_dir in sorted(p for p in base.iterdir() if p.is_dir()):
        team = load_team(team_dir)
        if team is None:
            continue
        cwds = {m.cwd for m in team.members if m.cwd}
        if project and cwds and not any(c == project or c.startswith(f"{project}/") for c in cwds):
            continue
        teams.append(team)
    return teams


def _task_sort_key(task: Task) -> tuple[int, int, str]:
    if task.id.isdigit():
        return (0, int(task.id), "")
    return (1, 0, task.id)


def load_tasks(tasks_dir: str | Path, team_name: str) -> list[Task]:
    base = Path(tasks_dir) / team_name
    if not base.is_dir():
        return []

    tasks: list[Task] = []
    for task_path in base.glob("*.json"):
        try:
            payload = read_json_file(task_path)
        except LoaderError:
            # Task files are rewritten in place; a half-written one is retried on the next change.
            continue
        if not isinstance(payload, dict):
            continue
        blocked = payload.get("blockedBy") or []
        tasks.append(
            Task(
                id=str(payload.get("id") or task_path.stem),
                subject=str(payload.get("subject") or ""),
                status=str(payload.get("status") or "pending"),
                owner=str(payload.get("owner") or ""),
                description=str(payload.get("description") or ""),
                blocked_by=tuple(str(x) for x in blocked) if isinstance(blocked, list) else (),
            )
        )
    return sorted(tasks, key=_task_sort_key)


def load_inbox(teams_dir: str | Path, team_name: str, agent_name: str) -> list[InboxMessage]:
    """Inbox messages for one agent, most recent first."""
    inbox_path = Path(teams_dir) / team_name / "inboxes" / f"{agent_name}.json"
    if not inbox_path.is_file():
        return []
    payload = read_json_file(inbox_path)
    if not isinstance(payload, list):
        raise LoaderError(f"invalid inbox (expected list): {inbox_path}")

    messages = [
        InboxMessage(
            sender=str(row.get("from") or ""),
            text=str(row.get("text") or ""),
            timestamp=str(row.get("timestamp") or ""),
            read=bool(row.get("read")),
        )
        for row in payload
        if isinstance(row, dict)
    ]
    return sorted(messages, key=lambda m: m.timestamp, reverse=True)


def derive_agent_status(member_name: str, lead_inbox: list[InboxMessage], tasks: list[Task]) -> str:
    # The lead's inbox is sorted newest first; the first hit is the agent's latest report.
    latest = next((msg for msg in lead_inbox if msg.sender == member_name), None)
    if latest is not None:
        msg_type = latest.message_type()
        if msg_type == "shutdown_approved":
            return AGENT_SHUT_DOWN
        if msg_type == "idle_notification":
            return AGENT_IDLE

    if any(t.owner == member_name and t.status == "in_progress" for t in tasks):
        return AGENT_WORKING
    if latest is None:
        return AGENT_STARTING
    return AGENT_WORKING


def derive_all_statuses(team: Team, lead_inbox: list[InboxMessage], tasks: list[Task]) -> dict[str, str]:
    return {m.name: derive_agent_status(m.name, lead_inbox, tasks) for m in team.members}
