from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from process_runner import TicketSource


@dataclass
class TicketInfo:
    source: TicketSource
    key: str
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    url: str = ""
    extra_fields: list[tuple[str, str]] = field(default_factory=list)


def _str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _login(node: Any) -> str:
    if isinstance(node, dict):
        return _str(node.get("login"))
    return ""


def _label_names(labels: Any) -> list[str]:
    if isinstance(labels, dict):
        labels = labels.get("nodes")
    if not isinstance(labels, list):
        return []
    names: list[str] = []
    for label in labels:
        if isinstance(label, dict) and label.get("name"):
            names.append(str(label["name"]))
        elif isinstance(label, str) and label:
            names.append(label)
    return names


def ticket_from_github_pr(pr: dict[str, Any]) -> TicketInfo:
    """Ticket from a ``gh pr list --json`` row."""
    number = _str(pr.get("number"))
    head = _str(pr.get("headRefName"))
    base = _str(pr.get("baseRefName"))
    extra = [("Branch", head), ("Base", base), ("Author", _login(pr.get("author")))]
    if pr.get("reviewDecision"):
        extra.append(("Review Status", _str(pr.get("reviewDecision"))))
    return TicketInfo(
        source=TicketSource.GITHUB_PR,
        key=f"#{number}",
        title=_str(pr.get("title")),
        description=(
            f"GitHub PR #{number} - {_str(pr.get('title'))}\n"
            f"Branch: {head} -> {base}\n"
            f"Additions: {_str(pr.get('additions'))}, Deletions: {_str(pr.get('deletions'))}"
        ),
        labels=_label_names(pr.get("labels")),
        url=_str(pr.get("url")),
        extra_fields=extra,
    )


def ticket_from_github_issue(issue: dict[str, Any]) -> TicketInfo:
    extra = [("Author", _login(issue.get("author"))), ("State", _str(issue.get("state")))]
    assignees = [_login(a) for a in issue.get("assignees") or [] if _login(a)]
    if assignees:
        extra.append(("Assignees", ", ".join(assignees)))
    milestone = issue.get("milestone")
    if isinstance(milestone, dict) and milestone.get("title"):
        extra.append(("Milestone", _str(milestone["title"])))
    return TicketInfo(
        source=TicketSource.GITHUB_ISSUE,
        key=f"#{_str(issue.get('number'))}",
        title=_str(issue.get("title")),
        description=_str(issue.get("body")),
        labels=_label_names(issue.get("labels")),
        url=_str(issue.get("url")),
        extra_fields=extra,
    )


def ticket_from_linear(issue: dict[str, Any]) -> TicketInfo:
    state = issue.get("state") if isinstance(issue.get("state"), dict) else {}
    return TicketInfo(
        source=TicketSource.LINEAR,
        key=_str(issue.get("identifier")),
        title=_str(issue.get("title")),
        description=_str(issue.get("description")),
        labels=_label_names(issue.get("labels")),
        url=_str(issue.get("url")),
        extra_fields=[
            ("Status", _str(state.get("name"))),
            ("Priority", _str(issue.get("priorityLabel"))),
        ],
    )


def ticket_from_jira(issue: dict[str, Any]) -> TicketInfo:
    return TicketInfo(
        source=TicketSource.JIRA,
        key=_str(issue.get("key")),
        title=_str(issue.get("summary")),
        description=_str(issue.get("description")),
        labels=[str(label) for label in issue.get("labels") or []],
        url=_str(issue.get("url")),
        extra_fields=[
            ("Status", _str(issue.get("status"))),
            ("Type", _str(issue.get("issue_type"))),
            ("Priority", _str(issue.get("priority"))),
        ],
    )


def build_default_prompt(ticket: TicketInfo) -> str:
    labels = ", ".join(ticket.labels) if ticket.labels else "None"
    extra_lines = "\n".join(f"- {key}: {value}" for key, value in ticket.extra_fields)
    extra = f"\n## Additional Details\n{extra_lines}" if extra_lines else ""
    description = ticket.description or "No description provided."

    return f"""You are implementing a feature/fix based on the following ticket.

## Ticket Information
- Source: {ticket.source.value}
- Key: {ticket.key}
- Title: {ticket.title}
- Labels: {labels}
- URL: {ticket.url}
{extra}

## Description
{description}

## Instructions

Please complete this ticket by following these steps:

1. **Planning Phase**: Analyze the ticket requirements thoroughly. Read relevant code in the codebase to understand the current architecture. Create a detailed implementation plan.

2. **Implementation Phase**: Implement the changes described in the ticket. Follow existing code patterns and conventions.

3. **Testing Phase**: Run the existing test suite and ensure all tests pass. If the changes warrant new tests, write them.

4. **Quality Check**: Run linters and formatters. Fix any warnings or errors.

5. **PR Creation**: Create a new git branch for this work. Commit all changes with clear commit messages. Push the branch and open a pull request summarizing the changes.

Use subagents to run independent parts of the work in parallel where possible.

Do not ask for user input. Work autonomously to completion."""
