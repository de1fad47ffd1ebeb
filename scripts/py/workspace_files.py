from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from sessions import LoaderError, read_json_file


TODO_STATUS_ICONS = {
    "completed": "[X]",
    "in_progress": "[=]",
}


@dataclass(frozen=True)
class TodoItem:
    content: str
    status: str = "pending"
    active_form: str = ""

    def status_icon(self) -> str:
        return TODO_STATUS_ICONS.get(self.status, "[ ]")


@dataclass
class TodoFile:
    filename: str
    items: list[TodoItem] = field(default_factory=list)

    def display_name(self) -> str:
        if len(self.filename) > 30:
            return f"{self.filename[:27]}..."
        return self.filename


@dataclass
class PlanFile:
    filename: str
    title: str
    modified: float
    lines: list[str] = field(default_factory=list)

    def display_name(self) -> str:
        return self.filename[:-3] if self.filename.endswith(".md") else self.filename


def load_todos(todos_dir: str | Path) -> list[TodoFile]:
    """Non-empty todo lists, most recently modified first."""
    base = Path(todos_dir)
    if not base.is_dir():
        return []

    files: list[tuple[float, TodoFile]] = []
    for todo_path in base.glob("*.json"):
        try:
            payload = read_json_file(todo_path)
            modified = todo_path.stat().st_mtime
        except (LoaderError, OSError):
            continue
        if not isinstance(payload, list):
            continue
        items = [
            TodoItem(
                content=str(row.get("content") or "(empty)"),
                status=str(row.get("status") or "pending"),
                active_form=str(row.get("activeForm") or ""),
            )
            for row in payload
            if isinstance(row, dict)
        ]
        if items:
            files.append((modified, TodoFile(filename=todo_path.name, items=items)))

    files.sort(key=lambda pair: pair[0], reverse=True)
    return [todo for _, todo in files]


def _plan_title(lines: list[str], fallback: str) -> str:
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("#"):
            return stripped.lstrip("#").strip() or fallback
    return fallback


def load_plans(plans_dir: str | Path) -> list[PlanFile]:
    base = Path(plans_dir)
    if not base.is_dir():
        return []

    plans: list[PlanFile] = []
    for plan_path in base.glob("*.md"):
        try:
            text = plan_path.read_text(encoding="utf-8", errors="replace")
            modified = plan_path.stat().st_mtime
        except OSError as exc:
            raise LoaderError(f"unable to read {plan_path}: {exc}") from exc
        lines = text.splitlines()
        plans.append(
            PlanFile(
                filename=plan_path.name,
                title=_plan_title(lines, plan_path.stem),
                modified=modified,
                lines=lines,
            )
        )
    return sorted(plans, key=lambda plan: plan.modified, reverse=True)
