#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import shlex
import sys
import time
from pathlib import Path
from queue import Empty, Queue
from typing import Any

from changes import change_to_dict, classify_change
from config import FEATURES, ConfigError, load_config, resolve_context
from git_status import GitStatus
from process_runner import (
    Exited,
    ProcessOrchestrator,
    SpawnError,
    StderrLine,
    StdoutLine,
    build_agent_command,
    describe_record,
)
from reconcile import DashboardState, Reconciler, run_in_thread, run_inline
from sessions import LoaderError, load_sessions
from team_model import AGENT_STATUS_ICONS
from transcript import TranscriptError, format_item, open_transcript, poll_appended
from watcher import ChangeWatcher


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def die(msg: str, code: int = 1) -> None:
    print(f"Error: {msg}", file=sys.stderr)
    raise SystemExit(code)


def configure_logging(log_file: str | None, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        # stderr shares the terminal with the dashboard; only warnings go there.
        handler = logging.StreamHandler(sys.stderr)
        level = logging.DEBUG if verbose else logging.WARNING
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def resolve_project_dir(project_arg: str | None) -> Path:
    project = Path(project_arg).expanduser() if project_arg else Path.cwd()
    if not project.is_dir():
        die(f"--project is not a directory: {project}")
    return project.resolve()


def load_ctx(args: argparse.Namespace) -> tuple[dict[str, Any], dict[str, Any]]:
    project_dir = resolve_project_dir(args.project)
    config, config_path = load_config(project_dir, args.config)
    ctx = resolve_context(project_dir, config, args.claude_home, config_path=config_path)
    return config, ctx


def to_env(ctx: dict[str, Any]) -> str:
    plain = {
        "PROJECT_DIR": ctx["project_dir"],
        "PROJECT_NAME": ctx["project_name"],
        "CLAUDE_HOME": ctx["claude_home"],
        "ENCODED_PROJECT": ctx["encoded_project"],
        "SESSIONS_DIR": ctx["sessions_dir"],
        "TEAMS_DIR": ctx["teams_dir"],
        "TASKS_DIR": ctx["tasks_dir"],
        "TODOS_DIR": ctx["todos_dir"],
        "PLANS_DIR": ctx["plans_dir"],
        "GIT_DIR": ctx["git_dir"],
        "CONFIG_PATH": ctx["config_path"],
        "CLAUDE_BIN": ctx["claude_bin"],
        "TABS_JSON": json.dumps(ctx["tabs"], ensure_ascii=False),
    }
    return "\n".join(f"{k}={shlex.quote(v)}" for k, v in plain.items())


def cmd_paths(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    if args.format == "env":
        print(to_env(ctx))
        return
    print(json.dumps(ctx, ensure_ascii=False, indent=2))


def cmd_classify(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    for path in args.paths:
        change = classify_change(path, ctx["encoded_project"])
        row = {"path": path, "change": change_to_dict(change) if change else None}
        print(json.dumps(row, ensure_ascii=False))


def _default_transcript(ctx: dict[str, Any]) -> Path:
    try:
        sessions = load_sessions(ctx["sessions_dir"])
    except LoaderError as exc:
        die(str(exc))
    if not sessions:
        die(f"no sessions found in {ctx['sessions_dir']}")
    return sessions[0].path


def cmd_tail(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    path = Path(args.path) if args.path else _default_transcript(ctx)
    lines = args.lines or ctx["tail_lines"]

    state = open_transcript(path, lines)
    for item in state.items:
        print(format_item(item))
    if not args.follow:
        return

    shown = state.items
    printed = len(shown)
    interval = ctx["tick_rate_ms"] / 1000.0
    try:
        while True:
            time.sleep(interval)
            if not poll_appended(state):
                continue
            if state.items is not shown:
                # The file shrank and the tail was reloaded.
                shown, printed = state.items, 0
            for item in shown[printed:]:
                print(format_item(item), flush=True)
            printed = len(shown)
    except KeyboardInterrupt:
        return


def cmd_watch(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    channel: Queue = Queue()
    watcher = ChangeWatcher(ctx, channel, force_polling=args.poll or None)
    targets = watcher.start()
    if not targets:
        watcher.stop()
        die("nothing to watch: no enabled directory exists")
    for target in targets:
        print(f"# watching {target.path} ({target.feature})", file=sys.stderr, flush=True)

    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        while deadline is None or time.monotonic() < deadline:
            try:
                change = channel.get(timeout=0.25)
            except Empty:
                continue
            print(json.dumps(change_to_dict(change), ensure_ascii=False), flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()


def cmd_run(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    command = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        if not args.prompt:
            die("run requires --prompt or a command after --")
        command = build_agent_command(args.prompt, ctx["claude_bin"])

    channel: Queue = Queue()
    orchestrator = ProcessOrchestrator(channel)
    try:
        orchestrator.spawn(1, command, ctx["project_dir"])
    except SpawnError as exc:
        die(str(exc))

    success = False
    try:
        while True:
            event = channel.get()
            if isinstance(event, StdoutLine):
                print(event.text, flush=True)
            elif isinstance(event, StderrLine):
                print(event.text, file=sys.stderr, flush=True)
            elif isinstance(event, Exited):
                success = event.success
                break
    except KeyboardInterrupt:
        orchestrator.kill(1)
    raise SystemExit(0 if success else 1)


def _build_reconciler(ctx: dict[str, Any], background: Any = None) -> Reconciler:
    return Reconciler(ctx, background=background or run_in_thread)


def _dashboard_payload(ctx: dict[str, Any], state: DashboardState, transcript_lines: int = 20) -> dict[str, Any]:
    transcript = state.visible_transcript()
    team = state.selected_team()
    git: GitStatus = state.git_status
    return {
        "project_dir": ctx["project_dir"],
        "sessions_dir": ctx["sessions_dir"],
        "follow": state.follow_mode,
        "sessions": [
            {
                "session_id": s.session_id,
                "name": s.display_name(),
                "modified": s.modified,
                "git_branch": s.git_branch,
                "selected": idx == state.session_index,
            }
            for idx, s in enumerate(state.sessions)
        ],
        "transcript": {
            "path": str(transcript.path) if transcript else "",
            "items": [format_item(i) for i in transcript.items[-transcript_lines:]] if transcript else [],
            "subagent": state.subagents[state.subagent_index].agent_id if state.viewing_subagent else "",
            "subagents": [s.agent_id for s in state.subagents],
        },
        "teams": [
            {"name": t.name, "members": len(t.members), "selected": t is team}
            for t in state.teams
        ],
        "agents": [
            {"name": name, "status": status}
            for name, status in state.agent_statuses.items()
        ],
        "tasks": [
            {"id": t.id, "subject": t.subject, "status": t.status, "owner": t.owner}
            for t in state.tasks
        ],
        "todos": [
            {"file": f.display_name(), "items": [f"{i.status_icon()} {i.content}" for i in f.items]}
            for f in state.todos
        ],
        "plans": [{"file": p.filename, "title": p.title} for p in state.plans],
        "git": {
            "staged": [e.path for e in git.staged],
            "unstaged": [e.path for e in git.unstaged],
            "untracked": [e.path for e in git.untracked],
        },
        "processes": [describe_record(p) for p in state.processes],
        "last_error": state.last_error,
    }


def _render_dashboard_text(payload: dict[str, Any]) -> str:
    lines: list[str] = []
    lines.append(f"Project: {payload.get('project_dir', '')}")
    lines.append(f"Sessions dir: {payload.get('sessions_dir', '')}")
    lines.append(f"Follow: {'on' if payload.get('follow') else 'off'}")
    lines.append("")

    sessions = payload.get("sessions", [])
    lines.append(f"Sessions: {len(sessions)}")
    for s in sessions:
        marker = "*" if s.get("selected") else " "
        branch = f" [{s['git_branch']}]" if s.get("git_branch") else ""
        lines.append(f" {marker} {s.get('session_id', '')[:8]} {s.get('name', '')}{branch}")

    transcript = payload.get("transcript", {})
    if transcript.get("path"):
        lines.append("")
        lines.append(f"Transcript: {transcript['path']}")
        for item in transcript.get("items", []):
            lines.append(f"  {item}")

    teams = payload.get("teams", [])
    if teams:
        lines.append("")
        lines.append(f"Teams: {len(teams)}")
        for t in teams:
            marker = "*" if t.get("selected") else " "
            lines.append(f" {marker} {t['name']} members={t['members']}")
        for agent in payload.get("agents", []):
            icon = AGENT_STATUS_ICONS.get(agent["status"], "[?]")
            lines.append(f"    {icon} {agent['name']} ({agent['status']})")
        for task in payload.get("tasks", []):
            lines.append(f"    #{task['id']} [{task['status']}] {task['subject']} owner={task['owner'] or '-'}")

    todos = payload.get("todos", [])
    if todos:
        lines.append("")
        lines.append(f"Todos: {len(todos)}")
        for todo in todos:
            lines.append(f"  {todo['file']}")
            for item in todo["items"]:
                lines.append(f"    {item}")

    plans = payload.get("plans", [])
    if plans:
        lines.append("")
        lines.append(f"Plans: {len(plans)}")
        for plan in plans:
            lines.append(f"  {plan['file']}: {plan['title']}")

    git = payload.get("git", {})
    lines.append("")
    lines.append(
        "Git: "
        f"staged={len(git.get('staged', []))} "
        f"unstaged={len(git.get('unstaged', []))} "
        f"untracked={len(git.get('untracked', []))}"
    )

    processes = payload.get("processes", [])
    if processes:
        lines.append("")
        lines.append(f"Processes: {len(processes)}")
        for proc in processes:
            lines.append(f"  {proc['label']} [{proc['status']}] {proc['title']}")

    if payload.get("last_error"):
        lines.append("")
        lines.append(f"Last error: {payload['last_error']}")
    return "\n".join(lines)


def initial_tab(tabs: dict[str, bool]) -> str:
    return next((f"{feature}_tab" for feature in FEATURES if tabs.get(feature, True)), "processes_tab")


def _run_dashboard_tui(args: argparse.Namespace, ctx: dict[str, Any]) -> None:
    try:
        from rich.text import Text
        from textual.app import App, ComposeResult
        from textual.containers import Container, Horizontal, Vertical
        from textual.screen import ModalScreen
        from textual.widgets import DataTable, Input, Static, TabbedContent, TabPane
    except ModuleNotFoundError:
        die("Textual is not installed. Install with: pip install textual")

    reconciler = _build_reconciler(ctx)
    watcher = ChangeWatcher(ctx, reconciler.channel)
    tick_seconds = ctx["tick_rate_ms"] / 1000.0
    tabs = ctx["tabs"]

    class PromptModal(ModalScreen[str]):
        CSS = """
        #prompt_center {
            width: 1fr;
            height: 1fr;
            align: center middle;
        }

        #prompt_dialog {
            width: 90;
            height: auto;
            border: round #4d6f99;
            padding: 1 2;
            layout: vertical;
        }
        """
        BINDINGS = [("escape", "cancel", "Cancel")]

        def compose(self) -> ComposeResult:
            with Container(id="prompt_center"):
                with Vertical(id="prompt_dialog"):
                    yield Static("Prompt for a new agent (Enter to launch, Esc to cancel)")
                    yield Input(placeholder="Describe the task...", id="prompt_input")

        def on_mount(self) -> None:
            self.query_one("#prompt_input", Input).focus()

        def on_input_submitted(self, event: Input.Submitted) -> None:
            self.dismiss(event.value)

        def action_cancel(self) -> None:
            self.dismiss("")

    class DashboardTui(App[None]):
        ENABLE_COMMAND_PALETTE = False
        CSS = """
        Screen {
            layout: vertical;
            background: ansi_default;
        }

        #meta {
            height: 3;
            padding: 0 1;
            color: #dce9ff;
        }

        #tabs {
            height: 1fr;
        }

        #sessions_row,
        #teams_row {
            height: 1fr;
        }

        #session_table {
            width: 40%;
            border: round #5d8761;
        }

        #transcript {
            width: 60%;
            border: round #4d6f99;
            overflow-y: auto;
            padding: 0 1;
        }

        #team_table,
        #member_table {
            width: 1fr;
            border: round #9a7a40;
        }

        #task_table,
        #inbox_table {
            height: 1fr;
            border: round #4d6f99;
        }

        #todos_body,
        #plans_body,
        #git_body {
            overflow-y: auto;
            padding: 0 1;
        }

        #process_table {
            height: 40%;
            border: round #9a7a40;
        }

        #process_output {
            height: 1fr;
            overflow-y: auto;
            border: round #4d6f99;
            padding: 0 1;
        }
        """
        BINDINGS = [
            ("q", "quit", "Quit"),
            ("f", "toggle_follow", "Follow"),
            ("s", "cycle_subagent", "Subagent"),
            ("p", "new_agent", "Prompt"),
            ("x", "kill_process", "Kill"),
        ]

        def compose(self) -> ComposeResult:
            yield Static(id="meta")
            with TabbedContent(initial=initial_tab(tabs), id="tabs"):
                if tabs.get("sessions", True):
                    with TabPane("Sessions", id="sessions_tab"):
                        with Horizontal(id="sessions_row"):
                            yield DataTable(id="session_table")
                            yield Static(id="transcript")
                if tabs.get("teams", True):
                    with TabPane("Teams", id="teams_tab"):
                        with Horizontal(id="teams_row"):
                            yield DataTable(id="team_table")
                            yield DataTable(id="member_table")
                        yield DataTable(id="task_table")
                        yield DataTable(id="inbox_table")
                if tabs.get("todos", True):
                    with TabPane("Todos", id="todos_tab"):
                        yield Static(id="todos_body")
                if tabs.get("git", True):
                    with TabPane("Git", id="git_tab"):
                        yield Static(id="git_body")
                if tabs.get("plans", True):
                    with TabPane("Plans", id="plans_tab"):
                        yield Static(id="plans_body")
                with TabPane("Processes", id="processes_tab"):
                    yield DataTable(id="process_table")
                    yield Static(id="process_output")

        def on_mount(self) -> None:
            self.title = "assoc"
            self.sub_title = "q quit | f follow | s subagent | p new agent | x kill"
            columns = {
                "#session_table": ("Session", "Modified", "Branch"),
                "#team_table": ("Team", "Members"),
                "#member_table": ("Agent", "Status", "Model"),
                "#task_table": ("#", "Subject", "Status", "Owner"),
                "#inbox_table": ("From", "Time", "Message"),
                "#process_table": ("Label", "Status", "Source", "Title"),
            }
            for selector, names in columns.items():
                for table in self.query(selector).results(DataTable):
                    table.zebra_stripes = True
                    table.cursor_type = "row"
                    table.add_columns(*names)

            reconciler.load_all()
            watcher.start()
            self._render_state()
            self.set_interval(tick_seconds, self._on_tick)

        def _on_tick(self) -> None:
            reconciler.tick(0)
            if reconciler.take_dirty():
                self._render_state()

        @staticmethod
        def _fill_table(table: DataTable, rows: list[tuple[Any, ...]], selected: int = 0) -> None:
            cursor_row = table.cursor_row if table.row_count else selected
            table.clear()
            for row in rows:
                table.add_row(*row)
            if rows:
                table.move_cursor(row=max(0, min(cursor_row, len(rows) - 1)), animate=False)

        def _table(self, selector: str) -> DataTable | None:
            for table in self.query(selector).results(DataTable):
                return table
            return None

        def _static(self, selector: str) -> Static | None:
            for widget in self.query(selector).results(Static):
                return widget
            return None

        def _render_state(self) -> None:
            state = reconciler.state
            payload = _dashboard_payload(ctx, state, transcript_lines=ctx["tail_lines"])

            meta = Text(f"{ctx['project_name']}  ", style="bold")
            meta.append(f"follow={'on' if state.follow_mode else 'off'}  ", style="dim")
            meta.append(f"processes={len(state.processes)}", style="dim")
            if state.last_error:
                meta.append(f"\n{state.last_error}", style="bold red")
            self.query_one("#meta", Static).update(meta)

            table = self._table("#session_table")
            if table is not None:
                self._fill_table(
                    table,
                    [(s["name"], s["modified"][:19], s["git_branch"]) for s in payload["sessions"]],
                    state.session_index,
                )
                transcript = payload["transcript"]
                body = Text()
                if transcript["subagent"]:
                    body.append(f"subagent {transcript['subagent']}\n", style="bold #9a7a40")
                for line in transcript["items"]:
                    body.append(f"{line}\n")
                self.query_one("#transcript", Static).update(body)

            team_table = self._table("#team_table")
            if team_table is not None:
                self._fill_table(
                    team_table,
                    [(t["name"], str(t["members"])) for t in payload["teams"]],
                    state.team_index,
                )
                team = state.selected_team()
                members = team.members if team else []
                self._fill_table(
                    self.query_one("#member_table", DataTable),
                    [
                        (
                            m.name,
                            f"{AGENT_STATUS_ICONS.get(state.agent_statuses.get(m.name, ''), '[?]')} "
                            f"{state.agent_statuses.get(m.name, '')}",
                            m.model,
                        )
                        for m in members
                    ],
                    state.member_index,
                )
                self._fill_table(
                    self.query_one("#task_table", DataTable),
                    [(t["id"], t["subject"], t["status"], t["owner"]) for t in payload["tasks"]],
                )
                self._fill_table(
                    self.query_one("#inbox_table", DataTable),
                    [(m.sender, m.timestamp[:19], m.display_text()) for m in state.inbox_messages],
                )

            todos = self._static("#todos_body")
            if todos is not None:
                text = Text()
                for todo in payload["todos"]:
                    text.append(f"{todo['file']}\n", style="bold")
                    for item in todo["items"]:
                        text.append(f"  {item}\n")
                todos.update(text if payload["todos"] else Text("No todos", style="dim"))

            plans = self._static("#plans_body")
            if plans is not None:
                text = Text()
                for plan in state.plans:
                    text.append(f"{plan.title}\n", style="bold")
                    text.append(f"  {plan.filename}\n", style="dim")
                plans.update(text if state.plans else Text("No plans", style="dim"))

            git = self._static("#git_body")
            if git is not None:
                text = Text()
                for section, style in (("staged", "green"), ("unstaged", "yellow"), ("untracked", "red")):
                    entries = payload["git"][section]
                    text.append(f"{section.capitalize()} ({len(entries)})\n", style=f"bold {style}")
                    for path in entries:
                        text.append(f"  {path}\n", style=style)
                git.update(text)

            process_table = self.query_one("#process_table", DataTable)
            self._fill_table(
                process_table,
                [(p["label"], p["status"], p["source"], p["title"]) for p in payload["processes"]],
            )
            record = self._selected_process()
            output = Text()
            if record is not None:
                for line in list(record.progress_lines)[-200:] or list(record.output_lines)[-200:]:
                    output.append(f"{line}\n")
                for line in list(record.error_lines)[-20:]:
                    output.append(f"{line}\n", style="red")
            self.query_one("#process_output", Static).update(output)

        def _selected_process(self) -> Any:
            processes = reconciler.state.processes
            if not processes:
                return None
            table = self.query_one("#process_table", DataTable)
            return processes[max(0, min(table.cursor_row, len(processes) - 1))]

        def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
            table_id = getattr(event.data_table, "id", "")
            row = event.cursor_row
            if table_id == "session_table":
                reconciler.select_session(row)
            elif table_id == "team_table":
                reconciler.select_team(row)
            elif table_id == "member_table":
                reconciler.select_member(row)
            if reconciler.take_dirty() or table_id == "process_table":
                self._render_state()

        def action_toggle_follow(self) -> None:
            reconciler.toggle_follow()
            self._render_state()

        def action_cycle_subagent(self) -> None:
            reconciler.cycle_subagent()
            self._render_state()

        def action_kill_process(self) -> None:
            record = self._selected_process()
            if record is not None and reconciler.kill_process(record.id):
                self._render_state()

        def action_new_agent(self) -> None:
            def on_close(prompt: str | None) -> None:
                if prompt and prompt.strip():
                    reconciler.spawn_agent(prompt.strip())
                self._render_state()

            self.push_screen(PromptModal(), on_close)

    try:
        DashboardTui().run()
    finally:
        watcher.stop()
        reconciler.shutdown()


def cmd_dashboard(args: argparse.Namespace) -> None:
    _, ctx = load_ctx(args)
    if args.format == "tui" and sys.stdin.isatty() and sys.stdout.isatty():
        _run_dashboard_tui(args, ctx)
        return

    # Headless: one synchronous snapshot, background loads run inline.
    reconciler = _build_reconciler(ctx, background=run_inline)
    reconciler.load_all()
    reconciler.tick(0)
    payload = _dashboard_payload(ctx, reconciler.state)
    if args.format == "json":
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    print(_render_dashboard_text(payload))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="assoc live session dashboard")
    parser.add_argument("--log-file", dest="log_file", help="Write logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project", help="Project directory (default: current directory)")
        p.add_argument("--claude-home", dest="claude_home",
                       help="Claude data directory override")
        p.add_argument("--config", help="Config path override")

    p_paths = sub.add_parser("paths")
    add_common(p_paths)
    p_paths.add_argument("--format", choices=["json", "env"], default="json")
    p_paths.set_defaults(fn=cmd_paths)

    p_classify = sub.add_parser("classify")
    add_common(p_classify)
    p_classify.add_argument("paths", nargs="+")
    p_classify.set_defaults(fn=cmd_classify)

    p_tail = sub.add_parser("tail")
    add_common(p_tail)
    p_tail.add_argument("path", nargs="?", help="Transcript file (default: newest session)")
    p_tail.add_argument("--lines", type=int)
    p_tail.add_argument("--follow", action="store_true")
    p_tail.set_defaults(fn=cmd_tail)

    p_watch = sub.add_parser("watch")
    add_common(p_watch)
    p_watch.add_argument("--duration", type=float, help="Stop after this many seconds")
    p_watch.add_argument("--poll", action="store_true", help="Force polling instead of OS notifications")
    p_watch.set_defaults(fn=cmd_watch)

    p_run = sub.add_parser("run")
    add_common(p_run)
    p_run.add_argument("--prompt")
    p_run.add_argument("command", nargs=argparse.REMAINDER)
    p_run.set_defaults(fn=cmd_run)

    p_dashboard = sub.add_parser("dashboard")
    add_common(p_dashboard)
    p_dashboard.add_argument(
        "--format", choices=["text", "json", "tui"], default="tui")
    p_dashboard.set_defaults(fn=cmd_dashboard)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.log_file, args.verbose)

    if getattr(args, "cmd", "") == "tail" and args.lines is not None and args.lines < 1:
        die("--lines must be >= 1")

    try:
        args.fn(args)
    except (ConfigError, LoaderError, TranscriptError) as exc:
        die(str(exc))


if __name__ == "__main__":
    main()
