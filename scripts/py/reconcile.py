from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable

from changes import (
    GitRepoChanged,
    PlanFileChanged,
    SessionIndexChanged,
    SubagentTranscriptAppended,
    TaskFileChanged,
    TeamConfigChanged,
    TeamInboxChanged,
    TodoFileChanged,
    TranscriptAppended,
)
from git_status import GitStatus, load_git_status
from process_runner import (
    Exited,
    ProcessOrchestrator,
    SpawnError,
    SpawnedProcessRecord,
    StderrLine,
    StdoutLine,
    TicketSource,
    build_agent_command,
)
from prompt_builder import TicketInfo, build_default_prompt
from sessions import LoaderError, SessionEntry, SubagentInfo, find_subagents, load_sessions
from team_model import InboxMessage, Task, Team, derive_all_statuses, load_inbox, load_tasks, load_teams
from transcript import TranscriptError, TranscriptState, open_transcript, poll_appended
from workspace_files import PlanFile, TodoFile, load_plans, load_todos


logger = logging.getLogger(__name__)

GIT_LOADER = "git"
TRACKER_PREFIX = "tracker:"

# Leaf failures that become a "last error" instead of escaping the loop.
RECOVERABLE_ERRORS = (LoaderError, TranscriptError, OSError)


@dataclass(frozen=True)
class Loaded:
    """Result of work done off the loop (git status, ticket tracker fetches)."""

    name: str
    value: Any = None
    error: str = ""


@dataclass
class TrackerPoller:
    name: str
    interval: float
    fetch: Callable[[], Any]
    last_run: float | None = None
    in_flight: bool = False


@dataclass
class DashboardState:
    sessions: list[SessionEntry] = field(default_factory=list)
    session_index: int = 0
    loaded_session_id: str | None = None
    follow_mode: bool = True
    transcript: TranscriptState | None = None

    subagents: list[SubagentInfo] = field(default_factory=list)
    subagent_index: int = 0
    viewing_subagent: bool = False
    subagent_transcript: TranscriptState | None = None

    teams: list[Team] = field(default_factory=list)
    team_index: int = 0
    member_index: int = 0
    tasks: list[Task] = field(default_factory=list)
    inbox_messages: list[InboxMessage] = field(default_factory=list)
    agent_statuses: dict[str, str] = field(default_factory=dict)

    todos: list[TodoFile] = field(default_factory=list)
    plans: list[PlanFile] = field(default_factory=list)
    git_status: GitStatus = field(default_factory=GitStatus)

    processes: list[SpawnedProcessRecord] = field(default_factory=list)
    next_process_id: int = 1
    tracker_data: dict[str, Any] = field(default_factory=dict)

    last_error: str | None = None
    last_update: float = 0.0
    dirty: bool = True

    def selected_team(self) -> Team | None:
        if not self.teams:
            return None
        return self.teams[min(self.team_index, len(self.teams) - 1)]

    def visible_transcript(self) -> TranscriptState | None:
        if self.viewing_subagent:
            return self.subagent_transcript
        return self.transcript


def _same_path(left: str | Path, right: str | Path) -> bool:
    return os.path.normpath(str(left)) == os.path.normpath(str(right))


def run_in_thread(name: str, fn: Callable[[], Any], channel: Queue) -> None:
    def worker() -> None:
        try:
            value = fn()
        except Exception as exc:  # surfaced as last_error by the loop
            logger.warning("background load %s failed: %s", name, exc)
            channel.put(Loaded(name, error=f"{type(exc).__name__}: {exc}"))
            return
        channel.put(Loaded(name, value=value))

    threading.Thread(target=worker, name=f"load-{name}", daemon=True).start()


def run_inline(name: str, fn: Callable[[], Any], channel: Queue) -> None:
    """Run a load on the calling thread; the result still arrives through the channel."""
    try:
        value = fn()
    except RECOVERABLE_ERRORS as exc:
        channel.put(Loaded(name, error=str(exc)))
        return
    channel.put(Loaded(name, value=value))


class Reconciler:
    """Single owner of dashboard state.

    Watcher changes, process events and background load results all arrive
    on one queue. ``tick`` drains it, applies each message with exactly one
    refresh operation and raises the dirty flag when something changed.
    Nothing else mutates ``state``.
    """

    def __init__(
        self,
        ctx: dict[str, Any],
        orchestrator: ProcessOrchestrator | None = None,
        channel: Queue | None = None,
        clock: Callable[[], float] = time.monotonic,
        background: Callable[[str, Callable[[], Any], Queue], None] = run_in_thread,
    ) -> None:
        self.ctx = ctx
        if channel is None:
            channel = orchestrator.channel if orchestrator is not None else Queue()
        self.channel: Queue = channel
        self.orchestrator = orchestrator or ProcessOrchestrator(channel)
        self.clock = clock
        self.background = background
        self.state = DashboardState()
        self.pollers: dict[str, TrackerPoller] = {}
        self.tabs: dict[str, bool] = dict(ctx.get("tabs") or {})
        self.tail_lines = int(ctx.get("tail_lines") or 200)
        self.killed: set[int] = set()
        self.git_in_flight = False
        self.git_rerun = False
        self._change_handlers: dict[type, Callable[[Any], bool]] = {
            SessionIndexChanged: lambda _c: self.reload_sessions(),
            TranscriptAppended: self._on_transcript_appended,
            SubagentTranscriptAppended: self._on_subagent_appended,
            TeamConfigChanged: lambda _c: self.reload_teams(),
            TeamInboxChanged: self._on_inbox_changed,
            TaskFileChanged: self._on_tasks_changed,
            TodoFileChanged: lambda _c: self.reload_todos(),
            GitRepoChanged: lambda _c: self.request_git_status(),
            PlanFileChanged: lambda _c: self.reload_plans(),
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def feature_enabled(self, feature: str) -> bool:
        return self.tabs.get(feature, True)

    def tick(self, timeout: float = 0.0) -> bool:
        for message in self._collect(timeout):
            self.dispatch(message)
        self._reap_children()
        self._run_due_pollers()
        return self.state.dirty

    def take_dirty(self) -> bool:
        dirty = self.state.dirty
        self.state.dirty = False
        return dirty

    def _collect(self, timeout: float) -> list[Any]:
        messages: list[Any] = []
        try:
            if timeout > 0:
                messages.append(self.channel.get(timeout=timeout))
            else:
                messages.append(self.channel.get_nowait())
        except Empty:
            return messages
        while True:
            try:
                messages.append(self.channel.get_nowait())
            except Empty:
                return messages

    def dispatch(self, message: Any) -> bool:
        if isinstance(message, (StdoutLine, StderrLine, Exited)):
            changed = self.apply_process_event(message)
        elif isinstance(message, Loaded):
            changed = self.apply_loaded(message)
        else:
            handler = self._change_handlers.get(type(message))
            if handler is None:
                logger.warning("dropping unknown message %r", message)
                return False
            changed = self._guard(type(message).__name__, lambda: handler(message))
        if changed:
            self._mark_dirty()
        return changed

    def _mark_dirty(self) -> None:
        self.state.dirty = True
        self.state.last_update = self.clock()

    def _guard(self, what: str, operation: Callable[[], bool]) -> bool:
        try:
            return operation()
        except RECOVERABLE_ERRORS as exc:
            logger.warning("%s failed: %s", what, exc)
            self.state.last_error = f"{what}: {exc}"
            return True

    # ------------------------------------------------------------------
    # Initial load
    # ------------------------------------------------------------------

    def load_all(self) -> None:
        steps = [
            ("sessions", "Sessions", self.reload_sessions),
            ("teams", "Teams", self.reload_teams),
            ("todos", "Todos", self.reload_todos),
            ("git", "Git", self.request_git_status),
            ("plans", "Plans", self.reload_plans),
        ]
        for feature, what, step in steps:
            if self.feature_enabled(feature):
                self._guard(what, step)
        self._mark_dirty()

    # ------------------------------------------------------------------
    # Sessions and transcripts
    # ------------------------------------------------------------------

    def reload_sessions(self) -> bool:
        state = self.state
        state.sessions = load_sessions(self.ctx["sessions_dir"])
        state.last_error = None
        if state.sessions:
            if state.loaded_session_id is None:
                self.select_session(state.session_index)
            elif state.follow_mode and state.session_index == 0:
                newest = state.sessions[0].session_id
                if newest != state.loaded_session_id:
                    self.select_session(0)
            self._anchor_selection()
        return True

    def _anchor_selection(self) -> None:
        state = self.state
        for idx, entry in enumerate(state.sessions):
            if entry.session_id == state.loaded_session_id:
                state.session_index = idx
                return
        state.session_index = min(state.session_index, len(state.sessions) - 1)

    def select_session(self, index: int) -> bool:
        state = self.state
        if not state.sessions:
            return False
        index = max(0, min(index, len(state.sessions) - 1))
        entry = state.sessions[index]
        state.session_index = index
        if entry.session_id == state.loaded_session_id:
            return False
        changed = self._guard("Sessions", lambda: self._open_session(entry))
        self._mark_dirty()
        return changed

    def _open_session(self, entry: SessionEntry) -> bool:
        # A new selection gets a fresh tailer; the old one is dropped.
        transcript = open_transcript(entry.path, self.tail_lines)
        subagents = find_subagents(self.ctx["sessions_dir"], entry.session_id)
        state = self.state
        state.transcript = transcript
        state.loaded_session_id = entry.session_id
        state.subagents = subagents
        state.subagent_index = 0
        state.viewing_subagent = False
        state.subagent_transcript = None
        return True

    def _on_transcript_appended(self, change: TranscriptAppended) -> bool:
        transcript = self.state.transcript
        if transcript is not None and _same_path(transcript.path, change.path):
            return poll_appended(transcript)
        if not any(_same_path(s.path, change.path) for s in self.state.sessions):
            # A transcript the list has not seen yet: a session just started.
            return self.reload_sessions()
        return False

    def cycle_subagent(self) -> bool:
        state = self.state
        if not state.subagents:
            return False
        if not state.viewing_subagent:
            state.viewing_subagent = True
            state.subagent_index = 0
        else:
            state.subagent_index += 1
            if state.subagent_index >= len(state.subagents):
                state.viewing_subagent = False
                state.subagent_index = 0
                state.subagent_transcript = None
                self._mark_dirty()
                return True

        info = state.subagents[state.subagent_index]
        state.subagent_transcript = self._guarded_open(info.path)
        self._mark_dirty()
        return True

    def _guarded_open(self, path: Path) -> TranscriptState | None:
        try:
            return open_transcript(path, self.tail_lines)
        except TranscriptError as exc:
            self.state.last_error = f"Subagent transcript: {exc}"
            return None

    def _on_subagent_appended(self, change: SubagentTranscriptAppended) -> bool:
        state = self.state
        current = state.subagent_transcript
        if state.viewing_subagent and current is not None and _same_path(current.path, change.path):
            return poll_appended(current)

        session_id = state.loaded_session_id
        if session_id and f"/{session_id}/subagents/" in change.path:
            if not any(_same_path(s.path, change.path) for s in state.subagents):
                state.subagents = find_subagents(self.ctx["sessions_dir"], session_id)
                return True
        return False

    def toggle_follow(self) -> bool:
        self.state.follow_mode = not self.state.follow_mode
        self._mark_dirty()
        return True

    # ------------------------------------------------------------------
    # Teams, tasks, inboxes
    # ------------------------------------------------------------------

    def reload_teams(self) -> bool:
        state = self.state
        state.teams = load_teams(self.ctx["teams_dir"], self.ctx.get("project_dir"))
        if state.teams:
            state.team_index = min(state.team_index, len(state.teams) - 1)
        else:
            state.team_index = 0
        self.reload_tasks()
        self.reload_inbox()
        self.compute_agent_statuses()
        state.last_error = None
        return True

    def select_team(self, index: int) -> bool:
        if not self.state.teams:
            return False
        self.state.team_index = max(0, min(index, len(self.state.teams) - 1))
        self.state.member_index = 0
        changed = self._guard("Teams", self._reload_team_details)
        self._mark_dirty()
        return changed

    def select_member(self, index: int) -> bool:
        team = self.state.selected_team()
        if team is None or not team.members:
            return False
        self.state.member_index = max(0, min(index, len(team.members) - 1))
        changed = self._guard("Inbox", self.reload_inbox)
        self._mark_dirty()
        return changed

    def _reload_team_details(self) -> bool:
        self.reload_tasks()
        self.reload_inbox()
        self.compute_agent_statuses()
        return True

    def reload_tasks(self) -> bool:
        team = self.state.selected_team()
        self.state.tasks = load_tasks(self.ctx["tasks_dir"], team.dir_name) if team else []
        return True

    def reload_inbox(self) -> bool:
        team = self.state.selected_team()
        if team is None or not team.members:
            self.state.inbox_messages = []
            return True
        member = team.members[min(self.state.member_index, len(team.members) - 1)]
        self.state.inbox_messages = load_inbox(self.ctx["teams_dir"], team.dir_name, member.name)
        return True

    def compute_agent_statuses(self) -> bool:
        team = self.state.selected_team()
        if team is None:
            self.state.agent_statuses = {}
            return True
        lead = team.lead_name()
        lead_inbox = load_inbox(self.ctx["teams_dir"], team.dir_name, lead) if lead else []
        self.state.agent_statuses = derive_all_statuses(team, lead_inbox, self.state.tasks)
        return True

    def _is_selected_team(self, team_name: str) -> bool:
        team = self.state.selected_team()
        return team is not None and team.dir_name == team_name

    def _on_inbox_changed(self, change: TeamInboxChanged) -> bool:
        if not self._is_selected_team(change.team):
            return False
        self.reload_inbox()
        self.compute_agent_statuses()
        return True

    def _on_tasks_changed(self, change: TaskFileChanged) -> bool:
        if not self._is_selected_team(change.team):
            return False
        self.reload_tasks()
        self.compute_agent_statuses()
        return True

    # ------------------------------------------------------------------
    # Todos, plans, git
    # ------------------------------------------------------------------

    def reload_todos(self) -> bool:
        self.state.todos = load_todos(self.ctx["todos_dir"])
        return True

    def reload_plans(self) -> bool:
        self.state.plans = load_plans(self.ctx["plans_dir"])
        return True

    def request_git_status(self) -> bool:
        if self.git_in_flight:
            self.git_rerun = True
            return False
        self.git_in_flight = True
        project_dir = self.ctx["project_dir"]
        self.background(GIT_LOADER, lambda: load_git_status(project_dir), self.channel)
        return False

    # ------------------------------------------------------------------
    # Background results and ticket trackers
    # ------------------------------------------------------------------

    def register_poller(self, name: str, interval: float | None, fetch: Callable[[], Any]) -> TrackerPoller:
        if interval is None:
            interval = float(self.ctx.get("tracker_poll_seconds") or 60.0)
        poller = TrackerPoller(name=name, interval=interval, fetch=fetch)
        self.pollers[name] = poller
        return poller

    def _run_due_pollers(self) -> None:
        now = self.clock()
        for poller in self.pollers.values():
            if poller.in_flight:
                continue
            if poller.last_run is not None and now - poller.last_run < poller.interval:
                continue
            poller.in_flight = True
            poller.last_run = now
            self.background(f"{TRACKER_PREFIX}{poller.name}", poller.fetch, self.channel)

    def apply_loaded(self, message: Loaded) -> bool:
        if message.name.startswith(TRACKER_PREFIX):
            name = message.name[len(TRACKER_PREFIX):]
            poller = self.pollers.get(name)
            if poller is not None:
                poller.in_flight = False
            if message.error:
                self.state.last_error = f"{name}: {message.error}"
            else:
                self.state.tracker_data[name] = message.value
            return True

        if message.name == GIT_LOADER:
            self.git_in_flight = False
            if message.error:
                self.state.last_error = f"Git: {message.error}"
            elif isinstance(message.value, GitStatus):
                self.state.git_status = message.value
            if self.git_rerun:
                self.git_rerun = False
                self.request_git_status()
            return True

        logger.warning("unexpected load result %s", message.name)
        return False

    # ------------------------------------------------------------------
    # Spawned processes
    # ------------------------------------------------------------------

    def find_process(self, process_id: int) -> SpawnedProcessRecord | None:
        return next((p for p in self.state.processes if p.id == process_id), None)

    def spawn_process(
        self,
        command: list[str],
        prompt: str = "",
        label: str = "",
        title: str = "",
        source: TicketSource = TicketSource.MANUAL,
        cwd: str | Path | None = None,
    ) -> SpawnedProcessRecord | None:
        state = self.state
        process_id = state.next_process_id
        workdir = Path(cwd or self.ctx["project_dir"])
        try:
            self.orchestrator.spawn(process_id, command, workdir)
        except SpawnError as exc:
            state.last_error = str(exc)
            self._mark_dirty()
            return None

        state.next_process_id += 1
        record = SpawnedProcessRecord(
            id=process_id,
            label=label or f"#{process_id}",
            title=title or (prompt.splitlines()[0][:60] if prompt.strip() else " ".join(command)[:60]),
            source=source,
            prompt=prompt,
            cwd=workdir,
            max_lines=int(self.ctx.get("max_output_lines") or 10_000),
        )
        state.processes.append(record)
        self._mark_dirty()
        return record

    def spawn_agent(
        self,
        prompt: str,
        label: str = "",
        title: str = "",
        source: TicketSource = TicketSource.MANUAL,
    ) -> SpawnedProcessRecord | None:
        command = build_agent_command(prompt, self.ctx.get("claude_bin") or "claude")
        return self.spawn_process(command, prompt=prompt, label=label, title=title, source=source)

    def spawn_for_ticket(self, ticket: TicketInfo, prompt: str | None = None) -> SpawnedProcessRecord | None:
        return self.spawn_agent(
            prompt or build_default_prompt(ticket),
            label=ticket.key,
            title=ticket.title,
            source=ticket.source,
        )

    def kill_process(self, process_id: int) -> bool:
        record = self.find_process(process_id)
        if record is None or not record.is_running:
            return False
        self.orchestrator.kill(process_id)
        # The caller has given up on this process; its exit code no longer matters.
        record.finish(False)
        self.killed.add(process_id)
        self._mark_dirty()
        return True

    def apply_process_event(self, event: StdoutLine | StderrLine | Exited) -> bool:
        record = self.find_process(event.id)
        if record is None:
            return False
        if isinstance(event, Exited):
            self.orchestrator.forget(event.id)
            return record.finish(event.success)
        if event.id in self.killed:
            return False
        if isinstance(event, StdoutLine):
            record.push_stdout(event.text)
        else:
            record.push_stderr(event.text)
        return True

    def _reap_children(self) -> None:
        for process_id, success in self.orchestrator.poll_exits():
            record = self.find_process(process_id)
            if record is not None and record.finish(success):
                self._mark_dirty()

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
