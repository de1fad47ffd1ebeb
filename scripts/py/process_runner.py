from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from queue import Queue
from typing import IO, Any, Union

from config import MAX_PROCESS_OUTPUT_LINES
from transcript import parse_envelope


logger = logging.getLogger(__name__)


class SpawnError(RuntimeError):
    pass


class ProcessStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TicketSource(Enum):
    GITHUB_PR = "GitHub PR"
    GITHUB_ISSUE = "GitHub Issue"
    LINEAR = "Linear"
    JIRA = "Jira"
    MANUAL = "Manual"


@dataclass(frozen=True)
class StdoutLine:
    id: int
    text: str


@dataclass(frozen=True)
class StderrLine:
    id: int
    text: str


@dataclass(frozen=True)
class Exited:
    id: int
    success: bool


ProcessEvent = Union[StdoutLine, StderrLine, Exited]


def _ring(maxlen: int) -> deque[str]:
    return deque(maxlen=maxlen)


@dataclass
class SpawnedProcessRecord:
    id: int
    label: str
    title: str
    source: TicketSource
    prompt: str
    cwd: Path
    status: ProcessStatus = ProcessStatus.RUNNING
    max_lines: int = MAX_PROCESS_OUTPUT_LINES
    session_id: str | None = None
    output_lines: deque[str] = field(init=False)
    error_lines: deque[str] = field(init=False)
    progress_lines: deque[str] = field(init=False)

    def __post_init__(self) -> None:
        # deque(maxlen) evicts the oldest line once the cap is reached.
        self.output_lines = _ring(self.max_lines)
        self.error_lines = _ring(self.max_lines)
        self.progress_lines = _ring(self.max_lines)

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    def push_stdout(self, text: str) -> None:
        self.output_lines.append(text)
        self._apply_stream_json(text)

    def push_stderr(self, text: str) -> None:
        self.error_lines.append(text)

    def finish(self, success: bool) -> bool:
        """Move to a terminal status; ignored once the record is terminal."""
        if not self.is_running:
            return False
        self.status = ProcessStatus.COMPLETED if success else ProcessStatus.FAILED
        return True

    def _apply_stream_json(self, text: str) -> None:
        line = text.strip()
        if not line.startswith("{"):
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        if event_type == "system" and event.get("subtype") == "init":
            session_id = event.get("session_id")
            if isinstance(session_id, str) and session_id:
                self.session_id = session_id
                self.progress_lines.append(f"session {session_id} started")
            return
        if event_type == "result":
            subtype = str(event.get("subtype") or "done")
            summary = event.get("result")
            if isinstance(summary, str) and summary.strip():
                self.progress_lines.append(f"[{subtype}] {summary.strip().splitlines()[0]}")
            else:
                self.progress_lines.append(f"[{subtype}]")
            return
        for item in parse_envelope(event):
            self.progress_lines.append(f"{item.kind.label} {item.text}")


def build_agent_command(prompt: str, claude_bin: str = "claude") -> list[str]:
    return [
        claude_bin,
        "-p",
        prompt,
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    ]


def _drain_pipe(pipe: IO[str], process_id: int, kind: type, channel: Queue) -> None:
    try:
        for raw in pipe:
            channel.put(kind(process_id, raw.rstrip("\r\n")))
    except (OSError, ValueError) as exc:
        logger.debug("reader for process %d stopped: %s", process_id, exc)
    finally:
        pipe.close()


class ProcessOrchestrator:
    """Spawns agent subprocesses and streams their output into a channel.

    Every spawn follows the same protocol: start the child, start one reader
    thread per pipe straight away (a child blocked on a full pipe would never
    exit otherwise), and start a reaper that posts ``Exited`` once both pipes
    hit EOF and the child has been waited on.
    """

    def __init__(self, channel: Queue) -> None:
        self.channel = channel
        self.children: dict[int, subprocess.Popen[str]] = {}

    def spawn(self, process_id: int, command: list[str], cwd: str | Path) -> subprocess.Popen[str]:
        if process_id in self.children:
            raise SpawnError(f"process id {process_id} is already running")
        try:
            child = subprocess.Popen(
                command,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise SpawnError(f"failed to spawn {command[0] if command else '(empty)'}: {exc}") from exc

        if child.stdout is None or child.stderr is None:
            child.kill()
            raise SpawnError(f"process {process_id} started without output pipes")
        readers = [
            threading.Thread(
                target=_drain_pipe,
                args=(child.stdout, process_id, StdoutLine, self.channel),
                name=f"proc-{process_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_drain_pipe,
                args=(child.stderr, process_id, StderrLine, self.channel),
                name=f"proc-{process_id}-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        threading.Thread(
            target=self._reap,
            args=(process_id, child, readers),
            name=f"proc-{process_id}-reaper",
            daemon=True,
        ).start()

        self.children[process_id] = child
        logger.info("spawned process %d (pid %s) in %s", process_id, child.pid, cwd)
        return child

    def _reap(self, process_id: int, child: subprocess.Popen[str], readers: list[threading.Thread]) -> None:
        for reader in readers:
            reader.join()
        returncode = child.wait()
        self.channel.put(Exited(process_id, returncode == 0))

    def poll_exits(self) -> list[tuple[int, bool]]:
        """Non-blocking exit check for every live child."""
        exited: list[tuple[int, bool]] = []
        for process_id, child in list(self.children.items()):
            try:
                returncode = child.poll()
            except OSError as exc:
                logger.warning("exit check for process %d failed: %s", process_id, exc)
                exited.append((process_id, False))
                continue
            if returncode is not None:
                exited.append((process_id, returncode == 0))
        for process_id, _ in exited:
            self.children.pop(process_id, None)
        return exited

    def forget(self, process_id: int) -> None:
        self.children.pop(process_id, None)

    def kill(self, process_id: int) -> bool:
        child = self.children.pop(process_id, None)
        if child is None:
            return False
        try:
            child.terminate()
        except OSError as exc:
            logger.warning("terminate of process %d failed: %s", process_id, exc)
        return True

    def live_ids(self) -> list[int]:
        return sorted(self.children)

    def shutdown(self) -> None:
        for process_id in list(self.children):
            self.kill(process_id)


def describe_record(record: SpawnedProcessRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "label": record.label,
        "title": record.title,
        "source": record.source.value,
        "status": record.status.value,
        "cwd": str(record.cwd),
        "session_id": record.session_id,
        "output_lines": len(record.output_lines),
        "error_lines": len(record.error_lines),
    }
