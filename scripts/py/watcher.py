from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from queue import Queue
from typing import Any

import watchfiles

from changes import classify_change
from config import DEBOUNCE_MS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchTarget:
    path: Path
    recursive: bool
    feature: str


def build_watch_targets(ctx: dict[str, Any]) -> list[WatchTarget]:
    """Directories to observe, one per feature area, in registration order."""
    return [
        WatchTarget(Path(ctx["sessions_dir"]), True, "sessions"),
        WatchTarget(Path(ctx["teams_dir"]), True, "teams"),
        WatchTarget(Path(ctx["tasks_dir"]), True, "teams"),
        WatchTarget(Path(ctx["todos_dir"]), True, "todos"),
        WatchTarget(Path(ctx["plans_dir"]), False, "plans"),
        WatchTarget(Path(ctx["git_dir"]), False, "git"),
    ]


def coalesce_paths(raw_changes: set[tuple[Any, str]] | list[tuple[Any, str]]) -> list[str]:
    """Collapse a debounced batch of (event, path) pairs to unique paths."""
    seen: set[str] = set()
    paths: list[str] = []
    for _event, path in sorted(raw_changes, key=lambda item: str(item[1])):
        if path in seen:
            continue
        seen.add(path)
        paths.append(path)
    return paths


class ChangeWatcher:
    """Debounced filesystem watcher feeding classified changes into a queue.

    Each enabled, existing directory is watched by its own daemon thread
    running ``watchfiles.watch``. Raw events that arrive within the debounce
    window are grouped by watchfiles into one batch; the batch is reduced to
    unique paths and each path is classified to at most one change.
    """

    def __init__(
        self,
        ctx: dict[str, Any],
        channel: Queue,
        debounce_ms: int = DEBOUNCE_MS,
        force_polling: bool | None = None,
    ) -> None:
        self.ctx = ctx
        self.channel = channel
        self.encoded_project = str(ctx["encoded_project"])
        self.tabs: dict[str, bool] = dict(ctx.get("tabs") or {})
        self.debounce_ms = debounce_ms
        self.force_polling = force_polling
        self.stop_event = threading.Event()
        self.threads: list[threading.Thread] = []
        self.targets: list[WatchTarget] = []

    def enabled_targets(self) -> list[WatchTarget]:
        targets: list[WatchTarget] = []
        for target in build_watch_targets(self.ctx):
            if not self.tabs.get(target.feature, True):
                continue
            if not target.path.is_dir():
                logger.debug("skipping missing watch directory %s", target.path)
                continue
            targets.append(target)
        return targets

    def start(self) -> list[WatchTarget]:
        self.stop_event.clear()
        self.targets = self.enabled_targets()
        for target in self.targets:
            thread = threading.Thread(
                target=self._watch_target,
                args=(target,),
                name=f"watch-{target.feature}-{target.path.name}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)
        logger.info("watching %d directories", len(self.targets))
        return self.targets

    def stop(self, timeout: float = 2.0) -> None:
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout)
        self.threads = []

    def publish(self, paths: list[str]) -> int:
        sent = 0
        for path in paths:
            change = classify_change(path, self.encoded_project)
            if change is None:
                continue
            self.channel.put(change)
            sent += 1
        return sent

    def _watch_target(self, target: WatchTarget) -> None:
        try:
            for batch in watchfiles.watch(
                target.path,
                watch_filter=None,
                debounce=self.debounce_ms,
                step=min(50, self.debounce_ms),
                stop_event=self.stop_event,
                recursive=target.recursive,
                raise_interrupt=False,
                force_polling=self.force_polling,
            ):
                self.publish(coalesce_paths(batch))
        except (OSError, RuntimeError) as exc:
            # One directory failing must not take the others down.
            logger.warning("watch on %s failed: %s", target.path, exc)
