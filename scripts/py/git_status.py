from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from sessions import LoaderError


STAGED = "staged"
UNSTAGED = "unstaged"
UNTRACKED = "untracked"


@dataclass(frozen=True)
class GitFileEntry:
    path: str
    section: str
    status_char: str


@dataclass
class GitStatus:
    staged: list[GitFileEntry] = field(default_factory=list)
    unstaged: list[GitFileEntry] = field(default_factory=list)
    untracked: list[GitFileEntry] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.staged or self.unstaged or self.untracked)

    def total_files(self) -> int:
        return len(self.staged) + len(self.unstaged) + len(self.untracked)


def parse_porcelain(output: str) -> GitStatus:
    status = GitStatus()
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index_char, worktree_char = line[0], line[1]
        path = line[3:]
        if index_char in {"R", "C"} and " -> " in path:
            path = path.split(" -> ")[-1]

        if index_char == "?" and worktree_char == "?":
            status.untracked.append(GitFileEntry(path, UNTRACKED, "?"))
            continue
        if index_char not in {" ", "?"}:
            status.staged.append(GitFileEntry(path, STAGED, index_char))
        if worktree_char not in {" ", "?"}:
            status.unstaged.append(GitFileEntry(path, UNSTAGED, worktree_char))
    return status


def load_git_status(project_dir: str | Path) -> GitStatus:
    try:
        proc = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=str(project_dir),
            capture_output=True,
            text=True,
            timeout=30,
        )
    except FileNotFoundError:
        # No git binary: nothing to show rather than an error.
        return GitStatus()
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise LoaderError(f"git status failed: {exc}") from exc

    if proc.returncode != 0:
        return GitStatus()
    return parse_porcelain(proc.stdout)
