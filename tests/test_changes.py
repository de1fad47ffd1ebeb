import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

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
    change_to_dict,
    classify_change,
)

ENCODED = "-home-me-proj"
HOME = "/home/me/.claude"
PROJECT = f"{HOME}/projects/{ENCODED}"


class ClassifyChangeTests(unittest.TestCase):
    def test_session_files(self) -> None:
        self.assertEqual(classify_change(f"{PROJECT}/sessions-index.json", ENCODED), SessionIndexChanged())
        self.assertEqual(
            classify_change(f"{PROJECT}/abc.jsonl", ENCODED),
            TranscriptAppended(f"{PROJECT}/abc.jsonl"),
        )
        self.assertEqual(
            classify_change(f"{PROJECT}/abc/subagents/agent-1.jsonl", ENCODED),
            SubagentTranscriptAppended(f"{PROJECT}/abc/subagents/agent-1.jsonl"),
        )

    def test_transcripts_of_other_projects_are_ignored(self) -> None:
        self.assertIsNone(classify_change(f"{HOME}/projects/-other/abc.jsonl", ENCODED))

    def test_team_files(self) -> None:
        self.assertEqual(
            classify_change(f"{HOME}/teams/alpha/config.json", ENCODED),
            TeamConfigChanged("alpha"),
        )
        self.assertEqual(
            classify_change(f"{HOME}/teams/alpha/inboxes/worker-1.json", ENCODED),
            TeamInboxChanged("alpha", "worker-1"),
        )
        self.assertEqual(
            classify_change(f"{HOME}/tasks/alpha/3.json", ENCODED),
            TaskFileChanged("alpha"),
        )

    def test_todo_and_plan_files(self) -> None:
        self.assertEqual(
            classify_change(f"{HOME}/todos/a.json", ENCODED),
            TodoFileChanged(f"{HOME}/todos/a.json"),
        )
        self.assertEqual(
            classify_change(f"{HOME}/plans/rollout.md", ENCODED),
            PlanFileChanged(f"{HOME}/plans/rollout.md"),
        )

    def test_git_metadata(self) -> None:
        self.assertEqual(classify_change("/home/me/proj/.git/HEAD", ENCODED), GitRepoChanged())
        self.assertEqual(classify_change("/home/me/proj/.git/index", ENCODED), GitRepoChanged())
        self.assertEqual(classify_change("/home/me/proj/.git/refs/heads/main", ENCODED), GitRepoChanged())
        self.assertIsNone(classify_change("/home/me/proj/.git/index.lock", ENCODED))
        self.assertIsNone(classify_change("/home/me/proj/.git/objects/ab/cdef", ENCODED))

    def test_git_wins_over_later_rules(self) -> None:
        self.assertIsNone(classify_change("/home/me/proj/.git/todos/x.json", ENCODED))

    def test_unrelated_paths_are_dropped(self) -> None:
        for path in (
            "/home/me/proj/node_modules/x.js",
            f"{HOME}/todos/a.txt",
            f"{HOME}/teams/alpha/notes.txt",
            f"{HOME}/tasks/3.json",
            "",
        ):
            with self.subTest(path=path):
                self.assertIsNone(classify_change(path, ENCODED))

    def test_windows_separators_are_normalized(self) -> None:
        change = classify_change("C:\\Users\\me\\.claude\\todos\\a.json", ENCODED)
        self.assertIsInstance(change, TodoFileChanged)

    def test_change_to_dict(self) -> None:
        payload = change_to_dict(TeamInboxChanged("alpha", "lead"))
        self.assertEqual(payload, {"kind": "TeamInboxChanged", "team": "alpha", "agent": "lead"})
        self.assertEqual(change_to_dict(GitRepoChanged()), {"kind": "GitRepoChanged"})


if __name__ == "__main__":
    unittest.main()
