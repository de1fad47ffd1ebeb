import json
import os
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

from git_status import parse_porcelain
from process_runner import TicketSource
from prompt_builder import build_default_prompt, ticket_from_github_pr, ticket_from_jira, ticket_from_linear
from sessions import LoaderError, find_subagents, load_sessions
from team_model import (
    AGENT_IDLE,
    AGENT_SHUT_DOWN,
    AGENT_STARTING,
    AGENT_WORKING,
    InboxMessage,
    Task,
    derive_agent_status,
    load_inbox,
    load_tasks,
    load_teams,
)
from workspace_files import load_plans, load_todos


def _write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _structured(msg_type: str, **fields) -> str:
    return json.dumps({"type": msg_type, **fields})


class SessionLoaderTests(unittest.TestCase):
    def test_index_entries_and_unindexed_transcripts(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            _write_json(
                base / "sessions-index.json",
                {
                    "entries": [
                        {"sessionId": "a", "summary": "Alpha", "modified": "2025-02-01T00:00:00Z", "messageCount": 4},
                        {"sessionId": "side", "isSidechain": True, "modified": "2025-03-01T00:00:00Z"},
                        {"summary": "no id"},
                    ]
                },
            )
            (base / "b.jsonl").write_text("", encoding="utf-8")

            sessions = load_sessions(base)

            self.assertEqual([s.session_id for s in sessions], ["b", "a"])
            alpha = sessions[1]
            self.assertEqual(alpha.path, base / "a.jsonl")
            self.assertEqual(alpha.message_count, 4)
            self.assertEqual(alpha.display_name(), "Alpha")

    def test_corrupt_index_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "sessions-index.json").write_text("{", encoding="utf-8")
            with self.assertRaises(LoaderError):
                load_sessions(td)

    def test_missing_directory_is_empty(self) -> None:
        self.assertEqual(load_sessions("/nonexistent/sessions"), [])

    def test_find_subagents(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sub = Path(td) / "s1" / "subagents"
            sub.mkdir(parents=True)
            (sub / "agent-b2.jsonl").write_text("", encoding="utf-8")
            (sub / "agent-a1.jsonl").write_text("", encoding="utf-8")
            (sub / "notes.txt").write_text("", encoding="utf-8")

            self.assertEqual([s.agent_id for s in find_subagents(td, "s1")], ["a1", "b2"])
            self.assertEqual(find_subagents(td, "missing"), [])


class TeamLoaderTests(unittest.TestCase):
    def test_teams_are_filtered_by_project(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            teams = Path(td) / "teams"
            _write_json(teams / "mine" / "config.json", {"members": [{"name": "lead", "cwd": "/work/proj"}]})
            _write_json(teams / "nested" / "config.json", {"members": [{"name": "lead", "cwd": "/work/proj/sub"}]})
            _write_json(teams / "other" / "config.json", {"members": [{"name": "lead", "cwd": "/work/else"}]})
            _write_json(teams / "anywhere" / "config.json", {"name": "Any", "members": [{"name": "lead"}]})
            (teams / "empty").mkdir()

            loaded = load_teams(teams, "/work/proj")

            self.assertEqual([t.dir_name for t in loaded], ["anywhere", "mine", "nested"])
            self.assertEqual(loaded[0].name, "Any")
            self.assertEqual(loaded[0].lead_name(), "lead")

    def test_tasks_sort_numerically_and_skip_bad_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tasks = Path(td) / "tasks"
            _write_json(tasks / "t" / "10.json", {"id": "10", "subject": "ten", "blockedBy": ["2"]})
            _write_json(tasks / "t" / "2.json", {"id": "2", "subject": "two", "status": "completed"})
            (tasks / "t" / "3.json").write_text("{half", encoding="utf-8")

            loaded = load_tasks(tasks, "t")

            self.assertEqual([t.id for t in loaded], ["2", "10"])
            self.assertEqual(loaded[1].blocked_by, ("2",))
            self.assertEqual(loaded[1].status, "pending")

    def test_inbox_is_newest_first(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            teams = Path(td)
            _write_json(
                teams / "t" / "inboxes" / "lead.json",
                [
                    {"from": "w", "text": "first", "timestamp": "2025-01-01T00:00:00Z"},
                    {"from": "w", "text": "second", "timestamp": "2025-01-02T00:00:00Z", "read": True},
                ],
            )

            inbox = load_inbox(teams, "t", "lead")

            self.assertEqual([m.text for m in inbox], ["second", "first"])
            self.assertTrue(inbox[0].read)
            self.assertEqual(load_inbox(teams, "t", "nobody"), [])

    def test_structured_messages_render(self) -> None:
        cases = {
            _structured("task_assignment", taskId="4", subject="Write docs"): "[Task #4] Write docs",
            _structured("idle_notification", **{"from": "w1"}): "w1 is idle",
            _structured("shutdown_approved"): "Shutdown approved",
            _structured("plan_approval_response", approve=False, content="too big"): "Plan rejected: too big",
            _structured("plan_approval_response", approve=True): "Plan approved",
            "plain words": "plain words",
            "{not json": "{not json",
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertEqual(InboxMessage("w", text).display_text(), expected)

    def test_agent_status_derivation(self) -> None:
        idle = InboxMessage("w", _structured("idle_notification"))
        done = InboxMessage("w", _structured("shutdown_approved"))
        chat = InboxMessage("w", "progress update")
        busy = [Task(id="1", subject="x", status="in_progress", owner="w")]

        self.assertEqual(derive_agent_status("w", [], []), AGENT_STARTING)
        self.assertEqual(derive_agent_status("w", [], busy), AGENT_WORKING)
        self.assertEqual(derive_agent_status("w", [idle], busy), AGENT_IDLE)
        self.assertEqual(derive_agent_status("w", [done, idle], []), AGENT_SHUT_DOWN)
        self.assertEqual(derive_agent_status("w", [chat], []), AGENT_WORKING)


class WorkspaceFileTests(unittest.TestCase):
    def test_todos_skip_empty_lists_and_sort_by_mtime(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            _write_json(base / "old.json", [{"content": "a", "status": "completed"}])
            _write_json(base / "new.json", [{"content": "b", "status": "in_progress", "activeForm": "Doing b"}])
            _write_json(base / "empty.json", [])
            (base / "bad.json").write_text("[", encoding="utf-8")
            os.utime(base / "old.json", (1_000_000, 1_000_000))

            todos = load_todos(base)

            self.assertEqual([t.filename for t in todos], ["new.json", "old.json"])
            self.assertEqual(todos[0].items[0].status_icon(), "[=]")
            self.assertEqual(todos[1].items[0].status_icon(), "[X]")

    def test_plans_use_first_heading_as_title(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            (base / "rollout.md").write_text("intro\n## Rollout plan\n- step\n", encoding="utf-8")
            (base / "bare.md").write_text("no heading\n", encoding="utf-8")

            plans = {p.filename: p for p in load_plans(base)}

            self.assertEqual(plans["rollout.md"].title, "Rollout plan")
            self.assertEqual(plans["bare.md"].title, "bare")
            self.assertEqual(plans["bare.md"].display_name(), "bare")


class GitPorcelainTests(unittest.TestCase):
    def test_parse_porcelain_sections(self) -> None:
        status = parse_porcelain(
            "\n".join(
                [
                    "M  staged.py",
                    " M unstaged.py",
                    "MM both.py",
                    "R  old.py -> new.py",
                    "?? scratch.txt",
                    "",
                ]
            )
        )

        self.assertEqual([e.path for e in status.staged], ["staged.py", "both.py", "new.py"])
        self.assertEqual([e.path for e in status.unstaged], ["unstaged.py", "both.py"])
        self.assertEqual([e.path for e in status.untracked], ["scratch.txt"])
        self.assertEqual(status.total_files(), 6)
        self.assertTrue(parse_porcelain("").is_empty())


class PromptBuilderTests(unittest.TestCase):
    def test_github_pr_ticket(self) -> None:
        ticket = ticket_from_github_pr(
            {
                "number": 42,
                "title": "Add login",
                "headRefName": "feat/login",
                "baseRefName": "main",
                "author": {"login": "dev"},
                "labels": [{"name": "auth"}],
                "url": "https://example.invalid/pr/42",
            }
        )
        self.assertEqual(ticket.source, TicketSource.GITHUB_PR)
        self.assertEqual(ticket.key, "#42")
        self.assertIn(("Branch", "feat/login"), ticket.extra_fields)

        prompt = build_default_prompt(ticket)
        self.assertIn("- Source: GitHub PR", prompt)
        self.assertIn("- Labels: auth", prompt)
        self.assertIn("- Author: dev", prompt)

    def test_linear_and_jira_tickets(self) -> None:
        linear = ticket_from_linear(
            {"identifier": "ENG-7", "title": "Fix", "state": {"name": "Todo"}, "labels": {"nodes": [{"name": "bug"}]}}
        )
        self.assertEqual(linear.labels, ["bug"])
        self.assertIn(("Status", "Todo"), linear.extra_fields)

        jira = ticket_from_jira({"key": "PROJ-1", "summary": "Do it", "labels": ["x"]})
        self.assertEqual(jira.title, "Do it")
        self.assertIn("No description provided.", build_default_prompt(jira))


if __name__ == "__main__":
    unittest.main()
