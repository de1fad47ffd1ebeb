import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
ENGINE = ROOT / "scripts" / "py" / "engine.py"
sys.path.insert(0, str(ROOT / "scripts" / "py"))

from config import encode_project_path
from engine import initial_tab


def _run_engine_raw(project: Path, home: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    cmd, rest = args[0], args[1:]
    env = {k: v for k, v in os.environ.items() if k != "CLAUDE_CONFIG_DIR"}
    return subprocess.run(
        [sys.executable, str(ENGINE), cmd, "--project", str(project), "--claude-home", str(home), *rest],
        check=check,
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )


def _user_line(text: str) -> str:
    return json.dumps({"type": "user", "timestamp": "2025-01-01T10:00:00Z", "message": {"content": text}})


class EngineCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name).resolve()
        self.project = root / "proj"
        self.project.mkdir()
        self.home = root / "claude"
        self.sessions_dir = self.home / "projects" / encode_project_path(self.project)
        self.sessions_dir.mkdir(parents=True)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_paths_reports_data_directories(self) -> None:
        proc = _run_engine_raw(self.project, self.home, "paths")
        ctx = json.loads(proc.stdout)

        self.assertEqual(ctx["sessions_dir"], str(self.sessions_dir))
        self.assertEqual(ctx["teams_dir"], str(self.home / "teams"))

        env = _run_engine_raw(self.project, self.home, "paths", "--format", "env").stdout
        self.assertIn(f"SESSIONS_DIR={self.sessions_dir}", env)

    def test_classify_prints_one_row_per_path(self) -> None:
        transcript = str(self.sessions_dir / "abc.jsonl")
        proc = _run_engine_raw(
            self.project,
            self.home,
            "classify",
            transcript,
            str(self.home / "todos" / "a.json"),
            str(self.project / "node_modules" / "x.js"),
        )
        rows = [json.loads(line) for line in proc.stdout.splitlines()]

        self.assertEqual(rows[0]["change"], {"kind": "TranscriptAppended", "path": transcript})
        self.assertEqual(rows[1]["change"]["kind"], "TodoFileChanged")
        self.assertIsNone(rows[2]["change"])

    def test_tail_prints_last_lines_of_newest_session(self) -> None:
        (self.sessions_dir / "s1.jsonl").write_text(
            "".join(_user_line(f"msg {i}") + "\n" for i in range(30)), encoding="utf-8"
        )

        proc = _run_engine_raw(self.project, self.home, "tail", "--lines", "3")

        self.assertEqual(
            proc.stdout.splitlines(),
            ["10:00:00 USER msg 27", "10:00:00 USER msg 28", "10:00:00 USER msg 29"],
        )

    def test_tail_without_sessions_fails(self) -> None:
        proc = _run_engine_raw(self.project, self.home, "tail", check=False)
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Error: no sessions found", proc.stderr)

    def test_dashboard_json_snapshot(self) -> None:
        (self.sessions_dir / "s1.jsonl").write_text(_user_line("hello") + "\n", encoding="utf-8")
        todos = self.home / "todos"
        todos.mkdir()
        (todos / "t.json").write_text(json.dumps([{"content": "ship", "status": "pending"}]), encoding="utf-8")

        proc = _run_engine_raw(self.project, self.home, "dashboard", "--format", "json")
        payload = json.loads(proc.stdout)

        self.assertEqual([s["session_id"] for s in payload["sessions"]], ["s1"])
        self.assertEqual(payload["transcript"]["items"], ["10:00:00 USER hello"])
        self.assertEqual(payload["todos"][0]["items"], ["[ ] ship"])
        self.assertIsNone(payload["last_error"])

    def test_dashboard_tui_falls_back_to_text_without_tty(self) -> None:
        proc = _run_engine_raw(self.project, self.home, "dashboard", "--format", "tui")
        self.assertIn(f"Project: {self.project}", proc.stdout)
        self.assertIn("Sessions: 0", proc.stdout)

    def test_run_streams_child_output_and_exit_code(self) -> None:
        ok = _run_engine_raw(
            self.project, self.home, "run", "--", sys.executable, "-c", "print('out'); import sys; print('err', file=sys.stderr)"
        )
        self.assertEqual(ok.stdout.strip(), "out")
        self.assertEqual(ok.stderr.strip(), "err")

        failed = _run_engine_raw(
            self.project, self.home, "run", "--", sys.executable, "-c", "import sys; sys.exit(2)", check=False
        )
        self.assertEqual(failed.returncode, 1)

    def test_initial_tab_skips_disabled_tabs(self) -> None:
        self.assertEqual(initial_tab({"sessions": True, "teams": True}), "sessions_tab")
        self.assertEqual(initial_tab({"sessions": False, "teams": False, "todos": True}), "todos_tab")
        disabled = {name: False for name in ("sessions", "teams", "todos", "git", "plans")}
        self.assertEqual(initial_tab(disabled), "processes_tab")

    def test_invalid_config_is_reported(self) -> None:
        (self.project / ".assoc.toml").write_text("[display]\ntick_rate = 1\n", encoding="utf-8")
        proc = _run_engine_raw(self.project, self.home, "paths", check=False)
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Error: display.tick_rate", proc.stderr)


if __name__ == "__main__":
    unittest.main()
