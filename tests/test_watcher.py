import sys
import tempfile
import time
import unittest
from pathlib import Path
from queue import Empty, Queue

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

from changes import TodoFileChanged, TranscriptAppended
from config import load_config, resolve_context
from watcher import ChangeWatcher, build_watch_targets, coalesce_paths


def _ctx(root: Path) -> dict:
    project = root / "proj"
    project.mkdir(exist_ok=True)
    config, config_path = load_config(project)
    return resolve_context(project, config, str(root / "claude"), config_path=config_path)


class WatchTargetTests(unittest.TestCase):
    def test_targets_cover_every_feature(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            targets = build_watch_targets(ctx)

            self.assertEqual(
                [(t.feature, t.recursive) for t in targets],
                [
                    ("sessions", True),
                    ("teams", True),
                    ("teams", True),
                    ("todos", True),
                    ("plans", False),
                    ("git", False),
                ],
            )
            self.assertEqual(targets[-1].path, Path(ctx["git_dir"]))

    def test_missing_and_disabled_directories_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            Path(ctx["todos_dir"]).mkdir(parents=True)
            Path(ctx["plans_dir"]).mkdir(parents=True)
            ctx["tabs"]["plans"] = False

            watcher = ChangeWatcher(ctx, Queue())

            self.assertEqual([t.feature for t in watcher.enabled_targets()], ["todos"])

    def test_coalesce_paths_dedupes_a_batch(self) -> None:
        batch = {(1, "/b/x.json"), (2, "/b/x.json"), (3, "/a/y.json")}
        self.assertEqual(coalesce_paths(batch), ["/a/y.json", "/b/x.json"])

    def test_publish_classifies_and_drops_noise(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            channel: Queue = Queue()
            watcher = ChangeWatcher(ctx, channel)
            transcript = f"{ctx['sessions_dir']}/s1.jsonl"

            sent = watcher.publish([transcript, f"{ctx['project_dir']}/node_modules/x.js"])

            self.assertEqual(sent, 1)
            self.assertEqual(channel.get_nowait(), TranscriptAppended(transcript))


class WatcherIntegrationTests(unittest.TestCase):
    def test_file_write_produces_one_change(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ctx = _ctx(Path(td))
            todos = Path(ctx["todos_dir"])
            todos.mkdir(parents=True)
            channel: Queue = Queue()
            watcher = ChangeWatcher(ctx, channel, debounce_ms=100, force_polling=True)
            watcher.start()
            try:
                time.sleep(0.5)
                target = todos / "a.json"
                target.write_text("[]", encoding="utf-8")

                change = channel.get(timeout=10)
            except Empty:
                self.fail("no change observed")
            finally:
                watcher.stop()

            self.assertIsInstance(change, TodoFileChanged)
            self.assertTrue(change.path.endswith("todos/a.json"))


if __name__ == "__main__":
    unittest.main()
