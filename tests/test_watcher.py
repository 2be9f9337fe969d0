from __future__ import annotations

import os
import time

from ruletrace.watcher import PollingWatcher, diff_snapshots, snapshot_tree


def test_diff_snapshots_reports_changed_added_and_removed() -> None:
    before = {"a": (1, 1), "b": (1, 1), "c": (1, 1)}
    after = {"a": (1, 1), "b": (2, 1), "d": (1, 1)}
    assert diff_snapshots(before, after) == ["b", "c", "d"]


def test_snapshot_skips_excluded_directories(write_tree) -> None:
    root = write_tree({"src/a.rs": "", "target/x.rs": "", ".git/HEAD": ""})
    snapshot = snapshot_tree(root)
    assert sorted(os.path.relpath(path, root.resolve()) for path in snapshot) == [os.path.join("src", "a.rs")]


def test_poll_once_reports_each_change(write_tree) -> None:
    root = write_tree({"src/a.rs": "// one\n", "src/b.rs": ""})
    batches: list[list[str]] = []
    watcher = PollingWatcher(root, batches.append, interval=0.05)

    assert watcher.poll_once() == []
    target = root / "src" / "a.rs"
    target.write_text("// one\n// two\n", encoding="utf-8")
    stamp = time.time() + 5
    os.utime(target, (stamp, stamp))
    (root / "src" / "b.rs").unlink()
    (root / "src" / "c.rs").write_text("", encoding="utf-8")

    changed = watcher.poll_once()
    resolved = root.resolve()
    assert changed == sorted(str(resolved / "src" / name) for name in ("a.rs", "b.rs", "c.rs"))
    assert batches == [changed]
    assert watcher.poll_once() == []


def test_background_thread_delivers_changes(write_tree) -> None:
    root = write_tree({"src/a.rs": ""})
    batches: list[list[str]] = []
    watcher = PollingWatcher(root, batches.append, interval=0.02)
    watcher.start()
    try:
        assert watcher.running
        (root / "src" / "new.rs").write_text("// x\n", encoding="utf-8")
        deadline = time.monotonic() + 5
        while not batches and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        watcher.stop()
    assert not watcher.running
    assert batches and str(root.resolve() / "src" / "new.rs") in batches[0]
