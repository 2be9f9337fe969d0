"""Polling file watcher feeding a LiveSession.

Plain mtime polling on a background thread; no platform notification API.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Callable, Sequence

import structlog

from ruletrace.scanner import DEFAULT_EXCLUDE, glob_matches

logger = structlog.get_logger("ruletrace.watcher")

DEFAULT_POLL_INTERVAL = 0.5

Snapshot = dict[str, tuple[int, int]]
ChangeCallback = Callable[[list[str]], None]


def snapshot_tree(root: Path, exclude: Sequence[str] = DEFAULT_EXCLUDE) -> Snapshot:
    """Map every non-excluded file under ``root`` to ``(mtime_ns, size)``."""
    root = root.resolve()
    snapshot: Snapshot = {}
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_dir = base.relative_to(root).as_posix()
        dirnames[:] = sorted(
            name
            for name in dirnames
            if not any(
                glob_matches(f"{name}/" if rel_dir == "." else f"{rel_dir}/{name}/", pattern)
                for pattern in exclude
            )
        )
        for name in filenames:
            path = base / name
            rel = path.relative_to(root).as_posix()
            if any(glob_matches(rel, pattern) for pattern in exclude):
                continue
            try:
                stat = path.stat()
            except OSError:
                # Vanished between listing and stat.
                continue
            snapshot[str(path)] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


def diff_snapshots(before: Snapshot, after: Snapshot) -> list[str]:
    changed = {path for path, stamp in after.items() if before.get(path) != stamp}
    changed.update(path for path in before if path not in after)
    return sorted(changed)


class PollingWatcher:
    def __init__(
        self,
        root: Path,
        on_change: ChangeCallback,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        exclude: Sequence[str] = DEFAULT_EXCLUDE,
    ) -> None:
        self.root = root.resolve()
        self._on_change = on_change
        self._interval = interval
        self._exclude = tuple(exclude)
        self._snapshot: Snapshot = snapshot_tree(self.root, self._exclude)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> list[str]:
        """Take a new snapshot and report what changed since the last one."""
        current = snapshot_tree(self.root, self._exclude)
        changed = diff_snapshots(self._snapshot, current)
        self._snapshot = current
        if changed:
            logger.debug("watcher_changes", count=len(changed))
            self._on_change(changed)
        return changed

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.poll_once()
            except OSError as exc:
                logger.warning("watcher_poll_failed", root=str(self.root), error=str(exc))

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ruletrace-watcher", daemon=True)
        self._thread.start()
        logger.info("watcher_started", root=str(self.root), interval=self._interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("watcher_stopped", root=str(self.root))
