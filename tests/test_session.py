from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from ruletrace.config import SpecConfig
from ruletrace.exceptions import ManifestLoadError, NotBuiltError, SessionClosedError, UnknownSpecError
from ruletrace.model import Reference, Rule, SourceLocation, SpecManifest, Verb
from ruletrace.pipeline import join_generation
from ruletrace.session import CoordinatorState, LiveSession, RebuildFailed, ReportPublished
from ruletrace.traceability import MatrixFilter

SPEC = SpecConfig(name="proto", rules_glob="docs/*.md", include=("src/**",))


class _FakeBuilder:
    """Counts rebuilds and optionally blocks or fails on demand."""

    def __init__(self) -> None:
        self.calls = 0
        self.fail_with: Exception | None = None
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.rule_ids = ["a.b", "a.c"]

    def __call__(self, spec, version, overlay):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        manifest = SpecManifest(
            name=spec.name,
            rules={rule_id: Rule(id=rule_id) for rule_id in self.rule_ids},
        )
        refs = [
            Reference(rule_id="a.b", verb=Verb.IMPL, location=SourceLocation("src/lib.rs", 10, 4)),
            Reference(rule_id="a.b", verb=Verb.VERIFY, location=SourceLocation("src/lib.rs", 12, 4)),
        ]
        return join_generation(manifest, refs, version=version, rule_paths=["docs/spec.md"])


def _session(tmp_path: Path, builder: _FakeBuilder, *, debounce: float = 0.05) -> LiveSession:
    return LiveSession([SPEC], root=tmp_path, debounce=debounce, builder=builder)


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


def test_explicit_rebuild_publishes_report(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    events: list[object] = []
    session = _session(tmp_path, builder)
    session.subscribe(events.append)
    with session:
        report = session.rebuild("proto", timeout=5)
        assert report.covered_rules == ("a.b",)
        assert session.get_report("proto") is report
        _wait_for(lambda: any(isinstance(event, ReportPublished) for event in events))
    assert session.coordinator("proto").state is CoordinatorState.STOPPED


def test_queries_before_first_build_raise(tmp_path: Path) -> None:
    session = _session(tmp_path, _FakeBuilder())
    with pytest.raises(NotBuiltError):
        session.get_report("proto")
    with pytest.raises(UnknownSpecError):
        session.get_report("missing")


def test_query_surface(tmp_path: Path) -> None:
    with _session(tmp_path, _FakeBuilder()) as session:
        session.rebuild("proto", timeout=5)
        assert [rule.id for rule in session.get_at("proto", "src/lib.rs", (9, 13))] == ["a.b"]
        assert [rule.id for rule in session.get_at("proto", tmp_path / "src" / "lib.rs", 10)] == ["a.b"]
        assert [ref.verb for ref in session.get_impact("proto", "a.b")] == [Verb.IMPL, Verb.VERIFY]
        assert session.get_impact("proto", "a.c") == []
        uncovered = session.get_matrix("proto", MatrixFilter(uncovered_only=True))
        assert uncovered.rule_ids() == ["a.c"]
        assert session.get_matrix("proto").rule_ids() == ["a.b", "a.c"]


def test_burst_of_notifications_rebuilds_once(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    session = _session(tmp_path, builder, debounce=0.2)
    session.start(initial_rebuild=False)
    try:
        for index in range(10):
            session.notify_changed([f"src/file{index}.rs"])
        _wait_for(lambda: builder.calls == 1)
        time.sleep(0.4)
        assert builder.calls == 1
        assert session.coordinator("proto").rebuild_count == 1
    finally:
        session.close()


def test_changes_during_rebuild_coalesce_into_one_follow_up(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    builder.gate = threading.Event()
    events: list[object] = []
    session = _session(tmp_path, builder, debounce=0.01)
    session.subscribe(events.append)
    session.start(initial_rebuild=False)
    try:
        session.notify_changed(["src/a.rs"])
        assert builder.started.wait(5)
        for index in range(5):
            session.notify_changed([f"src/b{index}.rs"])
        builder.gate.set()
        _wait_for(lambda: len(events) == 2)
        time.sleep(0.2)
        assert builder.calls == 2
        follow_up = events[1]
        assert isinstance(follow_up, ReportPublished)
        assert follow_up.version == 2
        assert follow_up.changed_paths == frozenset(f"src/b{index}.rs" for index in range(5))
    finally:
        session.close()


def test_failed_rebuild_keeps_previous_generation(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    events: list[object] = []
    session = _session(tmp_path, builder)
    session.subscribe(events.append)
    with session:
        good = session.rebuild("proto", timeout=5)
        version = session.generation("proto").version
        builder.fail_with = ManifestLoadError("no documents match", source="proto")
        with pytest.raises(ManifestLoadError):
            session.rebuild("proto", timeout=5)
        assert session.get_report("proto") is good
        assert session.generation("proto").version == version
        _wait_for(lambda: any(isinstance(event, RebuildFailed) for event in events))
        failure = next(event for event in events if isinstance(event, RebuildFailed))
        assert "no documents match" in failure.message


def test_unsubscribe_and_failing_observer(tmp_path: Path) -> None:
    seen: list[object] = []

    def broken(event) -> None:
        raise RuntimeError("observer bug")

    session = _session(tmp_path, _FakeBuilder())
    session.subscribe(broken)
    unsubscribe = session.subscribe(seen.append)
    with session:
        session.rebuild("proto", timeout=5)
        _wait_for(lambda: len(seen) == 2)
        unsubscribe()
        session.rebuild("proto", timeout=5)
        time.sleep(0.1)
        assert len(seen) == 2


def test_notify_routes_by_spec_patterns(tmp_path: Path) -> None:
    other = SpecConfig(name="web", rules_file="web.json", include=("web/**",))
    session = LiveSession([SPEC, other], root=tmp_path, builder=_FakeBuilder())
    assert session.notify_changed(["src/lib.rs"]) == ["proto"]
    assert session.notify_changed(["web/app.ts"]) == ["web"]
    assert session.notify_changed(["docs/spec.md"]) == ["proto"]
    assert session.notify_changed(["web.json"]) == ["web"]
    assert session.notify_changed(["README.txt"]) == []
    assert session.notify_changed([tmp_path / "src" / "lib.rs"]) == ["proto"]


def test_overlay_is_visible_to_the_builder(tmp_path: Path) -> None:
    seen: list[dict[str, str]] = []
    builder = _FakeBuilder()

    def recording(spec, version, overlay):
        seen.append(dict(overlay))
        return builder(spec, version, overlay)

    session = LiveSession([SPEC], root=tmp_path, debounce=0.01, builder=recording)
    session.start(initial_rebuild=False)
    try:
        target = tmp_path / "src" / "lib.rs"
        session.set_overlay(target, "// [impl a.c]\n")
        session.rebuild("proto", timeout=5)
        assert seen[-1] == {str(target.resolve()): "// [impl a.c]\n"}
        session.clear_overlay(target)
        session.rebuild("proto", timeout=5)
        assert seen[-1] == {}
    finally:
        session.close()


def test_initial_overlay_is_keyed_under_the_root(tmp_path: Path) -> None:
    seen: list[dict[str, str]] = []
    builder = _FakeBuilder()

    def recording(spec, version, overlay):
        seen.append(dict(overlay))
        return builder(spec, version, overlay)

    with LiveSession(
        [SPEC],
        root=tmp_path,
        debounce=0.01,
        overlay={"src/lib.rs": "// [impl a.c]\n"},
        builder=recording,
    ) as session:
        session.rebuild("proto", timeout=5)
    key = str((tmp_path / "src" / "lib.rs").resolve())
    assert seen[-1] == {key: "// [impl a.c]\n"}


def test_rebuild_refused_before_start_and_after_close(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    session = _session(tmp_path, builder)
    with pytest.raises(SessionClosedError):
        session.rebuild("proto", timeout=1)
    session.start(initial_rebuild=False)
    session.close()
    with pytest.raises(SessionClosedError):
        session.rebuild("proto", timeout=1)
    assert builder.calls == 0
    assert session.coordinator("proto").state is CoordinatorState.STOPPED


def test_close_cancels_queued_rebuild_requests(tmp_path: Path) -> None:
    builder = _FakeBuilder()
    builder.gate = threading.Event()
    session = _session(tmp_path, builder)
    session.start(initial_rebuild=False)
    coordinator = session.coordinator("proto")
    first = coordinator.request_rebuild()
    assert builder.started.wait(5)
    second = coordinator.request_rebuild()
    closer = threading.Thread(target=session.close)
    closer.start()

    def refused() -> bool:
        try:
            coordinator.request_rebuild()
        except SessionClosedError:
            return True
        return False

    _wait_for(refused)
    builder.gate.set()
    closer.join(5)
    assert not closer.is_alive()
    assert first.result(5).total_rules == 2
    assert second.cancelled()
    assert builder.calls == 1


def test_relative_overlay_paths_resolve_under_the_root(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path / "project"
    elsewhere = tmp_path / "elsewhere"
    root.mkdir()
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    seen: list[dict[str, str]] = []
    builder = _FakeBuilder()

    def recording(spec, version, overlay):
        seen.append(dict(overlay))
        return builder(spec, version, overlay)

    session = LiveSession([SPEC], root=root, debounce=0.01, builder=recording)
    session.start(initial_rebuild=False)
    try:
        session.set_overlay("src/lib.rs", "// [impl a.b]\n")
        session.rebuild("proto", timeout=5)
        assert seen[-1] == {str((root / "src" / "lib.rs").resolve()): "// [impl a.b]\n"}
        session.clear_overlay("src/lib.rs")
        session.rebuild("proto", timeout=5)
        assert seen[-1] == {}
    finally:
        session.close()
