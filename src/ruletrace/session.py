"""Live, self-rebuilding traceability state for a set of configured specs.

Each spec is owned by a ``RebuildCoordinator``: a dedicated worker thread
fed through a message queue. Because only that thread ever builds, at most
one rebuild is in flight per spec; because everything that arrives while it
builds is drained into a single batch afterwards, at most one follow-up
rebuild is ever pending. Readers never lock: they read the coordinator's
current ``SpecGeneration``, which is replaced by a single reference swap.
"""

from __future__ import annotations

import queue
import threading
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Mapping

import structlog

from ruletrace.config import SpecConfig
from ruletrace.coverage import CoverageReport
from ruletrace.dialects import dialect_for_path
from ruletrace.exceptions import NotBuiltError, SessionClosedError, UnknownSpecError
from ruletrace.invariants import never
from ruletrace.model import Reference, Rule
from ruletrace.pipeline import SpecGeneration, build_generation
from ruletrace.scanner import display_path, glob_matches, is_selected
from ruletrace.sources import Fetcher, fetch_url
from ruletrace.traceability import MatrixFilter, TraceabilityMatrix

logger = structlog.get_logger("ruletrace.session")

Builder = Callable[[SpecConfig, int, Mapping[str, str]], SpecGeneration]

DEFAULT_DEBOUNCE_SECONDS = 0.2


@dataclass(frozen=True)
class ReportPublished:
    spec_name: str
    version: int
    report: CoverageReport
    changed_paths: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RebuildFailed:
    spec_name: str
    error: BaseException
    changed_paths: frozenset[str] = frozenset()

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


SessionEvent = ReportPublished | RebuildFailed
Observer = Callable[[SessionEvent], None]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    REBUILDING = "rebuilding"
    STOPPED = "stopped"


@dataclass(frozen=True)
class _Changed:
    paths: frozenset[str]


@dataclass(frozen=True)
class _RebuildNow:
    future: Future


@dataclass(frozen=True)
class _Stop:
    pass


@dataclass
class _Batch:
    paths: set[str] = field(default_factory=set)
    waiters: list[Future] = field(default_factory=list)
    explicit: bool = False
    stopped: bool = False

    def add(self, message: object) -> None:
        if isinstance(message, _Changed):
            self.paths |= message.paths
        elif isinstance(message, _RebuildNow):
            self.waiters.append(message.future)
            self.explicit = True
        elif isinstance(message, _Stop):
            self.stopped = True
        else:
            never("unknown coordinator message", message_type=type(message).__name__)


class RebuildCoordinator:
    def __init__(
        self,
        spec_name: str,
        build: Callable[[int], SpecGeneration],
        publish: Callable[[SessionEvent], None],
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.spec_name = spec_name
        self._build = build
        self._publish = publish
        self._debounce = debounce
        self._inbox: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._generation: SpecGeneration | None = None
        self._version = 0
        self._state = CoordinatorState.IDLE
        self.rebuild_count = 0
        self._accepting = False
        self._lifecycle = threading.Lock()
        self._thread = threading.Thread(
            target=self._run,
            name=f"ruletrace-rebuild-{spec_name}",
            daemon=True,
        )

    @property
    def generation(self) -> SpecGeneration | None:
        return self._generation

    @property
    def state(self) -> CoordinatorState:
        return self._state

    def start(self) -> None:
        with self._lifecycle:
            self._thread.start()
            self._accepting = True

    def stop(self, timeout: float | None = None) -> None:
        with self._lifecycle:
            was_accepting = self._accepting
            self._accepting = False
            if was_accepting:
                self._inbox.put(_Stop())
        if self._thread.is_alive():
            self._thread.join(timeout)
        if not self._thread.is_alive():
            self._cancel_pending()
        self._state = CoordinatorState.STOPPED

    def _cancel_pending(self) -> None:
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(message, _RebuildNow):
                message.future.cancel()

    def notify(self, paths: Iterable[str]) -> None:
        self._inbox.put(_Changed(frozenset(paths)))

    def request_rebuild(self) -> Future:
        """Queue an immediate rebuild; raises ``SessionClosedError`` unless running."""
        future: Future = Future()
        with self._lifecycle:
            if not self._accepting:
                raise SessionClosedError(f"rebuild worker for spec {self.spec_name!r} is not running")
            self._inbox.put(_RebuildNow(future))
        return future

    def _settle(self, batch: _Batch) -> None:
        # Wait for the inbox to stay quiet for one debounce window.
        while not (batch.explicit or batch.stopped):
            try:
                message = self._inbox.get(timeout=self._debounce)
            except queue.Empty:
                return
            batch.add(message)

    def _drain(self) -> _Batch | None:
        batch = _Batch()
        drained = False
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return batch if drained else None
            batch.add(message)
            drained = True

    def _run(self) -> None:
        batch: _Batch | None = None
        while True:
            if batch is None:
                batch = _Batch()
                batch.add(self._inbox.get())
                self._settle(batch)
            if batch.stopped:
                for waiter in batch.waiters:
                    waiter.cancel()
                return
            self._rebuild(batch)
            batch = self._drain()

    def _rebuild(self, batch: _Batch) -> None:
        waiters = [waiter for waiter in batch.waiters if waiter.set_running_or_notify_cancel()]
        changed = frozenset(batch.paths)
        version = self._version + 1
        self._state = CoordinatorState.REBUILDING
        try:
            generation = self._build(version)
        except Exception as exc:
            self._state = CoordinatorState.IDLE
            logger.warning(
                "rebuild_failed",
                spec=self.spec_name,
                version=version,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            for waiter in waiters:
                waiter.set_exception(exc)
            self._publish(RebuildFailed(spec_name=self.spec_name, error=exc, changed_paths=changed))
            return
        self._version = version
        self._generation = generation
        self.rebuild_count += 1
        self._state = CoordinatorState.IDLE
        for waiter in waiters:
            waiter.set_result(generation.report)
        self._publish(
            ReportPublished(
                spec_name=self.spec_name,
                version=version,
                report=generation.report,
                changed_paths=changed,
            )
        )


class LiveSession:
    """Owns the latest generation of every configured spec.

    Front ends create one session, start it, and pass it to whatever needs to
    query or observe it. Nothing here is process-wide state.
    """

    def __init__(
        self,
        specs: Iterable[SpecConfig],
        *,
        root: Path,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        fetch: Fetcher = fetch_url,
        overlay: Mapping[str, str] | None = None,
        builder: Builder | None = None,
    ) -> None:
        self.root = root.resolve()
        self._specs = {spec.name: spec for spec in specs}
        self._overlay: Mapping[str, str] = {
            self._overlay_key(path): text for path, text in (overlay or {}).items()
        }
        self._observers: list[Observer] = []
        self._observers_lock = threading.Lock()
        self._builder = builder or self._default_builder(fetch)
        self._coordinators = {
            name: RebuildCoordinator(
                name,
                self._build_callable(spec),
                self._publish,
                debounce=debounce,
            )
            for name, spec in self._specs.items()
        }
        self._started = False

    def _default_builder(self, fetch: Fetcher) -> Builder:
        def _build(spec: SpecConfig, version: int, overlay: Mapping[str, str]) -> SpecGeneration:
            return build_generation(spec, root=self.root, version=version, overlay=overlay, fetch=fetch)

        return _build

    def _build_callable(self, spec: SpecConfig) -> Callable[[int], SpecGeneration]:
        def _build(version: int) -> SpecGeneration:
            return self._builder(spec, version, self._overlay)

        return _build

    def __enter__(self) -> LiveSession:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self, *, initial_rebuild: bool = True) -> None:
        if self._started:
            return
        self._started = True
        for coordinator in self._coordinators.values():
            coordinator.start()
            if initial_rebuild:
                coordinator.request_rebuild()
        logger.info("session_started", specs=sorted(self._specs), root=str(self.root))

    def close(self, timeout: float | None = 5.0) -> None:
        for coordinator in self._coordinators.values():
            coordinator.stop(timeout)
        logger.info("session_closed")

    def spec_names(self) -> list[str]:
        return sorted(self._specs)

    def coordinator(self, spec: str) -> RebuildCoordinator:
        try:
            return self._coordinators[spec]
        except KeyError:
            raise UnknownSpecError(f"unknown spec {spec!r}") from None

    def generation(self, spec: str) -> SpecGeneration:
        generation = self.coordinator(spec).generation
        if generation is None:
            raise NotBuiltError(f"spec {spec!r} has not been built yet")
        return generation

    # Observers

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._observers_lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._observers_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def _publish(self, event: SessionEvent) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception("observer_failed", spec=event.spec_name)

    # Change intake

    def _relative(self, path: str | Path) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            return display_path(candidate, self.root)
        return candidate.as_posix()

    def _affects(self, spec: SpecConfig, rel_path: str) -> bool:
        generation = self._coordinators[spec.name].generation
        if generation is not None and rel_path in generation.rule_paths:
            return True
        if spec.rules_glob and glob_matches(rel_path, spec.rules_glob):
            return True
        if spec.rules_file and Path(spec.rules_file).as_posix() == rel_path:
            return True
        if dialect_for_path(rel_path) is None:
            return False
        return is_selected(rel_path, include=spec.include, exclude=spec.exclude)

    def notify_changed(self, paths: Iterable[str | Path]) -> list[str]:
        """Route changed paths to the specs they can affect; returns those specs."""
        relative = sorted({self._relative(path) for path in paths})
        notified: list[str] = []
        for name, spec in sorted(self._specs.items()):
            hits = [path for path in relative if self._affects(spec, path)]
            if hits:
                self._coordinators[name].notify(hits)
                notified.append(name)
        return notified

    def _overlay_key(self, path: str | Path) -> str:
        # Relative paths are relative to the session root, not the process cwd.
        return str((self.root / path).resolve())

    def set_overlay(self, path: str | Path, text: str) -> None:
        key = self._overlay_key(path)
        self._overlay = {**self._overlay, key: text}
        self.notify_changed([path])

    def clear_overlay(self, path: str | Path) -> None:
        key = self._overlay_key(path)
        if key in self._overlay:
            self._overlay = {item: text for item, text in self._overlay.items() if item != key}
            self.notify_changed([path])

    # Queries

    def rebuild(self, spec: str, timeout: float | None = None) -> CoverageReport:
        future = self.coordinator(spec).request_rebuild()
        try:
            return future.result(timeout)
        except CancelledError:
            raise SessionClosedError(f"session closed before spec {spec!r} was rebuilt") from None

    def get_report(self, spec: str) -> CoverageReport:
        return self.generation(spec).report

    def get_matrix(self, spec: str, filters: MatrixFilter | None = None) -> TraceabilityMatrix:
        generation = self.generation(spec)
        if filters is None:
            return generation.matrix
        return generation.matrix.filter(filters, generation.manifest)

    def get_impact(self, spec: str, rule_id: str) -> list[Reference]:
        return list(self.generation(spec).impact.references_for(rule_id))

    def get_at(self, spec: str, file: str | Path, line_or_range: int | tuple[int, int]) -> list[Rule]:
        generation = self.generation(spec)
        return rules_at(generation, self._relative(file), line_or_range)


def rules_at(
    generation: SpecGeneration,
    path: str,
    line_or_range: int | tuple[int, int],
) -> list[Rule]:
    """Declared rules referenced in a line range, once each, in location order."""
    if isinstance(line_or_range, tuple):
        start, end = line_or_range
    else:
        start = end = line_or_range
    rules: list[Rule] = []
    seen: set[str] = set()
    for reference in generation.locations.references_at(path, start, end):
        rule = generation.manifest.get(reference.rule_id)
        if rule is None or rule.id in seen:
            continue
        seen.add(rule.id)
        rules.append(rule)
    return rules
