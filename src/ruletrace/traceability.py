"""Rule-to-reference views: the traceability matrix and its two indices."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from ruletrace.model import (
    Reference,
    RuleLevel,
    SpecManifest,
    Verb,
    reference_sort_key,
)


@dataclass(frozen=True)
class MatrixFilter:
    prefix: str | None = None
    level: RuleLevel | None = None
    uncovered_only: bool = False
    missing_verify_only: bool = False

    def accepts(self, manifest: SpecManifest, rule_id: str, references: tuple[Reference, ...]) -> bool:
        if self.prefix and not rule_id.startswith(self.prefix):
            return False
        if self.level is not None:
            rule = manifest.get(rule_id)
            if rule is None or rule.level is not self.level:
                return False
        verbs = {reference.verb for reference in references}
        if self.uncovered_only and Verb.IMPL in verbs:
            return False
        if self.missing_verify_only and Verb.VERIFY in verbs:
            return False
        return True


@dataclass(frozen=True)
class TraceabilityMatrix:
    """Every manifest rule mapped to its references in location order."""

    rows: Mapping[str, tuple[Reference, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rows", MappingProxyType(dict(self.rows)))

    def __len__(self) -> int:
        return len(self.rows)

    def rule_ids(self) -> list[str]:
        return list(self.rows)

    def references_for(self, rule_id: str) -> tuple[Reference, ...]:
        return self.rows.get(rule_id, ())

    def filter(self, spec: MatrixFilter, manifest: SpecManifest) -> TraceabilityMatrix:
        return TraceabilityMatrix(
            rows={
                rule_id: references
                for rule_id, references in self.rows.items()
                if spec.accepts(manifest, rule_id, references)
            }
        )


def build_matrix(manifest: SpecManifest, references: Iterable[Reference]) -> TraceabilityMatrix:
    groups: dict[str, list[Reference]] = {rule_id: [] for rule_id in manifest.rule_ids()}
    for reference in references:
        group = groups.get(reference.rule_id)
        if group is not None:
            group.append(reference)
    return TraceabilityMatrix(
        rows={
            rule_id: tuple(sorted(group, key=reference_sort_key))
            for rule_id, group in groups.items()
        }
    )


class ImpactIndex:
    """All references to one rule; unknown or unreferenced rules give ``()``."""

    def __init__(self, matrix: TraceabilityMatrix) -> None:
        self._matrix = matrix

    def references_for(self, rule_id: str) -> tuple[Reference, ...]:
        return self._matrix.references_for(rule_id)


class LocationIndex:
    """References per file, sorted by (line, column) for range lookups."""

    def __init__(self, references: Iterable[Reference]) -> None:
        by_path: dict[str, list[Reference]] = {}
        for reference in references:
            by_path.setdefault(reference.location.path, []).append(reference)
        self._by_path: dict[str, tuple[Reference, ...]] = {}
        self._lines: dict[str, list[int]] = {}
        for path, group in by_path.items():
            ordered = tuple(
                sorted(
                    group,
                    key=lambda item: (item.location.line, item.location.column or 0, item.rule_id),
                )
            )
            self._by_path[path] = ordered
            self._lines[path] = [item.location.line for item in ordered]

    def paths(self) -> list[str]:
        return sorted(self._by_path)

    def references_at(self, path: str, start: int, end: int | None = None) -> list[Reference]:
        """References in ``path`` whose line lies in the inclusive range."""
        last = start if end is None else end
        if last < start:
            start, last = last, start
        lines = self._lines.get(path)
        if not lines:
            return []
        lo = bisect_left(lines, start)
        hi = bisect_right(lines, last)
        return list(self._by_path[path][lo:hi])
