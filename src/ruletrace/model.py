"""Domain types shared by extraction, scanning and coverage.

Everything here is immutable: a rebuild produces a fresh generation of rules
and references instead of mutating the previous one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping

RULE_ID_PATTERN = r"[a-z][a-z0-9_-]*(?:\.[a-z0-9_-]+)+"
_RULE_ID_RE = re.compile(rf"^{RULE_ID_PATTERN}$")


def is_valid_rule_id(value: str) -> bool:
    return bool(_RULE_ID_RE.match(value))


class RuleStatus(str, Enum):
    DRAFT = "draft"
    STABLE = "stable"
    DEPRECATED = "deprecated"
    REMOVED = "removed"


class RuleLevel(str, Enum):
    MUST = "must"
    SHOULD = "should"
    MAY = "may"


class Verb(str, Enum):
    DEFINE = "define"
    IMPL = "impl"
    VERIFY = "verify"
    DEPENDS = "depends"
    RELATED = "related"


VERB_ORDER: tuple[Verb, ...] = (
    Verb.DEFINE,
    Verb.IMPL,
    Verb.VERIFY,
    Verb.DEPENDS,
    Verb.RELATED,
)
_VERB_RANK = {verb: rank for rank, verb in enumerate(VERB_ORDER)}


@dataclass(frozen=True)
class DocumentSpan:
    path: str
    start_line: int
    end_line: int

    def __str__(self) -> str:
        if self.end_line > self.start_line:
            return f"{self.path}:{self.start_line}-{self.end_line}"
        return f"{self.path}:{self.start_line}"


@dataclass(frozen=True)
class SourceLocation:
    path: str
    line: int
    column: int | None = None

    def __str__(self) -> str:
        if self.column is None:
            return f"{self.path}:{self.line}"
        return f"{self.path}:{self.line}:{self.column}"


@dataclass(frozen=True)
class Rule:
    id: str
    url: str | None = None
    status: RuleStatus | None = None
    level: RuleLevel | None = None
    since: str | None = None
    until: str | None = None
    tags: frozenset[str] = frozenset()
    body: str | None = None
    declared_at: DocumentSpan | None = None


@dataclass(frozen=True)
class Reference:
    rule_id: str
    verb: Verb
    location: SourceLocation
    raw_text: str = ""

    def __str__(self) -> str:
        return f"{self.rule_id}@{self.location.path}:{self.location.line}"


def reference_sort_key(reference: Reference) -> tuple[str, int, int, int, str]:
    location = reference.location
    return (
        location.path,
        location.line,
        location.column or 0,
        _VERB_RANK[reference.verb],
        reference.rule_id,
    )


@dataclass(frozen=True)
class SpecManifest:
    name: str
    rules: Mapping[str, Rule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules.values())

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self.rules

    def get(self, rule_id: str) -> Rule | None:
        return self.rules.get(rule_id)

    def rule_ids(self) -> list[str]:
        return sorted(self.rules)


@dataclass(frozen=True)
class ExtractionWarning:
    path: str
    line: int
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.message}"


@dataclass(frozen=True)
class ScanWarning:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"
