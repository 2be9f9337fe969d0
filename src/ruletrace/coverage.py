"""Join a manifest against its references into a coverage report."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from ruletrace.model import VERB_ORDER, DocumentSpan, Reference, SpecManifest, Verb, reference_sort_key

UNDERSPECIFIED = "underspecified"
HARD_TO_VERIFY = "hard-to-verify"

_RFC2119_RE = re.compile(r"\b(MUST|REQUIRED|SHALL|SHOULD|RECOMMENDED|MAY|OPTIONAL)\b")
_NEGATIVE_RE = re.compile(r"\b(MUST|SHALL)\s+NOT\b")


@dataclass(frozen=True)
class RuleDiagnostic:
    rule_id: str
    kind: str
    message: str
    declared_at: DocumentSpan | None = None


@dataclass(frozen=True)
class CoverageReport:
    spec_name: str
    total_rules: int
    covered_rules: tuple[str, ...] = ()
    verified_rules: tuple[str, ...] = ()
    orphaned_rules: tuple[str, ...] = ()
    referenced_only_rules: tuple[str, ...] = ()
    invalid_references: tuple[Reference, ...] = ()
    reference_counts_by_verb: Mapping[Verb, int] = field(default_factory=dict)
    diagnostics: tuple[RuleDiagnostic, ...] = ()
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "reference_counts_by_verb",
            MappingProxyType(dict(self.reference_counts_by_verb)),
        )

    @property
    def coverage_percent(self) -> float:
        # An empty manifest counts as fully covered.
        if self.total_rules == 0:
            return 100.0
        return len(self.covered_rules) / self.total_rules * 100.0

    @property
    def verification_percent(self) -> float:
        if self.total_rules == 0:
            return 100.0
        return len(self.verified_rules) / self.total_rules * 100.0


def rule_diagnostics(manifest: SpecManifest) -> list[RuleDiagnostic]:
    """Advisory wording checks on rule bodies; never affect coverage."""
    diagnostics: list[RuleDiagnostic] = []
    for rule_id in manifest.rule_ids():
        rule = manifest.rules[rule_id]
        if rule.body is None:
            continue
        if not _RFC2119_RE.search(rule.body):
            diagnostics.append(
                RuleDiagnostic(
                    rule_id=rule_id,
                    kind=UNDERSPECIFIED,
                    message="rule text has no RFC 2119 keyword (MUST/SHOULD/MAY)",
                    declared_at=rule.declared_at,
                )
            )
        if _NEGATIVE_RE.search(rule.body):
            diagnostics.append(
                RuleDiagnostic(
                    rule_id=rule_id,
                    kind=HARD_TO_VERIFY,
                    message="negative obligation (MUST NOT/SHALL NOT) is hard to verify",
                    declared_at=rule.declared_at,
                )
            )
    return diagnostics


def compute_report(
    manifest: SpecManifest,
    references: Iterable[Reference],
    *,
    warnings: Iterable[str] = (),
) -> CoverageReport:
    verbs_by_rule: dict[str, set[Verb]] = {rule_id: set() for rule_id in manifest.rules}
    invalid: list[Reference] = []
    counts = {verb: 0 for verb in VERB_ORDER}
    for reference in references:
        verbs = verbs_by_rule.get(reference.rule_id)
        if verbs is None:
            invalid.append(reference)
            continue
        verbs.add(reference.verb)
        counts[reference.verb] += 1

    covered: list[str] = []
    verified: list[str] = []
    orphaned: list[str] = []
    referenced_only: list[str] = []
    for rule_id in sorted(verbs_by_rule):
        verbs = verbs_by_rule[rule_id]
        if Verb.VERIFY in verbs:
            verified.append(rule_id)
        if Verb.IMPL in verbs:
            covered.append(rule_id)
        elif verbs:
            referenced_only.append(rule_id)
        else:
            orphaned.append(rule_id)

    return CoverageReport(
        spec_name=manifest.name,
        total_rules=len(manifest),
        covered_rules=tuple(covered),
        verified_rules=tuple(verified),
        orphaned_rules=tuple(orphaned),
        referenced_only_rules=tuple(referenced_only),
        invalid_references=tuple(sorted(invalid, key=reference_sort_key)),
        reference_counts_by_verb=counts,
        diagnostics=tuple(rule_diagnostics(manifest)),
        warnings=tuple(warnings),
    )


def passes(report: CoverageReport, threshold: float) -> bool:
    """Whether a report meets ``threshold`` percent with no invalid references."""
    return not report.invalid_references and report.coverage_percent >= threshold
