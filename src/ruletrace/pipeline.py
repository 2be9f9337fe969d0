"""One-shot extraction, scan and join for a configured spec."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

import structlog

from ruletrace.config import SpecConfig
from ruletrace.coverage import CoverageReport, compute_report
from ruletrace.model import Reference, SpecManifest
from ruletrace.scanner import display_path, scan_tree
from ruletrace.sources import Fetcher, fetch_url, load_rules, rule_document_paths
from ruletrace.traceability import ImpactIndex, LocationIndex, TraceabilityMatrix, build_matrix

logger = structlog.get_logger("ruletrace.pipeline")


@dataclass(frozen=True)
class SpecGeneration:
    """One complete, immutable rebuild result for a spec."""

    spec_name: str
    version: int
    manifest: SpecManifest
    references: tuple[Reference, ...]
    report: CoverageReport
    matrix: TraceabilityMatrix
    impact: ImpactIndex
    locations: LocationIndex
    rule_paths: frozenset[str] = frozenset()


def join_generation(
    manifest: SpecManifest,
    references: Iterable[Reference],
    *,
    version: int = 1,
    warnings: Iterable[str] = (),
    rule_paths: Iterable[str] = (),
) -> SpecGeneration:
    refs = tuple(references)
    matrix = build_matrix(manifest, refs)
    return SpecGeneration(
        spec_name=manifest.name,
        version=version,
        manifest=manifest,
        references=refs,
        report=compute_report(manifest, refs, warnings=warnings),
        matrix=matrix,
        impact=ImpactIndex(matrix),
        locations=LocationIndex(refs),
        rule_paths=frozenset(rule_paths),
    )


def build_generation(
    spec: SpecConfig,
    *,
    root: Path,
    version: int = 1,
    overlay: Mapping[str, str] | None = None,
    fetch: Fetcher = fetch_url,
) -> SpecGeneration:
    """Rebuild everything for ``spec`` from scratch.

    Raises ``ManifestLoadError`` or ``DuplicateRuleError`` when the rule
    source as a whole is unusable; per-rule and per-file problems end up in
    ``report.warnings`` instead.
    """
    extraction = load_rules(spec, root=root, overlay=overlay, fetch=fetch)
    scan = scan_tree(root, spec.include, spec.exclude, overlay=overlay)
    warnings = [*extraction.messages(), *(str(item) for item in scan.warnings)]
    generation = join_generation(
        extraction.manifest,
        scan.references,
        version=version,
        warnings=warnings,
        rule_paths=(display_path(path, root) for path in rule_document_paths(spec, root)),
    )
    logger.info(
        "spec_built",
        spec=spec.name,
        version=version,
        rules=generation.report.total_rules,
        references=len(generation.references),
        coverage=round(generation.report.coverage_percent, 1),
    )
    return generation
