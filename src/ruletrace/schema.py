from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel

from ruletrace.coverage import CoverageReport, RuleDiagnostic
from ruletrace.model import Reference, Rule
from ruletrace.traceability import TraceabilityMatrix


class ReferenceDTO(BaseModel):
    rule_id: str
    verb: str
    path: str
    line: int
    column: Optional[int] = None
    raw_text: str = ""


class RuleDTO(BaseModel):
    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    level: Optional[str] = None
    since: Optional[str] = None
    until: Optional[str] = None
    tags: List[str] = []
    body: Optional[str] = None
    declared_at: Optional[str] = None


class RuleDiagnosticDTO(BaseModel):
    rule_id: str
    kind: str
    message: str
    declared_at: Optional[str] = None


class ReportDTO(BaseModel):
    spec_name: str
    total_rules: int
    coverage_percent: float
    verification_percent: float
    covered_rules: List[str] = []
    verified_rules: List[str] = []
    orphaned_rules: List[str] = []
    referenced_only_rules: List[str] = []
    invalid_references: List[ReferenceDTO] = []
    reference_counts_by_verb: Dict[str, int] = {}
    diagnostics: List[RuleDiagnosticDTO] = []
    warnings: List[str] = []
    passed: Optional[bool] = None


class MatrixRowDTO(BaseModel):
    rule_id: str
    references: List[ReferenceDTO] = []


class MatrixDTO(BaseModel):
    spec_name: str
    rows: List[MatrixRowDTO] = []


class QueryRequest(BaseModel):
    kind: str
    spec: str
    rule_id: Optional[str] = None
    path: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    prefix: Optional[str] = None
    level: Optional[str] = None
    uncovered: bool = False
    missing_verify: bool = False


class QueryResponse(BaseModel):
    kind: str
    spec: str
    report: Optional[ReportDTO] = None
    matrix: Optional[MatrixDTO] = None
    references: List[ReferenceDTO] = []
    rules: List[RuleDTO] = []
    errors: List[str] = []


def reference_dto(reference: Reference) -> ReferenceDTO:
    return ReferenceDTO(
        rule_id=reference.rule_id,
        verb=reference.verb.value,
        path=reference.location.path,
        line=reference.location.line,
        column=reference.location.column,
        raw_text=reference.raw_text,
    )


def rule_dto(rule: Rule) -> RuleDTO:
    return RuleDTO(
        id=rule.id,
        url=rule.url,
        status=rule.status.value if rule.status else None,
        level=rule.level.value if rule.level else None,
        since=rule.since,
        until=rule.until,
        tags=sorted(rule.tags),
        body=rule.body,
        declared_at=str(rule.declared_at) if rule.declared_at else None,
    )


def _diagnostic_dto(diagnostic: RuleDiagnostic) -> RuleDiagnosticDTO:
    return RuleDiagnosticDTO(
        rule_id=diagnostic.rule_id,
        kind=diagnostic.kind,
        message=diagnostic.message,
        declared_at=str(diagnostic.declared_at) if diagnostic.declared_at else None,
    )


def report_dto(report: CoverageReport, *, passed: bool | None = None) -> ReportDTO:
    return ReportDTO(
        spec_name=report.spec_name,
        total_rules=report.total_rules,
        coverage_percent=report.coverage_percent,
        verification_percent=report.verification_percent,
        covered_rules=list(report.covered_rules),
        verified_rules=list(report.verified_rules),
        orphaned_rules=list(report.orphaned_rules),
        referenced_only_rules=list(report.referenced_only_rules),
        invalid_references=[reference_dto(item) for item in report.invalid_references],
        reference_counts_by_verb={
            verb.value: count for verb, count in report.reference_counts_by_verb.items()
        },
        diagnostics=[_diagnostic_dto(item) for item in report.diagnostics],
        warnings=list(report.warnings),
        passed=passed,
    )


def matrix_dto(spec_name: str, matrix: TraceabilityMatrix) -> MatrixDTO:
    return MatrixDTO(
        spec_name=spec_name,
        rows=[
            MatrixRowDTO(
                rule_id=rule_id,
                references=[reference_dto(item) for item in matrix.references_for(rule_id)],
            )
            for rule_id in matrix.rule_ids()
        ],
    )
