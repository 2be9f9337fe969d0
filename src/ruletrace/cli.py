from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Optional

import typer

from ruletrace.config import RuletraceConfig, SpecConfig, load_config
from ruletrace.coverage import CoverageReport, passes
from ruletrace.exceptions import ConfigError, RuletraceError
from ruletrace.log import configure_logging
from ruletrace.manifest import DEFAULT_PREFIX, SourceDocument, dump_manifest, extract_manifest
from ruletrace.model import VERB_ORDER, Reference, RuleLevel
from ruletrace.pipeline import SpecGeneration, build_generation
from ruletrace.scanner import display_path
from ruletrace.schema import matrix_dto, reference_dto, report_dto, rule_dto
from ruletrace.session import LiveSession, RebuildFailed, ReportPublished, SessionEvent, rules_at
from ruletrace.traceability import MatrixFilter, TraceabilityMatrix
from ruletrace.watcher import PollingWatcher

app = typer.Typer(add_completion=False)

EXIT_FAILED = 1
EXIT_CONFIG = 2

_STDOUT_ALIAS = "-"


@app.callback()
def main_callback(
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning or error."),
    log_format: str = typer.Option("console", "--log-format", help="console or json."),
) -> None:
    """Trace prose requirements to the code comments that cite them."""
    configure_logging(log_level, fmt=log_format)


def _fail(message: str, *, code: int = EXIT_FAILED) -> typer.Exit:
    typer.secho(message, err=True, fg=typer.colors.RED)
    return typer.Exit(code=code)


def _load(root: Path, config: Optional[Path]) -> RuletraceConfig:
    try:
        loaded = load_config(root, config)
    except ConfigError as exc:
        raise _fail(str(exc), code=EXIT_CONFIG) from exc
    if not loaded.specs:
        raise _fail(f"no specs configured (looked for {config or root / 'ruletrace.toml'})", code=EXIT_CONFIG)
    return loaded


def _spec(loaded: RuletraceConfig, name: str) -> SpecConfig:
    try:
        return loaded.get_spec(name)
    except ConfigError as exc:
        raise _fail(str(exc), code=EXIT_CONFIG) from exc


def _build(spec: SpecConfig, root: Path) -> SpecGeneration:
    try:
        return build_generation(spec, root=root)
    except RuletraceError as exc:
        raise _fail(f"{spec.name}: {exc}") from exc


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _format_reference(reference: Reference) -> str:
    return f"{reference.verb.value} {reference.location}"


def render_report(report: CoverageReport, *, verbose: bool = False) -> list[str]:
    lines = [
        f"{report.spec_name}: {len(report.covered_rules)}/{report.total_rules} rules covered "
        f"({report.coverage_percent:.1f}%), {len(report.verified_rules)}/{report.total_rules} "
        f"verified ({report.verification_percent:.1f}%)"
    ]
    counts = report.reference_counts_by_verb
    lines.append("  references: " + " ".join(f"{verb.value}={counts.get(verb, 0)}" for verb in VERB_ORDER))
    if report.orphaned_rules:
        lines.append(f"  orphaned ({len(report.orphaned_rules)}):")
        lines.extend(f"    {rule_id}" for rule_id in report.orphaned_rules)
    if report.referenced_only_rules:
        lines.append(f"  referenced but not implemented ({len(report.referenced_only_rules)}):")
        lines.extend(f"    {rule_id}" for rule_id in report.referenced_only_rules)
    if report.invalid_references:
        lines.append(f"  invalid references ({len(report.invalid_references)}):")
        lines.extend(
            f"    {reference.rule_id} at {reference.location}" for reference in report.invalid_references
        )
    if verbose:
        if report.diagnostics:
            lines.append(f"  diagnostics ({len(report.diagnostics)}):")
            lines.extend(
                f"    {diagnostic.rule_id}: {diagnostic.kind}: {diagnostic.message}"
                for diagnostic in report.diagnostics
            )
        if report.warnings:
            lines.append(f"  warnings ({len(report.warnings)}):")
            lines.extend(f"    {warning}" for warning in report.warnings)
    return lines


def render_matrix(matrix: TraceabilityMatrix) -> list[str]:
    lines: list[str] = []
    for rule_id in matrix.rule_ids():
        references = matrix.references_for(rule_id)
        if not references:
            lines.append(f"{rule_id}: (none)")
            continue
        lines.append(f"{rule_id}:")
        lines.extend(f"  {_format_reference(reference)}" for reference in references)
    return lines


def parse_line_range(value: str) -> tuple[int, int]:
    start_text, sep, end_text = value.partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if sep else start
    except ValueError:
        raise typer.BadParameter(f"expected LINE or START-END, got {value!r}") from None
    if start < 1 or end < 1:
        raise typer.BadParameter("line numbers start at 1")
    return start, end


@app.command("report")
def report(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    spec: Optional[List[str]] = typer.Option(None, "--spec", help="Only these specs (repeatable)."),
    check: bool = typer.Option(False, "--check", help="Exit 1 unless every spec passes."),
    threshold: float = typer.Option(0.0, "--threshold", min=0.0, max=100.0),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Coverage report for every configured spec."""
    loaded = _load(root, config)
    specs = [_spec(loaded, name) for name in spec] if spec else list(loaded.specs)
    results = [(item, _build(item, root).report) for item in specs]
    failed = [item.name for item, result in results if not passes(result, threshold)]
    if json_output:
        _echo_json(
            [
                report_dto(result, passed=passes(result, threshold) if check else None).model_dump()
                for _, result in results
            ]
        )
    else:
        for _, result in results:
            for line in render_report(result, verbose=verbose):
                typer.echo(line)
    if check and failed:
        raise _fail(f"check failed (threshold {threshold:.1f}%): {', '.join(failed)}")


@app.command("rules")
def rules(
    files: List[Path] = typer.Argument(..., help="Prose documents holding rule markers."),
    base_url: str = typer.Option("", "--base-url", "-b"),
    output: str = typer.Option(_STDOUT_ALIAS, "--output", "-o", help="Write here; '-' for stdout."),
    prefix: str = typer.Option(DEFAULT_PREFIX, "--prefix"),
    name: str = typer.Option("rules", "--name"),
) -> None:
    """Extract a rule manifest from prose documents."""
    documents: list[SourceDocument] = []
    for path in files:
        try:
            documents.append(SourceDocument(path=path.as_posix(), text=path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError) as exc:
            raise _fail(f"{path}: {exc}") from exc
    try:
        result = extract_manifest(documents, name=name, base_url=base_url, prefix=prefix)
    except RuletraceError as exc:
        raise _fail(str(exc)) from exc
    for message in result.messages():
        typer.secho(message, err=True, fg=typer.colors.YELLOW)
    text = dump_manifest(result.manifest)
    if output == _STDOUT_ALIAS:
        typer.echo(text, nl=False)
    else:
        Path(output).write_text(text, encoding="utf-8")
        typer.echo(f"Wrote {len(result.manifest)} rules to {output}", err=True)


@app.command("matrix")
def matrix(
    spec_name: str = typer.Argument(..., metavar="SPEC"),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Only rule ids starting with this."),
    level: Optional[RuleLevel] = typer.Option(None, "--level", case_sensitive=False),
    uncovered: bool = typer.Option(False, "--uncovered", help="Only rules without impl."),
    missing_verify: bool = typer.Option(False, "--missing-verify", help="Only rules without verify."),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Rule-by-rule traceability matrix."""
    generation = _build(_spec(_load(root, config), spec_name), root)
    filters = MatrixFilter(
        prefix=prefix,
        level=level,
        uncovered_only=uncovered,
        missing_verify_only=missing_verify,
    )
    filtered = generation.matrix.filter(filters, generation.manifest)
    if json_output:
        _echo_json(matrix_dto(spec_name, filtered).model_dump())
        return
    for line in render_matrix(filtered):
        typer.echo(line)


@app.command("impact")
def impact(
    spec_name: str = typer.Argument(..., metavar="SPEC"),
    rule_id: str = typer.Argument(..., metavar="RULE"),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Every code location that cites RULE."""
    generation = _build(_spec(_load(root, config), spec_name), root)
    references = generation.impact.references_for(rule_id)
    if json_output:
        _echo_json([reference_dto(item).model_dump() for item in references])
        return
    if rule_id not in generation.manifest:
        typer.secho(f"{rule_id} is not declared in {spec_name}", err=True, fg=typer.colors.YELLOW)
    if not references:
        typer.echo(f"{rule_id}: no references")
        return
    for reference in references:
        typer.echo(_format_reference(reference))


@app.command("at")
def at(
    spec_name: str = typer.Argument(..., metavar="SPEC"),
    file: Path = typer.Argument(..., metavar="FILE"),
    lines: str = typer.Argument(..., metavar="LINE[-END]"),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    json_output: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Rules cited in FILE between the given lines."""
    line_range = parse_line_range(lines)
    generation = _build(_spec(_load(root, config), spec_name), root)
    rel_path = display_path(file, root) if file.is_absolute() else file.as_posix()
    found = rules_at(generation, rel_path, line_range)
    if json_output:
        _echo_json([rule_dto(rule).model_dump() for rule in found])
        return
    for rule in found:
        typer.echo(f"{rule.id}\t{rule.url or ''}".rstrip())


def format_event(event: SessionEvent) -> str:
    if isinstance(event, ReportPublished):
        report = event.report
        return (
            f"[{event.spec_name} v{event.version}] {len(report.covered_rules)}/{report.total_rules} "
            f"covered ({report.coverage_percent:.1f}%), "
            f"{len(report.invalid_references)} invalid references"
        )
    if isinstance(event, RebuildFailed):
        return f"[{event.spec_name}] rebuild failed: {event.message}"
    return str(event)


@app.command("watch")
def watch(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
) -> None:
    """Rebuild reports as files change until interrupted."""
    loaded = _load(root, config)
    session = LiveSession(loaded.specs, root=root, debounce=loaded.debounce_ms / 1000)
    session.subscribe(lambda event: typer.echo(format_event(event)))
    watcher = PollingWatcher(
        root,
        session.notify_changed,
        interval=loaded.poll_interval_ms / 1000,
    )
    stop = threading.Event()
    with session:
        watcher.start()
        try:
            stop.wait()
        except KeyboardInterrupt:
            typer.echo("stopping", err=True)
        finally:
            watcher.stop()


@app.command("lsp")
def lsp() -> None:
    """Run the language server on stdio."""
    from ruletrace.server import start

    start()


def main() -> None:
    app()
