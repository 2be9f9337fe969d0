from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable
from urllib.parse import unquote, urlparse

import structlog
from pydantic import ValidationError
from pygls.lsp.server import LanguageServer
from lsprotocol.types import (
    INITIALIZED,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    TEXT_DOCUMENT_HOVER,
    Diagnostic,
    DiagnosticSeverity,
    Hover,
    Location,
    MarkupContent,
    MarkupKind,
    MessageType,
    Position,
    PublishDiagnosticsParams,
    Range,
    ShowMessageParams,
)

from ruletrace import __version__
from ruletrace.config import load_config
from ruletrace.exceptions import ConfigError, NotBuiltError, RuletraceError
from ruletrace.model import Reference, Rule, RuleLevel, Verb
from ruletrace.pipeline import SpecGeneration
from ruletrace.scanner import LineReference, display_path, reference_at
from ruletrace.schema import (
    QueryRequest,
    QueryResponse,
    matrix_dto,
    reference_dto,
    report_dto,
    rule_dto,
)
from ruletrace.session import LiveSession, RebuildFailed, ReportPublished, SessionEvent
from ruletrace.traceability import MatrixFilter

QUERY_COMMAND = "ruletrace.query"
_QUERY_REBUILD_TIMEOUT_SECONDS = 60.0

logger = structlog.get_logger("ruletrace.server")


class RuletraceLanguageServer(LanguageServer):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.session: LiveSession | None = None
        self.published_paths: set[str] = set()


server = RuletraceLanguageServer("ruletrace", __version__)


def _uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


def _dispatcher() -> Callable[[Callable[[], None]], None]:
    # Session events arrive on rebuild threads; protocol writes belong to the loop.
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return lambda fn: fn()
    return lambda fn: loop.call_soon_threadsafe(fn)


def _generations(session: LiveSession) -> list[SpecGeneration]:
    generations: list[SpecGeneration] = []
    for name in session.spec_names():
        try:
            generations.append(session.generation(name))
        except NotBuiltError:
            continue
    return generations


def _find_rule(session: LiveSession, rule_id: str) -> tuple[SpecGeneration, Rule] | None:
    for generation in _generations(session):
        rule = generation.manifest.get(rule_id)
        if rule is not None:
            return generation, rule
    return None


def _token_range(reference: Reference, lines: list[str] | None) -> Range:
    line = reference.location.line - 1
    start = (reference.location.column or 1) - 1
    end = start + len(reference.rule_id) + 2
    if lines is not None and 0 <= line < len(lines):
        token = reference_at(lines[line], start)
        if token is not None:
            start, end = token.start, token.end
    return Range(start=Position(line=line, character=start), end=Position(line=line, character=end))


def _diagnostics_for_path(
    session: LiveSession,
    rel_path: str,
    lines: list[str] | None = None,
) -> list[Diagnostic]:
    """Invalid references in one file; a rule declared by any built spec is valid."""
    generations = _generations(session)
    known = set()
    for generation in generations:
        known.update(generation.manifest.rule_ids())
    seen: set[Reference] = set()
    diagnostics: list[Diagnostic] = []
    for generation in generations:
        for reference in generation.report.invalid_references:
            if reference.location.path != rel_path:
                continue
            if reference.rule_id in known or reference in seen:
                continue
            seen.add(reference)
            diagnostics.append(
                Diagnostic(
                    range=_token_range(reference, lines),
                    message=f"Unknown rule {reference.rule_id!r}",
                    severity=DiagnosticSeverity.Error,
                    source="ruletrace",
                )
            )
    return diagnostics


def _publish_path(ls: RuletraceLanguageServer, rel_path: str, lines: list[str] | None = None) -> None:
    session = ls.session
    if session is None:
        return
    diagnostics = _diagnostics_for_path(session, rel_path, lines)
    uri = (session.root / rel_path).as_uri()
    ls.text_document_publish_diagnostics(PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics))
    if diagnostics:
        ls.published_paths.add(rel_path)
    else:
        ls.published_paths.discard(rel_path)


def _publish_all(ls: RuletraceLanguageServer) -> None:
    session = ls.session
    if session is None:
        return
    paths = set(ls.published_paths)
    for generation in _generations(session):
        paths.update(reference.location.path for reference in generation.report.invalid_references)
    for rel_path in sorted(paths):
        _publish_path(ls, rel_path)


def _on_session_event(ls: RuletraceLanguageServer, event: SessionEvent) -> None:
    if isinstance(event, ReportPublished):
        _publish_all(ls)
    elif isinstance(event, RebuildFailed):
        ls.window_show_message(
            ShowMessageParams(
                type=MessageType.Warning,
                message=f"ruletrace: rebuild of {event.spec_name} failed: {event.message}",
            )
        )


def _start_session(ls: RuletraceLanguageServer) -> LiveSession | None:
    root = Path(ls.workspace.root_path or ".")
    try:
        config = load_config(root)
    except ConfigError as exc:
        logger.error("lsp_config_invalid", root=str(root), error=str(exc))
        ls.window_show_message(ShowMessageParams(type=MessageType.Error, message=str(exc)))
        return None
    session = LiveSession(config.specs, root=root, debounce=config.debounce_ms / 1000)
    dispatch = _dispatcher()
    session.subscribe(lambda event: dispatch(lambda: _on_session_event(ls, event)))
    ls.session = session
    session.start()
    logger.info("lsp_session_started", root=str(root), specs=session.spec_names())
    return session


@server.feature(INITIALIZED)
def initialized(ls: RuletraceLanguageServer, params) -> None:
    if ls.session is None:
        _start_session(ls)


@server.feature(TEXT_DOCUMENT_DID_OPEN)
def did_open(ls: RuletraceLanguageServer, params) -> None:
    session = ls.session
    if session is None:
        return
    path = _uri_to_path(params.text_document.uri)
    text = params.text_document.text
    session.set_overlay(path, text)
    _publish_path(ls, display_path(path, session.root), text.splitlines())


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
def did_change(ls: RuletraceLanguageServer, params) -> None:
    session = ls.session
    if session is None:
        return
    uri = params.text_document.uri
    document = ls.workspace.get_text_document(uri)
    session.set_overlay(_uri_to_path(uri), document.source)


@server.feature(TEXT_DOCUMENT_DID_SAVE)
def did_save(ls: RuletraceLanguageServer, params) -> None:
    if ls.session is not None:
        ls.session.notify_changed([_uri_to_path(params.text_document.uri)])


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: RuletraceLanguageServer, params) -> None:
    if ls.session is not None:
        ls.session.clear_overlay(_uri_to_path(params.text_document.uri))


def _token_under_cursor(ls: RuletraceLanguageServer, params) -> LineReference | None:
    document = ls.workspace.get_text_document(params.text_document.uri)
    lines = document.lines
    line = params.position.line
    if line >= len(lines):
        return None
    return reference_at(lines[line], params.position.character)


def _hover_markdown(generation: SpecGeneration, rule: Rule) -> str:
    parts = [f"**{rule.id}** ({generation.spec_name})"]
    details = [
        f"{label}: {value}"
        for label, value in (
            ("status", rule.status.value if rule.status else None),
            ("level", rule.level.value if rule.level else None),
            ("since", rule.since),
            ("until", rule.until),
            ("tags", ", ".join(sorted(rule.tags)) or None),
        )
        if value
    ]
    if details:
        parts.append(" | ".join(details))
    if rule.body:
        parts.append(rule.body)
    references = generation.impact.references_for(rule.id)
    counts = {verb: 0 for verb in Verb}
    for reference in references:
        counts[reference.verb] += 1
    parts.append(
        "references: " + ", ".join(f"{verb.value} {count}" for verb, count in counts.items() if count)
        if references
        else "references: none"
    )
    if rule.url:
        parts.append(f"[{rule.url}]({rule.url})")
    return "\n\n".join(parts)


@server.feature(TEXT_DOCUMENT_HOVER)
def hover(ls: RuletraceLanguageServer, params) -> Hover | None:
    session = ls.session
    if session is None:
        return None
    token = _token_under_cursor(ls, params)
    if token is None:
        return None
    line = params.position.line
    token_range = Range(
        start=Position(line=line, character=token.start),
        end=Position(line=line, character=token.end),
    )
    found = _find_rule(session, token.rule_id)
    if found is None:
        value = f"Unknown rule `{token.rule_id}`"
    else:
        value = _hover_markdown(*found)
    return Hover(contents=MarkupContent(kind=MarkupKind.Markdown, value=value), range=token_range)


@server.feature(TEXT_DOCUMENT_DEFINITION)
def definition(ls: RuletraceLanguageServer, params) -> Location | None:
    session = ls.session
    if session is None:
        return None
    token = _token_under_cursor(ls, params)
    if token is None:
        return None
    found = _find_rule(session, token.rule_id)
    if found is None:
        return None
    _, rule = found
    if rule.declared_at is None:
        return None
    line = rule.declared_at.start_line - 1
    return Location(
        uri=(session.root / rule.declared_at.path).as_uri(),
        range=Range(start=Position(line=line, character=0), end=Position(line=line, character=0)),
    )


def answer_query(session: LiveSession, request: QueryRequest) -> QueryResponse:
    response = QueryResponse(kind=request.kind, spec=request.spec)
    try:
        if request.kind == "report":
            response.report = report_dto(session.get_report(request.spec))
        elif request.kind == "rebuild":
            report = session.rebuild(request.spec, timeout=_QUERY_REBUILD_TIMEOUT_SECONDS)
            response.report = report_dto(report)
        elif request.kind == "matrix":
            filters = MatrixFilter(
                prefix=request.prefix,
                level=RuleLevel(request.level) if request.level else None,
                uncovered_only=request.uncovered,
                missing_verify_only=request.missing_verify,
            )
            response.matrix = matrix_dto(request.spec, session.get_matrix(request.spec, filters))
        elif request.kind == "impact":
            if not request.rule_id:
                response.errors.append("impact query needs rule_id")
            else:
                response.references = [
                    reference_dto(item) for item in session.get_impact(request.spec, request.rule_id)
                ]
        elif request.kind == "at":
            if not request.path or request.start_line is None:
                response.errors.append("at query needs path and start_line")
            else:
                end = request.end_line if request.end_line is not None else request.start_line
                rules = session.get_at(request.spec, request.path, (request.start_line, end))
                response.rules = [rule_dto(rule) for rule in rules]
        else:
            response.errors.append(f"unknown query kind {request.kind!r}")
    except (RuletraceError, ValueError, TimeoutError) as exc:
        response.errors.append(str(exc))
    return response


@server.command(QUERY_COMMAND)
def execute_query(ls: RuletraceLanguageServer, payload: dict | None = None) -> dict:
    try:
        request = QueryRequest.model_validate(payload or {})
    except ValidationError as exc:
        return QueryResponse(kind="", spec="", errors=[str(exc)]).model_dump()
    if ls.session is None:
        return QueryResponse(
            kind=request.kind, spec=request.spec, errors=["no ruletrace session"]
        ).model_dump()
    return answer_query(ls.session, request).model_dump()


def start(start_fn: Callable[[], None] | None = None) -> None:
    (start_fn or server.start_io)()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
