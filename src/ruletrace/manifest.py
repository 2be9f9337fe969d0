"""Rule declarations: prose extraction and the JSON interchange manifest.

A declaration is a line of the form::

    r[channel.id.parity status=stable level=must tags=wire,ids]
    The initiator MUST allocate odd channel ids.

The paragraph after the marker (up to a blank line or the next marker) is the
rule body. Markers inside fenced code blocks are documentation, not rules.
"""

from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass
from typing import Iterable, Mapping

import structlog

from ruletrace.exceptions import DuplicateRuleError, ManifestLoadError, ParseError
from ruletrace.model import (
    DocumentSpan,
    ExtractionWarning,
    Rule,
    RuleLevel,
    RuleStatus,
    SpecManifest,
    is_valid_rule_id,
)

logger = structlog.get_logger("ruletrace.manifest")

DEFAULT_PREFIX = "r"
_FENCE_RE = re.compile(r"^(`{3,}|~{3,})")
_KNOWN_KEYS = frozenset({"status", "level", "since", "until", "tags", "url"})


@dataclass(frozen=True)
class SourceDocument:
    path: str
    text: str


@dataclass(frozen=True)
class ExtractionResult:
    manifest: SpecManifest
    warnings: tuple[ExtractionWarning, ...] = ()
    errors: tuple[ParseError, ...] = ()

    def messages(self) -> list[str]:
        return [str(item) for item in self.warnings] + [str(item) for item in self.errors]


@dataclass(frozen=True)
class _Marker:
    path: str
    line: int
    content: str
    body_lines: tuple[str, ...]
    end_line: int


def _marker_re(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}\[(?P<content>[^\]]*)\]$")


def _iter_markers(document: SourceDocument, marker_re: re.Pattern[str]) -> list[_Marker]:
    lines = document.text.splitlines()
    markers: list[_Marker] = []
    fence: str | None = None
    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        fence_match = _FENCE_RE.match(stripped)
        if fence is not None:
            if fence_match and fence_match.group(1)[0] == fence[0] and len(fence_match.group(1)) >= len(fence):
                fence = None
            index += 1
            continue
        if fence_match:
            fence = fence_match.group(1)
            index += 1
            continue
        match = marker_re.match(stripped)
        if match is None:
            index += 1
            continue
        marker_line = index + 1
        body: list[str] = []
        index += 1
        while index < len(lines):
            candidate = lines[index].strip()
            if not candidate or marker_re.match(candidate) or _FENCE_RE.match(candidate):
                break
            body.append(candidate)
            index += 1
        markers.append(
            _Marker(
                path=document.path,
                line=marker_line,
                content=match.group("content").strip(),
                body_lines=tuple(body),
                end_line=marker_line + len(body),
            )
        )
    return markers


def _parse_attributes(marker: _Marker, tokens: list[str]) -> tuple[dict[str, str], list[ExtractionWarning]]:
    attrs: dict[str, str] = {}
    warnings: list[ExtractionWarning] = []
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise ParseError(
                f"malformed attribute {token!r}; expected key=value",
                path=marker.path,
                line=marker.line,
            )
        if key not in _KNOWN_KEYS:
            warnings.append(
                ExtractionWarning(
                    path=marker.path,
                    line=marker.line,
                    message=f"unknown attribute {key!r} ignored",
                )
            )
            continue
        attrs[key] = value
    return attrs, warnings


def _enum_value(enum_type, raw: str | None, *, key: str, marker: _Marker, rule_id: str):
    if raw is None:
        return None
    try:
        return enum_type(raw.lower())
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        raise ParseError(
            f"invalid {key}={raw!r} for rule {rule_id!r}; expected one of {allowed}",
            path=marker.path,
            line=marker.line,
            rule_id=rule_id,
        ) from None


def _declared_id(marker: _Marker) -> str | None:
    head = marker.content.split(None, 1)
    if head and is_valid_rule_id(head[0]):
        return head[0]
    return None


def _rule_from_marker(
    marker: _Marker,
    *,
    base_url: str,
    prefix: str,
) -> tuple[Rule, list[ExtractionWarning]]:
    try:
        tokens = shlex.split(marker.content)
    except ValueError as exc:
        raise ParseError(
            f"unbalanced quoting in rule marker: {exc}",
            path=marker.path,
            line=marker.line,
        ) from None
    if not tokens:
        raise ParseError("empty rule marker", path=marker.path, line=marker.line)
    rule_id, attr_tokens = tokens[0], tokens[1:]
    if not is_valid_rule_id(rule_id):
        raise ParseError(
            f"invalid rule id {rule_id!r}; expected dotted lowercase segments",
            path=marker.path,
            line=marker.line,
            rule_id=rule_id,
        )
    attrs, warnings = _parse_attributes(marker, attr_tokens)
    status = _enum_value(RuleStatus, attrs.get("status"), key="status", marker=marker, rule_id=rule_id)
    level = _enum_value(RuleLevel, attrs.get("level"), key="level", marker=marker, rule_id=rule_id)
    tags = frozenset(
        part.strip() for part in attrs.get("tags", "").split(",") if part.strip()
    )
    url = attrs.get("url") or f"{base_url}#{prefix}-{rule_id}"
    rule = Rule(
        id=rule_id,
        url=url,
        status=status,
        level=level,
        since=attrs.get("since"),
        until=attrs.get("until"),
        tags=tags,
        body=" ".join(marker.body_lines),
        declared_at=DocumentSpan(
            path=marker.path,
            start_line=marker.line,
            end_line=marker.end_line,
        ),
    )
    return rule, warnings


def extract_manifest(
    documents: Iterable[SourceDocument],
    *,
    name: str,
    base_url: str = "",
    prefix: str = DEFAULT_PREFIX,
) -> ExtractionResult:
    """Extract every rule declared across ``documents`` as one manifest.

    A malformed marker drops only its own rule and is reported in
    ``errors``. Declaring an id twice, in one document or across several,
    raises ``DuplicateRuleError``.
    """
    marker_re = _marker_re(prefix)
    rules: dict[str, Rule] = {}
    sites: dict[str, DocumentSpan] = {}
    warnings: list[ExtractionWarning] = []
    errors: list[ParseError] = []
    for document in documents:
        for marker in _iter_markers(document, marker_re):
            # A marker claims its id even when its attributes are rejected.
            declared = _declared_id(marker)
            if declared is not None:
                site = DocumentSpan(path=marker.path, start_line=marker.line, end_line=marker.end_line)
                if declared in sites:
                    raise DuplicateRuleError(declared, first=sites[declared], second=site)
                sites[declared] = site
            try:
                rule, rule_warnings = _rule_from_marker(marker, base_url=base_url, prefix=prefix)
            except ParseError as exc:
                logger.warning(
                    "rule_marker_rejected",
                    path=exc.path,
                    line=exc.line,
                    reason=exc.message,
                )
                errors.append(exc)
                continue
            warnings.extend(rule_warnings)
            rules[rule.id] = rule
    logger.debug(
        "manifest_extracted",
        spec=name,
        rules=len(rules),
        warnings=len(warnings),
        errors=len(errors),
    )
    return ExtractionResult(
        manifest=SpecManifest(name=name, rules=rules),
        warnings=tuple(warnings),
        errors=tuple(errors),
    )


def export_manifest(manifest: SpecManifest) -> dict[str, dict[str, dict[str, str]]]:
    rules: dict[str, dict[str, str]] = {}
    for rule_id in manifest.rule_ids():
        rule = manifest.rules[rule_id]
        entry: dict[str, str] = {}
        if rule.url is not None:
            entry["url"] = rule.url
        rules[rule_id] = entry
    return {"rules": rules}


def dump_manifest(manifest: SpecManifest) -> str:
    return json.dumps(export_manifest(manifest), indent=2, sort_keys=True) + "\n"


def load_manifest(text: str, *, name: str, source: str = "") -> SpecManifest:
    """Parse an interchange manifest; rules carry only ``id`` and ``url``."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ManifestLoadError(f"invalid JSON: {exc}", source=source) from exc
    if not isinstance(payload, Mapping):
        raise ManifestLoadError("manifest must be a JSON object", source=source)
    raw_rules = payload.get("rules")
    if not isinstance(raw_rules, Mapping):
        raise ManifestLoadError("manifest is missing a 'rules' object", source=source)
    rules: dict[str, Rule] = {}
    for rule_id, entry in raw_rules.items():
        if not rule_id:
            raise ManifestLoadError("empty rule id", source=source)
        if not isinstance(entry, Mapping):
            raise ManifestLoadError(f"rule {rule_id!r} must map to an object", source=source)
        url = entry.get("url")
        if url is not None and not isinstance(url, str):
            raise ManifestLoadError(f"rule {rule_id!r} has a non-string url", source=source)
        rules[rule_id] = Rule(id=rule_id, url=url)
    return SpecManifest(name=name, rules=rules)
