"""Resolve a configured rule source into an extracted manifest."""

from __future__ import annotations

import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import structlog

from ruletrace.config import SpecConfig
from ruletrace.exceptions import ManifestLoadError
from ruletrace.manifest import ExtractionResult, SourceDocument, extract_manifest, load_manifest
from ruletrace.scanner import display_path

logger = structlog.get_logger("ruletrace.sources")

Fetcher = Callable[[str], str]

_FETCH_TIMEOUT_SECONDS = 30.0


def fetch_url(url: str) -> str:
    try:
        with urllib.request.urlopen(url, timeout=_FETCH_TIMEOUT_SECONDS) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            return response.read().decode(charset)
    except urllib.error.HTTPError as exc:
        raise ManifestLoadError(f"HTTP {exc.code}", source=url) from exc
    except (urllib.error.URLError, OSError, UnicodeDecodeError) as exc:
        raise ManifestLoadError(f"fetch failed: {exc}", source=url) from exc


def rule_document_paths(spec: SpecConfig, root: Path) -> list[Path]:
    if spec.rules_glob:
        return sorted(path for path in root.glob(spec.rules_glob) if path.is_file())
    if spec.rules_file:
        return [root / spec.rules_file]
    return []


def _read(path: Path, overlay: Mapping[str, str], *, root: Path) -> str:
    text = overlay.get(str(path.resolve()))
    if text is not None:
        return text
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestLoadError(f"unreadable: {exc}", source=display_path(path, root)) from exc


def load_rules(
    spec: SpecConfig,
    *,
    root: Path,
    overlay: Mapping[str, str] | None = None,
    fetch: Fetcher = fetch_url,
) -> ExtractionResult:
    """Produce the spec's manifest from prose documents, a file or a URL."""
    contents = dict(overlay or {})
    kind = spec.rule_source_kind
    if kind == "glob":
        paths = rule_document_paths(spec, root)
        if not paths:
            raise ManifestLoadError(
                f"no documents match {spec.rules_glob!r}", source=spec.name
            )
        documents = [
            SourceDocument(path=display_path(path, root), text=_read(path, contents, root=root))
            for path in paths
        ]
        logger.debug("rule_documents_read", spec=spec.name, documents=len(documents))
        return extract_manifest(
            documents,
            name=spec.name,
            base_url=spec.base_url,
            prefix=spec.prefix,
        )
    if kind == "file":
        path = root / str(spec.rules_file)
        manifest = load_manifest(
            _read(path, contents, root=root),
            name=spec.name,
            source=display_path(path, root),
        )
        return ExtractionResult(manifest=manifest)
    url = str(spec.rules_url)
    logger.info("rule_manifest_fetch", spec=spec.name, url=url)
    return ExtractionResult(manifest=load_manifest(fetch(url), name=spec.name, source=url))
