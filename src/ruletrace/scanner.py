"""Find rule references in the comments of a source tree."""

from __future__ import annotations

import concurrent.futures
import os
import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import structlog

from ruletrace.comments import CommentSpan, extract_comments
from ruletrace.dialects import CommentDialect, dialect_for_path
from ruletrace.model import RULE_ID_PATTERN, Reference, ScanWarning, SourceLocation, Verb

logger = structlog.get_logger("ruletrace.scanner")

DEFAULT_INCLUDE: tuple[str, ...] = ("**/*",)
DEFAULT_EXCLUDE: tuple[str, ...] = ("target/**", ".git/**", "node_modules/**")

_VERBS = "|".join(verb.value for verb in Verb)
_REFERENCE_RE = re.compile(
    rf"\[(?:(?P<verb>{_VERBS})[ \t]+)?(?P<rule_id>{RULE_ID_PATTERN})\]"
)


@dataclass(frozen=True)
class ScanResult:
    references: tuple[Reference, ...] = ()
    warnings: tuple[ScanWarning, ...] = ()
    files_scanned: int = 0


def _match_segments(parts: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_segments(parts[index:], rest) for index in range(len(parts) + 1))
    return bool(parts) and fnmatchcase(parts[0], head) and _match_segments(parts[1:], rest)


def glob_matches(rel_path: str, pattern: str) -> bool:
    """Match a posix relative path one segment at a time.

    ``*`` and ``?`` never cross a ``/``; a ``**`` segment matches zero or more
    directories.
    """
    return _match_segments(tuple(rel_path.split("/")), tuple(pattern.split("/")))


def _matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    return any(glob_matches(rel_path, pattern) for pattern in patterns)


def display_path(path: Path, root: Path) -> str:
    try:
        return path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return path.as_posix()


def is_selected(
    rel_path: str,
    *,
    include: Sequence[str] = DEFAULT_INCLUDE,
    exclude: Sequence[str] = DEFAULT_EXCLUDE,
) -> bool:
    if _matches_any(rel_path, exclude):
        return False
    return not include or _matches_any(rel_path, include)


def collect_source_files(
    root: Path,
    include: Sequence[str] = DEFAULT_INCLUDE,
    exclude: Sequence[str] = DEFAULT_EXCLUDE,
) -> list[Path]:
    """List files under ``root`` that pass the filters and have a known dialect."""
    root = root.resolve()
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_dir = base.relative_to(root).as_posix()
        kept: list[str] = []
        for name in sorted(dirnames):
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            if not _matches_any(f"{rel}/", exclude):
                kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            if dialect_for_path(name) is None:
                continue
            if is_selected(rel, include=include, exclude=exclude):
                files.append(base / name)
    return files


def find_references(span: CommentSpan, path: str) -> list[Reference]:
    references: list[Reference] = []
    for segment in span.segments:
        for match in _REFERENCE_RE.finditer(segment.text):
            verb = match.group("verb")
            references.append(
                Reference(
                    rule_id=match.group("rule_id"),
                    verb=Verb(verb) if verb else Verb.IMPL,
                    location=SourceLocation(
                        path=path,
                        line=segment.line,
                        column=segment.column + match.start(),
                    ),
                    raw_text=segment.text.strip(),
                )
            )
    return references


def scan_text(
    path: str,
    text: str,
    dialect: CommentDialect | None = None,
) -> list[Reference]:
    dialect = dialect or dialect_for_path(path)
    if dialect is None:
        return []
    references: list[Reference] = []
    for span in extract_comments(text, dialect):
        references.extend(find_references(span, path))
    return references


def _scan_one(
    path: Path,
    root: Path,
    overlay: Mapping[str, str],
) -> tuple[list[Reference], ScanWarning | None]:
    shown = display_path(path, root)
    dialect = dialect_for_path(path)
    if dialect is None:
        return [], None
    text = overlay.get(str(path.resolve()))
    if text is None:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("source_file_skipped", path=shown, error=str(exc))
            return [], ScanWarning(path=shown, message=f"unreadable: {exc}")
    return scan_text(shown, text, dialect), None


def scan_files(
    paths: Iterable[Path],
    *,
    root: Path,
    overlay: Mapping[str, str] | None = None,
    max_workers: int | None = None,
) -> ScanResult:
    """Scan each file independently and concatenate the results.

    ``overlay`` maps resolved paths to in-memory contents that win over disk.
    An unreadable file becomes a warning; the rest of the scan continues.
    """
    files = list(paths)
    contents = dict(overlay or {})
    references: list[Reference] = []
    warnings: list[ScanWarning] = []
    if len(files) < 2 or max_workers == 1:
        results = [_scan_one(path, root, contents) for path in files]
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(lambda item: _scan_one(item, root, contents), files))
    for found, warning in results:
        references.extend(found)
        if warning is not None:
            warnings.append(warning)
    logger.debug(
        "source_scan_complete",
        files=len(files),
        references=len(references),
        warnings=len(warnings),
    )
    return ScanResult(
        references=tuple(references),
        warnings=tuple(warnings),
        files_scanned=len(files) - len(warnings),
    )


def scan_tree(
    root: Path,
    include: Sequence[str] = DEFAULT_INCLUDE,
    exclude: Sequence[str] = DEFAULT_EXCLUDE,
    *,
    overlay: Mapping[str, str] | None = None,
    max_workers: int | None = None,
) -> ScanResult:
    files = collect_source_files(root, include, exclude)
    return scan_files(files, root=root, overlay=overlay, max_workers=max_workers)


@dataclass(frozen=True)
class LineReference:
    rule_id: str
    verb: Verb
    start: int
    end: int


def reference_at(line: str, character: int) -> LineReference | None:
    """The reference token covering 0-based ``character`` in ``line``, if any."""
    for match in _REFERENCE_RE.finditer(line):
        if match.start() <= character < match.end():
            verb = match.group("verb")
            return LineReference(
                rule_id=match.group("rule_id"),
                verb=Verb(verb) if verb else Verb.IMPL,
                start=match.start(),
                end=match.end(),
            )
    return None
