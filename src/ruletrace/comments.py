"""Dialect-aware extraction of comment text from source files.

This is not a full lexer for any host language. It tracks just enough state
(code, string literal, line comment, block comment) to delimit comments
correctly: comment openers inside string literals are skipped, block comments
may span lines and nest where the dialect allows it, and runs of consecutive
line comments are merged into one span.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass
from functools import lru_cache

from ruletrace.dialects import CommentDialect

_CHAR_LITERAL_RE = re.compile(r"'(?:\\[^'\n]{1,10}|[^\\'\n])'")


@dataclass(frozen=True)
class CommentSegment:
    """One physical line of comment text and where it starts."""

    text: str
    line: int
    column: int


@dataclass(frozen=True)
class CommentSpan:
    kind: str
    segments: tuple[CommentSegment, ...]

    @property
    def line(self) -> int:
        return self.segments[0].line

    @property
    def end_line(self) -> int:
        return self.segments[-1].line

    @property
    def text(self) -> str:
        return "\n".join(segment.text for segment in self.segments)


class _LineTable:
    def __init__(self, text: str) -> None:
        self._starts = [0]
        self._starts.extend(match.end() for match in re.finditer("\n", text))

    def position(self, offset: int) -> tuple[int, int]:
        index = bisect_right(self._starts, offset) - 1
        return index + 1, offset - self._starts[index] + 1


@lru_cache(maxsize=None)
def _token_re(dialect: CommentDialect) -> re.Pattern[str]:
    tokens = [opener for opener, _ in dialect.block_pairs]
    tokens.extend(dialect.line_prefixes)
    tokens.extend(dialect.string_quotes)
    if dialect.char_literals:
        tokens.append("'")
    ordered = sorted(set(tokens), key=lambda item: (-len(item), item))
    return re.compile("|".join(re.escape(token) for token in ordered))


def _segments(text: str, start: int, table: _LineTable) -> list[CommentSegment]:
    line, column = table.position(start)
    segments: list[CommentSegment] = []
    for index, part in enumerate(text.split("\n")):
        segments.append(
            CommentSegment(
                text=part,
                line=line + index,
                column=column if index == 0 else 1,
            )
        )
    return segments


def _block_end(
    text: str,
    start: int,
    opener: str,
    closer: str,
    *,
    nested: bool,
) -> tuple[int, int]:
    """Return (content_end, resume_offset) for a block opened before ``start``."""
    if not nested:
        end = text.find(closer, start)
        if end < 0:
            return len(text), len(text)
        return end, end + len(closer)
    depth = 1
    pattern = re.compile(f"{re.escape(opener)}|{re.escape(closer)}")
    for match in pattern.finditer(text, start):
        if match.group(0) == opener:
            depth += 1
            continue
        depth -= 1
        if depth == 0:
            return match.start(), match.end()
    return len(text), len(text)


def _skip_string(text: str, start: int, quote: str) -> int:
    index = start
    multiline = quote == "`"
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if text.startswith(quote, index):
            return index + len(quote)
        if char == "\n" and not multiline:
            return index
        index += 1
    return len(text)


def extract_comments(text: str, dialect: CommentDialect) -> list[CommentSpan]:
    table = _LineTable(text)
    token_re = _token_re(dialect)
    blocks = {opener: closer for opener, closer in dialect.block_pairs}
    spans: list[CommentSpan] = []
    last_line_comment_end = -1
    offset = 0
    while True:
        match = token_re.search(text, offset)
        if match is None:
            break
        token = match.group(0)
        start = match.start()
        if token in blocks:
            content_start = match.end()
            content_end, offset = _block_end(
                text,
                content_start,
                token,
                blocks[token],
                nested=dialect.nested_blocks,
            )
            spans.append(
                CommentSpan(
                    kind="block",
                    segments=tuple(_segments(text[content_start:content_end], content_start, table)),
                )
            )
            continue
        if token in dialect.line_prefixes:
            content_start = match.end()
            line_end = text.find("\n", content_start)
            if line_end < 0:
                line_end = len(text)
            segment = _segments(text[content_start:line_end], content_start, table)[0]
            gap = text[last_line_comment_end:start] if last_line_comment_end >= 0 else None
            if (
                spans
                and spans[-1].kind == "line"
                and gap is not None
                and gap.count("\n") == 1
                and not gap.strip()
            ):
                spans[-1] = CommentSpan(kind="line", segments=(*spans[-1].segments, segment))
            else:
                spans.append(CommentSpan(kind="line", segments=(segment,)))
            last_line_comment_end = line_end
            offset = line_end
            continue
        if token == "'" and dialect.char_literals and token not in dialect.string_quotes:
            literal = _CHAR_LITERAL_RE.match(text, start)
            offset = literal.end() if literal else match.end()
            continue
        offset = _skip_string(text, match.end(), token)
    return spans
