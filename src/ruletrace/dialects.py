"""Comment dialects, resolved by file extension from a static table."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath


@dataclass(frozen=True)
class CommentDialect:
    name: str
    line_prefixes: tuple[str, ...] = ()
    block_pairs: tuple[tuple[str, str], ...] = ()
    string_quotes: tuple[str, ...] = ()
    char_literals: bool = False
    nested_blocks: bool = False


C_FAMILY = CommentDialect(
    name="c-family",
    line_prefixes=("//",),
    block_pairs=(("/*", "*/"),),
    string_quotes=('"',),
    char_literals=True,
)
RUST = CommentDialect(
    name="rust",
    line_prefixes=("//",),
    block_pairs=(("/*", "*/"),),
    string_quotes=('"',),
    char_literals=True,
    nested_blocks=True,
)
SWIFT = CommentDialect(
    name="swift",
    line_prefixes=("//",),
    block_pairs=(("/*", "*/"),),
    string_quotes=('"',),
    nested_blocks=True,
)
JAVASCRIPT = CommentDialect(
    name="javascript",
    line_prefixes=("//",),
    block_pairs=(("/*", "*/"),),
    string_quotes=('"', "'", "`"),
)
PYTHON = CommentDialect(
    name="python",
    line_prefixes=("#",),
    block_pairs=(('"""', '"""'), ("'''", "'''")),
    string_quotes=('"', "'"),
)
HASH = CommentDialect(
    name="hash",
    line_prefixes=("#",),
    string_quotes=('"', "'"),
)
SQL = CommentDialect(
    name="sql",
    line_prefixes=("--",),
    block_pairs=(("/*", "*/"),),
    string_quotes=("'",),
)
LUA = CommentDialect(
    name="lua",
    line_prefixes=("--",),
    block_pairs=(("--[[", "]]"),),
    string_quotes=('"', "'"),
)
HASKELL = CommentDialect(
    name="haskell",
    line_prefixes=("--",),
    block_pairs=(("{-", "-}"),),
    string_quotes=('"',),
    char_literals=True,
    nested_blocks=True,
)
LISP = CommentDialect(name="lisp", line_prefixes=(";",), string_quotes=('"',))
ERLANG = CommentDialect(name="erlang", line_prefixes=("%",), string_quotes=('"',))
MARKUP = CommentDialect(name="markup", block_pairs=(("<!--", "-->"),))
CSS = CommentDialect(name="css", block_pairs=(("/*", "*/"),), string_quotes=('"', "'"))

_BY_EXTENSION: dict[str, CommentDialect] = {
    **dict.fromkeys(
        (
            ".c", ".h", ".cc", ".cpp", ".cxx", ".hpp", ".hh", ".m", ".mm",
            ".java", ".kt", ".kts", ".scala", ".cs", ".go", ".dart", ".zig",
            ".proto", ".groovy",
        ),
        C_FAMILY,
    ),
    ".rs": RUST,
    ".swift": SWIFT,
    **dict.fromkeys((".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts"), JAVASCRIPT),
    **dict.fromkeys((".py", ".pyi"), PYTHON),
    **dict.fromkeys(
        (".sh", ".bash", ".zsh", ".rb", ".pl", ".r", ".toml", ".yaml", ".yml", ".cmake"),
        HASH,
    ),
    ".sql": SQL,
    ".lua": LUA,
    ".hs": HASKELL,
    **dict.fromkeys((".lisp", ".el", ".clj", ".cljs", ".scm"), LISP),
    **dict.fromkeys((".erl", ".hrl", ".tex"), ERLANG),
    **dict.fromkeys((".html", ".htm", ".xml", ".svg", ".vue", ".svelte"), MARKUP),
    **dict.fromkeys((".css", ".scss", ".less"), CSS),
}


def dialect_for_path(path: str | PurePath) -> CommentDialect | None:
    suffix = PurePath(path).suffix.lower()
    return _BY_EXTENSION.get(suffix)


def known_extensions() -> list[str]:
    return sorted(_BY_EXTENSION)
