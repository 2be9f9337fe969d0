from __future__ import annotations

from ruletrace.comments import extract_comments
from ruletrace.dialects import C_FAMILY, HASKELL, JAVASCRIPT, MARKUP, PYTHON, RUST, dialect_for_path, known_extensions


def _texts(text: str, dialect) -> list[str]:
    return [span.text for span in extract_comments(text, dialect)]


def test_line_comments_merge_when_adjacent() -> None:
    spans = extract_comments("// one\n// two\n\n// three\n", C_FAMILY)
    assert [span.kind for span in spans] == ["line", "line"]
    assert spans[0].text == " one\n two"
    assert (spans[0].line, spans[0].end_line) == (1, 2)
    assert spans[1].line == 4


def test_line_comment_after_code_is_separate() -> None:
    spans = extract_comments("int a; // a\nint b; // b\n", C_FAMILY)
    assert [span.text for span in spans] == [" a", " b"]


def test_block_comment_segments_track_lines_and_columns() -> None:
    spans = extract_comments("x = 1; /* first\n   second */\n", C_FAMILY)
    assert len(spans) == 1
    first, second = spans[0].segments
    assert (first.line, first.column) == (1, 10)
    assert (second.line, second.column) == (2, 1)


def test_comment_tokens_inside_strings_are_ignored() -> None:
    text = 'let s = "// not a comment /* nor this */";\n// real\n'
    assert _texts(text, RUST) == [" real"]


def test_escaped_quote_does_not_end_string() -> None:
    text = 'printf("say \\"// hi\\"");\n// after\n'
    assert _texts(text, C_FAMILY) == [" after"]


def test_char_literal_quote_is_not_a_string() -> None:
    text = "char q = '\"'; // quoted\n"
    assert _texts(text, C_FAMILY) == [" quoted"]


def test_rust_blocks_nest() -> None:
    text = "/* outer /* inner */ still outer */ code // tail\n"
    assert _texts(text, RUST) == [" outer /* inner */ still outer ", " tail"]


def test_haskell_nested_blocks() -> None:
    assert _texts("{- a {- b -} c -}\n", HASKELL) == [" a {- b -} c "]


def test_javascript_template_literal_spans_lines() -> None:
    text = "const t = `line\n// not comment\n`;\n// yes\n"
    assert _texts(text, JAVASCRIPT) == [" yes"]


def test_python_docstrings_and_hash_comments() -> None:
    text = 'def f():\n    """Docs [impl a.b]."""\n    return "#"  # trailing\n'
    assert _texts(text, PYTHON) == ["Docs [impl a.b].", " trailing"]


def test_markup_comments() -> None:
    assert _texts("<p>x</p><!-- note -->\n", MARKUP) == [" note "]


def test_unterminated_block_runs_to_end() -> None:
    assert _texts("/* open\nforever", C_FAMILY) == [" open\nforever"]


def test_dialect_lookup_by_extension() -> None:
    assert dialect_for_path("src/lib.rs") is RUST
    assert dialect_for_path("web/app.TSX") is JAVASCRIPT
    assert dialect_for_path("docs/spec.md") is None
    assert ".py" in known_extensions()
