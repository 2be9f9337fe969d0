from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("pygls")
pytest.importorskip("lsprotocol")

from lsprotocol.types import (  # noqa: E402
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    HoverParams,
    Position,
    TextDocumentIdentifier,
    TextDocumentItem,
    TextDocumentPositionParams,
)

from ruletrace import server  # noqa: E402
from ruletrace.config import load_config  # noqa: E402
from ruletrace.session import LiveSession  # noqa: E402

CONFIG = '[[spec]]\nname = "proto"\nrules_glob = "docs/*.md"\nbase_url = "https://example.com/spec"\n'
RULES = "# Spec\n\nr[a.b status=stable]\nThe peer MUST do b.\n\nr[a.c]\nThe peer SHOULD do c.\n"
SOURCE = "fn main() {}\n// [impl a.b]\n// [impl zz.top]\n"


class _Document:
    def __init__(self, source: str) -> None:
        self.source = source
        self.lines = source.splitlines(keepends=True)


class _Workspace:
    def __init__(self, root: Path) -> None:
        self.root_path = str(root)
        self.documents: dict[str, _Document] = {}

    def get_text_document(self, uri: str) -> _Document:
        return self.documents[uri]


class _FakeServer:
    def __init__(self, root: Path) -> None:
        self.workspace = _Workspace(root)
        self.session: LiveSession | None = None
        self.published_paths: set[str] = set()
        self.diagnostics: dict[str, list] = {}
        self.messages: list[str] = []

    def text_document_publish_diagnostics(self, params) -> None:
        self.diagnostics[params.uri] = list(params.diagnostics)

    def window_show_message(self, params) -> None:
        self.messages.append(params.message)


@pytest.fixture
def ls(write_tree):
    root = write_tree({"ruletrace.toml": CONFIG, "docs/spec.md": RULES, "src/lib.rs": SOURCE}).resolve()
    fake = _FakeServer(root)
    config = load_config(root)
    fake.session = LiveSession(config.specs, root=root, debounce=0.01)
    fake.session.start(initial_rebuild=False)
    fake.session.rebuild("proto", timeout=5)
    yield fake
    fake.session.close()


def _open(ls: _FakeServer, rel: str) -> str:
    path = Path(ls.workspace.root_path) / rel
    uri = path.as_uri()
    text = path.read_text(encoding="utf-8")
    ls.workspace.documents[uri] = _Document(text)
    server.did_open(
        ls,
        DidOpenTextDocumentParams(
            text_document=TextDocumentItem(uri=uri, language_id="rust", version=1, text=text)
        ),
    )
    return uri


def test_uri_to_path() -> None:
    assert server._uri_to_path("file:///tmp/a%20b.rs") == Path("/tmp/a b.rs")
    assert server._uri_to_path("relative/x.rs") == Path("relative/x.rs")


def test_did_open_publishes_invalid_reference(ls: _FakeServer) -> None:
    uri = _open(ls, "src/lib.rs")
    diagnostics = ls.diagnostics[uri]
    assert len(diagnostics) == 1
    diagnostic = diagnostics[0]
    assert "zz.top" in diagnostic.message
    assert diagnostic.source == "ruletrace"
    assert diagnostic.range.start.line == 2
    assert diagnostic.range.start.character == 3
    assert diagnostic.range.end.character == len("// [impl zz.top]")
    assert ls.published_paths == {"src/lib.rs"}


def test_hover_shows_rule_details(ls: _FakeServer) -> None:
    uri = _open(ls, "src/lib.rs")
    result = server.hover(
        ls,
        HoverParams(text_document=TextDocumentIdentifier(uri=uri), position=Position(line=1, character=6)),
    )
    assert result is not None
    value = result.contents.value
    assert "**a.b**" in value
    assert "status: stable" in value
    assert "The peer MUST do b." in value
    assert "impl 1" in value
    assert result.range.start.character == 3


def test_hover_outside_reference_is_none(ls: _FakeServer) -> None:
    uri = _open(ls, "src/lib.rs")
    params = HoverParams(text_document=TextDocumentIdentifier(uri=uri), position=Position(line=0, character=1))
    assert server.hover(ls, params) is None


def test_definition_jumps_to_declaration(ls: _FakeServer) -> None:
    uri = _open(ls, "src/lib.rs")
    location = server.definition(
        ls,
        TextDocumentPositionParams(
            text_document=TextDocumentIdentifier(uri=uri), position=Position(line=1, character=8)
        ),
    )
    assert location is not None
    assert location.uri == (Path(ls.workspace.root_path) / "docs" / "spec.md").as_uri()
    assert location.range.start.line == 2


def test_overlay_edit_then_close(ls: _FakeServer) -> None:
    uri = _open(ls, "src/lib.rs")
    path = server._uri_to_path(uri)
    ls.session.set_overlay(path, "// [impl a.c]\n")
    report = ls.session.rebuild("proto", timeout=5)
    assert report.covered_rules == ("a.c",)
    assert report.invalid_references == ()
    server.did_close(ls, DidCloseTextDocumentParams(text_document=TextDocumentIdentifier(uri=uri)))
    report = ls.session.rebuild("proto", timeout=5)
    assert report.covered_rules == ("a.b",)


def test_query_command_payloads(ls: _FakeServer) -> None:
    report = server.execute_query(ls, {"kind": "report", "spec": "proto"})
    assert report["errors"] == []
    assert report["report"]["covered_rules"] == ["a.b"]
    assert [ref["rule_id"] for ref in report["report"]["invalid_references"]] == ["zz.top"]

    impact = server.execute_query(ls, {"kind": "impact", "spec": "proto", "rule_id": "a.b"})
    assert [ref["line"] for ref in impact["references"]] == [2]

    at = server.execute_query(ls, {"kind": "at", "spec": "proto", "path": "src/lib.rs", "start_line": 1, "end_line": 3})
    assert [rule["id"] for rule in at["rules"]] == ["a.b"]

    matrix = server.execute_query(ls, {"kind": "matrix", "spec": "proto", "uncovered": True})
    assert [row["rule_id"] for row in matrix["matrix"]["rows"]] == ["a.c"]


def test_query_command_errors(ls: _FakeServer) -> None:
    assert server.execute_query(ls, {"kind": "report", "spec": "nope"})["errors"]
    assert server.execute_query(ls, {"kind": "impact", "spec": "proto"})["errors"]
    assert server.execute_query(ls, {"kind": "matrix", "spec": "proto", "level": "sometimes"})["errors"]
    assert server.execute_query(ls, {"kind": "bogus", "spec": "proto"})["errors"]
    assert server.execute_query(ls, {"spec": "proto"})["errors"]
