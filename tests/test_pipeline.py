from __future__ import annotations

import pytest

from ruletrace.config import SpecConfig
from ruletrace.exceptions import DuplicateRuleError
from ruletrace.model import Verb
from ruletrace.pipeline import build_generation
from ruletrace.session import rules_at

RULES = "r[a.b]\nA MUST b.\n\nr[a.c]\nA MUST c.\n"


def test_build_generation_joins_rules_and_references(write_tree) -> None:
    root = write_tree(
        {
            "docs/spec.md": RULES,
            "src/lib.rs": "fn main() {}\n// [impl a.b]\n// [impl x.y]\n",
        }
    )
    spec = SpecConfig(name="proto", rules_glob="docs/*.md")
    generation = build_generation(spec, root=root, version=3)
    assert generation.version == 3
    assert generation.spec_name == "proto"
    assert generation.report.covered_rules == ("a.b",)
    assert generation.report.orphaned_rules == ("a.c",)
    assert [str(ref) for ref in generation.report.invalid_references] == ["x.y@src/lib.rs:3"]
    assert generation.rule_paths == frozenset({"docs/spec.md"})


def test_rules_at_deduplicates_within_a_range(write_tree) -> None:
    source = "\n" * 9 + "// [impl a.b]\n\n// [verify a.b]\n"
    root = write_tree({"docs/spec.md": RULES, "src/lib.rs": source})
    generation = build_generation(SpecConfig(name="proto", rules_glob="docs/*.md"), root=root)
    found = rules_at(generation, "src/lib.rs", (9, 13))
    assert [rule.id for rule in found] == ["a.b"]
    verbs = [ref.verb for ref in generation.impact.references_for("a.b")]
    assert verbs == [Verb.IMPL, Verb.VERIFY]
    assert [ref.location.line for ref in generation.impact.references_for("a.b")] == [10, 12]
    assert rules_at(generation, "src/lib.rs", 11) == []


def test_disjoint_includes_do_not_share_references(write_tree) -> None:
    root = write_tree(
        {
            "docs/spec.md": RULES,
            "src/core/a.rs": "// [impl a.b]\n",
            "src/web/b.ts": "// [impl a.c]\n",
        }
    )
    core = build_generation(
        SpecConfig(name="core", rules_glob="docs/*.md", include=("src/core/**",)), root=root
    )
    web = build_generation(
        SpecConfig(name="web", rules_glob="docs/*.md", include=("src/web/**",)), root=root
    )
    assert set(core.references).isdisjoint(web.references)
    assert core.report.covered_rules == ("a.b",)
    assert web.report.covered_rules == ("a.c",)


def test_scanning_twice_is_idempotent(write_tree) -> None:
    root = write_tree({"docs/spec.md": RULES, "src/a.rs": "// [impl a.b]\n", "src/b.py": "# [verify a.c]\n"})
    spec = SpecConfig(name="proto", rules_glob="docs/*.md")
    first = build_generation(spec, root=root)
    second = build_generation(spec, root=root)
    assert set(first.references) == set(second.references)


def test_extraction_messages_become_report_warnings(write_tree) -> None:
    root = write_tree({"docs/spec.md": "r[a.b owner=me]\nA MUST b.\n\nr[Bad]\nx\n"})
    generation = build_generation(SpecConfig(name="proto", rules_glob="docs/*.md"), root=root)
    assert generation.manifest.rule_ids() == ["a.b"]
    assert len(generation.report.warnings) == 2


def test_duplicate_rules_abort_the_build(write_tree) -> None:
    root = write_tree({"docs/one.md": "r[a.b]\nOne.\n", "docs/two.md": "r[a.b]\nTwo.\n"})
    with pytest.raises(DuplicateRuleError):
        build_generation(SpecConfig(name="proto", rules_glob="docs/*.md"), root=root)
