"""Tests for stage helpers: response parsing, edges, truncation and the index."""

import pytest

from docforge.exceptions import GenerationError
from docforge.pipeline.context import (
    Abstraction,
    PipelineContext,
    Relationship,
    StageDescriptor,
    UnitFailure,
)
from docforge.pipeline.stages import (
    DEFAULT_STAGES,
    build_edges,
    build_file_context,
    chapter_filename,
    parse_abstractions,
    parse_json_response,
    parse_ordering,
    render_index,
    slugify,
    truncate_content,
)
from docforge.services.records import INDEX_UNIT_KEY, DependencyEdge, RegenerationMode, RegenerationPlan, SourceFile
from tests.conftest import make_files


def _abstractions(*names):
    return tuple(Abstraction(key=slugify(n), name=n, description="", file_paths=("a.py",)) for n in names)


class TestParseJsonResponse:

    def test_plain_json(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_block_with_prose(self):
        text = 'Here you go:\n```json\n{"order": [1, 0]}\n```\nHope this helps.'
        assert parse_json_response(text) == {"order": [1, 0]}

    def test_repairs_trailing_comma_and_quotes(self):
        assert parse_json_response("{'summary': 'x', 'order': [0, 1,],}") == {"summary": "x", "order": [0, 1]}


class TestParseAbstractions:

    def test_resolves_indices_and_paths(self):
        files = make_files(3)
        data = {"abstractions": [
            {"name": "Cache Store", "description": "d", "files": [0, "2 # src/mod2.py"]},
            {"name": "Planner", "files": ["src/mod1.py"]},
        ]}
        result = parse_abstractions(data, files, max_abstractions=10)
        assert [a.key for a in result] == ["cache_store", "planner"]
        assert result[0].file_paths == ("src/mod0.py", "src/mod2.py")

    def test_drops_entries_without_valid_files(self):
        files = make_files(1)
        data = [{"name": "Ghost", "files": [7]}, {"name": "Real", "files": [0]}]
        assert [a.name for a in parse_abstractions(data, files, 10)] == ["Real"]

    def test_duplicate_names_get_unique_keys(self):
        files = make_files(1)
        data = [{"name": "Core", "files": [0]}, {"name": "core", "files": [0]}, {"name": "Index", "files": [0]}]
        keys = [a.key for a in parse_abstractions(data, files, 10)]
        assert keys[:2] == ["core", "core_2"]
        assert INDEX_UNIT_KEY not in keys

    def test_respects_limit(self):
        files = make_files(1)
        data = [{"name": f"A{i}", "files": [0]} for i in range(5)]
        assert len(parse_abstractions(data, files, 2)) == 2

    def test_nothing_usable_is_retryable_error(self):
        with pytest.raises(GenerationError) as exc_info:
            parse_abstractions({"abstractions": []}, make_files(1), 10)
        assert exc_info.value.retryable is True


class TestParseOrdering:

    def test_order_repaired_to_cover_every_abstraction(self):
        abstractions = _abstractions("A", "B", "C")
        data = {"summary": "S", "relationships": [], "order": [2, 2, 9, "0 # A"]}
        summary, _, order = parse_ordering(data, abstractions)
        assert summary == "S"
        assert order == ("c", "a", "b")

    def test_relationships_deduplicated_and_validated(self):
        abstractions = _abstractions("A", "B")
        data = {"relationships": [
            {"from": 0, "to": 1, "label": "uses"},
            {"from": 0, "to": 1, "label": "uses again"},
            {"from": 5, "to": 0, "label": "bad"},
        ]}
        _, relationships, _ = parse_ordering(data, abstractions)
        assert relationships == (Relationship("a", "b", "uses"),)

    def test_non_object_rejected(self):
        with pytest.raises(GenerationError):
            parse_ordering([1, 2], _abstractions("A"))


class TestBuildEdges:

    def test_chapter_edges_plus_index(self):
        rels = [Relationship("b", "a", "uses"), Relationship("b", "a", "dup"), Relationship("c", "c", "self")]
        edges = build_edges(rels, ("a", "b", "c"))
        assert edges == (
            DependencyEdge("b", "a"),
            DependencyEdge(INDEX_UNIT_KEY, "a"),
            DependencyEdge(INDEX_UNIT_KEY, "b"),
            DependencyEdge(INDEX_UNIT_KEY, "c"),
        )


class TestFileContext:

    def test_truncate_keeps_head_and_tail(self):
        text = "\n".join(f"line {i}" for i in range(100))
        result = truncate_content(text, 10).splitlines()
        assert result[0] == "line 0"
        assert result[-1] == "line 99"
        assert "90 lines omitted" in result[8]

    def test_short_text_unchanged(self):
        assert truncate_content("a\nb", 10) == "a\nb"

    def test_budget_omits_trailing_files(self):
        files = [SourceFile(f"f{i}.py", "x" * 100) for i in range(5)]
        context = build_file_context(list(enumerate(files)), max_lines=50, budget_chars=250)
        assert "File Index 0: f0.py" in context
        assert "f4.py" not in context
        assert "more file(s) omitted" in context


def _context(**overrides):
    plan = RegenerationPlan(RegenerationMode.FULL, (), True, "test")
    values = dict(
        repo_id="github.com/test/repo", repo_url="https://github.com/test/repo",
        project_name="Repo", language="english", documentation_mode="tutorial",
        files=(), records={}, plan=plan, cached=None,
        abstractions=_abstractions("Store", "Planner"),
        summary="A repo.", relationships=(Relationship("planner", "store", 'reads "entries"'),),
        unit_order=("store", "planner"),
    )
    values.update(overrides)
    return PipelineContext(**values)


class TestRenderIndex:

    def test_lists_chapters_and_diagram(self):
        text = render_index(_context())
        assert text.startswith("# Repo\n")
        assert "1. [Store](01_store.md)" in text
        assert "2. [Planner](02_planner.md)" in text
        assert "A1 -- \"reads 'entries'\" --> A0" in text
        assert "[https://github.com/test/repo](https://github.com/test/repo)" in text

    def test_marks_failed_chapters(self):
        ctx = _context(failures=(UnitFailure("planner", "Planner", "boom", 3),))
        assert "[Planner](02_planner.md) *(not generated)*" in render_index(ctx)

    def test_local_source_has_no_link(self):
        assert "Source repository" not in render_index(_context(repo_url="local/project"))


class TestStageDescriptors:

    def test_default_stage_order_and_progress(self):
        assert [s.name for s in DEFAULT_STAGES] == [
            "identify_abstractions", "order_chapters", "write_units", "assemble",
        ]
        ends = [s.progress_end for s in DEFAULT_STAGES]
        assert ends == sorted(ends)

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            StageDescriptor("bad", "Bad", frozenset({"nope"}), frozenset(), lambda c, r: {}, 0, 1)

    def test_undeclared_write_rejected(self):
        stage = DEFAULT_STAGES[0]
        ctx = _context()
        with pytest.raises(RuntimeError):
            ctx.apply(stage, {"summary": "sneaky"})

    def test_filename(self):
        assert chapter_filename(3, "cache_store") == "03_cache_store.md"
        assert slugify("  Cache Store (v2)! ") == "cache_store_v2"
