"""End-to-end tests for the pipeline executor against a scripted backend."""

import threading

import pytest

from docforge.exceptions import (
    BackendNotConfiguredError,
    CacheCommitError,
    PipelineCancelledError,
    PipelineFailedError,
    ValidationError,
)
from docforge.pipeline.cancellation import CancellationToken
from docforge.pipeline.executor import GenerationRequest, PipelineExecutor, RunState
from docforge.pipeline.progress import COMPLETE, ERROR, ProgressChannel
from docforge.services.records import INDEX_UNIT_KEY, RegenerationMode, SourceFile
from tests.conftest import FakeBackend, make_entry, make_files

REPO = "https://github.com/test/repo"

LAYOUT = [
    ("Alpha", ["src/mod0.py"]),
    ("Beta", ["src/mod1.py"]),
    ("Gamma", ["src/mod2.py"]),
]
# Beta uses Alpha, Gamma extends Beta
RELATIONSHIPS = [(1, 0, "uses"), (2, 1, "extends")]


def _backend(layout=LAYOUT, **kwargs):
    kwargs.setdefault("relationships", RELATIONSHIPS)
    return FakeBackend(layout, **kwargs)


def _request(files, **kwargs):
    return GenerationRequest(repo_url=REPO, files=files, **kwargs)


def _edit(files, index, content="edited = True\n"):
    files = list(files)
    files[index] = SourceFile(files[index].path, content)
    return files


@pytest.fixture()
def backend():
    return _backend()


@pytest.fixture()
def executor(store, backend, fast_options):
    return PipelineExecutor(store, backend, fast_options)


# ---------------------------------------------------------------------------
# Full, skip and partial runs
# ---------------------------------------------------------------------------


class TestFullThenSkip:

    def test_first_run_is_full_and_committed(self, executor, backend, store):
        result = executor.run(_request(make_files(3)))

        assert result.ok
        assert result.plan.mode == RegenerationMode.FULL
        assert backend.count("abstractions") == 1
        assert backend.count("ordering") == 1
        assert backend.chapter_calls() == ["Alpha", "Beta", "Gamma"]
        assert [c.filename for c in result.output.chapters] == ["01_alpha.md", "02_beta.md", "03_gamma.md"]
        assert result.committed is True

        entry = store.get(REPO)
        assert set(entry.units) == {"alpha", "beta", "gamma", INDEX_UNIT_KEY}
        assert entry.metadata["parameters"]["documentation_mode"] == "tutorial"

    def test_identical_rerun_makes_no_backend_calls(self, executor, backend):
        files = make_files(3)
        first = executor.run(_request(files))
        backend.reset_calls()

        second = executor.run(_request(files))

        assert second.plan.mode == RegenerationMode.SKIP
        assert second.from_cache is True
        assert backend.calls == []
        assert second.output == first.output

    def test_project_rename_rerenders_index_without_backend_calls(self, executor, backend):
        files = make_files(3)
        executor.run(_request(files, project_name="Old Name"))
        backend.reset_calls()

        renamed = executor.run(_request(files, project_name="New Name"))

        assert renamed.plan.mode == RegenerationMode.PARTIAL
        assert renamed.plan.units_to_regenerate == (INDEX_UNIT_KEY,)
        assert backend.calls == []
        assert renamed.output.index.startswith("# New Name\n")
        assert renamed.reused_units == ("alpha", "beta", "gamma")
        assert renamed.committed is True

        unnamed = executor.run(_request(files))
        assert unnamed.plan.mode == RegenerationMode.SKIP
        assert unnamed.output.project_name == "New Name"
        assert unnamed.output.index == renamed.output.index

    def test_use_cache_false_neither_reads_nor_writes(self, executor, backend, store):
        files = make_files(3)
        executor.run(_request(files))
        backend.reset_calls()

        result = executor.run(_request(files, use_cache=False))

        assert result.plan.mode == RegenerationMode.FULL
        assert result.committed is False
        assert result.commit_skipped_reason
        assert len(backend.chapter_calls()) == 3


class TestPartialRuns:

    def test_leaf_change_regenerates_only_that_chapter(self, executor, backend):
        files = make_files(3)
        executor.run(_request(files))
        backend.reset_calls()

        result = executor.run(_request(_edit(files, 2)))

        assert result.plan.mode == RegenerationMode.PARTIAL
        assert backend.count("abstractions") == 0
        assert backend.count("ordering") == 0
        assert backend.chapter_calls() == ["Gamma"]
        assert result.regenerated_units == ("gamma",)
        assert result.reused_units == ("alpha", "beta")

    def test_change_propagates_to_dependents_only(self, executor, backend):
        files = make_files(3)
        executor.run(_request(files))
        backend.reset_calls()

        result = executor.run(_request(_edit(files, 1)))

        assert backend.chapter_calls() == ["Beta", "Gamma"]
        assert "alpha" in result.reused_units

    def test_partial_result_is_cached_for_next_run(self, executor, backend):
        files = _edit(make_files(3), 0)
        executor.run(_request(make_files(3)))
        executor.run(_request(files))
        backend.reset_calls()

        assert executor.run(_request(files)).plan.mode == RegenerationMode.SKIP
        assert backend.calls == []

    def test_added_file_reidentifies_but_reuses_unchanged_chapters(self, store, fast_options):
        files = make_files(3)
        PipelineExecutor(store, _backend(), fast_options).run(_request(files))

        grown = _backend(LAYOUT + [("Delta", ["src/new.py"])])
        result = PipelineExecutor(store, grown, fast_options).run(
            _request(files + [SourceFile("src/new.py", "new = 1\n")])
        )

        assert result.plan.mode == RegenerationMode.PARTIAL_REIDENTIFY
        assert grown.count("abstractions") == 1
        assert grown.count("ordering") == 1
        assert grown.chapter_calls() == ["Delta"]
        assert len(result.output.chapters) == 4

    def test_mode_change_forces_full(self, executor, backend):
        files = make_files(3)
        executor.run(_request(files))
        backend.reset_calls()

        result = executor.run(_request(files, documentation_mode="architecture"))

        assert result.plan.mode == RegenerationMode.FULL
        assert "Documentation mode" in result.plan.reason
        assert backend.count("abstractions") == 1
        assert len(backend.chapter_calls()) == 3

    def test_incompatible_cached_structure_forces_full(self, executor, store):
        files = make_files(3)
        entry = make_entry(files=files)
        entry.structure["version"] = 99
        store.put(entry)

        result = executor.run(_request(files))

        assert result.plan.mode == RegenerationMode.FULL
        assert "incompatible" in result.plan.reason


# ---------------------------------------------------------------------------
# Unit failures
# ---------------------------------------------------------------------------


class TestUnitFailures:

    def test_failed_unit_gets_placeholder_and_is_resumed(self, store, fast_options):
        files = make_files(3)
        flaky = _backend(fail={"Beta"})
        first = PipelineExecutor(store, flaky, fast_options).run(_request(files))

        assert first.ok
        assert [f.key for f in first.failures] == ["beta"]
        assert first.failures[0].attempts == 2
        beta = first.output.chapters[1]
        assert beta.placeholder is True
        assert "could not be generated" in beta.content
        assert "*(not generated)*" in first.output.index
        assert first.committed is True
        assert "beta" not in store.get(REPO).units

        healthy = _backend()
        second = PipelineExecutor(store, healthy, fast_options).run(_request(files))

        assert second.plan.mode == RegenerationMode.PARTIAL
        assert healthy.chapter_calls() == ["Beta", "Gamma"]
        assert not any(c.placeholder for c in second.output.chapters)
        assert "beta" in store.get(REPO).units

    def test_too_many_failures_skip_commit(self, store, fast_options):
        backend = _backend(fail={"Alpha", "Beta"})
        result = PipelineExecutor(store, backend, fast_options).run(_request(make_files(3)))

        assert result.ok
        assert result.committed is False
        assert "commit threshold" in result.commit_skipped_reason
        assert store.get(REPO) is None

    def test_failed_chapter_in_partial_run_keeps_reused_chapters(self, store, fast_options):
        files = make_files(3)
        PipelineExecutor(store, _backend(), fast_options).run(_request(files))

        flaky = _backend(fail={"Gamma"})
        result = PipelineExecutor(store, flaky, fast_options).run(_request(_edit(files, 2)))

        assert result.plan.mode == RegenerationMode.PARTIAL
        assert result.status.state == RunState.COMPLETED
        assert flaky.chapter_calls() == ["Gamma", "Gamma"]
        assert [f.key for f in result.failures] == ["gamma"]
        assert result.reused_units == ("alpha", "beta")
        assert [c.placeholder for c in result.output.chapters] == [False, False, True]
        assert result.committed is True
        assert set(store.get(REPO).units) == {"alpha", "beta", INDEX_UNIT_KEY}

    def test_reused_chapters_count_toward_commit_threshold(self, store, fast_options):
        files = make_files(3)
        PipelineExecutor(store, _backend(), fast_options).run(_request(files))
        before = store.get(REPO)

        flaky = _backend(fail={"Beta", "Gamma"})
        result = PipelineExecutor(store, flaky, fast_options).run(_request(_edit(files, 1)))

        assert result.ok
        assert result.reused_units == ("alpha",)
        assert [f.key for f in result.failures] == ["beta", "gamma"]
        assert result.committed is False
        assert "2 of 3" in result.commit_skipped_reason
        assert store.get(REPO) == before

    def test_every_unit_failing_fails_the_run(self, store, fast_options):
        backend = _backend(fail={"Alpha", "Beta", "Gamma"})
        channel = ProgressChannel()

        result = PipelineExecutor(store, backend, fast_options).run(_request(make_files(3)), progress=channel)

        assert result.status.state == RunState.FAILED
        assert result.status.stage == "write_units"
        assert [f.key for f in result.failures] == ["alpha", "beta", "gamma"]
        assert result.output is None
        assert store.get(REPO) is None
        assert channel.drain()[-1].kind == ERROR
        with pytest.raises(PipelineFailedError):
            result.raise_for_status()

    def test_commit_error_still_returns_output(self, executor, store, monkeypatch):
        def _fail(entry):
            raise CacheCommitError(entry.repo_id)

        monkeypatch.setattr(store, "put", _fail)
        channel = ProgressChannel()
        result = executor.run(_request(make_files(3)), progress=channel)

        assert result.ok
        assert result.output is not None
        assert result.committed is False
        assert result.commit_error
        final = channel.drain()[-1]
        assert final.kind == COMPLETE
        assert final.data["committed"] is False


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:

    def _layout(self, count):
        return [(f"Part {i}", [f"src/mod{i}.py"]) for i in range(count)]

    def test_cancel_after_third_unit_stops_and_commits_nothing(self, store, fast_options):
        token = CancellationToken()
        started = []

        def before_chapter(name):
            started.append(name)
            if len(started) == 3:
                token.cancel("user requested")

        backend = FakeBackend(self._layout(10), before_chapter=before_chapter)
        channel = ProgressChannel()
        result = PipelineExecutor(store, backend, fast_options).run(
            _request(make_files(10)), progress=channel, token=token,
        )

        assert result.status.state == RunState.CANCELLED
        assert result.status.error == "user requested"
        assert len(backend.chapter_calls()) == 3
        assert store.get(REPO) is None
        assert channel.drain()[-1].kind == ERROR
        with pytest.raises(PipelineCancelledError):
            result.raise_for_status()

    def test_cancelled_run_leaves_previous_entry_untouched(self, store, fast_options):
        files = make_files(4)
        PipelineExecutor(store, FakeBackend(self._layout(4)), fast_options).run(_request(files))
        before = store.get(REPO, touch=False)

        token = CancellationToken()
        backend = FakeBackend(self._layout(4), before_chapter=lambda name: token.cancel())
        changed = [SourceFile(f.path, "rewritten\n") for f in files]
        result = PipelineExecutor(store, backend, fast_options).run(_request(changed), token=token)

        assert result.status.state == RunState.CANCELLED
        assert store.get(REPO, touch=False) == before

    def test_cancel_before_start(self, executor, backend):
        token = CancellationToken()
        token.cancel()
        result = executor.run(_request(make_files(3)), token=token)
        assert result.status.state == RunState.CANCELLED
        assert result.status.stage == "identify_abstractions"
        assert backend.calls == []


# ---------------------------------------------------------------------------
# Validation, progress and concurrency
# ---------------------------------------------------------------------------


class TestValidation:

    def test_duplicate_paths_rejected_before_any_work(self, executor, backend, store):
        channel = ProgressChannel()
        files = [SourceFile("a.py", "1"), SourceFile("a.py", "2")]
        with pytest.raises(ValidationError, match="Duplicate file path"):
            executor.run(_request(files), progress=channel)
        assert backend.calls == []
        assert channel.drain()[-1].stage == "validate"
        assert store.list() == []

    def test_empty_file_set_rejected(self, executor):
        with pytest.raises(ValidationError):
            executor.run(_request([]))

    def test_blank_repository_rejected(self, executor):
        with pytest.raises(ValidationError):
            executor.run(GenerationRequest(repo_url="  ", files=make_files(1)))

    def test_no_backend(self, store):
        with pytest.raises(BackendNotConfiguredError):
            PipelineExecutor(store).run(_request(make_files(1)))


class TestProgressAndPreview:

    def test_progress_is_monotonic_and_ends_complete(self, executor):
        channel = ProgressChannel()
        executor.run(_request(make_files(3)), progress=channel)
        events = channel.drain()

        percents = [e.percent for e in events]
        assert percents == sorted(percents)
        assert events[-1].kind == COMPLETE
        assert events[-1].percent == 100
        assert sum(1 for e in events if e.is_terminal) == 1
        assert any(e.stage == "write_units" and e.total_units == 3 for e in events)

    def test_preview_plans_without_backend_or_touch(self, executor, store, clock):
        files = make_files(3)
        executor.run(_request(files))
        accessed = store.summary(REPO).last_accessed_at
        clock.advance(hours=2)

        analysis, plan = PipelineExecutor(store).preview(REPO, _edit(files, 2))

        assert analysis.modified == ("src/mod2.py",)
        assert plan.mode == RegenerationMode.PARTIAL
        assert plan.units_to_regenerate == ("gamma", INDEX_UNIT_KEY)
        assert store.summary(REPO).last_accessed_at == accessed

    def test_concurrent_runs_for_different_repositories(self, store, fast_options):
        results = {}

        def _run(name):
            executor = PipelineExecutor(store, _backend(), fast_options)
            results[name] = executor.run(GenerationRequest(
                repo_url=f"https://github.com/org/{name}", files=make_files(3),
            ))

        threads = [threading.Thread(target=_run, args=(n,)) for n in ("one", "two")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert all(r.ok and r.committed for r in results.values())
        assert {e.repo_id for e in store.list()} == {"github.com/org/one", "github.com/org/two"}
