"""Shared test fixtures for the DocForge test suite.

Every test gets its own SQLite cache database in a temporary directory, so
tests are isolated without any external service. The generation backend is
a scripted fake: no network calls are made anywhere in the suite.
"""

import os
import tempfile

# Configure the app before any docforge imports read settings.
_TEST_DIR = tempfile.mkdtemp(prefix="docforge-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/app.db"
os.environ["LOG_FORMAT"] = "text"
os.environ["GENERATION_MODEL"] = ""
os.environ["ENVIRONMENT"] = "development"
os.environ["CLEANUP_INTERVAL_HOURS"] = "0"

import json
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from docforge.database import create_db_engine, init_db, make_session_factory
from docforge.exceptions import GenerationError
from docforge.pipeline.backend import GenerationParameters, GenerationResponse, TokenUsage
from docforge.pipeline.options import FailurePolicy, PipelineOptions
from docforge.pipeline.resilience import RetryPolicy, reset_all
from docforge.services.cache_store import CacheStore
from docforge.services.fingerprint import fingerprint_files
from docforge.services.records import (
    INDEX_UNIT_KEY,
    DependencyEdge,
    RepoCacheEntry,
    SourceFile,
    Unit,
    normalize_repo_id,
    snapshot_from,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeBackend:
    """Scripted generation backend.

    Answers the three prompt kinds from a fixed layout:
      - discovery: the configured abstractions (name, file paths)
      - ordering: the configured relationships, in discovery order
      - chapter: ``# <name>`` plus a body, or a scripted failure

    Thread-safe; ``calls`` records (kind, abstraction name) per call.
    """

    context_window = 200_000

    def __init__(
        self,
        abstractions: Sequence[tuple[str, Sequence[str]]],
        relationships: Sequence[tuple[int, int, str]] = (),
        fail: Iterable[str] = (),
        before_chapter: Optional[Callable[[str], None]] = None,
        body: str = "Chapter body.",
    ):
        self.abstractions = list(abstractions)
        self.relationships = list(relationships)
        self.fail = set(fail)
        self.before_chapter = before_chapter
        self.body = body
        self.calls: list[tuple[str, Optional[str]]] = []
        self._lock = threading.Lock()

    def identity(self) -> dict:
        return {"provider": "fake", "model": "fake-model"}

    @staticmethod
    def _kind(prompt: str) -> str:
        if prompt.startswith("For the project"):
            return "abstractions"
        if prompt.startswith("Based on the following"):
            return "ordering"
        return "chapter"

    def generate(self, prompt: str, parameters: GenerationParameters) -> GenerationResponse:
        kind = self._kind(prompt)
        name = None
        if kind == "chapter":
            name = re.search(r'about the \w+ "(.+?)" of the project', prompt).group(1)
        with self._lock:
            self.calls.append((kind, name))

        if kind == "abstractions":
            content = json.dumps({"abstractions": [
                {"name": n, "description": f"What {n} does.", "files": list(paths)}
                for n, paths in self.abstractions
            ]})
        elif kind == "ordering":
            content = json.dumps({
                "summary": "A small test project.",
                "relationships": [{"from": a, "to": b, "label": label} for a, b, label in self.relationships],
                "order": list(range(len(self.abstractions))),
            })
        else:
            if self.before_chapter is not None:
                self.before_chapter(name)
            if name in self.fail:
                raise GenerationError(f"scripted failure for {name}")
            content = f"# {name}\n\n{self.body}\n"
        return GenerationResponse(content=content, usage=TokenUsage(prompt_tokens=10, completion_tokens=5))

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for k, _ in self.calls if k == kind)

    def chapter_calls(self) -> list[str]:
        with self._lock:
            return [n for k, n in self.calls if k == "chapter"]

    def reset_calls(self) -> None:
        with self._lock:
            self.calls.clear()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_breakers():
    """Circuit breakers are process-wide; start every test with none."""
    reset_all()
    yield
    reset_all()


@pytest.fixture()
def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'cache.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(session_factory, clock):
    return CacheStore(session_factory, lock_timeout=2.0, clock=clock)


@pytest.fixture()
def fast_options():
    """Pipeline options with no backoff delay and sequential units."""
    return PipelineOptions(
        max_workers=1,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0, max_delay=0),
        failure_policy=FailurePolicy(max_failed_ratio=0.5),
    )


@pytest.fixture()
def client(store):
    """FastAPI TestClient with the cache store and backend overridden."""
    from docforge.api.deps import get_cache_store
    from docforge.main import app

    app.dependency_overrides[get_cache_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_files(count: int = 3, prefix: str = "src/mod", body: str = "value = {i}\n") -> list[SourceFile]:
    """``count`` files named ``src/mod0.py`` ... with distinct content."""
    return [SourceFile(path=f"{prefix}{i}.py", content=body.format(i=i)) for i in range(count)]


def make_unit(key: str, content: Optional[str] = None, input_paths: Sequence[str] = (), at: datetime = T0) -> Unit:
    return Unit(
        key=key,
        title=key.replace("_", " ").title(),
        content=content if content is not None else f"# {key}\n\nBody of {key}.\n",
        source_inputs_hash=f"inputs-{key}",
        input_paths=tuple(input_paths),
        generated_at=at,
    )


def make_entry(
    repo_url: str = "https://github.com/test/repo",
    files: Optional[Sequence[SourceFile]] = None,
    units: Optional[dict[str, Sequence[str]]] = None,
    edges: Sequence[tuple[str, str]] = (),
    at: datetime = T0,
) -> RepoCacheEntry:
    """A consistent cache entry.

    Args:
        files: Snapshot files (default: three files)
        units: Chapter key -> input paths (default: one chapter per file)
        edges: Extra (dependent, dependency) chapter edges; the index
            always depends on every chapter.
    """
    files = list(files) if files is not None else make_files()
    if units is None:
        units = {f"chapter_{i}": [f.path] for i, f in enumerate(files)}
    order = tuple(units)
    unit_map = {key: make_unit(key, input_paths=paths, at=at) for key, paths in units.items()}
    unit_map[INDEX_UNIT_KEY] = make_unit(INDEX_UNIT_KEY, at=at)
    all_edges = tuple(DependencyEdge(d, s) for d, s in edges) + tuple(
        DependencyEdge(INDEX_UNIT_KEY, key) for key in order
    )
    return RepoCacheEntry(
        repo_id=normalize_repo_id(repo_url),
        repo_url=repo_url,
        snapshot=snapshot_from(fingerprint_files(files, at), captured_at=at),
        units=unit_map,
        unit_order=order,
        edges=all_edges,
        structure={"version": 1, "summary": "Test summary", "abstractions": [], "relationships": []},
        metadata={"backend": {"provider": "fake", "model": "fake-model"}},
    )
