"""Tests for the streaming generation endpoint."""

import json

import pytest

from docforge.api.deps import get_executor
from docforge.pipeline.executor import PipelineExecutor
from tests.conftest import FakeBackend, make_files

REPO = "https://github.com/test/repo"

LAYOUT = [("Alpha", ["src/mod0.py"]), ("Beta", ["src/mod1.py"])]


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def _body(files, **extra):
    return {"repo_url": REPO, "files": [{"path": f.path, "content": f.content} for f in files], **extra}


@pytest.fixture()
def backend():
    return FakeBackend(LAYOUT)


@pytest.fixture()
def generation_client(client, store, backend, fast_options):
    from docforge.main import app

    app.dependency_overrides[get_executor] = lambda: PipelineExecutor(store, backend, fast_options)
    return client


class TestGenerateStream:

    def test_streams_progress_then_result(self, generation_client):
        resp = generation_client.post("/api/generate/stream", json=_body(make_files(2)))

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _parse_sse(resp.text)
        kinds = [kind for kind, _ in events]
        assert kinds[0] == "progress"
        assert kinds[-2:] == ["complete", "result"]
        assert "error" not in kinds

        result = events[-1][1]
        assert result["state"] == "completed"
        assert result["plan"]["mode"] == "full"
        assert result["committed"] is True
        assert [c["filename"] for c in result["output"]["chapters"]] == ["01_alpha.md", "02_beta.md"]

    def test_second_request_served_from_cache(self, generation_client, backend):
        files = make_files(2)
        generation_client.post("/api/generate/stream", json=_body(files))
        backend.reset_calls()

        events = _parse_sse(generation_client.post("/api/generate/stream", json=_body(files)).text)

        result = events[-1][1]
        assert result["from_cache"] is True
        assert result["plan"]["mode"] == "skip"
        assert backend.calls == []

    def test_failed_run_streams_error_event(self, client, store, fast_options):
        from docforge.main import app

        failing = FakeBackend(LAYOUT, fail={"Alpha", "Beta"})
        app.dependency_overrides[get_executor] = lambda: PipelineExecutor(store, failing, fast_options)

        events = _parse_sse(client.post("/api/generate/stream", json=_body(make_files(2))).text)

        kinds = [kind for kind, _ in events]
        assert kinds[-2:] == ["error", "result"]
        assert events[-2][1]["stage"] == "write_units"
        assert events[-1][1]["state"] == "failed"

    def test_duplicate_paths_rejected_before_streaming(self, generation_client):
        body = {"repo_url": REPO, "files": [{"path": "a.py", "content": "1"}, {"path": "a.py", "content": "2"}]}
        resp = generation_client.post("/api/generate/stream", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"

    def test_unconfigured_backend_is_503(self, client):
        resp = client.post("/api/generate/stream", json=_body(make_files(1)))
        assert resp.status_code == 503
        assert resp.json()["error"] == "BACKEND_NOT_CONFIGURED"
