"""Documentation generation endpoint (server-sent events)."""

import json
import logging
import threading
from typing import Any, Iterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..core.config import settings
from ..pipeline.cancellation import CancellationToken
from ..pipeline.executor import GenerationRequest, PipelineExecutor, validate_request
from ..pipeline.progress import ProgressChannel
from ..schemas.generation import GenerateRequest
from .deps import get_executor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generate", tags=["generation"])


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _event_stream(
    executor: PipelineExecutor,
    request: GenerationRequest,
    channel: ProgressChannel,
    token: CancellationToken,
) -> Iterator[str]:
    """Run the pipeline on a worker thread and relay its progress channel.

    After the terminal event, one ``result`` event carries the assembled
    documents. If the client disconnects first, the run is cancelled.
    """
    holder: dict[str, Any] = {}

    def _worker() -> None:
        try:
            holder["result"] = executor.run(request, progress=channel, token=token)
        except Exception as e:
            logger.exception("Generation worker failed")
            channel.error("internal", f"Internal error: {e}")

    worker = threading.Thread(target=_worker, name="generation", daemon=True)
    worker.start()
    try:
        for event in channel.events():
            yield format_sse(event.kind, event.to_dict())
        worker.join()
        result = holder.get("result")
        if result is not None:
            payload = result.to_dict()
            payload["output"] = result.output.to_dict() if result.output else None
            yield format_sse("result", payload)
    finally:
        if worker.is_alive():
            token.cancel("client disconnected")
            logger.info("Client disconnected; cancelling generation run")


@router.post("/stream")
def generate_stream(
    body: GenerateRequest,
    executor: PipelineExecutor = Depends(get_executor),
):
    """Generate documentation for a file set, streaming progress as SSE.

    Events: ``progress`` (many), then exactly one ``complete`` or ``error``,
    then a final ``result`` with the documents and run summary.
    """
    request = GenerationRequest(
        repo_url=body.repo_url,
        files=body.source_files(),
        project_name=body.project_name,
        language=body.language,
        documentation_mode=body.documentation_mode,
        force_full=body.force_full,
        use_cache=body.use_cache,
    )
    validate_request(request)

    channel = ProgressChannel(settings.progress_buffer_size)
    return StreamingResponse(
        _event_stream(executor, request, channel, CancellationToken()),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
