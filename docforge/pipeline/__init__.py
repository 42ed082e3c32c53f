"""Staged generation pipeline."""

from .backend import GenerationBackend, GenerationParameters, GenerationResponse, LiteLLMBackend, TokenUsage
from .cancellation import CancellationToken
from .executor import GenerationRequest, PipelineExecutor, PipelineResult, RunState
from .file_source import FileSourceResult, LocalFileSource
from .options import FailurePolicy, PipelineOptions
from .progress import ProgressChannel, ProgressEvent
from .resilience import RetryPolicy

__all__ = [
    "GenerationBackend", "GenerationParameters", "GenerationResponse", "LiteLLMBackend", "TokenUsage",
    "CancellationToken",
    "GenerationRequest", "PipelineExecutor", "PipelineResult", "RunState",
    "FileSourceResult", "LocalFileSource",
    "FailurePolicy", "PipelineOptions",
    "ProgressChannel", "ProgressEvent",
    "RetryPolicy",
]
