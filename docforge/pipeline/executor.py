"""
Pipeline executor: drives one change-aware generation run.

Run lifecycle:
  PENDING → RUNNING(stage) → ... → COMPLETED
                           ↘ FAILED(stage, error) | CANCELLED(stage)

1. Validate the request (input errors raise before any cache access)
2. Load the cached entry; fingerprint, diff and plan
3. SKIP: return the cached output (or resume missing units)
4. Run the stage list in order on a private working context
5. Commit the new entry under the per-repository lock, if the failure
   policy allows it; a commit error never discards the generated output
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..core.logging_config import bind_log_context
from ..exceptions import (
    BackendNotConfiguredError,
    CacheCommitError,
    CacheLockTimeout,
    DocForgeException,
    PipelineCancelledError,
    PipelineFailedError,
    StageFailedError,
    ValidationError,
)
from ..services.cache_store import CacheStore
from ..services.change_analyzer import analyze_records
from ..services.fingerprint import fingerprint_files
from ..services.records import (
    INDEX_UNIT_KEY,
    ChangeAnalysis,
    RegenerationMode,
    RegenerationPlan,
    RepoCacheEntry,
    Snapshot,
    SourceFile,
    normalize_repo_id,
    utcnow,
)
from ..services.regeneration_planner import plan_regeneration, resume_plan
from .backend import GenerationBackend, UsageMeter
from .cancellation import CancellationToken
from .context import (
    CONTEXT_VERSION,
    ChapterOutput,
    DocumentOutput,
    PipelineContext,
    StageDescriptor,
    UnitFailure,
)
from .options import PipelineOptions
from .progress import ProgressChannel
from .resilience import get_breaker
from .stages import DEFAULT_STAGES, StageRuntime, chapter_filename

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunStatus:
    state: RunState = RunState.PENDING
    stage: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class GenerationRequest:
    repo_url: str
    files: Sequence[SourceFile]
    project_name: Optional[str] = None
    language: str = "english"
    documentation_mode: str = "tutorial"
    force_full: bool = False
    use_cache: bool = True


@dataclass
class PipelineResult:
    run_id: str
    repo_id: str
    status: RunStatus
    analysis: Optional[ChangeAnalysis] = None
    plan: Optional[RegenerationPlan] = None
    output: Optional[DocumentOutput] = None
    failures: tuple[UnitFailure, ...] = ()
    regenerated_units: tuple[str, ...] = ()
    reused_units: tuple[str, ...] = ()
    usage: dict[str, int] = field(default_factory=dict)
    from_cache: bool = False
    committed: bool = False
    commit_error: Optional[str] = None
    commit_skipped_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status.state == RunState.COMPLETED

    def raise_for_status(self) -> None:
        """Raise if the run did not complete."""
        if self.status.state == RunState.CANCELLED:
            raise PipelineCancelledError(self.status.stage)
        if self.status.state != RunState.COMPLETED:
            raise PipelineFailedError(
                self.status.stage, self.status.error or "Pipeline run failed"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "repo_id": self.repo_id,
            "state": self.status.state.value,
            "stage": self.status.stage,
            "error": self.status.error,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "failures": [f.to_dict() for f in self.failures],
            "regenerated_units": list(self.regenerated_units),
            "reused_units": list(self.reused_units),
            "usage": self.usage,
            "from_cache": self.from_cache,
            "committed": self.committed,
            "commit_error": self.commit_error,
            "commit_skipped_reason": self.commit_skipped_reason,
        }


def validate_request(request: GenerationRequest) -> str:
    """Reject malformed requests before any cache or pipeline work.

    Returns:
        The normalized repository id.

    Raises:
        ValidationError
    """
    repo_id = normalize_repo_id(request.repo_url)
    if not request.files:
        raise ValidationError("At least one file is required", field="files")
    seen: set[str] = set()
    for f in request.files:
        if not isinstance(f.path, str) or not f.path.strip():
            raise ValidationError("File paths must be non-empty strings", field="files")
        if f.path in seen:
            raise ValidationError(f"Duplicate file path: {f.path}", field="files")
        seen.add(f.path)
    return repo_id


def output_from_entry(entry: RepoCacheEntry, project_name: str) -> DocumentOutput:
    """Rebuild the document from a cached entry without touching the backend."""
    chapters = tuple(
        ChapterOutput(
            key=key,
            title=entry.units[key].title,
            filename=chapter_filename(i, key),
            content=entry.units[key].content,
        )
        for i, key in enumerate(entry.unit_order, 1)
    )
    return DocumentOutput(
        project_name=project_name,
        index=entry.units[INDEX_UNIT_KEY].content,
        chapters=chapters,
    )


class PipelineExecutor:
    """Runs the stage list for one repository at a time per call.

    One executor may serve many concurrent runs (different repositories or
    the same one); all per-run state lives in the run's context. An executor
    without a backend can still preview plans but cannot run.
    """

    def __init__(
        self,
        store: CacheStore,
        backend: Optional[GenerationBackend] = None,
        options: Optional[PipelineOptions] = None,
        stages: Sequence[StageDescriptor] = DEFAULT_STAGES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.backend = backend
        self.options = options or PipelineOptions()
        self.stages = tuple(stages)
        self._clock = clock

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _load_cached(self, repo_id: str, touch: bool = True) -> Optional[RepoCacheEntry]:
        """Cached entry, or None. Read failures degrade to a cache miss."""
        try:
            return self.store.get(repo_id, touch=touch)
        except (CacheLockTimeout, SQLAlchemyError) as e:
            logger.warning(f"Cache read failed for {repo_id}, planning without cache: {e}")
            return None

    @staticmethod
    def _parameters_changed(entry: RepoCacheEntry, request: GenerationRequest) -> Optional[str]:
        params = entry.metadata.get("parameters") or {}
        if entry.structure.get("version") != CONTEXT_VERSION:
            return "Cached entry was written by an incompatible version"
        if params.get("documentation_mode", "tutorial") != request.documentation_mode:
            return f"Documentation mode changed to '{request.documentation_mode}'"
        if params.get("language", "english").lower() != request.language.lower():
            return f"Language changed to '{request.language}'"
        return None

    def _plan(
        self,
        request: GenerationRequest,
        records,
        cached: Optional[RepoCacheEntry],
    ) -> tuple[ChangeAnalysis, RegenerationPlan]:
        analysis = analyze_records(records, cached.snapshot if cached else None)
        force, reason = request.force_full, None
        if cached is not None and not force:
            reason = self._parameters_changed(cached, request)
            force = reason is not None
        plan = plan_regeneration(analysis, cached, force_full=force, force_reason=reason)
        if plan.mode == RegenerationMode.SKIP and cached is not None:
            if cached.missing_units():
                plan = resume_plan(cached)
            elif request.project_name and request.project_name != self._cached_project_name(cached):
                plan = RegenerationPlan(
                    mode=RegenerationMode.PARTIAL,
                    units_to_regenerate=(INDEX_UNIT_KEY,),
                    reidentify_top_level=False,
                    reason=f"Project renamed to '{request.project_name}'; re-rendering the index",
                )
        return analysis, plan

    @staticmethod
    def _cached_project_name(entry: RepoCacheEntry) -> Optional[str]:
        return (entry.metadata.get("parameters") or {}).get("project_name")

    def preview(
        self,
        repo_url: str,
        files: Sequence[SourceFile],
        force_full: bool = False,
        language: str = "english",
        documentation_mode: str = "tutorial",
    ) -> tuple[ChangeAnalysis, RegenerationPlan]:
        """Analysis and plan for a candidate file set, without running anything."""
        request = GenerationRequest(
            repo_url=repo_url, files=files, force_full=force_full,
            language=language, documentation_mode=documentation_mode,
        )
        repo_id = validate_request(request)
        cached = self._load_cached(repo_id, touch=False)
        return self._plan(request, fingerprint_files(files, self._clock()), cached)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        request: GenerationRequest,
        progress: Optional[ProgressChannel] = None,
        token: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """
        Execute one run.

        Args:
            request: Repository, files and generation parameters
            progress: Channel receiving progress events (created if omitted)
            token: Cancellation token checked at stage and unit boundaries

        Returns:
            PipelineResult; check ``status`` or call ``raise_for_status()``

        Raises:
            ValidationError: For malformed input, before any other work
            BackendNotConfiguredError: If the executor has no backend
        """
        if self.backend is None:
            raise BackendNotConfiguredError()
        progress = progress or ProgressChannel(self.options.progress_buffer_size)
        token = token or CancellationToken()

        try:
            repo_id = validate_request(request)
        except ValidationError as e:
            progress.error("validate", e.message, data=e.to_dict())
            raise

        run_id = uuid.uuid4().hex[:12]
        with bind_log_context(run_id=run_id, repo_id=repo_id):
            return self._run(run_id, repo_id, request, progress, token)

    def _run(
        self,
        run_id: str,
        repo_id: str,
        request: GenerationRequest,
        progress: ProgressChannel,
        token: CancellationToken,
    ) -> PipelineResult:
        status = RunStatus(state=RunState.RUNNING, stage="analyze")
        result = PipelineResult(run_id=run_id, repo_id=repo_id, status=status)
        meter = UsageMeter()
        started = self._clock()

        logger.info(
            f"Pipeline run started for {repo_id}",
            extra={"repo_id": repo_id, "files": len(request.files)},
        )
        progress.publish("analyze", "Analyzing repository changes", 5)

        cached = self._load_cached(repo_id) if request.use_cache else None
        project_name = (
            request.project_name
            or (self._cached_project_name(cached) if cached is not None else None)
            or repo_id.rsplit("/", 1)[-1]
        )
        records = fingerprint_files(request.files, started)
        result.analysis, result.plan = self._plan(request, records, cached)
        logger.info(
            f"Regeneration plan: {result.plan.mode.value} ({result.plan.reason})",
            extra={"repo_id": repo_id, "units": len(result.plan.units_to_regenerate)},
        )

        if result.plan.mode == RegenerationMode.SKIP:
            result.output = output_from_entry(cached, project_name)
            result.reused_units = tuple(cached.expected_unit_keys())
            result.from_cache = True
            result.usage = meter.to_dict()
            status.state, status.stage = RunState.COMPLETED, None
            progress.complete(
                "No changes detected; reused cached documentation",
                data={"run_id": run_id, "mode": result.plan.mode.value, "from_cache": True},
            )
            return result

        ctx = PipelineContext(
            repo_id=repo_id,
            repo_url=request.repo_url,
            project_name=project_name,
            language=request.language,
            documentation_mode=request.documentation_mode,
            files=tuple(request.files),
            records={r.path: r for r in records},
            plan=result.plan,
            cached=cached,
        )
        runtime = StageRuntime(
            backend=self.backend,
            options=self.options,
            token=token,
            progress=progress,
            meter=meter,
            breaker=get_breaker(
                str(self.backend.identity().get("model", "default")),
                self.options.breaker_failure_threshold,
                self.options.breaker_cooldown_seconds,
            ),
            clock=self._clock,
        )

        try:
            for stage in self.stages:
                status.stage = stage.name
                token.raise_if_cancelled(stage.name)
                progress.publish(stage.name, stage.label, stage.progress_start)
                ctx.apply(stage, stage.run(ctx, runtime))
                progress.publish(stage.name, f"{stage.label}: done", stage.progress_end)
            status.stage = "commit"
            token.raise_if_cancelled("commit")
        except PipelineCancelledError:
            status.state = RunState.CANCELLED
            status.error = token.reason or "cancelled"
            result.usage = meter.to_dict()
            logger.warning(f"Pipeline run cancelled during {status.stage}", extra={"repo_id": repo_id})
            progress.error(status.stage, f"Cancelled during {status.stage}", data={"run_id": run_id})
            return result
        except DocForgeException as e:
            status.state = RunState.FAILED
            status.error = e.message
            if isinstance(e, StageFailedError):
                result.failures = e.failures
            result.usage = meter.to_dict()
            logger.error(f"Pipeline run failed during {status.stage}: {e.message}", extra={"repo_id": repo_id})
            progress.error(status.stage, e.message, data=e.to_dict())
            return result
        except Exception as e:
            status.state = RunState.FAILED
            status.error = str(e)
            logger.exception(f"Unexpected error during {status.stage}")
            progress.error(status.stage, f"Internal error: {e}")
            raise

        result.output = ctx.output
        result.failures = ctx.failures
        result.regenerated_units = tuple(k for k in ctx.unit_order if k in ctx.regenerated)
        result.reused_units = tuple(k for k in ctx.unit_order if k in ctx.units and k not in ctx.regenerated)
        result.usage = meter.to_dict()

        if request.use_cache:
            self._commit(ctx, request, records, started, result)
        else:
            result.commit_skipped_reason = "Caching disabled for this run"

        status.state, status.stage = RunState.COMPLETED, None
        message = "Documentation generated"
        if result.failures:
            message += f" with {len(result.failures)} failed chapter(s)"
        if result.commit_error:
            message += "; cache was not updated"
        progress.complete(message, data={
            "run_id": run_id,
            "mode": result.plan.mode.value,
            "failures": len(result.failures),
            "committed": result.committed,
            "commit_error": result.commit_error,
        })
        logger.info(
            f"Pipeline run completed for {repo_id}",
            extra={
                "repo_id": repo_id,
                "regenerated": len(result.regenerated_units),
                "reused": len(result.reused_units),
                "failed": len(result.failures),
                **result.usage,
            },
        )
        return result

    def _commit(
        self,
        ctx: PipelineContext,
        request: GenerationRequest,
        records,
        captured_at: datetime,
        result: PipelineResult,
    ) -> None:
        policy = self.options.failure_policy
        if not policy.permits_commit(len(ctx.failures), len(ctx.unit_order)):
            result.commit_skipped_reason = (
                f"{len(ctx.failures)} of {len(ctx.unit_order)} unit(s) failed, "
                f"above the {policy.max_failed_ratio:.0%} commit threshold"
            )
            logger.warning(f"Not caching run: {result.commit_skipped_reason}", extra={"repo_id": ctx.repo_id})
            return

        units = dict(ctx.units)
        units[INDEX_UNIT_KEY] = ctx.index
        entry = RepoCacheEntry(
            repo_id=ctx.repo_id,
            repo_url=request.repo_url,
            snapshot=Snapshot(records=tuple(records), captured_at=captured_at),
            units=units,
            unit_order=ctx.unit_order,
            edges=ctx.edges,
            structure=ctx.structure(),
            metadata={
                "backend": self.backend.identity(),
                "parameters": {
                    "language": request.language,
                    "documentation_mode": request.documentation_mode,
                    "project_name": ctx.project_name,
                    "temperature": self.options.temperature,
                    "max_tokens": self.options.max_tokens,
                },
                "usage": result.usage,
                "failed_units": [f.key for f in ctx.failures],
            },
        )
        try:
            self.store.put(entry)
        except (CacheCommitError, CacheLockTimeout) as e:
            result.commit_error = e.message
            logger.error(
                f"Generated output returned but not cached: {e.message}",
                extra={"repo_id": ctx.repo_id},
            )
            return
        result.committed = True
