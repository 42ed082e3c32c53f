"""
The four generation stages and the default stage list.

    identify_abstractions → order_chapters → write_units → assemble

Each stage is a plain function ``(context, runtime) -> updates``. Stages
only read the context and call the generation backend; they never touch
the cache store. Reuse decisions are made here, per stage:

- structural stages reuse the cached structure unless the plan asks for
  re-identification;
- ``write_units`` copies every cached chapter forward unchanged unless the
  plan marks it, its inputs changed, or a chapter it depends on is
  regenerated;
- ``assemble`` is deterministic and reuses the cached index when nothing it
  is built from changed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, TypeVar

from json_repair import repair_json

from ..core.logging_config import bind_log_context
from ..exceptions import GenerationError, StageFailedError
from ..services.fingerprint import hash_parts, hash_set
from ..services.records import INDEX_UNIT_KEY, DependencyEdge, SourceFile, Unit
from ..services.regeneration_planner import expand_dependents
from .backend import GenerationBackend, GenerationParameters, UsageMeter
from .cancellation import CancellationToken
from .context import (
    Abstraction,
    ChapterOutput,
    DocumentOutput,
    PipelineContext,
    Relationship,
    StageDescriptor,
    UnitFailure,
)
from .options import PipelineOptions
from .progress import ProgressChannel
from .prompts import (
    ABSTRACTIONS_PROMPT,
    CHAPTER_PROMPT,
    CHARS_PER_TOKEN,
    DOCUMENTATION_MODES,
    FILE_CONTEXT_SHARE,
    ORDERING_PROMPT,
    PLACEHOLDER_CHAPTER,
    STRUCTURE_MAX_TOKENS,
    SYSTEM_PROMPT,
    TRUNCATION_HEAD_SHARE,
)
from .resilience import CircuitBreaker, RetryExhausted, call_with_retry
from .unit_pool import UnitOutcome, UnitPool

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StageRuntime:
    """Collaborators available to every stage of one run."""

    backend: GenerationBackend
    options: PipelineOptions
    token: CancellationToken
    progress: ProgressChannel
    meter: UsageMeter
    breaker: CircuitBreaker
    clock: Callable[[], datetime]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def slugify(name: str, max_length: int = 60) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return slug[:max_length].rstrip("_") or "unit"


def _unique_key(base: str, used: set[str]) -> str:
    key = base if base != INDEX_UNIT_KEY else f"{base}_"
    n = 2
    while key in used:
        key = f"{base}_{n}"
        n += 1
    used.add(key)
    return key


def chapter_filename(position: int, key: str) -> str:
    return f"{position:02d}_{key}.md"


def truncate_content(text: str, max_lines: int) -> str:
    """Keep the head and tail of a long file, marking what was omitted."""
    lines = text.splitlines()
    if max_lines <= 0 or len(lines) <= max_lines:
        return text
    head = max(1, int(max_lines * TRUNCATION_HEAD_SHARE))
    tail = max(0, max_lines - head)
    omitted = len(lines) - head - tail
    kept = lines[:head] + [f"... ({omitted} lines omitted) ..."]
    if tail:
        kept += lines[len(lines) - tail:]
    return "\n".join(kept)


def build_file_context(
    indexed_files: Sequence[tuple[int, SourceFile]],
    max_lines: int,
    budget_chars: int,
) -> str:
    parts: list[str] = []
    used = 0
    for position, (idx, f) in enumerate(indexed_files):
        block = f"--- File Index {idx}: {f.path} ---\n{truncate_content(f.text, max_lines)}\n"
        if parts and used + len(block) > budget_chars:
            remaining = len(indexed_files) - position
            parts.append(f"... ({remaining} more file(s) omitted to fit the context window) ...")
            break
        parts.append(block)
        used += len(block)
    return "\n".join(parts)


def _context_budget(rt: StageRuntime) -> int:
    return int(rt.backend.context_window * FILE_CONTEXT_SHARE * CHARS_PER_TOKEN)


def _language_hint(language: str) -> str:
    if not language or language.lower() == "english":
        return ""
    return f" in {language.capitalize()}"


def _mode(ctx: PipelineContext) -> dict[str, str]:
    return DOCUMENTATION_MODES.get(ctx.documentation_mode, DOCUMENTATION_MODES["tutorial"])


def parse_json_response(text: str) -> Any:
    """Extract and decode the JSON payload of a model response.

    Tolerates markdown fences, prose around a fenced block and the usual
    syntax slips (trailing commas, single quotes) via ``json_repair``.

    Raises:
        GenerationError: If nothing decodable is found (retryable).
    """
    json_text = text.strip()
    fenced = re.search(r"```(?:json)?\s*\n(.*?)\n?```", json_text, re.S)
    if fenced:
        json_text = fenced.group(1).strip()
    try:
        return json.loads(repair_json(json_text))
    except ValueError as e:
        raise GenerationError(f"Response is not valid JSON: {e}") from e


def _call_backend(
    rt: StageRuntime,
    label: str,
    prompt: str,
    parse: Callable[[str], T],
    max_tokens: Optional[int] = None,
) -> tuple[T, int]:
    """Generate and parse with retry; parsing failures are retried too."""
    params = GenerationParameters(
        temperature=rt.options.temperature,
        max_tokens=max_tokens or rt.options.max_tokens,
        system_prompt=SYSTEM_PROMPT,
    )

    def _attempt() -> T:
        response = rt.backend.generate(prompt, params)
        rt.meter.record(response)
        return parse(response.content)

    return call_with_retry(
        _attempt,
        rt.options.retry_policy,
        label,
        breaker=rt.breaker,
        token=rt.token,
    )


def _resolve_file_ref(ref: Any, files: Sequence[SourceFile], by_path: dict[str, int]) -> Optional[str]:
    """Accept ``3``, ``"3"``, ``"3 # src/app.py"`` or ``"src/app.py"``."""
    if isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return files[ref].path if 0 <= ref < len(files) else None
    if isinstance(ref, str):
        ref = ref.strip()
        if ref in by_path:
            return ref
        head = ref.split("#", 1)[0].strip()
        if head.isdigit():
            return _resolve_file_ref(int(head), files, by_path)
    return None


def _resolve_index(ref: Any, count: int) -> Optional[int]:
    if isinstance(ref, bool):
        return None
    if isinstance(ref, str):
        head = ref.split("#", 1)[0].strip()
        if not head.isdigit():
            return None
        ref = int(head)
    if isinstance(ref, int) and 0 <= ref < count:
        return ref
    return None


# ---------------------------------------------------------------------------
# Stage 1: structural discovery
# ---------------------------------------------------------------------------

def parse_abstractions(data: Any, files: Sequence[SourceFile], max_abstractions: int) -> tuple[Abstraction, ...]:
    """Validate the discovery response into abstractions with stable keys.

    Raises:
        GenerationError: If no usable abstraction is present (retryable).
    """
    items = data.get("abstractions") if isinstance(data, dict) else data
    if not isinstance(items, list) or not items:
        raise GenerationError("Discovery response has no 'abstractions' list")

    by_path = {f.path: i for i, f in enumerate(files)}
    used: set[str] = set()
    result: list[Abstraction] = []
    for item in items:
        if len(result) >= max_abstractions:
            break
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        paths: list[str] = []
        for ref in item.get("files") or item.get("file_indices") or []:
            path = _resolve_file_ref(ref, files, by_path)
            if path and path not in paths:
                paths.append(path)
        if not paths:
            logger.warning("Dropping abstraction %r: no valid file references", name)
            continue
        result.append(Abstraction(
            key=_unique_key(slugify(name), used),
            name=name,
            description=str(item.get("description") or "").strip(),
            file_paths=tuple(sorted(paths)),
        ))

    if not result:
        raise GenerationError("Discovery response contained no valid abstractions")
    return tuple(result)


def identify_abstractions(ctx: PipelineContext, rt: StageRuntime) -> dict[str, Any]:
    if not ctx.plan.reidentify_top_level and ctx.cached is not None:
        cached = ctx.cached.structure.get("abstractions") or []
        if cached:
            abstractions = tuple(Abstraction.from_dict(a) for a in cached)
            logger.info("Reusing %d cached abstractions", len(abstractions))
            return {"abstractions": abstractions}

    mode = _mode(ctx)
    indexed = list(enumerate(ctx.files))
    prompt = ABSTRACTIONS_PROMPT.format(
        project_name=ctx.project_name,
        file_context=build_file_context(indexed, rt.options.max_lines_per_file, _context_budget(rt)),
        max_abstractions=rt.options.max_abstractions,
        unit_noun=mode["unit_noun"],
        audience=mode["audience"],
        language_hint=_language_hint(ctx.language),
        file_listing="\n".join(f"- {i} # {f.path}" for i, f in indexed),
    )
    try:
        abstractions, attempts = _call_backend(
            rt, "identify_abstractions", prompt,
            lambda text: parse_abstractions(parse_json_response(text), ctx.files, rt.options.max_abstractions),
            max_tokens=STRUCTURE_MAX_TOKENS,
        )
    except RetryExhausted as e:
        raise StageFailedError("identify_abstractions", str(e)) from e

    logger.info(
        "Identified %d abstractions in %d attempt(s)", len(abstractions), attempts,
        extra={"repo_id": ctx.repo_id},
    )
    return {"abstractions": abstractions}


# ---------------------------------------------------------------------------
# Stage 2: relationships and ordering
# ---------------------------------------------------------------------------

def parse_ordering(
    data: Any, abstractions: Sequence[Abstraction],
) -> tuple[str, tuple[Relationship, ...], tuple[str, ...]]:
    """Validate the ordering response.

    The chapter order is repaired to cover every abstraction exactly once:
    duplicates and out-of-range indices are dropped and missing abstractions
    are appended in discovery order.

    Raises:
        GenerationError: If the response is not a JSON object (retryable).
    """
    if not isinstance(data, dict):
        raise GenerationError("Ordering response is not a JSON object")

    keys = [a.key for a in abstractions]
    relationships: list[Relationship] = []
    seen_pairs: set[tuple[str, str]] = set()
    for item in data.get("relationships") or []:
        if not isinstance(item, dict):
            continue
        src = _resolve_index(item.get("from", item.get("from_abstraction")), len(keys))
        dst = _resolve_index(item.get("to", item.get("to_abstraction")), len(keys))
        if src is None or dst is None:
            continue
        pair = (keys[src], keys[dst])
        if pair in seen_pairs:
            continue
        seen_pairs.add(pair)
        relationships.append(Relationship(
            source=keys[src], target=keys[dst], label=str(item.get("label") or "").strip(),
        ))

    order: list[str] = []
    for ref in data.get("order") or []:
        idx = _resolve_index(ref, len(keys))
        if idx is not None and keys[idx] not in order:
            order.append(keys[idx])
    missing = [k for k in keys if k not in order]
    if missing and order:
        logger.warning("Ordering omitted %d abstraction(s); appending them", len(missing))
    order.extend(missing)

    return str(data.get("summary") or "").strip(), tuple(relationships), tuple(order)


def build_edges(relationships: Sequence[Relationship], order: Sequence[str]) -> tuple[DependencyEdge, ...]:
    """Chapter→chapter edges from relationships, plus index→every chapter."""
    edges: list[DependencyEdge] = []
    for rel in relationships:
        edge = DependencyEdge(dependent=rel.source, dependency=rel.target)
        if rel.source != rel.target and edge not in edges:
            edges.append(edge)
    edges.extend(DependencyEdge(dependent=INDEX_UNIT_KEY, dependency=key) for key in order)
    return tuple(edges)


def order_chapters(ctx: PipelineContext, rt: StageRuntime) -> dict[str, Any]:
    if not ctx.plan.reidentify_top_level and ctx.cached is not None and ctx.cached.unit_order:
        structure = ctx.cached.structure
        relationships = tuple(Relationship.from_dict(r) for r in structure.get("relationships") or [])
        order = tuple(ctx.cached.unit_order)
        logger.info("Reusing cached chapter order (%d chapters)", len(order))
        return {
            "summary": structure.get("summary", ""),
            "relationships": relationships,
            "unit_order": order,
            "edges": build_edges(relationships, order),
        }

    mode = _mode(ctx)
    paths = sorted({p for a in ctx.abstractions for p in a.file_paths})
    by_path = {f.path: i for i, f in enumerate(ctx.files)}
    indexed = [(by_path[p], ctx.files[by_path[p]]) for p in paths if p in by_path]
    prompt = ORDERING_PROMPT.format(
        project_name=ctx.project_name,
        unit_noun=mode["unit_noun"],
        audience=mode["audience"],
        language_hint=_language_hint(ctx.language),
        abstraction_listing="\n".join(
            f"- {i} # {a.name}: {a.description}" for i, a in enumerate(ctx.abstractions)
        ),
        file_context=build_file_context(indexed, rt.options.max_lines_per_file, _context_budget(rt)),
    )
    try:
        (summary, relationships, order), _ = _call_backend(
            rt, "order_chapters", prompt,
            lambda text: parse_ordering(parse_json_response(text), ctx.abstractions),
            max_tokens=STRUCTURE_MAX_TOKENS,
        )
    except RetryExhausted as e:
        raise StageFailedError("order_chapters", str(e)) from e

    return {
        "summary": summary,
        "relationships": relationships,
        "unit_order": order,
        "edges": build_edges(relationships, order),
    }


# ---------------------------------------------------------------------------
# Stage 3: per-unit writing
# ---------------------------------------------------------------------------

def _clean_chapter(title: str) -> Callable[[str], str]:
    def _parse(text: str) -> str:
        content = text.strip()
        fenced = re.fullmatch(r"```(?:markdown|md)?\s*\n(.*?)\n?```", content, re.S)
        if fenced:
            content = fenced.group(1).strip()
        if not content:
            raise GenerationError(f"Empty chapter for '{title}'")
        if not content.startswith("# "):
            content = f"# {title}\n\n{content}"
        return content + "\n"
    return _parse


def write_units(ctx: PipelineContext, rt: StageRuntime) -> dict[str, Any]:
    cached_units = ctx.cached.units if ctx.cached is not None else {}
    abstractions = {a.key: a for a in ctx.abstractions}
    positions = {key: i for i, key in enumerate(ctx.unit_order, 1)}
    inputs_hash = {
        key: hash_set(ctx.records[p] for p in a.file_paths if p in ctx.records)
        for key, a in abstractions.items()
    }

    stale = {
        key for key in ctx.unit_order
        if ctx.plan.regenerates(key)
        or key not in cached_units
        or cached_units[key].source_inputs_hash != inputs_hash[key]
    }
    to_generate = [k for k in ctx.unit_order if k in expand_dependents(stale, ctx.edges)]
    units: dict[str, Unit] = {k: cached_units[k] for k in ctx.unit_order if k not in to_generate}

    total = len(ctx.unit_order)
    done = len(units)
    logger.info(
        "Writing %d unit(s), reusing %d", len(to_generate), len(units),
        extra={"repo_id": ctx.repo_id, "mode": ctx.plan.mode.value},
    )
    if units:
        rt.progress.publish(
            "write_units", f"Reused {len(units)} cached chapter(s)",
            30 + done / max(1, total) * 60, current_unit=done, total_units=total,
        )

    mode = _mode(ctx)
    chapter_listing = "\n".join(
        f"{positions[k]}. [{abstractions[k].name}]({chapter_filename(positions[k], k)})"
        for k in ctx.unit_order
    )
    by_path = {f.path: i for i, f in enumerate(ctx.files)}
    budget = _context_budget(rt)

    def _write_one(key: str) -> tuple[Unit, int]:
        a = abstractions[key]
        related = [
            f"- {abstractions[r.target].name} ({chapter_filename(positions[r.target], r.target)}): {r.label}"
            for r in ctx.relationships if r.source == key and r.target in abstractions
        ]
        indexed = [(by_path[p], ctx.files[by_path[p]]) for p in a.file_paths if p in by_path]
        prompt = CHAPTER_PROMPT.format(
            name=a.name,
            project_name=ctx.project_name,
            unit_noun=mode["unit_noun"],
            audience=mode["audience"],
            style=mode["style"],
            language_hint=_language_hint(ctx.language),
            description=a.description,
            related="\n".join(related) or "(none)",
            chapter_listing=chapter_listing,
            file_context=build_file_context(indexed, rt.options.max_lines_per_file, budget),
        )
        with bind_log_context(unit_key=key):
            content, attempts = _call_backend(rt, f"chapter:{key}", prompt, _clean_chapter(a.name))
        return Unit(
            key=key,
            title=a.name,
            content=content,
            source_inputs_hash=inputs_hash[key],
            input_paths=a.file_paths,
            generated_at=rt.clock(),
        ), attempts

    generated: dict[str, Unit] = {}
    failures: list[UnitFailure] = []

    def _on_done(outcome: UnitOutcome) -> None:
        nonlocal done
        if outcome.cancelled:
            return
        done += 1
        title = abstractions[outcome.task].name
        if outcome.ok:
            generated[outcome.task] = outcome.result
            message = f"Wrote chapter: {title}"
        else:
            failures.append(UnitFailure(
                key=outcome.task, title=title, error=outcome.error or "unknown error",
                attempts=outcome.attempts,
            ))
            message = f"Chapter failed: {title}"
        rt.progress.publish(
            "write_units", message, 30 + done / max(1, total) * 60,
            current_unit=done, total_units=total,
        )

    pool = UnitPool(max_workers=rt.options.max_workers, token=rt.token)
    outcomes, not_started = pool.run(to_generate, _write_one, _on_done)

    if not_started or any(o.cancelled for o in outcomes):
        rt.token.raise_if_cancelled("write_units")

    failures.sort(key=lambda f: positions[f.key])
    units.update(generated)
    if rt.options.failure_policy.is_total_failure(len(failures), total):
        raise StageFailedError(
            "write_units",
            f"all {total} unit(s) failed; first error: {failures[0].error}",
            failures=tuple(failures),
        )

    ordered = {k: units[k] for k in ctx.unit_order if k in units}
    return {
        "units": ordered,
        "regenerated": frozenset(generated),
        "failures": tuple(failures),
    }


# ---------------------------------------------------------------------------
# Stage 4: assembly
# ---------------------------------------------------------------------------

def _mermaid_label(text: str) -> str:
    return text.replace('"', "'").replace("\n", " ").strip()


def _index_inputs_hash(ctx: PipelineContext) -> str:
    parts = [ctx.documentation_mode, ctx.language, ctx.project_name, ctx.repo_url, ctx.summary]
    for key in ctx.unit_order:
        unit = ctx.units.get(key)
        parts.append(f"{key}:{unit.content_hash if unit else 'missing'}")
    for rel in ctx.relationships:
        parts.append(f"{rel.source}->{rel.target}:{rel.label}")
    return hash_parts(*parts)


def render_index(ctx: PipelineContext) -> str:
    titles = {a.key: a.name for a in ctx.abstractions}
    node_ids = {key: f"A{i}" for i, key in enumerate(ctx.unit_order)}

    lines = [f"# {ctx.project_name}", ""]
    if ctx.summary:
        lines += [ctx.summary, ""]
    if ctx.repo_url.startswith(("http://", "https://")):
        lines += [f"**Source repository:** [{ctx.repo_url}]({ctx.repo_url})", ""]

    lines += ["```mermaid", "flowchart TD"]
    for key in ctx.unit_order:
        lines.append(f'    {node_ids[key]}["{_mermaid_label(titles.get(key, key))}"]')
    for rel in ctx.relationships:
        if rel.source in node_ids and rel.target in node_ids:
            lines.append(
                f'    {node_ids[rel.source]} -- "{_mermaid_label(rel.label)}" --> {node_ids[rel.target]}'
            )
    lines += ["```", "", "## Chapters", ""]

    failed = {f.key for f in ctx.failures}
    for i, key in enumerate(ctx.unit_order, 1):
        marker = " *(not generated)*" if key in failed else ""
        lines.append(f"{i}. [{titles.get(key, key)}]({chapter_filename(i, key)}){marker}")
    return "\n".join(lines) + "\n"


def assemble(ctx: PipelineContext, rt: StageRuntime) -> dict[str, Any]:
    failures = {f.key: f for f in ctx.failures}
    titles = {a.key: a.name for a in ctx.abstractions}

    chapters: list[ChapterOutput] = []
    for i, key in enumerate(ctx.unit_order, 1):
        unit = ctx.units.get(key)
        if unit is not None:
            chapters.append(ChapterOutput(key, unit.title, chapter_filename(i, key), unit.content))
        else:
            error = failures[key].error if key in failures else "not generated"
            title = titles.get(key, key)
            chapters.append(ChapterOutput(
                key, title, chapter_filename(i, key),
                PLACEHOLDER_CHAPTER.format(title=title, error=error), placeholder=True,
            ))

    inputs_hash = _index_inputs_hash(ctx)
    cached_index = ctx.cached.units.get(INDEX_UNIT_KEY) if ctx.cached is not None else None
    if (
        cached_index is not None
        and not ctx.plan.regenerates(INDEX_UNIT_KEY)
        and cached_index.source_inputs_hash == inputs_hash
    ):
        index = cached_index
    else:
        index = Unit(
            key=INDEX_UNIT_KEY,
            title=ctx.project_name,
            content=render_index(ctx),
            source_inputs_hash=inputs_hash,
            input_paths=(),
            generated_at=rt.clock(),
        )

    return {
        "index": index,
        "output": DocumentOutput(
            project_name=ctx.project_name,
            index=index.content,
            chapters=tuple(chapters),
        ),
    }


# ---------------------------------------------------------------------------
# Default pipeline
# ---------------------------------------------------------------------------

_INPUTS = frozenset({"repo_id", "project_name", "language", "documentation_mode", "files", "plan", "cached"})

DEFAULT_STAGES: tuple[StageDescriptor, ...] = (
    StageDescriptor(
        name="identify_abstractions",
        label="Identifying core abstractions",
        reads=_INPUTS,
        writes=frozenset({"abstractions"}),
        run=identify_abstractions,
        progress_start=10,
        progress_end=20,
    ),
    StageDescriptor(
        name="order_chapters",
        label="Analyzing relationships and chapter order",
        reads=_INPUTS | {"abstractions"},
        writes=frozenset({"summary", "relationships", "unit_order", "edges"}),
        run=order_chapters,
        progress_start=20,
        progress_end=30,
    ),
    StageDescriptor(
        name="write_units",
        label="Writing chapters",
        reads=_INPUTS | {"records", "abstractions", "relationships", "unit_order", "edges"},
        writes=frozenset({"units", "regenerated", "failures"}),
        run=write_units,
        progress_start=30,
        progress_end=90,
    ),
    StageDescriptor(
        name="assemble",
        label="Assembling the document",
        reads=_INPUTS | {"repo_url", "abstractions", "summary", "relationships", "unit_order", "units", "failures"},
        writes=frozenset({"index", "output"}),
        run=assemble,
        progress_start=92,
        progress_end=98,
    ),
)
