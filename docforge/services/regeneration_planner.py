"""
Regeneration planner: turn a change analysis into an execution strategy.

Rules (first match wins):
1. No cached entry, or force-full → FULL (re-identify everything)
2. Nothing added/removed/modified → SKIP (reuse the cached output verbatim)
3. Any file added or removed → PARTIAL_REIDENTIFY (re-run structural
   discovery, keep units whose inputs did not change)
4. Only modified files → PARTIAL (regenerate units that read a modified
   file, plus every unit that depends on them, transitively)

Structural changes outrank content edits because the set of units itself
may change, not only their content.
"""

import logging
from collections import defaultdict, deque
from typing import Iterable, Optional

from .records import (
    ChangeAnalysis,
    DependencyEdge,
    RegenerationMode,
    RegenerationPlan,
    RepoCacheEntry,
)

logger = logging.getLogger(__name__)


def expand_dependents(keys: Iterable[str], edges: Iterable[DependencyEdge]) -> set[str]:
    """Return *keys* plus every unit that reaches one of them through edges.

    Cycles are tolerated: each unit is visited once.
    """
    dependents_of: dict[str, set[str]] = defaultdict(set)
    for edge in edges:
        dependents_of[edge.dependency].add(edge.dependent)

    result = set(keys)
    queue = deque(result)
    while queue:
        key = queue.popleft()
        for dependent in dependents_of.get(key, ()):
            if dependent not in result:
                result.add(dependent)
                queue.append(dependent)
    return result


def units_reading(entry: RepoCacheEntry, paths: set[str]) -> set[str]:
    """Keys of cached units whose recorded input paths intersect *paths*."""
    return {
        key for key, unit in entry.units.items()
        if paths.intersection(unit.input_paths)
    }


def _ordered(entry: RepoCacheEntry, keys: set[str]) -> tuple[str, ...]:
    """Sort *keys* by the entry's unit order, unknown keys last."""
    position = {key: i for i, key in enumerate(entry.expected_unit_keys())}
    return tuple(sorted(keys, key=lambda k: (position.get(k, len(position)), k)))


def plan_regeneration(
    analysis: ChangeAnalysis,
    cached_entry: Optional[RepoCacheEntry],
    force_full: bool = False,
    force_reason: Optional[str] = None,
) -> RegenerationPlan:
    """
    Decide how much of the pipeline must re-execute.

    Args:
        analysis: Diff of the incoming files against the cached snapshot
        cached_entry: The current cache entry, or None when absent/corrupt
        force_full: Caller override forcing a full regeneration
        force_reason: Reason recorded with a forced plan

    Returns:
        RegenerationPlan
    """
    # Rule 1: nothing usable cached, or caller forces it
    if cached_entry is None or force_full:
        if cached_entry is None:
            reason = "No cached entry for repository"
            keys: tuple[str, ...] = ()
        else:
            reason = force_reason or "Full regeneration requested"
            keys = _ordered(cached_entry, set(cached_entry.units))
        return RegenerationPlan(
            mode=RegenerationMode.FULL,
            units_to_regenerate=keys,
            reidentify_top_level=True,
            reason=reason,
        )

    # Rule 2: identical file set
    if analysis.change_percentage == 0 and not analysis.changed_paths:
        return RegenerationPlan(
            mode=RegenerationMode.SKIP,
            units_to_regenerate=(),
            reidentify_top_level=False,
            reason="No files changed since the cached snapshot",
        )

    # Rule 3: structural change
    if analysis.has_structural_change:
        affected = units_reading(cached_entry, analysis.changed_paths)
        keys = _ordered(cached_entry, expand_dependents(affected, cached_entry.edges))
        reason = (
            f"{len(analysis.added)} file(s) added, {len(analysis.removed)} removed, "
            f"{len(analysis.modified)} modified ({analysis.change_percentage}% changed)"
        )
        logger.info("Plan partial_reidentify: %s", reason)
        return RegenerationPlan(
            mode=RegenerationMode.PARTIAL_REIDENTIFY,
            units_to_regenerate=keys,
            reidentify_top_level=True,
            reason=reason,
        )

    # Rule 4: content edits only
    affected = units_reading(cached_entry, set(analysis.modified))
    keys = _ordered(cached_entry, expand_dependents(affected, cached_entry.edges))
    reason = (
        f"{len(analysis.modified)} file(s) modified ({analysis.change_percentage}% changed), "
        f"{len(keys)} unit(s) affected"
    )
    logger.info("Plan partial: %s", reason)
    return RegenerationPlan(
        mode=RegenerationMode.PARTIAL,
        units_to_regenerate=keys,
        reidentify_top_level=False,
        reason=reason,
    )


def resume_plan(entry: RepoCacheEntry) -> RegenerationPlan:
    """Plan for a skip run whose cached entry is missing some expected units.

    Happens after a run that committed with a tolerated number of failed
    units: only the missing units and their dependents are regenerated.
    """
    missing = set(entry.missing_units())
    keys = _ordered(entry, expand_dependents(missing, entry.edges))
    return RegenerationPlan(
        mode=RegenerationMode.PARTIAL,
        units_to_regenerate=keys,
        reidentify_top_level=False,
        reason=f"Resuming {len(missing)} unit(s) missing from the cached entry",
    )
