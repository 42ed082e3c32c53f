"""Cache maintenance: bounded eviction, orphan reconciliation, full reset
and the periodic cleanup schedule.

Every operation is best-effort: a failure on one entry (including a lock
that cannot be acquired in time) is recorded in the result and the batch
moves on.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import DocForgeException
from .cache_store import CacheEntrySummary, CacheStore

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class CleanupConfig:
    max_age_days: Optional[float] = 30
    max_size_mb: Optional[float] = 500
    max_entries: Optional[int] = 50
    min_entries_to_keep: int = 0
    dry_run: bool = False

    @classmethod
    def from_settings(cls, settings) -> "CleanupConfig":
        return cls(
            max_age_days=settings.cleanup_max_age_days,
            max_size_mb=settings.cleanup_max_size_mb,
            max_entries=settings.cleanup_max_entries,
            min_entries_to_keep=settings.cleanup_min_entries_to_keep,
        )


@dataclass
class CleanupResult:
    deleted_repos: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    remaining_entries: int = 0
    remaining_bytes: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def freed_space_mb(self) -> float:
        return round(self.freed_bytes / MB, 2)


@dataclass
class OrphanCleanupResult:
    orphans: dict[str, int] = field(default_factory=dict)  # repo_id -> child rows
    removed_rows: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False


class CacheMaintenance:
    """Reclaims space from a :class:`CacheStore`."""

    def __init__(
        self,
        store: CacheStore,
        clock: Optional[Callable[[], datetime]] = None,
        lock_timeout: float = 5.0,
    ):
        self.store = store
        self._clock = clock or store.clock
        self.lock_timeout = lock_timeout

    def plan_evictions(self, entries: list[CacheEntrySummary], config: CleanupConfig) -> list[tuple[CacheEntrySummary, str]]:
        """Select entries to evict, in eviction order, each with its reason.

        Corrupt entries go first, then entries past the age bound, then
        least-recently-used entries until the count and size bounds hold.
        Never selects so many that fewer than ``min_entries_to_keep`` remain.
        """
        now = self._clock()
        lru = sorted(entries, key=lambda e: (e.last_accessed_at, e.repo_id))
        evictable = max(0, len(lru) - max(0, config.min_entries_to_keep))
        selected: list[tuple[CacheEntrySummary, str]] = []
        chosen: set[str] = set()

        def select(entry: CacheEntrySummary, reason: str) -> bool:
            if len(selected) >= evictable:
                return False
            selected.append((entry, reason))
            chosen.add(entry.repo_id)
            return True

        for entry in lru:
            if entry.is_corrupt:
                select(entry, "corrupt")

        if config.max_age_days is not None:
            cutoff = now - timedelta(days=config.max_age_days)
            for entry in lru:
                if entry.repo_id not in chosen and entry.last_accessed_at < cutoff:
                    select(entry, f"unused for more than {config.max_age_days} days")

        remaining = [e for e in lru if e.repo_id not in chosen]
        remaining_bytes = sum(e.size_bytes for e in remaining)
        max_bytes = config.max_size_mb * MB if config.max_size_mb is not None else None

        for entry in list(remaining):
            over_count = config.max_entries is not None and len(remaining) > config.max_entries
            over_size = max_bytes is not None and remaining_bytes > max_bytes
            if not (over_count or over_size):
                break
            if not select(entry, "entry limit exceeded" if over_count else "size limit exceeded"):
                break
            remaining.remove(entry)
            remaining_bytes -= entry.size_bytes

        return selected

    def cleanup(self, config: Optional[CleanupConfig] = None) -> CleanupResult:
        """Evict entries until the configured bounds are satisfied."""
        config = config or CleanupConfig()
        result = CleanupResult(dry_run=config.dry_run)

        entries = self.store.list()
        evictions = self.plan_evictions(entries, config)
        deleted: set[str] = set()

        for entry, reason in evictions:
            if config.dry_run:
                logger.info(f"[dry run] Would evict {entry.repo_id} ({reason})")
                result.deleted_repos.append(entry.repo_id)
                result.freed_bytes += entry.size_bytes
                deleted.add(entry.repo_id)
                continue
            try:
                self.store.remove(entry.repo_id, timeout=self.lock_timeout)
            except (DocForgeException, SQLAlchemyError) as e:
                logger.warning(f"Failed to evict {entry.repo_id}: {e}")
                result.errors.append(f"{entry.repo_id}: {e}")
                continue
            logger.info(
                f"Evicted cache entry {entry.repo_id} ({reason})",
                extra={"repo_id": entry.repo_id, "size_bytes": entry.size_bytes},
            )
            result.deleted_repos.append(entry.repo_id)
            result.freed_bytes += entry.size_bytes
            deleted.add(entry.repo_id)

        kept = [e for e in entries if e.repo_id not in deleted]
        result.remaining_entries = len(kept)
        result.remaining_bytes = sum(e.size_bytes for e in kept)

        logger.info(
            f"Cache cleanup: {len(result.deleted_repos)} evicted, "
            f"{result.freed_space_mb} MB freed, {len(result.errors)} error(s)",
            extra={"dry_run": config.dry_run},
        )
        return result

    def cleanup_orphans(self, dry_run: bool = False) -> OrphanCleanupResult:
        """Remove (or with *dry_run*, only report) rows with no owning entry."""
        result = OrphanCleanupResult(dry_run=dry_run)
        try:
            by_table = self.store.find_orphans()
        except SQLAlchemyError as e:
            logger.error(f"Orphan scan failed: {e}")
            result.errors.append(f"scan: {e}")
            return result

        for counts in by_table.values():
            for repo_id, count in counts.items():
                result.orphans[repo_id] = result.orphans.get(repo_id, 0) + count

        if dry_run:
            logger.info(f"[dry run] Found orphaned rows for {len(result.orphans)} repo id(s)")
            return result

        for repo_id in sorted(result.orphans):
            try:
                result.removed_rows += self.store.delete_orphans(repo_id, timeout=self.lock_timeout)
            except (DocForgeException, SQLAlchemyError) as e:
                logger.warning(f"Failed to remove orphans for {repo_id}: {e}")
                result.errors.append(f"{repo_id}: {e}")

        logger.info(f"Removed {result.removed_rows} orphaned row(s) for {len(result.orphans)} repo id(s)")
        return result

    def clear_all(self) -> CleanupResult:
        """Remove every entry and every orphaned row."""
        result = CleanupResult()
        for entry in self.store.list():
            try:
                self.store.remove(entry.repo_id, timeout=self.lock_timeout)
            except (DocForgeException, SQLAlchemyError) as e:
                logger.warning(f"Failed to clear {entry.repo_id}: {e}")
                result.errors.append(f"{entry.repo_id}: {e}")
                result.remaining_entries += 1
                result.remaining_bytes += entry.size_bytes
                continue
            result.deleted_repos.append(entry.repo_id)
            result.freed_bytes += entry.size_bytes

        orphans = self.cleanup_orphans()
        result.errors.extend(orphans.errors)

        logger.info(f"Cleared {len(result.deleted_repos)} cache entries")
        return result


class CleanupScheduler:
    """Runs cache cleanup and orphan reconciliation on a background thread.

    One pass runs right after :meth:`start`, then one every
    ``interval_seconds`` until :meth:`stop`. A failing pass is logged and
    the schedule continues.

    Args:
        maintenance: Maintenance service bound to the shared store.
        config_factory: Builds the cleanup bounds for each pass.
        interval_seconds: Delay between passes.
    """

    def __init__(
        self,
        maintenance: CacheMaintenance,
        config_factory: Callable[[], CleanupConfig],
        interval_seconds: float,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.maintenance = maintenance
        self.config_factory = config_factory
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.last_result: Optional[CleanupResult] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> CleanupResult:
        result = self.maintenance.cleanup(self.config_factory())
        orphans = self.maintenance.cleanup_orphans()
        result.errors.extend(orphans.errors)
        self.runs += 1
        self.last_result = result
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except (DocForgeException, SQLAlchemyError) as e:
                logger.error(f"Scheduled cache cleanup failed: {e}")
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cache-cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Scheduled cache cleanup every {self.interval_seconds:.0f}s")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduled cache cleanup stopped")
