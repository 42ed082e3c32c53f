"""Cache store: durable, keyed persistence of snapshots and generated units.

Responsibilities:
- Translate :class:`RepoCacheEntry` working copies to rows and back
- Replace an entry in a single transaction (all-or-nothing)
- Serialize operations on the same repository with a per-key lock while
  leaving different repositories independent
- Treat undecodable entries as absent and flag them for maintenance
"""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.logging_config import bind_log_context
from ..exceptions import CacheCommitError, CacheCorruptionError, CacheLockTimeout
from ..repositories import CacheRepository
from .fingerprint import hash_content
from .records import (
    DependencyEdge,
    FileRecord,
    RepoCacheEntry,
    Snapshot,
    Unit,
    normalize_repo_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0


def _as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC.

    Applied before writing, since SQLite stores the wall-clock time and drops
    the offset, and after reading, since it returns naive values.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CacheEntrySummary:
    """Listing metadata for one entry. Never carries unit bodies."""

    repo_id: str
    repo_url: str
    captured_at: datetime
    last_accessed_at: datetime
    size_bytes: int
    file_count: int
    unit_count: int
    is_corrupt: bool


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    total_bytes: int
    oldest_entry: Optional[CacheEntrySummary]
    newest_entry: Optional[CacheEntrySummary]
    corrupt_entries: int


class KeyedLocks:
    """Registry of one lock per key.

    An entry exists only while some thread holds or waits on its lock; the
    last user out removes it, so the registry does not grow with the number
    of repositories ever touched. The registry lock only guards the dict,
    never the work itself.
    """

    def __init__(self):
        # key -> [lock, holders + waiters]
        self._locks: dict[str, list] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = [threading.Lock(), 0]
            slot[1] += 1
            return slot[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            slot = self._locks[key]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                raise CacheLockTimeout(key, timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class CacheStore:
    """Repository-keyed cache of snapshots, units and dependency edges."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._locks = KeyedLocks()
        self.lock_timeout = lock_timeout
        self.clock = clock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def locked(self, repo_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the exclusive lock for *repo_id*."""
        with self._locks.hold(repo_id, self.lock_timeout if timeout is None else timeout), \
                bind_log_context(repo_id=repo_id):
            yield

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, repo_url: str, touch: bool = True) -> Optional[RepoCacheEntry]:
        """Load the entry for a repository.

        Returns None when the entry is absent, unreadable or fails its
        integrity checks. A corrupt entry is flagged so cache maintenance
        evicts it; it is never returned. With *touch*, the entry's last
        access time is refreshed for LRU eviction.
        """
        repo_id = normalize_repo_id(repo_url)
        with self.locked(repo_id), self._session() as db:
            repo = CacheRepository(db)
            try:
                record = repo.get_optional(repo_id)
                if record is None:
                    return None
                if record.is_corrupt:
                    logger.warning(f"Ignoring cache entry flagged corrupt: {repo_id}")
                    return None
                entry = self._to_entry(record, *repo.load_children(repo_id))
            except CacheCorruptionError as e:
                db.rollback()
                self._flag_corrupt(db, repo_id, e.details.get("reason", str(e)))
                return None
            except (ValueError, TypeError, KeyError) as e:
                # json.JSONDecodeError is a ValueError
                db.rollback()
                self._flag_corrupt(db, repo_id, f"{type(e).__name__}: {e}")
                return None

            if touch:
                repo.touch(repo_id, _as_utc(self.clock()))
                db.commit()
            return entry

    def put(self, entry: RepoCacheEntry) -> None:
        """Atomically replace the stored entry for ``entry.repo_id``.

        Either the whole entry becomes visible or the previous one stays
        intact.

        Raises:
            CacheLockTimeout: If another writer holds the repository lock.
            CacheCommitError: If the transaction fails.
        """
        repo_id = normalize_repo_id(entry.repo_id)
        now = _as_utc(self.clock())

        files = [
            {
                "path": r.path,
                "content_hash": r.content_hash,
                "size": r.size,
                "last_seen_at": _as_utc(r.last_seen_at),
            }
            for r in entry.snapshot.records
        ]
        units = [
            {
                "unit_key": u.key,
                "title": u.title,
                "content": u.content,
                "content_hash": u.content_hash,
                "source_inputs_hash": u.source_inputs_hash,
                "input_paths": list(u.input_paths),
                "generated_at": _as_utc(u.generated_at),
            }
            for u in entry.units.values()
        ]
        dependencies = [
            {"dependent_key": e.dependent, "dependency_key": e.dependency}
            for e in entry.edges
        ]
        size_bytes = (
            sum(len(u.content.encode("utf-8")) for u in entry.units.values())
            + sum(len(f["path"]) + len(f["content_hash"]) for f in files)
            + len(json.dumps(entry.structure, default=str))
            + len(json.dumps(entry.metadata, default=str))
        )
        record_values = {
            "repo_id": repo_id,
            "repo_url": entry.repo_url,
            "captured_at": _as_utc(entry.snapshot.captured_at),
            "last_accessed_at": now,
            "size_bytes": size_bytes,
            "file_count": len(files),
            "unit_count": len(units),
            "unit_order": list(entry.unit_order),
            "structure": entry.structure,
            "entry_metadata": entry.metadata,
            "is_corrupt": False,
        }

        with self.locked(repo_id), self._session() as db:
            try:
                CacheRepository(db).replace(record_values, files, units, dependencies)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    f"Cache commit failed for {repo_id}: {e}",
                    extra={"repo_id": repo_id},
                )
                raise CacheCommitError(repo_id, e) from e

        logger.info(
            f"Cached {len(units)} units for {repo_id}",
            extra={"repo_id": repo_id, "size_bytes": size_bytes, "file_count": len(files)},
        )

    def remove(self, repo_url: str, timeout: Optional[float] = None) -> bool:
        """Delete the entry for a repository. Returns False if none existed."""
        repo_id = normalize_repo_id(repo_url)
        with self.locked(repo_id, timeout), self._session() as db:
            deleted = CacheRepository(db).delete(repo_id)
            db.commit()
        if deleted:
            logger.info(f"Removed cache entry: {repo_id}")
        return deleted

    def list(self) -> List[CacheEntrySummary]:
        """Metadata for every entry, least recently used first."""
        with self._session() as db:
            rows = CacheRepository(db).list_summaries()
        return [self._to_summary(row) for row in rows]

    def summary(self, repo_url: str) -> Optional[CacheEntrySummary]:
        repo_id = normalize_repo_id(repo_url)
        with self._session() as db:
            row = CacheRepository(db).get_summary(repo_id)
        return self._to_summary(row) if row else None

    def stats(self) -> CacheStats:
        entries = self.list()
        by_capture = sorted(entries, key=lambda e: e.captured_at)
        return CacheStats(
            total_entries=len(entries),
            total_bytes=sum(e.size_bytes for e in entries),
            oldest_entry=by_capture[0] if by_capture else None,
            newest_entry=by_capture[-1] if by_capture else None,
            corrupt_entries=sum(1 for e in entries if e.is_corrupt),
        )

    # ------------------------------------------------------------------
    # Orphans (used by cache maintenance)
    # ------------------------------------------------------------------

    def find_orphans(self) -> dict[str, dict[str, int]]:
        with self._session() as db:
            return CacheRepository(db).orphan_counts()

    def delete_orphans(self, repo_id: str, timeout: Optional[float] = None) -> int:
        """Remove child rows left behind for *repo_id*. Returns rows deleted."""
        with self.locked(repo_id, timeout), self._session() as db:
            removed = CacheRepository(db).delete_orphans_for(repo_id)
            db.commit()
        return removed

    # ------------------------------------------------------------------
    # Row <-> domain conversion
    # ------------------------------------------------------------------

    def _flag_corrupt(self, db: Session, repo_id: str, reason: str) -> None:
        logger.warning(
            f"Cache entry for {repo_id} is corrupt, treating as absent: {reason}",
            extra={"repo_id": repo_id},
        )
        try:
            CacheRepository(db).mark_corrupt(repo_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not flag corrupt cache entry {repo_id}: {e}")

    @staticmethod
    def _to_summary(row) -> CacheEntrySummary:
        return CacheEntrySummary(
            repo_id=row.repo_id,
            repo_url=row.repo_url,
            captured_at=_as_utc(row.captured_at),
            last_accessed_at=_as_utc(row.last_accessed_at),
            size_bytes=row.size_bytes or 0,
            file_count=row.file_count or 0,
            unit_count=row.unit_count or 0,
            is_corrupt=bool(row.is_corrupt),
        )

    @staticmethod
    def _to_entry(record, files, units, deps) -> RepoCacheEntry:
        repo_id = record.repo_id

        if not isinstance(record.unit_order, list):
            raise CacheCorruptionError(repo_id, "unit order is not a list")
        if not isinstance(record.structure, dict) or not isinstance(record.entry_metadata, dict):
            raise CacheCorruptionError(repo_id, "structure or metadata is not an object")

        unit_map: dict[str, Unit] = {}
        for row in units:
            if hash_content(row.content) != row.content_hash:
                raise CacheCorruptionError(repo_id, f"content hash mismatch for unit '{row.unit_key}'")
            if not isinstance(row.input_paths, list):
                raise CacheCorruptionError(repo_id, f"input paths of unit '{row.unit_key}' are not a list")
            unit_map[row.unit_key] = Unit(
                key=row.unit_key,
                title=row.title,
                content=row.content,
                source_inputs_hash=row.source_inputs_hash,
                input_paths=tuple(row.input_paths),
                generated_at=_as_utc(row.generated_at),
            )

        snapshot = Snapshot(
            records=tuple(
                FileRecord(
                    path=f.path,
                    content_hash=f.content_hash,
                    size=f.size,
                    last_seen_at=_as_utc(f.last_seen_at),
                )
                for f in files
            ),
            captured_at=_as_utc(record.captured_at),
        )

        return RepoCacheEntry(
            repo_id=repo_id,
            repo_url=record.repo_url,
            snapshot=snapshot,
            units=unit_map,
            unit_order=tuple(record.unit_order),
            edges=tuple(DependencyEdge(d.dependent_key, d.dependency_key) for d in deps),
            structure=record.structure,
            metadata=record.entry_metadata,
        )
