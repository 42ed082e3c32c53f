"""Cache repository: row-level access to cache entries and their child tables.

The repository never commits; callers own the transaction so that a whole
entry replacement is a single unit of work.
"""

from datetime import datetime
from typing import Any, Iterable, List

from sqlalchemy import func, select

from ..models import CachedUnit, FileFingerprint, RepoCacheRecord, UnitDependency
from .base import BaseRepository

# Child tables in deletion order.
CHILD_MODELS = (FileFingerprint, CachedUnit, UnitDependency)


class CacheRepository(BaseRepository[RepoCacheRecord]):
    """Repository for cache entry persistence."""

    model_class = RepoCacheRecord

    def list_summaries(self) -> List[Any]:
        """Entry metadata rows only (no JSON payloads, no unit bodies)."""
        return (
            self.db.query(
                RepoCacheRecord.repo_id,
                RepoCacheRecord.repo_url,
                RepoCacheRecord.captured_at,
                RepoCacheRecord.last_accessed_at,
                RepoCacheRecord.size_bytes,
                RepoCacheRecord.file_count,
                RepoCacheRecord.unit_count,
                RepoCacheRecord.is_corrupt,
            )
            .order_by(RepoCacheRecord.last_accessed_at.asc(), RepoCacheRecord.repo_id.asc())
            .all()
        )

    def get_summary(self, repo_id: str):
        """Metadata row for one entry, or None."""
        return (
            self.db.query(
                RepoCacheRecord.repo_id,
                RepoCacheRecord.repo_url,
                RepoCacheRecord.captured_at,
                RepoCacheRecord.last_accessed_at,
                RepoCacheRecord.size_bytes,
                RepoCacheRecord.file_count,
                RepoCacheRecord.unit_count,
                RepoCacheRecord.is_corrupt,
            )
            .filter(RepoCacheRecord.repo_id == repo_id)
            .first()
        )

    def touch(self, repo_id: str, when: datetime) -> None:
        self.scoped(RepoCacheRecord, repo_id).update(
            {RepoCacheRecord.last_accessed_at: when}, synchronize_session=False
        )

    def mark_corrupt(self, repo_id: str) -> None:
        self.scoped(RepoCacheRecord, repo_id).update(
            {RepoCacheRecord.is_corrupt: True}, synchronize_session=False
        )

    def delete_children(self, repo_id: str) -> None:
        for model in CHILD_MODELS:
            self.delete_scoped(model, repo_id)

    def delete(self, repo_id: str) -> bool:
        """Delete an entry and its child rows. Returns False if it did not exist."""
        self.delete_children(repo_id)
        return self.delete_scoped(RepoCacheRecord, repo_id) > 0

    def exists(self, repo_id: str) -> bool:
        """Existence check that never decodes the JSON columns."""
        return (
            self.db.query(RepoCacheRecord.repo_id)
            .filter(RepoCacheRecord.repo_id == repo_id)
            .first()
        ) is not None

    def replace(
        self,
        record_values: dict,
        files: Iterable[dict],
        units: Iterable[dict],
        dependencies: Iterable[dict],
    ) -> None:
        """Replace an entry wholesale: child rows are rewritten, the entry row upserted.

        The existing row is overwritten with a bulk UPDATE rather than loaded,
        so an entry whose stored JSON no longer decodes can still be replaced.
        """
        repo_id = record_values["repo_id"]
        self.delete_children(repo_id)
        self.db.flush()

        if self.exists(repo_id):
            updates = {
                getattr(RepoCacheRecord, key): value
                for key, value in record_values.items() if key != "repo_id"
            }
            self.scoped(RepoCacheRecord, repo_id).update(updates, synchronize_session=False)
        else:
            self.db.add(RepoCacheRecord(**record_values))
        self.db.flush()

        self.db.add_all(FileFingerprint(repo_id=repo_id, **values) for values in files)
        self.db.add_all(CachedUnit(repo_id=repo_id, **values) for values in units)
        self.db.add_all(UnitDependency(repo_id=repo_id, **values) for values in dependencies)
        self.db.flush()

    def load_children(self, repo_id: str) -> tuple[list, list, list]:
        return tuple(self.rows_in_order(model, repo_id) for model in CHILD_MODELS)

    # -- Orphans -------------------------------------------------------------

    def orphan_counts(self) -> dict[str, dict[str, int]]:
        """``{table: {repo_id: row_count}}`` for child rows whose entry is gone."""
        known = select(RepoCacheRecord.repo_id)
        result: dict[str, dict[str, int]] = {}
        for model in CHILD_MODELS:
            rows = (
                self.db.query(model.repo_id, func.count(model.id))
                .filter(model.repo_id.not_in(known))
                .group_by(model.repo_id)
                .all()
            )
            if rows:
                result[model.__tablename__] = {repo_id: count for repo_id, count in rows}
        return result

    def delete_orphans_for(self, repo_id: str) -> int:
        """Delete child rows for a repo id that has no entry row."""
        if self.exists(repo_id):
            return 0
        return sum(self.delete_scoped(model, repo_id) for model in CHILD_MODELS)
