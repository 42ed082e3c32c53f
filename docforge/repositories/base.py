"""Base repository for tables keyed by repository id.

Every cache table carries a ``repo_id`` column. The base provides the
repo-scoped query, lookup, ordered read and delete that concrete
repositories compose; it never commits.
"""

from typing import TypeVar, Generic, Optional, Type
from sqlalchemy.orm import Session, Query

from ..database import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Shared repo-scoped logic for SQLAlchemy models.

    Class variables to set in subclasses:
        model_class: The table whose row owns a repository (e.g., RepoCacheRecord)
    """

    model_class: Type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def scoped(self, model, repo_id: str) -> Query:
        """Rows of *model* belonging to *repo_id*."""
        return self.db.query(model).filter(model.repo_id == repo_id)

    def get_optional(self, repo_id: str) -> Optional[ModelT]:
        """The owning row for *repo_id*, or None."""
        return self.scoped(self.model_class, repo_id).first()

    def rows_in_order(self, model, repo_id: str) -> list:
        """Child rows for *repo_id* in insertion order."""
        return self.scoped(model, repo_id).order_by(model.id).all()

    def delete_scoped(self, model, repo_id: str) -> int:
        """Bulk-delete rows of *model* for *repo_id*; returns the row count."""
        return self.scoped(model, repo_id).delete(synchronize_session=False)
