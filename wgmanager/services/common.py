"""Common helper functions for the service layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from wgmanager.services.errors import NotFoundError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def apply_pagination(query, limit: int, offset: int):
    """Apply pagination to a query.

    Args:
        query: SQLAlchemy query object
        limit: Maximum number of results
        offset: Number of results to skip

    Returns:
        Query with pagination applied
    """
    return query.limit(limit).offset(offset)


def get_or_404(db: Session, model: type[T], id: int, detail: str | None = None) -> T:
    """Get entity by primary key or raise NotFoundError."""
    entity = db.get(model, id)
    if not entity:
        raise NotFoundError(detail or f"{model.__name__} not found")
    return entity
