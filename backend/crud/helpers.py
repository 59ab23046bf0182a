"""
Helper functions shared across CRUD operations.
"""

import logging

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger("CRUD")


def dialect_insert(db: AsyncSession, model):
    """
    Return a dialect-specific INSERT for model.

    Both supported backends expose ``on_conflict_do_update`` /
    ``on_conflict_do_nothing`` and ``RETURNING``, which is what the atomic
    increment and idempotent upserts are built on.
    """
    dialect_name = db.bind.dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Unsupported dialect for atomic upserts: {dialect_name}")


def is_duplicate_key(error: Exception) -> bool:
    """True when an IntegrityError was raised by a unique/primary key violation."""
    text = str(getattr(error, "orig", error)).lower()
    return "unique" in text or "duplicate key" in text
