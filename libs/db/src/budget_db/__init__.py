"""budget_db: local database library for the budget tracker (SQLAlchemy).

Public exports
--------------
- ``Base`` and ``metadata`` for schema creation
- ORM tables in ``budget_db.models.store`` (re-exported for convenience)
- Engine/session helpers in ``budget_db.client``
"""

from __future__ import annotations

from .models.store import COLLECTION_ROWS, ROW_BY_COLLECTION, Base, StoreMeta

metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "StoreMeta",
    "COLLECTION_ROWS",
    "ROW_BY_COLLECTION",
]
