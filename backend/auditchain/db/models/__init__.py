"""Database model registry. Import all models here so Alembic can discover them."""

from auditchain.db.models.activity import ActivityEntry

__all__ = [
    "ActivityEntry",
]
