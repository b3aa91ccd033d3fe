"""Database layer for the unlock engine with async SQLAlchemy."""

from recunlock.db.connection import close_db, get_session_factory, init_db
from recunlock.db.models import (
    Base,
    RecommendationModel,
    UserProgressModel,
    ValidationHistoryModel,
)

__all__ = [
    "Base",
    "RecommendationModel",
    "UserProgressModel",
    "ValidationHistoryModel",
    "close_db",
    "get_session_factory",
    "init_db",
]
