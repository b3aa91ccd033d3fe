"""Recommendation record store."""

from recunlock.store.repository import RecommendationStore

__all__ = ["RecommendationStore"]
