"""Repository pattern for data access."""

from dialer_engine.db.repositories.base import BaseRepository
from dialer_engine.db.repositories.scores import ScoreRepository
from dialer_engine.db.repositories.conversions import ConversionRepository
from dialer_engine.db.repositories.audit import TransitionAuditRepository

__all__ = [
    "BaseRepository",
    "ScoreRepository",
    "ConversionRepository",
    "TransitionAuditRepository",
]
