"""Database Models for the Dialer Engine.

Engine Models (Base):
- UserCallScoreModel: call priority and current queue category per user
- ConversionModel: append-only conversion ledger
- QueueTransitionAuditModel: append-only queue mutation trail

Replica Models (ReplicaBase, read-only):
- ReplicaUser, ReplicaClaim, ReplicaClaimRequirement
"""

from dialer_engine.db.models.scores import UserCallScoreModel
from dialer_engine.db.models.conversions import ConversionModel
from dialer_engine.db.models.audit import QueueTransitionAuditModel
from dialer_engine.db.models.replica import (
    ReplicaUser,
    ReplicaClaim,
    ReplicaClaimRequirement,
)

__all__ = [
    "UserCallScoreModel",
    "ConversionModel",
    "QueueTransitionAuditModel",
    "ReplicaUser",
    "ReplicaClaim",
    "ReplicaClaimRequirement",
]
