"""Business services.

QueueTransitionService is the only writer of queue state. Outcome ingestion,
the discovery jobs, the leak monitor and operator tooling all call into it.
"""

from dialer_engine.services.eligibility import (
    ConversionType,
    GroundTruthFacts,
    QueueCategory,
    RequirementExclusionPolicy,
    decide_conversion,
    derive_category,
)
from dialer_engine.services.ground_truth import (
    GroundTruthReader,
    InMemoryGroundTruthReader,
    ReplicaGroundTruthReader,
)
from dialer_engine.services.jobs import JOBS, JobRequest, JobResult, build_job
from dialer_engine.services.leak_monitor import ConversionLeakMonitor
from dialer_engine.services.outcomes import OutcomeResult, OutcomeService
from dialer_engine.services.scoring import OutcomeType, ScoringPolicy
from dialer_engine.services.transition import (
    QueueTransitionService,
    TransitionRequest,
    TransitionResult,
)

__all__ = [
    "ConversionType",
    "GroundTruthFacts",
    "QueueCategory",
    "RequirementExclusionPolicy",
    "decide_conversion",
    "derive_category",
    "GroundTruthReader",
    "InMemoryGroundTruthReader",
    "ReplicaGroundTruthReader",
    "JOBS",
    "JobRequest",
    "JobResult",
    "build_job",
    "ConversionLeakMonitor",
    "OutcomeResult",
    "OutcomeService",
    "OutcomeType",
    "ScoringPolicy",
    "QueueTransitionService",
    "TransitionRequest",
    "TransitionResult",
]
