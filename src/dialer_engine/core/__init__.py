"""Core utilities: errors, logging, retry."""

from dialer_engine.core.exceptions import (
    DialerEngineError,
    ValidationError,
    RecordNotFoundError,
    ReadFailure,
    GroundTruthTimeout,
    GroundTruthUnavailable,
    GroundTruthRecordMissing,
    StoreError,
    WriteConflict,
    FatalStoreError,
    StoreTimeout,
    AuthError,
    UnauthorizedError,
)
from dialer_engine.core.log import get_logger, setup_logging

__all__ = [
    "DialerEngineError",
    "ValidationError",
    "RecordNotFoundError",
    "ReadFailure",
    "GroundTruthTimeout",
    "GroundTruthUnavailable",
    "GroundTruthRecordMissing",
    "StoreError",
    "WriteConflict",
    "FatalStoreError",
    "StoreTimeout",
    "AuthError",
    "UnauthorizedError",
    "get_logger",
    "setup_logging",
]
