"""
fedround Core Module
====================
Data models, exception taxonomy and utilities shared by the orchestration
layer.
"""

from .models import (
    AggregationResult,
    AggregationStrategyType,
    ClientRecord,
    ClientStatus,
    ClientUpdate,
    CompressionConfig,
    ConvergenceConfig,
    GlobalModel,
    PrivacyConfig,
    RegistrationResult,
    RejectionReason,
    RobustnessConfig,
    RoundAssignment,
    RoundFailed,
    RoundRecord,
    RoundState,
    RoundSummary,
    SessionConfig,
    SubmissionResult,
)
from .utils import setup_logging, merge_configs
from .exceptions import (
    FedRoundError,
    UpdateRejectedError,
    UpdateValidationError,
    CompressionError,
    NotSelectedError,
    RoundClosedError,
    DuplicateUpdateError,
    PrivacyBudgetExceededError,
    RoundError,
    InsufficientClientsError,
    NoSurvivingUpdatesError,
    AggregationError,
    RoundCancelledError,
    InvalidRoundStateError,
    SessionStalledError,
    UnknownClientError,
    ConfigurationError,
)

__all__ = [
    # Models
    "AggregationResult",
    "AggregationStrategyType",
    "ClientRecord",
    "ClientStatus",
    "ClientUpdate",
    "CompressionConfig",
    "ConvergenceConfig",
    "GlobalModel",
    "PrivacyConfig",
    "RegistrationResult",
    "RejectionReason",
    "RobustnessConfig",
    "RoundAssignment",
    "RoundFailed",
    "RoundRecord",
    "RoundState",
    "RoundSummary",
    "SessionConfig",
    "SubmissionResult",
    # Utils
    "setup_logging",
    "merge_configs",
    # Exceptions
    "FedRoundError",
    "UpdateRejectedError",
    "UpdateValidationError",
    "CompressionError",
    "NotSelectedError",
    "RoundClosedError",
    "DuplicateUpdateError",
    "PrivacyBudgetExceededError",
    "RoundError",
    "InsufficientClientsError",
    "NoSurvivingUpdatesError",
    "AggregationError",
    "RoundCancelledError",
    "InvalidRoundStateError",
    "SessionStalledError",
    "UnknownClientError",
    "ConfigurationError",
]
