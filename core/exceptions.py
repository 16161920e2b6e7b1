"""
fedround Custom Exceptions
==========================
Exception taxonomy for the round coordination and aggregation engine.

Client-level errors (validation, selection, late or duplicate submissions,
privacy budget) reject a single update and never abort a round. Round-level
errors (insufficient clients, no surviving updates, cancellation) fail the
current round. Only SessionStalledError is fatal for a training session.
"""

from typing import Optional, Any


class FedRoundError(Exception):
    """Base exception for all fedround errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# =============================================================================
# Update Rejections (round continues)
# =============================================================================


class UpdateRejectedError(FedRoundError):
    """Base exception for a rejected client update."""

    def __init__(
        self,
        message: str,
        error_code: str,
        client_id: Optional[str] = None,
        round_id: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        merged = {"client_id": client_id, "round_id": round_id}
        merged.update(details or {})
        super().__init__(message, error_code=error_code, details=merged)
        self.client_id = client_id
        self.round_id = round_id


class UpdateValidationError(UpdateRejectedError):
    """Raised for malformed updates (length mismatch, bad sample count, NaN)."""

    def __init__(
        self,
        message: str,
        client_id: Optional[str] = None,
        round_id: Optional[int] = None,
        field: Optional[str] = None,
    ):
        super().__init__(
            message,
            error_code="VALIDATION_ERROR",
            client_id=client_id,
            round_id=round_id,
            details={"field": field},
        )
        self.field = field


class CompressionError(UpdateValidationError):
    """Raised when an encoded payload cannot be decoded."""

    def __init__(self, message: str, client_id: Optional[str] = None):
        super().__init__(message, client_id=client_id, field="encoded_weights")


class NotSelectedError(UpdateRejectedError):
    """Raised when a non-selected or unregistered client submits."""

    def __init__(self, client_id: str, round_id: Optional[int] = None):
        super().__init__(
            f"Client {client_id} is not selected for round {round_id}",
            error_code="NOT_SELECTED",
            client_id=client_id,
            round_id=round_id,
        )


class RoundClosedError(UpdateRejectedError):
    """Raised when an update arrives for a round that no longer collects."""

    def __init__(
        self,
        round_id: Optional[int],
        client_id: Optional[str] = None,
        state: Optional[str] = None,
    ):
        super().__init__(
            f"Round {round_id} is not accepting updates (state={state})",
            error_code="ROUND_CLOSED",
            client_id=client_id,
            round_id=round_id,
            details={"state": state},
        )
        self.state = state


class DuplicateUpdateError(UpdateRejectedError):
    """Raised when a client submits twice in the same round."""

    def __init__(self, client_id: str, round_id: int):
        super().__init__(
            f"Client {client_id} already submitted an update for round {round_id}",
            error_code="DUPLICATE_UPDATE",
            client_id=client_id,
            round_id=round_id,
        )


class PrivacyBudgetExceededError(UpdateRejectedError):
    """Raised when a client's cumulative privacy budget (epsilon) is exhausted."""

    def __init__(
        self,
        current_epsilon: float,
        max_epsilon: float,
        client_id: Optional[str] = None,
        round_id: Optional[int] = None,
    ):
        super().__init__(
            f"Privacy budget exceeded: {current_epsilon:.4f} > {max_epsilon:.4f}",
            error_code="PRIVACY_BUDGET_EXCEEDED",
            client_id=client_id,
            round_id=round_id,
            details={
                "current_epsilon": current_epsilon,
                "max_epsilon": max_epsilon,
            },
        )
        self.current_epsilon = current_epsilon
        self.max_epsilon = max_epsilon


# =============================================================================
# Round Failures
# =============================================================================


class RoundError(FedRoundError):
    """Base exception for errors that fail a whole round."""

    def __init__(
        self,
        message: str,
        error_code: str = "ROUND_ERROR",
        round_id: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        merged = {"round_id": round_id}
        merged.update(details or {})
        super().__init__(message, error_code=error_code, details=merged)
        self.round_id = round_id


class InsufficientClientsError(RoundError):
    """Raised when too few clients are available or participated."""

    def __init__(
        self, required: int, available: int, round_id: Optional[int] = None
    ):
        super().__init__(
            f"Insufficient clients: {available} available, {required} required",
            error_code="INSUFFICIENT_CLIENTS",
            round_id=round_id,
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class NoSurvivingUpdatesError(RoundError):
    """Raised when robustness filtering leaves nothing to aggregate."""

    def __init__(self, round_id: Optional[int] = None, excluded: Optional[list] = None):
        super().__init__(
            "No updates survived robustness filtering",
            error_code="NO_SURVIVING_UPDATES",
            round_id=round_id,
            details={"excluded": sorted(excluded or [])},
        )
        self.excluded = sorted(excluded or [])


class AggregationError(RoundError):
    """Raised when a strategy cannot combine the surviving updates."""

    def __init__(
        self,
        message: str,
        round_id: Optional[int] = None,
        participating_clients: Optional[int] = None,
    ):
        super().__init__(
            message,
            error_code="AGGREGATION_ERROR",
            round_id=round_id,
            details={"participating_clients": participating_clients},
        )


class RoundCancelledError(RoundError):
    """Raised when an operator aborts the open round."""

    def __init__(self, round_id: Optional[int], reason: str = "cancelled"):
        super().__init__(
            f"Round {round_id} cancelled: {reason}",
            error_code="ROUND_CANCELLED",
            round_id=round_id,
            details={"reason": reason},
        )
        self.reason = reason


class InvalidRoundStateError(RoundError):
    """Raised on an illegal round lifecycle transition."""

    def __init__(
        self,
        current: Any,
        target: Any,
        round_id: Optional[int] = None,
    ):
        super().__init__(
            f"Illegal round transition {current} -> {target}",
            error_code="INVALID_ROUND_STATE",
            round_id=round_id,
            details={"current": str(current), "target": str(target)},
        )


# =============================================================================
# Session / Registry / Configuration
# =============================================================================


class SessionStalledError(FedRoundError):
    """Raised after too many consecutive failed rounds."""

    def __init__(self, consecutive_failures: int, last_error: Optional[FedRoundError] = None):
        super().__init__(
            f"Training session stalled after {consecutive_failures} consecutive failed rounds",
            error_code="SESSION_STALLED",
            details={
                "consecutive_failures": consecutive_failures,
                "last_error": last_error.to_dict() if last_error else None,
            },
        )
        self.consecutive_failures = consecutive_failures
        self.last_error = last_error


class UnknownClientError(FedRoundError):
    """Raised when an operation references an unregistered client."""

    def __init__(self, client_id: str):
        super().__init__(
            f"Unknown client: {client_id}",
            error_code="UNKNOWN_CLIENT",
            details={"client_id": client_id},
        )
        self.client_id = client_id


class ConfigurationError(FedRoundError):
    """Exception raised for configuration errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key},
        )
