"""
fedround Data Models
====================
Pydantic models for the data structures shared by the registry, the
aggregation pipeline and the round coordinator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

import numpy as np
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every model field."""
    return datetime.now(timezone.utc)


def as_weight_vector(value: Any, read_only: bool = False) -> np.ndarray:
    """Coerce a sequence into a 1-D float64 vector (copied)."""
    vector = np.array(value, dtype=np.float64)
    if vector.ndim != 1:
        raise ValueError(f"weights must be a 1-D vector, got shape {vector.shape}")
    if read_only:
        vector.setflags(write=False)
    return vector


# =============================================================================
# Enums
# =============================================================================


class RoundState(str, Enum):
    """Lifecycle state of a federated round."""

    IDLE = "idle"
    OPEN = "open"
    COLLECTING = "collecting"
    CLOSING = "closing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


class ClientStatus(str, Enum):
    """Availability of a registered client."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"  # privacy budget exhausted for the session


class AggregationStrategyType(str, Enum):
    """Supported aggregation strategies."""

    FEDAVG = "fedavg"
    FEDPROX = "fedprox"
    FEDNOVA = "fednova"
    TRIMMED_MEAN = "trimmed_mean"


class RejectionReason(str, Enum):
    """Reason codes returned to clients for rejected submissions."""

    VALIDATION_ERROR = "validation_error"
    NOT_SELECTED = "not_selected"
    ROUND_CLOSED = "round_closed"
    DUPLICATE_UPDATE = "duplicate_update"
    PRIVACY_BUDGET_EXCEEDED = "privacy_budget_exceeded"


# =============================================================================
# Configuration Models
# =============================================================================


class PrivacyConfig(BaseModel):
    """Differential privacy parameters and the session-level budget."""

    model_config = ConfigDict(frozen=True)

    epsilon: float = Field(default=1.0, gt=0, description="Per-update epsilon")
    delta: float = Field(default=1e-5, gt=0, lt=1)
    clip_norm: float = Field(default=1.0, gt=0, description="L2 sensitivity bound")
    total_epsilon: Optional[float] = Field(
        default=None, gt=0, description="Session budget per client (None = untracked)"
    )
    accountant: Literal["simple", "rdp"] = Field(default="simple")


class CompressionConfig(BaseModel):
    """Sparsification and quantization parameters."""

    model_config = ConfigDict(frozen=True)

    top_k_ratio: float = Field(default=1.0, gt=0, le=1)
    quant_bits: int = Field(default=0, ge=0, le=16, description="0 disables quantization")


class RobustnessConfig(BaseModel):
    """Outlier detection and Byzantine trimming parameters."""

    model_config = ConfigDict(frozen=True)

    outlier_k: Optional[float] = Field(default=2.0, ge=0, description="None disables")
    byzantine_fraction: float = Field(default=0.2, ge=0, lt=0.5)
    trim_tails: Literal["both", "upper"] = Field(default="upper")


class ConvergenceConfig(BaseModel):
    """Early stopping and learning-rate hint parameters."""

    model_config = ConfigDict(frozen=True)

    min_delta: float = Field(default=0.001, ge=0)
    patience: int = Field(default=5, ge=1)
    initial_learning_rate: float = Field(default=0.01, gt=0)
    high_threshold: float = Field(default=0.5)
    low_threshold: float = Field(default=0.1)
    lr_min: float = Field(default=1e-4, gt=0)
    lr_max: float = Field(default=0.1, gt=0)
    decay_rate: float = Field(default=1.0, gt=0, le=1, description="1.0 disables decay")
    decay_steps: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def check_bounds(self) -> "ConvergenceConfig":
        if self.low_threshold > self.high_threshold:
            raise ValueError("low_threshold must not exceed high_threshold")
        if self.lr_min > self.lr_max:
            raise ValueError("lr_min must not exceed lr_max")
        return self


class SessionConfig(BaseModel):
    """Immutable configuration of one training session."""

    model_config = ConfigDict(frozen=True)

    model_size: int = Field(..., gt=0, description="Length N of the weight vector")
    client_selection_fraction: float = Field(default=1.0, gt=0, le=1)
    min_clients: int = Field(default=3, ge=1)
    max_clients: int = Field(default=100, ge=1)
    round_timeout: float = Field(default=60.0, gt=0, description="Seconds")
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    robustness: RobustnessConfig = Field(default_factory=RobustnessConfig)
    convergence: ConvergenceConfig = Field(default_factory=ConvergenceConfig)
    strategy: AggregationStrategyType = Field(default=AggregationStrategyType.FEDAVG)
    fedprox_mu: float = Field(default=0.01, ge=0)
    max_rounds: int = Field(default=100, ge=1)
    max_consecutive_failures: int = Field(default=5, ge=1)
    seed: Optional[int] = Field(default=None)
    client_inactivity_timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_client_bounds(self) -> "SessionConfig":
        if self.min_clients > self.max_clients:
            raise ValueError("min_clients must not exceed max_clients")
        return self


# =============================================================================
# Registry Models
# =============================================================================


class ClientRecord(BaseModel):
    """Registry entry of a federated client."""

    client_id: str = Field(..., min_length=1)
    status: ClientStatus = Field(default=ClientStatus.ACTIVE)
    registered_at: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    reliability_score: float = Field(default=1.0, ge=0, le=1)
    bandwidth_estimate: float = Field(default=0.0, ge=0, description="Bytes per second")
    rounds_selected: int = Field(default=0)
    rounds_participated: int = Field(default=0)

    def is_active(self) -> bool:
        """Check if client can be selected."""
        return self.status == ClientStatus.ACTIVE

    def update_reliability(self, success: bool, alpha: float = 0.1) -> None:
        """Exponential moving average of round outcomes."""
        observed = 1.0 if success else 0.0
        self.reliability_score = (1 - alpha) * self.reliability_score + alpha * observed

    def update_bandwidth(self, bytes_per_second: float, alpha: float = 0.1) -> None:
        """Exponential moving average of observed throughput."""
        if self.bandwidth_estimate <= 0:
            self.bandwidth_estimate = bytes_per_second
        else:
            self.bandwidth_estimate = (
                (1 - alpha) * self.bandwidth_estimate + alpha * bytes_per_second
            )


# =============================================================================
# Model / Update Models
# =============================================================================


class GlobalModel(BaseModel):
    """Immutable snapshot of the global weight vector."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    version: int = Field(default=0, ge=0)
    weights: np.ndarray
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("weights", mode="before")
    @classmethod
    def freeze_weights(cls, v: Any) -> np.ndarray:
        return as_weight_vector(v, read_only=True)

    @property
    def size(self) -> int:
        return int(self.weights.shape[0])

    @classmethod
    def initial(cls, model_size: int, weights: Optional[Any] = None) -> "GlobalModel":
        """Version-0 model, zero-initialised unless weights are given."""
        if weights is None:
            weights = np.zeros(model_size, dtype=np.float64)
        model = cls(version=0, weights=weights)
        if model.size != model_size:
            raise ValueError(
                f"Initial weights have length {model.size}, expected {model_size}"
            )
        return model


class ClientUpdate(BaseModel):
    """Decoded and validated update from one client for one round."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    client_id: str = Field(..., min_length=1)
    round_id: int = Field(..., ge=1)
    weights: np.ndarray
    num_samples: int = Field(..., ge=1, description="Number of training samples")
    local_loss: float = Field(..., description="Local training loss")
    local_accuracy: float = Field(default=0.0)
    local_steps: Optional[int] = Field(default=None, ge=1, description="tau for FedNova")
    payload_bytes: int = Field(default=0, ge=0)
    received_at: datetime = Field(default_factory=utcnow)

    @field_validator("weights", mode="before")
    @classmethod
    def check_weights(cls, v: Any) -> np.ndarray:
        vector = as_weight_vector(v)
        if not np.all(np.isfinite(vector)):
            raise ValueError("weights contain non-finite values")
        return vector

    @field_validator("local_loss", "local_accuracy")
    @classmethod
    def check_finite(cls, v: float) -> float:
        if not np.isfinite(v):
            raise ValueError("metric must be finite")
        return v


class AggregationResult(BaseModel):
    """Outcome of filtering and combining a round's updates."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    new_weights: np.ndarray
    participant_count: int = Field(..., ge=0)
    excluded_clients: Set[str] = Field(default_factory=set)
    avg_loss: float
    avg_accuracy: float
    total_samples: int = Field(default=0, ge=0)
    strategy: str = Field(default="")


# =============================================================================
# Round Records and Events
# =============================================================================


class RoundRecord(BaseModel):
    """Archived information about a finished (or failed) round."""

    round_id: int = Field(..., ge=1)
    state: RoundState
    selected_clients: List[str] = Field(default_factory=list)
    participants: List[str] = Field(default_factory=list)
    excluded_clients: List[str] = Field(default_factory=list)
    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = Field(default=None)
    new_version: Optional[int] = Field(default=None)
    avg_loss: Optional[float] = Field(default=None)
    avg_accuracy: Optional[float] = Field(default=None)
    error_code: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    def duration_seconds(self) -> Optional[float]:
        """Calculate round duration in seconds."""
        if self.closed_at:
            return (self.closed_at - self.opened_at).total_seconds()
        return None


class RoundAssignment(BaseModel):
    """Broadcast sent when a round opens."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    round_id: int
    selected_clients: List[str]
    global_model: GlobalModel
    deadline: datetime


class RoundSummary(BaseModel):
    """Event emitted after a round completes."""

    round_id: int
    participant_count: int
    excluded_clients: List[str] = Field(default_factory=list)
    avg_loss: float
    avg_accuracy: float
    new_version: int
    converged: bool = False
    learning_rate: Optional[float] = None


class RoundFailed(BaseModel):
    """Event emitted when a round fails or is cancelled."""

    round_id: int
    error_code: Optional[str] = None
    message: str = ""
    received_count: int = 0


class SubmissionResult(BaseModel):
    """Response to a SubmitUpdate call."""

    accepted: bool
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None


class RegistrationResult(BaseModel):
    """Response to a RegisterClient call."""

    accepted: bool
    client_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
