"""
Round Coordinator
=================
Asyncio state machine that runs one federated round at a time:

    IDLE -> OPEN -> COLLECTING -> CLOSING -> AGGREGATING -> COMPLETED
                        |            |            |
                        +------------+------------+--> FAILED

Submissions are checked and inserted under the round's lock. The
collector waits on the round's ``all_received`` event with the round
timeout, then filters, aggregates and installs the next immutable
GlobalModel. Events (RoundAssignment, RoundSummary, RoundFailed) are
delivered to every subscriber queue.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Set, Union

import numpy as np
import structlog
from pydantic import ValidationError

from core.exceptions import (
    DuplicateUpdateError,
    FedRoundError,
    InsufficientClientsError,
    InvalidRoundStateError,
    NoSurvivingUpdatesError,
    NotSelectedError,
    PrivacyBudgetExceededError,
    RoundCancelledError,
    RoundClosedError,
    RoundError,
    UpdateRejectedError,
    UpdateValidationError,
)
from core.models import (
    ClientUpdate,
    GlobalModel,
    RegistrationResult,
    RejectionReason,
    RoundAssignment,
    RoundFailed,
    RoundRecord,
    RoundState,
    RoundSummary,
    SessionConfig,
    SubmissionResult,
    utcnow,
)
from orchestration.aggregation import BaseAggregator, aggregator_from_config
from orchestration.compression import CompressionCodec
from orchestration.convergence import ConvergenceStatus, ConvergenceTracker
from orchestration.privacy import PrivacyEngine
from orchestration.robustness import RobustnessFilter

from .registry import ClientRegistry

logger = structlog.get_logger(__name__)

RoundEvent = Union[RoundAssignment, RoundSummary, RoundFailed]

_TRANSITIONS = {
    RoundState.IDLE: {RoundState.OPEN, RoundState.FAILED},
    RoundState.OPEN: {RoundState.COLLECTING, RoundState.FAILED},
    RoundState.COLLECTING: {RoundState.CLOSING, RoundState.FAILED},
    RoundState.CLOSING: {RoundState.AGGREGATING, RoundState.FAILED},
    RoundState.AGGREGATING: {RoundState.COMPLETED, RoundState.FAILED},
    RoundState.COMPLETED: set(),
    RoundState.FAILED: set(),
}

_TERMINAL = {RoundState.COMPLETED, RoundState.FAILED}


@dataclass
class FederatedRound:
    """Mutable state of the round in progress (owned by the coordinator)."""

    round_id: int
    base_model: GlobalModel
    deadline: datetime
    opened_at: datetime = field(default_factory=utcnow)
    state: RoundState = RoundState.IDLE
    selected_clients: FrozenSet[str] = frozenset()
    received_updates: Dict[str, ClientUpdate] = field(default_factory=dict)
    dropped_clients: Set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    all_received: asyncio.Event = field(default_factory=asyncio.Event)
    error: Optional[FedRoundError] = None


class RoundCoordinator:
    """
    Server-side coordinator of federated rounds.

    Example:
        >>> coordinator = RoundCoordinator(config)
        >>> coordinator.register_client("hospital_a")
        >>> assignment = await coordinator.start_round()
        >>> await coordinator.submit_update(assignment.round_id, "hospital_a", payload, 120, 0.4)
        >>> summary = await coordinator.collect()
    """

    def __init__(
        self,
        config: SessionConfig,
        registry: Optional[ClientRegistry] = None,
        aggregator: Optional[BaseAggregator] = None,
        codec: Optional[CompressionCodec] = None,
        privacy: Optional[PrivacyEngine] = None,
        robustness: Optional[RobustnessFilter] = None,
        convergence: Optional[ConvergenceTracker] = None,
        initial_weights: Optional[Any] = None,
    ):
        self.config = config
        self.registry = registry or ClientRegistry(
            inactivity_timeout=config.client_inactivity_timeout
        )
        self.aggregator = aggregator or aggregator_from_config(config)
        self.codec = codec or CompressionCodec(config.compression)
        self.privacy = privacy or PrivacyEngine(config.privacy, seed=config.seed)
        self.robustness = robustness or RobustnessFilter(config.robustness)
        self.convergence = convergence or ConvergenceTracker(config.convergence)

        self._global_model = GlobalModel.initial(config.model_size, initial_weights)
        self._current: Optional[FederatedRound] = None
        self._next_round_id = 1
        self._history: List[RoundRecord] = []
        self._subscribers: List[asyncio.Queue] = []
        self._last_status: Optional[ConvergenceStatus] = None

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def get_global_model(self) -> GlobalModel:
        """Current immutable global model snapshot."""
        return self._global_model

    @property
    def current_round_id(self) -> Optional[int]:
        return self._current.round_id if self._current else None

    @property
    def current_state(self) -> RoundState:
        return self._current.state if self._current else RoundState.IDLE

    @property
    def converged(self) -> bool:
        return self.convergence.converged

    @property
    def last_convergence_status(self) -> Optional[ConvergenceStatus]:
        return self._last_status

    def round_history(self) -> List[RoundRecord]:
        """Archived rounds, oldest first."""
        return [record.model_copy() for record in self._history]

    # -------------------------------------------------------------------------
    # Clients and events
    # -------------------------------------------------------------------------

    def register_client(self, client_id: str) -> RegistrationResult:
        accepted = self.registry.register(client_id)
        return RegistrationResult(accepted=accepted, client_id=client_id or "")

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        """Queue receiving every round event from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, event: RoundEvent) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, event dropped",
                    event_type=type(event).__name__,
                    round_id=event.round_id,
                )

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, rnd: FederatedRound, target: RoundState) -> None:
        if target not in _TRANSITIONS[rnd.state]:
            raise InvalidRoundStateError(rnd.state.value, target.value, round_id=rnd.round_id)
        logger.debug(
            "Round state transition",
            round_id=rnd.round_id,
            source=rnd.state.value,
            target=target.value,
        )
        rnd.state = target

    def _archive(self, rnd: FederatedRound, **extra: Any) -> RoundRecord:
        record = RoundRecord(
            round_id=rnd.round_id,
            state=rnd.state,
            selected_clients=sorted(rnd.selected_clients),
            participants=sorted(rnd.received_updates),
            opened_at=rnd.opened_at,
            closed_at=utcnow(),
            **extra,
        )
        self._history.append(record)
        return record

    def _fail(self, rnd: FederatedRound, error: FedRoundError, received_count: int = 0) -> None:
        if rnd.state != RoundState.FAILED:
            self._transition(rnd, RoundState.FAILED)
        rnd.error = error
        self._archive(rnd, error_code=error.error_code, error_message=error.message)
        self._publish(
            RoundFailed(
                round_id=rnd.round_id,
                error_code=error.error_code,
                message=error.message,
                received_count=received_count,
            )
        )
        logger.warning(
            "Round failed",
            round_id=rnd.round_id,
            error_code=error.error_code,
            reason=error.message,
            received=received_count,
        )

    # -------------------------------------------------------------------------
    # Round lifecycle
    # -------------------------------------------------------------------------

    def _round_seed(self, round_id: int) -> Optional[int]:
        return None if self.config.seed is None else self.config.seed + round_id

    async def start_round(self) -> RoundAssignment:
        """
        Open a new round and broadcast the current global model.

        Returns:
            RoundAssignment with the selected clients and deadline.

        Raises:
            InvalidRoundStateError: If a round is already in progress.
            InsufficientClientsError: If too few clients are active.
        """
        if self._current is not None and self._current.state not in _TERMINAL:
            raise InvalidRoundStateError(
                self._current.state.value, RoundState.OPEN.value, round_id=self._current.round_id
            )

        round_id = self._next_round_id
        self._next_round_id += 1
        self.registry.sweep_inactive()

        now = utcnow()
        rnd = FederatedRound(
            round_id=round_id,
            base_model=self._global_model,
            deadline=now + timedelta(seconds=self.config.round_timeout),
            opened_at=now,
        )
        self._current = rnd

        try:
            rnd.selected_clients = self.registry.select(
                fraction=self.config.client_selection_fraction,
                min_clients=self.config.min_clients,
                max_clients=self.config.max_clients,
                seed=self._round_seed(round_id),
                round_id=round_id,
            )
        except InsufficientClientsError as e:
            self._fail(rnd, e)
            raise

        self._transition(rnd, RoundState.OPEN)
        assignment = RoundAssignment(
            round_id=round_id,
            selected_clients=sorted(rnd.selected_clients),
            global_model=rnd.base_model,
            deadline=rnd.deadline,
        )
        self._publish(assignment)
        self._transition(rnd, RoundState.COLLECTING)

        logger.info(
            "Round opened",
            round_id=round_id,
            selected=len(rnd.selected_clients),
            model_version=rnd.base_model.version,
            timeout=self.config.round_timeout,
        )
        return assignment

    async def submit_update(
        self,
        round_id: int,
        client_id: str,
        encoded_weights: Any,
        num_samples: int,
        local_loss: float,
        local_accuracy: float = 0.0,
        local_steps: Optional[int] = None,
    ) -> SubmissionResult:
        """
        Accept or reject one client update.

        Client mistakes never raise; they come back as a SubmissionResult
        with a RejectionReason.
        """
        rnd = self._current
        if rnd is None or rnd.round_id != round_id:
            return self._reject(
                RoundClosedError(round_id, client_id=client_id, state="unknown")
            )

        async with rnd.lock:
            try:
                update = self._admit(
                    rnd,
                    client_id,
                    encoded_weights,
                    num_samples,
                    local_loss,
                    local_accuracy,
                    local_steps,
                )
            except PrivacyBudgetExceededError as e:
                # blocked for the session, so the round stops waiting for it
                rnd.dropped_clients.add(client_id)
                self._check_all_received(rnd)
                return self._reject(e)
            except UpdateRejectedError as e:
                return self._reject(e)

            rnd.received_updates[client_id] = update
            self._check_all_received(rnd)

        logger.debug(
            "Update accepted",
            round_id=round_id,
            client_id=client_id,
            received=len(rnd.received_updates),
            selected=len(rnd.selected_clients),
        )
        return SubmissionResult(accepted=True)

    def _check_all_received(self, rnd: FederatedRound) -> None:
        answered = rnd.dropped_clients.union(rnd.received_updates)
        if rnd.selected_clients.issubset(answered):
            rnd.all_received.set()

    def _reject(self, error: UpdateRejectedError) -> SubmissionResult:
        reason = RejectionReason(error.error_code.lower())
        logger.info(
            "Update rejected",
            round_id=error.round_id,
            client_id=error.client_id,
            reason=reason.value,
            detail=error.message,
        )
        return SubmissionResult(accepted=False, reason=reason, message=error.message)

    def _admit(
        self,
        rnd: FederatedRound,
        client_id: str,
        encoded_weights: Any,
        num_samples: Any,
        local_loss: Any,
        local_accuracy: Any,
        local_steps: Any,
    ) -> ClientUpdate:
        """Run every acceptance check; called with the round lock held."""
        round_id = rnd.round_id
        if rnd.state != RoundState.COLLECTING or utcnow() > rnd.deadline:
            raise RoundClosedError(round_id, client_id=client_id, state=rnd.state.value)
        if not self.registry.is_registered(client_id) or client_id not in rnd.selected_clients:
            raise NotSelectedError(client_id, round_id)
        if client_id in rnd.received_updates:
            raise DuplicateUpdateError(client_id, round_id)

        if isinstance(num_samples, bool) or not isinstance(num_samples, (int, np.integer)) or num_samples <= 0:
            raise UpdateValidationError(
                f"num_samples must be a positive integer, got {num_samples!r}",
                client_id=client_id,
                round_id=round_id,
                field="num_samples",
            )

        try:
            weights = self.codec.decode_payload(encoded_weights, self.config.model_size)
        except UpdateValidationError as e:
            raise UpdateValidationError(
                e.message, client_id=client_id, round_id=round_id, field="encoded_weights"
            ) from e

        received_at = utcnow()
        try:
            update = ClientUpdate(
                client_id=client_id,
                round_id=round_id,
                weights=weights,
                num_samples=int(num_samples),
                local_loss=local_loss,
                local_accuracy=local_accuracy,
                local_steps=local_steps,
                payload_bytes=self.codec.payload_size(encoded_weights),
                received_at=received_at,
            )
        except ValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ())) or None
            raise UpdateValidationError(
                f"Invalid update: {first.get('msg')}",
                client_id=client_id,
                round_id=round_id,
                field=field_name,
            ) from e

        try:
            self.privacy.validate(update)
        except PrivacyBudgetExceededError:
            self.registry.block(client_id)
            raise

        return update

    async def collect(self) -> RoundSummary:
        """
        Wait for all selected clients or the timeout, then close the round.

        Returns:
            RoundSummary of the completed round.

        Raises:
            InvalidRoundStateError: If no round is collecting.
            RoundCancelledError: If the round was cancelled while waiting.
            InsufficientClientsError: If fewer than min_clients submitted.
            NoSurvivingUpdatesError: If filtering removed every update.
        """
        rnd = self._current
        if rnd is None or rnd.state != RoundState.COLLECTING:
            state = rnd.state.value if rnd else RoundState.IDLE.value
            raise InvalidRoundStateError(
                state, RoundState.CLOSING.value, round_id=rnd.round_id if rnd else None
            )

        remaining = max(0.0, (rnd.deadline - utcnow()).total_seconds())
        try:
            await asyncio.wait_for(rnd.all_received.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.info(
                "Round deadline reached",
                round_id=rnd.round_id,
                received=len(rnd.received_updates),
                selected=len(rnd.selected_clients),
            )

        return await self._close(rnd)

    async def run_round(self) -> RoundSummary:
        """start_round() followed by collect()."""
        await self.start_round()
        return await self.collect()

    async def cancel_round(self, reason: str = "cancelled by operator") -> None:
        """
        Abort the round in progress; no model is installed.

        Raises:
            InvalidRoundStateError: If no round can be cancelled.
        """
        rnd = self._current
        if rnd is None:
            raise InvalidRoundStateError(RoundState.IDLE.value, RoundState.FAILED.value)

        async with rnd.lock:
            if rnd.state not in (RoundState.COLLECTING, RoundState.CLOSING):
                raise InvalidRoundStateError(
                    rnd.state.value, RoundState.FAILED.value, round_id=rnd.round_id
                )
            discarded = len(rnd.received_updates)
            rnd.received_updates.clear()
            self._fail(rnd, RoundCancelledError(rnd.round_id, reason), received_count=discarded)
            rnd.all_received.set()

    async def _close(self, rnd: FederatedRound) -> RoundSummary:
        async with rnd.lock:
            if rnd.state == RoundState.FAILED:
                if isinstance(rnd.error, RoundCancelledError):
                    raise rnd.error
                raise RoundCancelledError(rnd.round_id, "round failed while collecting")
            self._transition(rnd, RoundState.CLOSING)
            updates = list(rnd.received_updates.values())

        participants = [u.client_id for u in updates]
        try:
            if len(updates) < self.config.min_clients:
                raise InsufficientClientsError(
                    required=self.config.min_clients,
                    available=len(updates),
                    round_id=rnd.round_id,
                )
            self._transition(rnd, RoundState.AGGREGATING)
            filtered = self.robustness.filter(updates, round_id=rnd.round_id)
            result = self.aggregator.combine(
                filtered.kept,
                rnd.base_model.weights,
                round_id=rnd.round_id,
                excluded_clients=filtered.excluded,
            )
        except RoundError as e:
            excluded = e.excluded if isinstance(e, NoSurvivingUpdatesError) else ()
            self.registry.record_round(rnd.selected_clients, participants, excluded=excluded)
            self._fail(rnd, e, received_count=len(updates))
            raise

        new_model = GlobalModel(
            version=rnd.base_model.version + 1,
            weights=result.new_weights,
        )
        self._global_model = new_model

        status = self.convergence.evaluate(
            rnd.round_id, result, model_version=new_model.version
        )
        self._last_status = status

        self.registry.record_round(
            rnd.selected_clients,
            participants,
            excluded=result.excluded_clients,
            throughput=self._throughput(rnd, updates),
        )

        self._transition(rnd, RoundState.COMPLETED)
        excluded = sorted(result.excluded_clients)
        self._archive(
            rnd,
            excluded_clients=excluded,
            new_version=new_model.version,
            avg_loss=result.avg_loss,
            avg_accuracy=result.avg_accuracy,
        )

        summary = RoundSummary(
            round_id=rnd.round_id,
            participant_count=result.participant_count,
            excluded_clients=excluded,
            avg_loss=result.avg_loss,
            avg_accuracy=result.avg_accuracy,
            new_version=new_model.version,
            converged=status.converged,
            learning_rate=status.learning_rate,
        )
        self._publish(summary)

        logger.info(
            "Round completed",
            round_id=rnd.round_id,
            participants=result.participant_count,
            excluded=len(excluded),
            avg_loss=result.avg_loss,
            model_version=new_model.version,
            converged=status.converged,
        )
        return summary

    @staticmethod
    def _throughput(rnd: FederatedRound, updates: List[ClientUpdate]) -> Dict[str, float]:
        rates = {}
        for update in updates:
            elapsed = (update.received_at - rnd.opened_at).total_seconds()
            if update.payload_bytes > 0 and elapsed > 0:
                rates[update.client_id] = update.payload_bytes / elapsed
        return rates
