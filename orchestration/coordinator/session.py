"""
Training Session
================
Drives repeated rounds on a RoundCoordinator until the model converges,
the round budget is used up, or too many rounds fail in a row.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import structlog

from core.exceptions import (
    AggregationError,
    InsufficientClientsError,
    NoSurvivingUpdatesError,
    RoundCancelledError,
    RoundError,
    SessionStalledError,
)
from core.models import GlobalModel, RoundAssignment, RoundSummary

from .coordinator import RoundCoordinator

logger = structlog.get_logger(__name__)

# Round failures after which the session retries with a fresh selection
RETRYABLE_ERRORS = (
    InsufficientClientsError,
    NoSurvivingUpdatesError,
    AggregationError,
    RoundCancelledError,
)

Dispatcher = Callable[[RoundAssignment], Any]


@dataclass
class SessionResult:
    """Outcome of TrainingSession.run()."""

    summaries: List[RoundSummary] = field(default_factory=list)
    failed_rounds: int = 0
    converged: bool = False
    final_model: Optional[GlobalModel] = None

    @property
    def completed_rounds(self) -> int:
        return len(self.summaries)


class TrainingSession:
    """
    Repeated-round driver.

    ``dispatch`` is called with every RoundAssignment; it may return an
    awaitable, which runs alongside collection and is cancelled if still
    pending when the round closes. Clients can equally listen on
    ``coordinator.subscribe()`` instead.
    """

    def __init__(
        self,
        coordinator: RoundCoordinator,
        dispatch: Optional[Dispatcher] = None,
        max_consecutive_failures: Optional[int] = None,
        retry_delay: float = 0.0,
    ):
        self.coordinator = coordinator
        self.dispatch = dispatch
        self.max_consecutive_failures = (
            max_consecutive_failures
            if max_consecutive_failures is not None
            else coordinator.config.max_consecutive_failures
        )
        self.retry_delay = retry_delay
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def run_round(self) -> RoundSummary:
        """Open a round, dispatch it and collect the result."""
        assignment = await self.coordinator.start_round()

        pending: Optional[asyncio.Future] = None
        if self.dispatch is not None:
            try:
                outcome = self.dispatch(assignment)
            except Exception as e:
                reason = f"dispatch failed: {e}"
                logger.error("Round dispatch failed", round_id=assignment.round_id, error=str(e))
                await self.coordinator.cancel_round(reason)
                raise RoundCancelledError(assignment.round_id, reason) from e
            if inspect.isawaitable(outcome):
                pending = asyncio.ensure_future(outcome)

        try:
            return await self.coordinator.collect()
        finally:
            if pending is not None:
                self._settle_dispatch(pending, assignment.round_id)

    @staticmethod
    def _settle_dispatch(pending: asyncio.Future, round_id: int) -> None:
        if not pending.done():
            pending.cancel()
        elif not pending.cancelled() and pending.exception() is not None:
            logger.warning(
                "Round dispatch raised",
                round_id=round_id,
                error=repr(pending.exception()),
            )

    async def run(self, max_rounds: Optional[int] = None) -> SessionResult:
        """
        Run rounds until convergence or ``max_rounds`` completed rounds.

        Args:
            max_rounds: Completed-round budget (defaults to config.max_rounds).

        Returns:
            SessionResult with every round summary.

        Raises:
            SessionStalledError: After ``max_consecutive_failures`` failed
                rounds in a row.
        """
        if max_rounds is None:
            max_rounds = self.coordinator.config.max_rounds
        result = SessionResult()

        logger.info(
            "Training session started",
            max_rounds=max_rounds,
            max_consecutive_failures=self.max_consecutive_failures,
        )

        while result.completed_rounds < max_rounds:
            try:
                summary = await self.run_round()
            except RETRYABLE_ERRORS as e:
                self._on_failure(e, result)
                await asyncio.sleep(self.retry_delay)
                continue

            self._consecutive_failures = 0
            result.summaries.append(summary)
            if summary.converged:
                result.converged = True
                break

        result.final_model = self.coordinator.get_global_model()
        logger.info(
            "Training session finished",
            completed_rounds=result.completed_rounds,
            failed_rounds=result.failed_rounds,
            converged=result.converged,
            model_version=result.final_model.version,
        )
        return result

    def _on_failure(self, error: RoundError, result: SessionResult) -> None:
        self._consecutive_failures += 1
        result.failed_rounds += 1
        logger.warning(
            "Round failed, retrying with fresh selection",
            round_id=error.round_id,
            error_code=error.error_code,
            consecutive_failures=self._consecutive_failures,
            limit=self.max_consecutive_failures,
        )
        if self._consecutive_failures >= self.max_consecutive_failures:
            logger.error(
                "Training session stalled",
                consecutive_failures=self._consecutive_failures,
                last_error=error.to_dict(),
            )
            raise SessionStalledError(self._consecutive_failures, last_error=error) from error
