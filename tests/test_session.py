"""
Tests for the Training Session Driver
=====================================
"""

import asyncio

import numpy as np
import pytest

from core.exceptions import SessionStalledError
from core.models import ConvergenceConfig, RoundState
from orchestration.coordinator import RoundCoordinator, TrainingSession


def _coordinator(config, n_clients):
    coordinator = RoundCoordinator(config)
    for i in range(n_clients):
        coordinator.register_client(f"client_{i:02d}")
    return coordinator


def _dispatcher(coordinator, loss=0.5, skip_rounds=()):
    async def dispatch(assignment):
        if assignment.round_id in skip_rounds:
            return
        for cid in assignment.selected_clients:
            await coordinator.submit_update(
                assignment.round_id, cid, np.full(4, float(assignment.round_id)), 10, loss
            )
    return dispatch


class TestTrainingSession:
    """Tests for multi-round driving."""

    @pytest.mark.asyncio
    async def test_runs_max_rounds(self, make_config):
        coordinator = _coordinator(make_config(), 3)
        session = TrainingSession(coordinator, dispatch=_dispatcher(coordinator))

        result = await session.run(max_rounds=3)

        assert result.completed_rounds == 3
        assert result.failed_rounds == 0
        assert not result.converged
        assert result.final_model.version == 3
        assert [s.round_id for s in result.summaries] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_stops_on_convergence(self, make_config):
        config = make_config(convergence=ConvergenceConfig(min_delta=0.01, patience=2))
        coordinator = _coordinator(config, 3)
        session = TrainingSession(coordinator, dispatch=_dispatcher(coordinator, loss=0.0))

        result = await session.run(max_rounds=10)

        assert result.converged
        assert result.completed_rounds == 2
        assert coordinator.converged

    @pytest.mark.asyncio
    async def test_stalls_after_consecutive_failures(self, make_config):
        coordinator = _coordinator(make_config(min_clients=2), 1)
        session = TrainingSession(coordinator)

        with pytest.raises(SessionStalledError) as exc_info:
            await session.run(max_rounds=10)

        assert exc_info.value.consecutive_failures == 5
        assert exc_info.value.last_error.error_code == "INSUFFICIENT_CLIENTS"
        history = coordinator.round_history()
        assert len(history) == 5
        assert all(r.state == RoundState.FAILED for r in history)

    @pytest.mark.asyncio
    async def test_custom_failure_limit(self, make_config):
        coordinator = _coordinator(make_config(min_clients=2), 1)
        session = TrainingSession(coordinator, max_consecutive_failures=2)

        with pytest.raises(SessionStalledError):
            await session.run()

        assert session.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_retries_after_timeout(self, make_config):
        coordinator = _coordinator(make_config(round_timeout=0.1), 3)
        session = TrainingSession(
            coordinator, dispatch=_dispatcher(coordinator, skip_rounds={1})
        )

        result = await session.run(max_rounds=2)

        assert result.failed_rounds == 1
        assert result.completed_rounds == 2
        assert [s.round_id for s in result.summaries] == [2, 3]
        assert session.consecutive_failures == 0
        np.testing.assert_allclose(result.final_model.weights, np.full(4, 3.0))

    @pytest.mark.asyncio
    async def test_plain_callable_dispatch(self, make_config):
        coordinator = _coordinator(make_config(round_timeout=0.1), 2)
        seen = []
        session = TrainingSession(coordinator, dispatch=lambda a: seen.append(a.round_id))

        with pytest.raises(SessionStalledError):
            await session.run(max_rounds=1)

        assert seen == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_zero_max_rounds_runs_nothing(self, make_config):
        coordinator = _coordinator(make_config(), 3)
        session = TrainingSession(coordinator, dispatch=_dispatcher(coordinator))

        result = await session.run(max_rounds=0)

        assert result.completed_rounds == 0
        assert coordinator.round_history() == []

    @pytest.mark.asyncio
    async def test_failing_sync_dispatch_cancels_round(self, make_config):
        coordinator = _coordinator(make_config(round_timeout=5.0), 2)

        def dispatch(assignment):
            raise ConnectionError("transport down")

        session = TrainingSession(coordinator, dispatch=dispatch, max_consecutive_failures=2)

        with pytest.raises(SessionStalledError) as exc_info:
            await asyncio.wait_for(session.run(max_rounds=1), timeout=2.0)

        assert exc_info.value.last_error.error_code == "ROUND_CANCELLED"
        history = coordinator.round_history()
        assert [r.round_id for r in history] == [1, 2]
        assert all(r.error_code == "ROUND_CANCELLED" for r in history)

    @pytest.mark.asyncio
    async def test_failing_async_dispatch_is_retrieved(self, make_config):
        coordinator = _coordinator(make_config(round_timeout=5.0), 2)
        submit = _dispatcher(coordinator)
        tasks = []

        async def dispatch(assignment):
            tasks.append(asyncio.current_task())
            await submit(assignment)
            raise RuntimeError("ack lost")

        session = TrainingSession(coordinator, dispatch=dispatch)

        result = await session.run(max_rounds=1)

        assert result.completed_rounds == 1
        assert tasks[0].done()
        assert isinstance(tasks[0].exception(), RuntimeError)
