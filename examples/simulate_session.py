"""
Simulated Training Session
==========================
Runs a multi-round session against simulated clients.

Each honest client holds a shard of a synthetic linear-regression problem
and runs a few local gradient steps from the broadcast global vector.
One Byzantine client submits a scaled, random vector with a high loss,
which the robustness filter should exclude.

Usage:
    python examples/simulate_session.py
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, Tuple

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.config_loader import load_session_config
from core.models import RoundAssignment
from core.utils import setup_logging
from orchestration import RoundCoordinator, TrainingSession

MODEL_SIZE = 20
NUM_CLIENTS = 8
BYZANTINE = "client_7"


def make_shards(seed: int = 42) -> Tuple[np.ndarray, Dict[str, Tuple[np.ndarray, np.ndarray]]]:
    """Synthetic linear-regression data split across clients."""
    rng = np.random.default_rng(seed)
    true_w = rng.normal(0, 1, MODEL_SIZE)
    shards = {}
    for i in range(NUM_CLIENTS):
        n = int(rng.integers(50, 200))
        X = rng.normal(0, 1, (n, MODEL_SIZE))
        y = X @ true_w + rng.normal(0, 0.1, n)
        shards[f"client_{i}"] = (X, y)
    return true_w, shards


def local_train(w: np.ndarray, X: np.ndarray, y: np.ndarray, steps: int, lr: float):
    for _ in range(steps):
        grad = X.T @ (X @ w - y) / len(y)
        w = w - lr * grad
    loss = float(np.mean((X @ w - y) ** 2))
    return w, loss


async def main():
    setup_logging(level="INFO", log_format="console")
    config = load_session_config(
        model_size=MODEL_SIZE,
        client_selection_fraction=1.0,
        min_clients=3,
        max_clients=NUM_CLIENTS,
        round_timeout=2.0,
        strategy="fednova",
        max_rounds=30,
        privacy={"total_epsilon": None},
        compression={"top_k_ratio": 1.0, "quant_bits": 16},
        robustness={"outlier_k": 2.0, "byzantine_fraction": 0.0},
        convergence={"min_delta": 0.05, "patience": 2},
    )
    true_w, shards = make_shards()
    coordinator = RoundCoordinator(config)
    for cid in shards:
        coordinator.register_client(cid)

    rng = np.random.default_rng(7)

    async def client(cid: str, assignment: RoundAssignment) -> None:
        await asyncio.sleep(float(rng.uniform(0.0, 0.05)))
        X, y = shards[cid]
        steps = int(rng.integers(2, 6))
        if cid == BYZANTINE:
            w, loss = rng.normal(0, 50, MODEL_SIZE), 1e4
        else:
            w, loss = local_train(
                np.array(assignment.global_model.weights), X, y, steps,
                lr=coordinator.convergence.learning_rate * 10,
            )
        await coordinator.submit_update(
            assignment.round_id,
            cid,
            coordinator.codec.encode(w),
            num_samples=len(y),
            local_loss=loss,
            local_steps=steps,
        )

    async def dispatch(assignment: RoundAssignment) -> None:
        await asyncio.gather(*(client(cid, assignment) for cid in assignment.selected_clients))

    session = TrainingSession(coordinator, dispatch=dispatch)
    result = await session.run()

    error = float(np.linalg.norm(result.final_model.weights - true_w))
    print(f"rounds completed : {result.completed_rounds}")
    print(f"converged        : {result.converged}")
    print(f"final version    : {result.final_model.version}")
    print(f"distance to truth: {error:.4f}")
    for record in coordinator.round_history()[-3:]:
        print(record.round_id, record.state.value, record.avg_loss, record.excluded_clients)


if __name__ == "__main__":
    asyncio.run(main())
