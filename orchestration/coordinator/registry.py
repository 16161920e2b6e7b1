"""
Client Registry
===============
Registered clients, their availability and per-client statistics, plus
uniform random selection of round participants.
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

import numpy as np
import structlog

from core.exceptions import InsufficientClientsError, UnknownClientError
from core.models import ClientRecord, ClientStatus, utcnow
from core.utils import round_half_up

logger = structlog.get_logger(__name__)

# EMA weight for reliability and bandwidth observations
EMA_ALPHA = 0.1


class ClientRegistry:
    """
    In-memory registry of federated clients.

    Records are never deleted; status moves between active, inactive and
    blocked. Callers only ever receive copies of records.
    """

    def __init__(self, inactivity_timeout: Optional[float] = None):
        """
        Args:
            inactivity_timeout: Seconds without heartbeat after which
                ``sweep_inactive`` marks a client inactive (None = never).
        """
        self.inactivity_timeout = inactivity_timeout
        self._clients: Dict[str, ClientRecord] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    def _require(self, client_id: str) -> ClientRecord:
        record = self._clients.get(client_id)
        if record is None:
            raise UnknownClientError(client_id)
        return record

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def register(self, client_id: str) -> bool:
        """
        Register a client, or refresh a known one.

        Returns:
            False for an empty id, True otherwise.
        """
        if not isinstance(client_id, str) or not client_id.strip():
            logger.warning("Registration rejected: empty client id")
            return False

        now = utcnow()
        record = self._clients.get(client_id)
        if record is None:
            self._clients[client_id] = ClientRecord(
                client_id=client_id, registered_at=now, last_seen=now
            )
            logger.info("Client registered", client_id=client_id, total=len(self._clients))
            return True

        record.last_seen = now
        if record.status == ClientStatus.INACTIVE:
            record.status = ClientStatus.ACTIVE
            logger.info("Client reactivated", client_id=client_id)
        return True

    def heartbeat(self, client_id: str) -> None:
        """
        Refresh ``last_seen`` and reactivate an inactive client.

        Raises:
            UnknownClientError: If the client never registered.
        """
        record = self._require(client_id)
        record.last_seen = utcnow()
        if record.status == ClientStatus.INACTIVE:
            record.status = ClientStatus.ACTIVE

    def mark_inactive(self, client_id: str) -> None:
        record = self._require(client_id)
        if record.status == ClientStatus.ACTIVE:
            record.status = ClientStatus.INACTIVE
            logger.info("Client marked inactive", client_id=client_id)

    def block(self, client_id: str) -> None:
        """Exclude a client from selection for the rest of the session."""
        record = self._require(client_id)
        if record.status != ClientStatus.BLOCKED:
            record.status = ClientStatus.BLOCKED
            logger.warning("Client blocked", client_id=client_id)

    def sweep_inactive(self, now: Optional[datetime] = None) -> List[str]:
        """
        Mark active clients whose last heartbeat is too old as inactive.

        Returns:
            Ids of clients that were marked inactive.
        """
        if self.inactivity_timeout is None:
            return []

        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.inactivity_timeout)
        swept = [
            cid
            for cid, rec in self._clients.items()
            if rec.status == ClientStatus.ACTIVE and rec.last_seen < cutoff
        ]
        for cid in swept:
            self._clients[cid].status = ClientStatus.INACTIVE

        if swept:
            logger.info("Inactive clients swept", count=len(swept), clients=sorted(swept))
        return swept

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, client_id: str) -> ClientRecord:
        """Copy of one record."""
        return self._require(client_id).model_copy()

    def snapshot(self) -> Dict[str, ClientRecord]:
        """Copies of every record, keyed by id."""
        return {cid: rec.model_copy() for cid, rec in self._clients.items()}

    def active_ids(self) -> List[str]:
        """Ids of selectable clients, sorted."""
        return sorted(cid for cid, rec in self._clients.items() if rec.is_active())

    def is_registered(self, client_id: str) -> bool:
        return client_id in self._clients

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    @staticmethod
    def selection_size(
        num_active: int, fraction: float, min_clients: int, max_clients: int
    ) -> int:
        """round_half_up(fraction * active), clamped to [min, max] and to active."""
        size = round_half_up(fraction * num_active)
        size = max(min_clients, min(max_clients, size))
        return min(size, num_active)

    def select(
        self,
        fraction: float,
        min_clients: int,
        max_clients: int,
        seed: Optional[int] = None,
        round_id: Optional[int] = None,
    ) -> FrozenSet[str]:
        """
        Uniform random subset of active clients.

        Args:
            fraction: Fraction of active clients to select.
            min_clients: Lower bound on the selection size.
            max_clients: Upper bound on the selection size.
            seed: Seed for reproducible selection.
            round_id: Round the selection is for (logging and errors).

        Returns:
            Frozen set of selected client ids.

        Raises:
            InsufficientClientsError: If fewer than ``min_clients`` are active.
        """
        active = self.active_ids()
        if len(active) < min_clients:
            logger.warning(
                "Insufficient clients available",
                round_id=round_id,
                available=len(active),
                required=min_clients,
            )
            raise InsufficientClientsError(
                required=min_clients, available=len(active), round_id=round_id
            )

        size = self.selection_size(len(active), fraction, min_clients, max_clients)
        rng = np.random.default_rng(seed)
        chosen = rng.choice(len(active), size=size, replace=False)
        selected = frozenset(active[i] for i in chosen)

        logger.info(
            "Clients selected for round",
            round_id=round_id,
            selected=len(selected),
            available=len(active),
        )
        return selected

    # -------------------------------------------------------------------------
    # Round bookkeeping
    # -------------------------------------------------------------------------

    def record_round(
        self,
        selected: Iterable[str],
        participants: Iterable[str],
        excluded: Iterable[str] = (),
        throughput: Optional[Mapping[str, float]] = None,
    ) -> None:
        """
        Update statistics after a completed round.

        Args:
            selected: Clients selected for the round.
            participants: Clients whose update was accepted.
            excluded: Participants removed by robustness filtering.
            throughput: Observed bytes per second per participant.
        """
        participants = set(participants)
        excluded = set(excluded)
        throughput = throughput or {}

        for cid in selected:
            record = self._clients.get(cid)
            if record is None:
                continue
            record.rounds_selected += 1
            success = cid in participants and cid not in excluded
            if cid in participants:
                record.rounds_participated += 1
                record.last_seen = utcnow()
            record.update_reliability(success, alpha=EMA_ALPHA)
            if cid in throughput and throughput[cid] > 0:
                record.update_bandwidth(throughput[cid], alpha=EMA_ALPHA)
