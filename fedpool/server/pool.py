"""
Contribution pool with an atomic quorum trigger.

Appending a contribution and checking whether the quorum has been reached is
a single step under one lock. When the Qth contribution arrives the pool is
drained into a RoundBatch in the same step, so concurrent submitters can never
both observe "quorum reached" for the same contributions, and contributions
arriving afterwards land in a fresh, empty pool for the next round.
"""

import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from loguru import logger

from fedpool.common.tensor import ParameterSet


@dataclass(frozen=True)
class Contribution:
    """One accepted ParameterSet together with its submitter."""
    participant_id: str
    parameters: ParameterSet


@dataclass(frozen=True)
class RoundBatch:
    """
    Snapshot of exactly Q contributions that triggered a round.

    Attributes:
        round_num: Round number the batch will produce when averaged
        contributions: Contributions in arrival order
    """
    round_num: int
    contributions: Tuple[Contribution, ...]

    @property
    def parameter_sets(self) -> List[ParameterSet]:
        return [c.parameters for c in self.contributions]

    @property
    def participant_ids(self) -> List[str]:
        return [c.participant_id for c in self.contributions]

    def __len__(self) -> int:
        return len(self.contributions)


class ContributionPool:
    """
    Thread-safe, arrival-ordered pool of accepted contributions.

    The pool never holds Q or more entries outside ``offer``: the Qth append
    drains it atomically. Nothing is dropped; a participant that disconnects
    after submitting still counts toward the round.

    Args:
        quorum: Number of contributions that trigger a round (Q >= 1)
        start_round: Round number of the current global model; the first
            batch produces ``start_round + 1``
    """

    def __init__(self, quorum: int, start_round: int = 0):
        if quorum < 1:
            raise ValueError(f"quorum must be >= 1, got {quorum}")

        self._quorum = quorum
        self._lock = threading.Lock()
        self._entries: List[Contribution] = []
        self._next_round = start_round + 1
        self._rounds_triggered = 0
        self._total_accepted = 0

        log = logger.bind(context="ContributionPool.__init__")
        log.info(f"Contribution pool ready with quorum Q={quorum}")

    @property
    def quorum(self) -> int:
        return self._quorum

    @property
    def size(self) -> int:
        """Number of contributions waiting for the current round."""
        with self._lock:
            return len(self._entries)

    @property
    def rounds_triggered(self) -> int:
        with self._lock:
            return self._rounds_triggered

    @property
    def total_accepted(self) -> int:
        with self._lock:
            return self._total_accepted

    def offer(self, participant_id: str, parameters: ParameterSet) -> Tuple[int, Optional[RoundBatch]]:
        """
        Append a contribution and drain the pool if the quorum is reached.

        Args:
            participant_id: Submitter of the contribution
            parameters: Already validated ParameterSet

        Returns:
            Tuple of (pool size right after the append, RoundBatch or None).
            The size equals Q when a batch is returned.
        """
        log = logger.bind(context="ContributionPool.offer")

        with self._lock:
            self._entries.append(Contribution(participant_id, parameters))
            self._total_accepted += 1
            size = len(self._entries)
            log.info(f"Contribution accepted ({size}/{self._quorum}) from {participant_id}")

            if size < self._quorum:
                return size, None

            batch = RoundBatch(round_num=self._next_round, contributions=tuple(self._entries))
            self._entries = []
            self._next_round += 1
            self._rounds_triggered += 1

        log.info(f"Quorum reached, round {batch.round_num} batch drained")
        return size, batch

    def snapshot(self) -> Tuple[Contribution, ...]:
        """Copy of the contributions currently waiting, in arrival order."""
        with self._lock:
            return tuple(self._entries)
