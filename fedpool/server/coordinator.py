"""
Aggregation coordinator.

The coordinator owns the contribution pool and the current global model. It
runs the round lifecycle for every submission:

    validate -> accept -> check quorum -> aggregate -> publish -> reset

Threading model:
    - ``submit`` may be called concurrently from any number of threads.
    - Validation and averaging run without any lock held.
    - Appending to the pool and checking the quorum is the only critical
      section, so exactly one round is triggered per Q accepted contributions.
    - Publication is serialized in round order: round n+1 is published only
      after round n has been published or aborted, even if its averaging
      finished first.

Key Components:
    - AggregationCoordinator: the round state machine
    - Broadcaster: interface used to push a new global model to participants
    - GlobalParameterSet: versioned global model
    - SubmissionReceipt: outcome of an accepted submission
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from fedpool.common.errors import ContributionRejectedError, EmptyAggregationInputError
from fedpool.common.tensor import ParameterSet, format_signature

from .aggregation.base_aggregator import AggregationMetrics, BaseAggregator
from .aggregation.mean_aggregator import MeanAggregator
from .pool import ContributionPool, RoundBatch
from .validation import ShapeValidator


class CoordinatorState(Enum):
    """Lifecycle state of the coordinator."""
    IDLE = "idle"                # pool empty, nothing being averaged
    COLLECTING = "collecting"    # 0 < pool < Q
    AGGREGATING = "aggregating"  # at least one round batch is being averaged


@dataclass(frozen=True)
class GlobalParameterSet:
    """
    Versioned global model.

    Attributes:
        round_num: 0 for the initial model, n for the result of round n
        parameters: The global ParameterSet
        published_at: Unix timestamp of publication
    """
    round_num: int
    parameters: ParameterSet
    published_at: float


@dataclass(frozen=True)
class SubmissionReceipt:
    """
    Outcome of an accepted submission.

    Attributes:
        participant_id: Submitter
        pool_size: Pool size right after the append (Q when it triggered a round)
        quorum: Configured quorum
        triggered_round: Round number this submission triggered, if any
    """
    participant_id: str
    pool_size: int
    quorum: int
    triggered_round: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return True


class Broadcaster(ABC):
    """Publishes a new global model to every connected participant."""

    @abstractmethod
    def publish(self, global_parameters: GlobalParameterSet):
        """
        Deliver ``global_parameters`` to all participants.

        Called from the thread that completed the round, once per round and
        strictly in round order. Implementations must not block on slow
        participants.
        """
        pass


class AggregationCoordinator:
    """
    Quorum-triggered federated averaging coordinator.

    Example:
        >>> coordinator = AggregationCoordinator(
        ...     expected_signatures=[(2,)],
        ...     quorum=2,
        ...     initial_parameters=ParameterSet.from_nested([[0.0, 0.0]]),
        ... )
        >>> _ = coordinator.submit("p1", ParameterSet.from_nested([[1.0, 3.0]]))
        >>> receipt = coordinator.submit("p2", ParameterSet.from_nested([[3.0, 5.0]]))
        >>> receipt.triggered_round
        1
        >>> coordinator.global_parameters.parameters.to_nested()
        [[2.0, 4.0]]
    """

    def __init__(
        self,
        expected_signatures: Iterable[Iterable[int]],
        quorum: int,
        initial_parameters: ParameterSet,
        aggregator: Optional[BaseAggregator] = None,
        broadcaster: Optional[Broadcaster] = None,
        noise_scale: float = 0.0,
        history_size: int = 1000,
    ):
        """
        Initialize the coordinator.

        Args:
            expected_signatures: Per-layer shape signatures every submission must match
            quorum: Contributions required to trigger a round (Q >= 1)
            initial_parameters: Round 0 global model
            aggregator: Aggregation strategy (MeanAggregator by default)
            broadcaster: Publisher for new global models (can be set later)
            noise_scale: Advisory sigma participants should use, reported at registration
            history_size: Rounds of aggregation metrics kept in memory

        Raises:
            ValueError: If quorum < 1, noise_scale < 0 or history_size < 1
            ShapeMismatchError: If the initial parameters do not match the signatures
            NonFiniteValueError: If the initial parameters contain NaN or infinity
        """
        log = logger.bind(context="AggregationCoordinator.__init__")

        if quorum < 1:
            raise ValueError(f"quorum must be >= 1, got {quorum}")
        if noise_scale < 0:
            raise ValueError(f"noise_scale must be >= 0, got {noise_scale}")
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size}")

        self.validator = ShapeValidator(expected_signatures)
        self.validator.validate(initial_parameters)

        self.quorum = quorum
        self.noise_scale = noise_scale
        self.history_size = history_size
        self.aggregator = aggregator or MeanAggregator()
        self.broadcaster = broadcaster

        self._lock = threading.Lock()
        self._pool = ContributionPool(quorum)
        self._in_flight = 0

        self._publish_condition = threading.Condition()
        self._global = GlobalParameterSet(0, initial_parameters, time.time())
        self._last_finished_round = 0

        # Statistics
        self._submissions_received = 0
        self._rejections: Counter = Counter()
        self._rounds_completed = 0
        self._rounds_aborted = 0
        self._publish_failures = 0
        self._metrics_history: deque = deque(maxlen=history_size)

        log.info(
            f"Coordinator ready: Q={quorum}, {len(initial_parameters)} layers "
            f"{format_signature(self.validator.expected_signatures)}, "
            f"{initial_parameters.num_parameters:,} parameters"
        )

    @property
    def expected_signatures(self):
        return self.validator.expected_signatures

    def set_broadcaster(self, broadcaster: Broadcaster):
        """Attach the publisher used for subsequent rounds."""
        log = logger.bind(context="AggregationCoordinator.set_broadcaster")
        log.info(f"Using broadcaster {broadcaster.__class__.__name__}")
        self.broadcaster = broadcaster

    def submit(self, participant_id: str, parameters: ParameterSet) -> SubmissionReceipt:
        """
        Submit one participant's locally trained parameters.

        If this submission completes the quorum, the calling thread averages
        the round batch and publishes the new global model before returning.

        Args:
            participant_id: Submitter identifier
            parameters: Noise-perturbed local ParameterSet

        Returns:
            SubmissionReceipt describing the accepted contribution

        Raises:
            ShapeMismatchError: Layer count or a layer's shape differs
            NonFiniteValueError: A leaf is NaN or infinite
            EmptyAggregationInputError: The triggered round had no contributions (fatal)
        """
        log = logger.bind(context="AggregationCoordinator.submit")

        with self._lock:
            self._submissions_received += 1

        try:
            self.validator.validate(parameters)
        except ContributionRejectedError as e:
            with self._lock:
                self._rejections[e.error_code.name] += 1
            log.warning(f"Rejected contribution from {participant_id}: {e.message}")
            raise

        with self._lock:
            pool_size, batch = self._pool.offer(participant_id, parameters)
            if batch is not None:
                self._in_flight += 1

        if batch is None:
            return SubmissionReceipt(participant_id, pool_size, self.quorum)

        self._run_round(batch)
        return SubmissionReceipt(participant_id, pool_size, self.quorum, triggered_round=batch.round_num)

    def _run_round(self, batch: RoundBatch):
        """Average a drained batch and publish it in round order."""
        log = logger.bind(context="AggregationCoordinator._run_round")
        log.info(f"Aggregating round {batch.round_num} from {batch.participant_ids}")

        aggregated: Optional[ParameterSet] = None
        metrics: Optional[AggregationMetrics] = None
        try:
            aggregated, metrics = self.aggregator.aggregate(batch.parameter_sets, batch.round_num)
        except EmptyAggregationInputError as e:
            log.critical(f"Round {batch.round_num} aborted: {e}")
            raise
        except Exception:
            log.exception(f"Round {batch.round_num} aborted during aggregation")
            raise
        finally:
            self._finish_round(batch.round_num, aggregated, metrics)

    def _finish_round(
        self,
        round_num: int,
        aggregated: Optional[ParameterSet],
        metrics: Optional[AggregationMetrics],
    ):
        log = logger.bind(context="AggregationCoordinator._finish_round")

        with self._publish_condition:
            while self._last_finished_round < round_num - 1:
                self._publish_condition.wait()

            try:
                if aggregated is None:
                    self._rounds_aborted += 1
                    log.error(f"Round {round_num} produced no model, global model stays at round {self._global.round_num}")
                else:
                    self._global = GlobalParameterSet(round_num, aggregated, time.time())
                    self._rounds_completed += 1
                    if metrics is not None:
                        self._metrics_history.append(metrics)
                    self._publish(self._global)
            finally:
                self._last_finished_round = round_num
                with self._lock:
                    self._in_flight -= 1
                self._publish_condition.notify_all()

    def _publish(self, global_parameters: GlobalParameterSet):
        log = logger.bind(context="AggregationCoordinator._publish")

        if self.broadcaster is None:
            log.warning(f"No broadcaster attached, round {global_parameters.round_num} not pushed")
            return

        try:
            self.broadcaster.publish(global_parameters)
            log.info(f"Published global model for round {global_parameters.round_num}")
        except Exception:
            self._publish_failures += 1
            log.exception(f"Broadcaster failed to publish round {global_parameters.round_num}")

    def wait_for_round(self, round_num: int, timeout: Optional[float] = None) -> bool:
        """
        Block until the global model reaches ``round_num``.

        Args:
            round_num: Round to wait for
            timeout: Maximum seconds to wait (None waits forever)

        Returns:
            True if the round was published, False on timeout
        """
        with self._publish_condition:
            return self._publish_condition.wait_for(
                lambda: self._global.round_num >= round_num, timeout=timeout
            )

    @property
    def global_parameters(self) -> GlobalParameterSet:
        """Most recently published global model."""
        with self._publish_condition:
            return self._global

    @property
    def current_round(self) -> int:
        return self.global_parameters.round_num

    @property
    def pool_size(self) -> int:
        return self._pool.size

    @property
    def state(self) -> CoordinatorState:
        with self._lock:
            if self._in_flight > 0:
                return CoordinatorState.AGGREGATING
            if self._pool.size > 0:
                return CoordinatorState.COLLECTING
            return CoordinatorState.IDLE

    @property
    def metrics_history(self) -> List[AggregationMetrics]:
        with self._publish_condition:
            return list(self._metrics_history)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get coordinator statistics.

        Returns:
            Dictionary with submission, round and aggregator statistics
        """
        state = self.state
        with self._lock:
            submissions = self._submissions_received
            rejections = dict(self._rejections)
        with self._publish_condition:
            rounds_completed = self._rounds_completed
            rounds_aborted = self._rounds_aborted
            publish_failures = self._publish_failures
            current_round = self._global.round_num

        return {
            "state": state.value,
            "quorum": self.quorum,
            "pool_size": self._pool.size,
            "current_round": current_round,
            "submissions_received": submissions,
            "contributions_accepted": self._pool.total_accepted,
            "rejections": rejections,
            "rounds_triggered": self._pool.rounds_triggered,
            "rounds_completed": rounds_completed,
            "rounds_aborted": rounds_aborted,
            "publish_failures": publish_failures,
            "aggregator": self.aggregator.get_statistics(),
        }
