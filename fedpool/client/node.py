"""
Federated participant node implementation.

This module implements the participant-side workflow that ties together the
communication client, the local trainer and the noise injector. The node
owns the participant's local ParameterSet, which is never shared by
reference with anything else.

Key Responsibilities:
    - Manage the WebSocket connection to the coordinator
    - Adopt every newer global model the coordinator publishes
    - Run train -> perturb -> submit for each contribution
    - Surface rejection reasons from ERROR messages as typed exceptions

Architecture:
    Node uses composition to separate concerns:
    - ParticipantClient: Handles network communication
    - TrainerInterface: Performs actual training
    - NoiseInjector: Perturbs parameters before they leave the process
    - Node: Orchestrates the workflow
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from fedpool.common.errors import ContributionRejectedError, FederationError, error_from_code
from fedpool.common.noise import NoiseInjector
from fedpool.common.serialization import ParameterSetSerializer
from fedpool.common.tensor import ParameterSet
from fedpool.server.communication.protocol import Message, MessageType

from .communication.client_socket import ParticipantClient
from .trainer.trainer_interface import TrainerInterface, TrainingError


class NodeLifecycleState(Enum):
    """
    Enum representing the lifecycle states of the node.
    """
    INITIALIZING = "initializing"
    READY = "ready"
    TRAINING = "training"
    SUBMITTING = "submitting"
    IDLE = "idle"
    ERROR = "error"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of an accepted contribution."""
    base_round: int
    pool_size: int
    quorum: int
    triggered_round: Optional[int] = None
    loss: float = 0.0
    samples: int = 0


class ParticipantNode:
    """
    Main participant node implementation.

    Example:
        >>> trainer = DummyTrainer("participant_001")
        >>> node = ParticipantNode("participant_001", trainer, server_port=8765)
        >>> await node.connect()
        >>> await node.run(rounds=5)
        >>> await node.stop()
    """

    def __init__(
        self,
        participant_id: str,
        trainer: TrainerInterface,
        client: Optional[ParticipantClient] = None,
        server_host: str = "localhost",
        server_port: int = 8765,
        noise_scale: Optional[float] = None,
        noise_seed: Optional[int] = None,
        serializer: Optional[ParameterSetSerializer] = None,
        auto_reconnect: bool = True,
        submission_timeout: float = 30.0,
        history_size: int = 100,
    ):
        """
        Initialize the participant node.

        Args:
            participant_id: Unique identifier for this participant
            trainer: TrainerInterface implementation for local training
            client: Pre-built client (a new ParticipantClient when omitted)
            server_host: Coordinator hostname or IP
            server_port: Coordinator port
            noise_scale: Sigma for the NoiseInjector; None adopts the value the
                coordinator advises at registration
            noise_seed: Seed for reproducible noise
            serializer: Encoder for outgoing contributions
            auto_reconnect: Whether the client reconnects after a drop
            submission_timeout: Seconds to wait for a SUBMIT_ACK or ERROR
            history_size: Accepted submissions kept in ``submission_history``
        """
        log = logger.bind(context=f"ParticipantNode.{participant_id}")

        self.participant_id = participant_id
        self.trainer = trainer
        self.client = client or ParticipantClient(
            participant_id=participant_id,
            server_host=server_host,
            server_port=server_port,
            serializer=serializer,
            auto_reconnect=auto_reconnect,
        )
        self.serializer = serializer or self.client.serializer
        self.submission_timeout = submission_timeout

        self.noise_scale = noise_scale
        self.noise_seed = noise_seed
        self._noise_injector: Optional[NoiseInjector] = (
            NoiseInjector(noise_scale, seed=noise_seed) if noise_scale is not None else None
        )

        # Local model state
        self.lifecycle_state = NodeLifecycleState.INITIALIZING
        self.local_parameters: Optional[ParameterSet] = None
        self.current_round: Optional[int] = None
        self._model_updated = asyncio.Condition()
        self._pending_submission: Optional[asyncio.Future] = None
        self._client_task: Optional[asyncio.Task] = None

        # Statistics
        self.contributions_sent: int = 0
        self.contributions_accepted: int = 0
        self.contributions_rejected: int = 0
        self.global_models_adopted: int = 0
        self.stale_models_ignored: int = 0
        self.total_training_time: float = 0.0
        self.start_time: float = 0.0
        self.submission_history: Deque[SubmissionResult] = deque(maxlen=history_size)

        self._setup_message_handlers()
        log.info(f"Participant node {participant_id} initialized")

    def _setup_message_handlers(self):
        """Register handlers for coordinator messages."""
        self.client.set_message_handler(MessageType.UPDATE_GLOBAL_MODEL, self._handle_global_model)
        self.client.set_message_handler(MessageType.SUBMIT_ACK, self._handle_submit_ack)
        self.client.set_message_handler(MessageType.ERROR, self._handle_server_error)

    @property
    def noise_injector(self) -> NoiseInjector:
        """
        The injector applied before every submission.

        Created lazily from the coordinator's advised sigma when no explicit
        noise scale was configured.
        """
        if self._noise_injector is None:
            advised = self.client.advised_noise_scale
            sigma = float(advised) if advised is not None else 0.0
            self._noise_injector = NoiseInjector(sigma, seed=self.noise_seed)
            logger.bind(context=f"ParticipantNode.{self.participant_id}").info(
                f"Using coordinator-advised noise scale {sigma}"
            )
        return self._noise_injector

    async def connect(self, timeout: float = 30.0) -> bool:
        """
        Start the client and wait for registration and the first global model.

        Args:
            timeout: Seconds to wait for each of the two steps

        Returns:
            True when the node holds a global model and is ready to train

        Raises:
            RegistrationError: If the coordinator refused the registration
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}.connect")
        log.info("Connecting to coordinator")

        self.start_time = time.time()
        if self._client_task is None or self._client_task.done():
            self._client_task = asyncio.create_task(self.client.start())

        registration = asyncio.create_task(self.client.wait_until_registered(timeout))
        done, _ = await asyncio.wait({registration, self._client_task}, return_when=asyncio.FIRST_COMPLETED)

        if registration not in done:
            registration.cancel()
            self.lifecycle_state = NodeLifecycleState.ERROR
            # Propagates RegistrationError / InvalidURI from the client
            self._client_task.result()
            log.error("Client stopped before registration completed")
            return False

        if not registration.result():
            log.error(f"Failed to register within {timeout}s")
            self.lifecycle_state = NodeLifecycleState.ERROR
            return False

        self.lifecycle_state = NodeLifecycleState.READY
        if not await self.wait_for_global_model(timeout=timeout):
            log.error("No global model received after registration")
            self.lifecycle_state = NodeLifecycleState.ERROR
            return False

        self.lifecycle_state = NodeLifecycleState.IDLE
        log.info(f"Node ready, holding global model from round {self.current_round}")
        return True

    async def stop(self):
        """
        Stop the node and clean up resources.

        Disconnects from the coordinator and logs final statistics.
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}")
        log.info("Stopping participant node")

        self.lifecycle_state = NodeLifecycleState.SHUTDOWN
        if self._pending_submission and not self._pending_submission.done():
            self._pending_submission.set_exception(ConnectionError("Node stopped"))

        await self.client.stop()

        if self._client_task and not self._client_task.done():
            self._client_task.cancel()
            try:
                await self._client_task
            except asyncio.CancelledError:
                pass
        self._client_task = None

        self._log_final_statistics()

    async def run(self, rounds: int, round_timeout: Optional[float] = 60.0) -> List[SubmissionResult]:
        """
        Contribute ``rounds`` times, adopting each new global model in between.

        After each accepted contribution the node waits up to ``round_timeout``
        for a newer global model; when none arrives (other participants are
        idle) it keeps training from its current local parameters.

        Args:
            rounds: Number of contributions to make
            round_timeout: Seconds to wait for the next global model

        Returns:
            List of SubmissionResult, one per contribution
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}.run")
        log.info(f"Running {rounds} contribution(s)")

        results = []
        for index in range(rounds):
            result = await self.run_round()
            results.append(result)

            if index < rounds - 1 and not await self.wait_for_global_model(
                after_round=result.base_round, timeout=round_timeout
            ):
                log.warning(
                    f"No global model newer than round {result.base_round} after {round_timeout}s, "
                    f"continuing from local parameters"
                )
        return results

    async def run_round(self) -> SubmissionResult:
        """
        Train locally, perturb and submit one contribution.

        Returns:
            SubmissionResult built from the coordinator's SUBMIT_ACK

        Raises:
            RuntimeError: If no global model has been adopted yet
            TrainingError: If the trainer reports failure
            ContributionRejectedError: If the coordinator rejected the contribution
            FederationError: If the coordinator failed while processing the contribution
            asyncio.TimeoutError: If the coordinator did not answer in time
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}.run_round")

        if self.local_parameters is None or self.current_round is None:
            raise RuntimeError("No global model adopted yet; call connect() first")

        base_round = self.current_round
        self.lifecycle_state = NodeLifecycleState.TRAINING
        log.info(f"Training from global model of round {base_round}")

        try:
            result = await self.trainer.train(self.local_parameters)
        except Exception:
            self.lifecycle_state = NodeLifecycleState.ERROR
            raise
        if not result.success:
            self.lifecycle_state = NodeLifecycleState.ERROR
            raise TrainingError(result.error_message or "Training reported failure")
        self.total_training_time += result.training_time

        self.lifecycle_state = NodeLifecycleState.SUBMITTING
        perturbed = self.noise_injector.inject(result.parameters)

        self._pending_submission = asyncio.get_running_loop().create_future()
        try:
            await self.client.send_update(perturbed, round_num=base_round)
            self.contributions_sent += 1
            ack: Message = await asyncio.wait_for(self._pending_submission, timeout=self.submission_timeout)
        except ContributionRejectedError as e:
            self.contributions_rejected += 1
            self.lifecycle_state = NodeLifecycleState.IDLE
            log.error(f"Contribution rejected [{int(e.error_code)}]: {e.message}")
            raise
        except FederationError as e:
            # Coordinator-side failure, not a verdict on the contribution
            self.lifecycle_state = NodeLifecycleState.IDLE
            log.error(f"Coordinator failed while processing contribution [{int(e.error_code)}]: {e.message}")
            raise
        except BaseException:
            self.lifecycle_state = NodeLifecycleState.ERROR
            raise
        finally:
            self._pending_submission = None

        submission = SubmissionResult(
            base_round=base_round,
            pool_size=ack.payload["pool_size"],
            quorum=ack.payload["quorum"],
            triggered_round=ack.round_num,
            loss=result.loss,
            samples=result.samples,
        )
        self.submission_history.append(submission)
        self.contributions_accepted += 1
        self.lifecycle_state = NodeLifecycleState.IDLE

        log.info(f"Contribution accepted ({submission.pool_size}/{submission.quorum})")
        return submission

    async def wait_for_global_model(self, after_round: Optional[int] = None, timeout: Optional[float] = None) -> bool:
        """
        Wait until the node holds a global model newer than ``after_round``.

        Args:
            after_round: Round to wait past (None waits for any global model)
            timeout: Seconds to wait (None waits forever)

        Returns:
            True if such a model was adopted, False on timeout
        """
        def adopted() -> bool:
            if self.current_round is None:
                return False
            return after_round is None or self.current_round > after_round

        async with self._model_updated:
            try:
                await asyncio.wait_for(self._model_updated.wait_for(adopted), timeout=timeout)
                return True
            except asyncio.TimeoutError:
                return False

    async def _handle_global_model(self, message: Message):
        """
        Handle UPDATE_GLOBAL_MODEL from the coordinator.

        Models from a round not newer than the local one are ignored, which
        covers the initial model sent at registration racing a broadcast.
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}._handle_global_model")
        round_num = message.round_num

        if round_num is None:
            log.warning("Global model without round number ignored")
            return
        if self.current_round is not None and round_num <= self.current_round:
            self.stale_models_ignored += 1
            log.debug(f"Ignoring global model of round {round_num} (holding {self.current_round})")
            return

        try:
            parameters = self.serializer.deserialize(message.payload["weights"])
        except FederationError as e:
            log.error(f"Could not decode global model of round {round_num}: {e.message}")
            return

        async with self._model_updated:
            self.local_parameters = parameters.copy()
            self.current_round = round_num
            self.global_models_adopted += 1
            self._model_updated.notify_all()

        log.info(f"Adopted global model of round {round_num} ({parameters.num_parameters:,} parameters)")

    async def _handle_submit_ack(self, message: Message):
        future = self._pending_submission
        if future is not None and not future.done():
            future.set_result(message)

    async def _handle_server_error(self, message: Message):
        """
        Handle ERROR from the coordinator.

        An error while a submission is outstanding is the coordinator's
        verdict on that submission.
        """
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}._handle_server_error")
        error = error_from_code(message.payload.get("error_code", 0), message.payload.get("message", "Unknown error"))

        future = self._pending_submission
        if future is not None and not future.done():
            future.set_exception(error)
            return

        log.error(f"Coordinator error [{int(error.error_code)}]: {error.message}")

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get node statistics.

        Returns:
            Dict containing comprehensive node statistics
        """
        uptime = time.time() - self.start_time if self.start_time > 0 else 0

        return {
            "participant_id": self.participant_id,
            "lifecycle_state": self.lifecycle_state.value,
            "connected": self.client.is_connected(),
            "current_round": self.current_round,
            "contributions_sent": self.contributions_sent,
            "contributions_accepted": self.contributions_accepted,
            "contributions_rejected": self.contributions_rejected,
            "global_models_adopted": self.global_models_adopted,
            "stale_models_ignored": self.stale_models_ignored,
            "total_training_time": self.total_training_time,
            "uptime": uptime,
            "trainer_stats": self.trainer.get_statistics(),
            "client_stats": self.client.get_stats(),
        }

    def _log_final_statistics(self):
        """Log final statistics when node stops."""
        log = logger.bind(context=f"ParticipantNode.{self.participant_id}")
        stats = self.get_statistics()

        log.info("=== Final Node Statistics ===")
        log.info(f"Participant ID: {stats['participant_id']}")
        log.info(f"Contributions accepted: {stats['contributions_accepted']}/{stats['contributions_sent']}")
        log.info(f"Global models adopted: {stats['global_models_adopted']}")
        log.info(f"Last round: {stats['current_round']}")
        log.info(f"Total training time: {stats['total_training_time']:.1f}s")
        log.info(f"Final state: {stats['lifecycle_state']}")
