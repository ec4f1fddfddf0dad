"""
Abstract trainer interface for federated participants.

The local training loop (feature extraction, architecture, optimizer, loss)
lives outside this package. A trainer receives the participant's current
ParameterSet, trains on private data and returns the updated ParameterSet,
keeping the participant node agnostic to how training is done.

Trainers are async so a slow training step never stalls the node's
connection handling. DummyTrainer is the bundled implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from loguru import logger

from fedpool.common.tensor import ParameterSet


@dataclass
class TrainingConfig:
    """
    Configuration for a local training session.

    Attributes:
        epochs: Passes over the local data per contribution
        batch_size: Samples per optimizer step
        learning_rate: Learning rate for the optimizer
        additional_params: Trainer-specific settings (update_scale, seed, ...)
    """
    epochs: int = 1
    batch_size: int = 32
    learning_rate: float = 0.01
    additional_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrainingResult:
    """
    Outcome of one local training session.

    Attributes:
        parameters: Updated ParameterSet after training
        samples: Local samples seen during the session
        loss: Mean loss over the session
        training_time: Seconds spent training
        metrics: Trainer-specific extras
        success: False when the trainer could not produce parameters
        error_message: Reason for a failed session
    """
    parameters: ParameterSet
    samples: int
    loss: float
    training_time: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None


class TrainerInterface(ABC):
    """
    Base class for local trainers.

    Implementations must return a ParameterSet with the same signature as the
    one they received; the coordinator rejects anything else.
    """

    def __init__(self, participant_id: str, config: Optional[TrainingConfig] = None):
        """
        Initialize the trainer.

        Args:
            participant_id: Identifier of the owning participant
            config: Training configuration
        """
        self.participant_id = participant_id
        self.config = config or TrainingConfig()

        self.sessions_completed = 0
        self.samples_seen = 0
        self.seconds_training = 0.0
        self._loss_sum = 0.0

        log = logger.bind(context=f"{self.__class__.__name__}.{participant_id}")
        log.info(f"Initialized trainer for participant {participant_id}")

    @abstractmethod
    async def train(self, parameters: ParameterSet) -> TrainingResult:
        """
        Train locally starting from ``parameters``.

        Args:
            parameters: Starting parameters (latest adopted global model)

        Returns:
            TrainingResult with the updated ParameterSet and metrics

        Raises:
            TrainingError: If training fails
        """
        pass

    @abstractmethod
    async def evaluate(self, parameters: ParameterSet) -> Dict[str, Any]:
        """
        Evaluate parameters on local data without training.

        Args:
            parameters: ParameterSet to evaluate

        Returns:
            Dict containing evaluation metrics
        """
        pass

    def update_config(self, config: TrainingConfig):
        """Replace the training configuration between contributions."""
        log = logger.bind(context=f"{self.__class__.__name__}.{self.participant_id}")
        log.info(f"Updating training config: {config}")
        self.config = config

    def _record(self, result: TrainingResult):
        self.sessions_completed += 1
        self.samples_seen += result.samples
        self.seconds_training += result.training_time
        self._loss_sum += result.loss

    def get_statistics(self) -> Dict[str, Any]:
        """
        Cumulative statistics since construction or the last reset.
        """
        sessions = self.sessions_completed
        return {
            "participant_id": self.participant_id,
            "total_samples": self.samples_seen,
            "total_training_time": self.seconds_training,
            "sessions_completed": sessions,
            "average_loss": self._loss_sum / sessions if sessions else 0.0,
        }

    def reset_statistics(self):
        self.sessions_completed = 0
        self.samples_seen = 0
        self.seconds_training = 0.0
        self._loss_sum = 0.0


class TrainingError(Exception):
    """A trainer could not complete a session."""
