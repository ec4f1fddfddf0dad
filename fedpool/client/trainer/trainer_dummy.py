import asyncio
import time
from typing import Any, Dict, Optional

import numpy as np
from loguru import logger

from fedpool.common.tensor import ParameterSet, Tensor

from .trainer_interface import TrainerInterface, TrainingConfig, TrainingResult


class DummyTrainer(TrainerInterface):
    """
    Dummy trainer for testing and development.

    This trainer simulates training by:
    - Making small uniform random modifications to every parameter
    - Generating synthetic metrics
    - Completing quickly for fast iteration

    Recognised ``additional_params``:
        update_scale: Half-width of the uniform delta (default 0.01)
        simulated_delay: Seconds to sleep per session (default 0.0)
        seed: Seed for reproducible deltas
    """

    def __init__(self, participant_id: str, config: Optional[TrainingConfig] = None):
        super().__init__(participant_id, config)
        params = self.config.additional_params
        self.update_scale = float(params.get("update_scale", 0.01))
        self.simulated_delay = float(params.get("simulated_delay", 0.0))
        self._rng = np.random.default_rng(params.get("seed"))

    async def train(self, parameters: ParameterSet) -> TrainingResult:
        """
        Simulate training with dummy data.

        Args:
            parameters: Starting parameters

        Returns:
            TrainingResult with slightly modified parameters and synthetic metrics
        """
        log = logger.bind(context=f"DummyTrainer.{self.participant_id}")
        log.info(f"Starting dummy training for {self.config.epochs} epochs")

        start_time = time.time()
        if self.simulated_delay > 0:
            await asyncio.sleep(self.simulated_delay)

        updated = ParameterSet(
            Tensor(layer.data + self._rng.uniform(-self.update_scale, self.update_scale, size=layer.shape))
            for layer in parameters
        )

        sessions = self.sessions_completed
        result = TrainingResult(
            parameters=updated,
            samples=self.config.batch_size * self.config.epochs * 10,
            loss=max(0.1, float(self._rng.uniform(0.3, 0.7)) - sessions * 0.02),
            training_time=time.time() - start_time,
            metrics={"accuracy": min(0.95, 0.6 + sessions * 0.02)},
        )
        self._record(result)

        log.info(f"Dummy training complete: loss={result.loss:.4f}, samples={result.samples}")
        return result

    async def evaluate(self, parameters: ParameterSet) -> Dict[str, Any]:
        """Return synthetic evaluation metrics."""
        log = logger.bind(context=f"DummyTrainer.{self.participant_id}")
        log.info("Evaluating parameters with dummy metrics")

        return {
            "num_parameters": parameters.num_parameters,
            "accuracy": float(self._rng.uniform(0.45, 0.55)),
            "loss": float(self._rng.uniform(0.2, 0.4)),
        }
