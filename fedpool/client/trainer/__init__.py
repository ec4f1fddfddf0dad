from .trainer_dummy import DummyTrainer
from .trainer_interface import TrainerInterface, TrainingConfig, TrainingError, TrainingResult

__all__ = [
    'DummyTrainer',
    'TrainerInterface',
    'TrainingConfig',
    'TrainingError',
    'TrainingResult',
]
