"""
Configuration management for federated participants.

This module provides the participant configuration dataclass and utilities
for loading it from YAML files or programmatically.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from fedpool.common.serialization import SUPPORTED_ENCODINGS

from .trainer.trainer_interface import TrainingConfig


@dataclass
class ParticipantConfig:
    """
    Complete configuration for a federated participant.

    Attributes:
        participant_id: Unique identifier for this participant
        server_host: Coordinator hostname
        server_port: Coordinator port
        noise_scale: Sigma added before submission (None adopts the coordinator's advice)
        noise_seed: Seed for reproducible noise
        auto_reconnect: Whether to automatically reconnect on disconnect
        encoding: Wire encoding for contributions ("nested" or "base64")
        compression: Whether base64 contributions are gzip-compressed
        training: Training configuration parameters
        logging: Logging configuration
    """
    participant_id: str
    server_host: str = "localhost"
    server_port: int = 8765
    noise_scale: Optional[float] = None
    noise_seed: Optional[int] = None
    auto_reconnect: bool = True
    encoding: str = "nested"
    compression: bool = False
    training: Dict[str, Any] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.participant_id:
            raise ValueError("participant_id cannot be empty")
        if self.server_port <= 0 or self.server_port > 65535:
            raise ValueError(f"Invalid server port: {self.server_port}")
        if self.noise_scale is not None and self.noise_scale < 0:
            raise ValueError(f"noise_scale must be >= 0, got {self.noise_scale}")
        if self.encoding not in SUPPORTED_ENCODINGS:
            raise ValueError(f"encoding must be one of {SUPPORTED_ENCODINGS}, got {self.encoding}")

        # Set default training parameters if not provided
        if not self.training:
            self.training = {
                "epochs": 1,
                "batch_size": 32,
                "learning_rate": 0.01,
                "update_scale": 0.01,
                "simulated_delay": 0.0,
            }

        if not self.logging:
            self.logging = {
                "level": "INFO",
                "file": None,
                "format": "text",
            }

    def training_config(self) -> TrainingConfig:
        """
        Build the trainer's TrainingConfig from the ``training`` section.

        Keys other than epochs, batch_size and learning_rate are passed
        through as ``additional_params``.
        """
        training = dict(self.training)
        return TrainingConfig(
            epochs=int(training.pop("epochs", 1)),
            batch_size=int(training.pop("batch_size", 32)),
            learning_rate=float(training.pop("learning_rate", 0.01)),
            additional_params=training,
        )

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "ParticipantConfig":
        """
        Load configuration from YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            ParticipantConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is malformed
        """
        log = logger.bind(context="ParticipantConfig.from_yaml")
        log.info(f"Loading participant configuration from {yaml_path}")

        config_file = Path(yaml_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "ParticipantConfig":
        """
        Create configuration from dictionary, ignoring unknown keys.

        Args:
            config_dict: Configuration dictionary

        Returns:
            ParticipantConfig instance
        """
        known_fields = set(cls.__dataclass_fields__)
        unknown = set(config_dict) - known_fields
        if unknown:
            logger.warning(f"Ignoring unknown configuration parameters: {sorted(unknown)}")
        return cls(**{k: v for k, v in config_dict.items() if k in known_fields})

    def to_yaml(self, yaml_path: str):
        """
        Save configuration to YAML file.

        Args:
            yaml_path: Path to save YAML file
        """
        log = logger.bind(context="ParticipantConfig.to_yaml")
        log.info(f"Saving configuration to {yaml_path}")

        config_file = Path(yaml_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.safe_dump(asdict(self), f, default_flow_style=False)

        log.debug(f"Configuration saved to {yaml_path}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return asdict(self)

    def update(self, **kwargs):
        """
        Update configuration parameters and re-validate.

        Args:
            **kwargs: Parameters to update
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                logger.warning(f"Unknown configuration parameter: {key}")
        self.__post_init__()


def create_default_config(participant_id: str) -> ParticipantConfig:
    """
    Create a default participant configuration.

    Args:
        participant_id: Participant identifier

    Returns:
        ParticipantConfig with default values
    """
    return ParticipantConfig(
        participant_id=participant_id,
        server_host="localhost",
        server_port=8765,
        auto_reconnect=True,
    )


def load_config_with_overrides(yaml_path: str, **overrides) -> ParticipantConfig:
    """
    Load configuration from YAML and apply overrides.

    Useful for loading a template config and customizing specific values,
    e.g. one participant id per process.

    Args:
        yaml_path: Path to base YAML configuration
        **overrides: Parameters to override

    Returns:
        ParticipantConfig with overrides applied
    """
    config = ParticipantConfig.from_yaml(yaml_path)
    config.update(**overrides)
    return config
