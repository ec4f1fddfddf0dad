"""
Configuration management for the aggregation coordinator.

This module provides the coordinator configuration dataclass and utilities
for loading it from YAML files or programmatically.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from loguru import logger

from fedpool.common.initializers import initialize_parameters
from fedpool.common.serialization import SUPPORTED_ENCODINGS
from fedpool.common.tensor import ParameterSet, SignatureList, normalize_signatures

# 20-word bag-of-words -> 16 -> 8 -> 1 dense classifier (weights, bias per layer)
DEFAULT_LAYER_SHAPES = [[20, 16], [16], [16, 8], [8], [8, 1], [1]]


@dataclass
class CoordinatorConfig:
    """
    Complete configuration for the aggregation coordinator.

    Attributes:
        host: Address the WebSocket server binds to
        port: WebSocket server port
        quorum: Contributions required to trigger a round (Q)
        noise_scale: Advisory sigma reported to participants at registration
        layer_shapes: Expected shape signature of every layer, in layer order
        initial_parameters_path: Optional JSON file with the round 0 model as nested lists
        init_seed: Seed for the generated round 0 model when no file is given
        encoding: Wire encoding for outgoing global models ("nested" or "base64")
        compression: Whether base64 global models are gzip-compressed
        history_size: Rounds of aggregation metrics the coordinator keeps
        logging: Logging configuration (level, file, format)
    """
    host: str = "localhost"
    port: int = 8765
    quorum: int = 2
    noise_scale: float = 0.01
    layer_shapes: List[List[int]] = field(default_factory=lambda: [list(s) for s in DEFAULT_LAYER_SHAPES])
    initial_parameters_path: Optional[str] = None
    init_seed: Optional[int] = None
    encoding: str = "nested"
    compression: bool = False
    history_size: int = 1000
    logging: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if isinstance(self.quorum, bool) or not isinstance(self.quorum, int) or self.quorum < 1:
            raise ValueError(f"quorum must be an integer >= 1, got {self.quorum!r}")
        if self.noise_scale < 0:
            raise ValueError(f"noise_scale must be >= 0, got {self.noise_scale}")
        if isinstance(self.history_size, bool) or not isinstance(self.history_size, int) or self.history_size < 1:
            raise ValueError(f"history_size must be an integer >= 1, got {self.history_size!r}")
        if self.port < 0 or self.port > 65535:
            raise ValueError(f"Invalid server port: {self.port}")
        if not self.layer_shapes:
            raise ValueError("layer_shapes cannot be empty")
        if self.encoding not in SUPPORTED_ENCODINGS:
            raise ValueError(f"encoding must be one of {SUPPORTED_ENCODINGS}, got {self.encoding}")

        signatures = normalize_signatures(self.layer_shapes)
        for index, signature in enumerate(signatures):
            if any(dim == 0 for dim in signature):
                raise ValueError(f"Layer {index} has a zero dimension: {list(signature)}")
        self.layer_shapes = [list(s) for s in signatures]

        if not self.logging:
            self.logging = {
                "level": "INFO",
                "file": None,
                "format": "text",
            }

    @property
    def signatures(self) -> SignatureList:
        """Layer shapes as tuples, ready for the validator."""
        return normalize_signatures(self.layer_shapes)

    def load_initial_parameters(self) -> ParameterSet:
        """
        Build the round 0 global model.

        Reads ``initial_parameters_path`` when set (a JSON list with one
        nested list per layer), otherwise generates Glorot-uniform weights
        with zero biases.

        Raises:
            FileNotFoundError: If the configured file doesn't exist
            ShapeMismatchError: If the file's layers are ragged
        """
        log = logger.bind(context="CoordinatorConfig.load_initial_parameters")

        if not self.initial_parameters_path:
            log.info("No initial parameters file configured, generating round 0 model")
            return initialize_parameters(self.signatures, seed=self.init_seed)

        path = Path(self.initial_parameters_path)
        if not path.exists():
            raise FileNotFoundError(f"Initial parameters file not found: {path}")

        with open(path, 'r') as f:
            data = json.load(f)

        parameters = ParameterSet.from_nested(data)
        log.info(f"Loaded initial parameters from {path} ({parameters.num_parameters:,} parameters)")
        return parameters

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "CoordinatorConfig":
        """
        Load configuration from YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            CoordinatorConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is malformed
        """
        log = logger.bind(context="CoordinatorConfig.from_yaml")
        log.info(f"Loading coordinator configuration from {yaml_path}")

        config_file = Path(yaml_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "CoordinatorConfig":
        """
        Create configuration from dictionary, ignoring unknown keys.

        Args:
            config_dict: Configuration dictionary

        Returns:
            CoordinatorConfig instance
        """
        known_fields = {f.name for f in fields(cls)}
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
        log = logger.bind(context="CoordinatorConfig.to_yaml")
        log.info(f"Saving configuration to {yaml_path}")

        config_file = Path(yaml_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.safe_dump(asdict(self), f, default_flow_style=False)

    def to_dict(self) -> Dict[str, Any]:
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
