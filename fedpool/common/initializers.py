"""
Initial (round 0) parameter generation.

Weight matrices (rank >= 2) use Glorot-uniform initialization and biases
(rank 1) start at zero, matching common dense-layer defaults. Scalars and
empty layers are zero.
"""

import math
from typing import Iterable, Optional

import numpy as np
from loguru import logger

from .tensor import ParameterSet, ShapeSignature, Tensor


def glorot_uniform(shape: ShapeSignature, rng: np.random.Generator) -> np.ndarray:
    """
    Sample a Glorot-uniform weight block.

    Limit is ``sqrt(6 / (fan_in + fan_out))`` where the fan sizes come from
    the first two dimensions times the receptive field (remaining dimensions).
    """
    receptive_field = int(np.prod(shape[2:])) if len(shape) > 2 else 1
    fan_in = shape[0] * receptive_field
    fan_out = shape[1] * receptive_field
    if fan_in + fan_out == 0:
        return np.zeros(shape, dtype=np.float64)
    limit = math.sqrt(6.0 / (fan_in + fan_out))
    return rng.uniform(-limit, limit, size=shape)


def initialize_parameters(
    signatures: Iterable[ShapeSignature], seed: Optional[int] = None
) -> ParameterSet:
    """
    Build an untrained ParameterSet for the given layer signatures.

    Args:
        signatures: Per-layer shape signatures in layer order
        seed: Optional seed for reproducible initialization

    Returns:
        ParameterSet usable as the round 0 global model
    """
    log = logger.bind(context="initialize_parameters")
    rng = np.random.default_rng(seed)

    layers = []
    for signature in signatures:
        signature = tuple(signature)
        if len(signature) >= 2:
            layers.append(Tensor(glorot_uniform(signature, rng)))
        else:
            layers.append(Tensor.zeros(signature))

    parameters = ParameterSet(layers)
    log.info(
        f"Initialized {len(parameters)} layers ({parameters.num_parameters:,} parameters), seed={seed}"
    )
    return parameters
