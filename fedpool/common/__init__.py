"""
Common package shared by the coordinator and participants.

Modules:
    errors: Error taxonomy with numeric codes
    tensor: Tensor and ParameterSet data types
    noise: Gaussian noise injection
    serialization: ParameterSet wire encodings
    initializers: Initial parameter generation
    logging_setup: loguru sink configuration
"""

from .errors import (
    ContributionRejectedError,
    EmptyAggregationInputError,
    ErrorCode,
    FederationError,
    MalformedParametersError,
    NonFiniteValueError,
    ShapeMismatchError,
)
from .noise import NoiseInjector
from .serialization import ParameterSetSerializer
from .tensor import ParameterSet, ShapeSignature, SignatureList, Tensor

__all__ = [
    'ContributionRejectedError',
    'EmptyAggregationInputError',
    'ErrorCode',
    'FederationError',
    'MalformedParametersError',
    'NonFiniteValueError',
    'NoiseInjector',
    'ParameterSet',
    'ParameterSetSerializer',
    'ShapeMismatchError',
    'ShapeSignature',
    'SignatureList',
    'Tensor',
]
