"""
Error taxonomy for the federated aggregation system.

Every error carries a numeric ``error_code`` so the transport layer can report
the reason for a rejection to the submitting participant without guessing.

Hierarchy:
    FederationError
        ContributionRejectedError     (recoverable, reported to the submitter)
            ShapeMismatchError
                MalformedParametersError
            NonFiniteValueError
        EmptyAggregationInputError    (fatal invariant violation)
"""

from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    """Numeric codes carried by ERROR messages."""
    INVALID_MESSAGE = 1000
    SHAPE_MISMATCH = 1001
    NON_FINITE_VALUE = 1002
    MALFORMED_PARAMETERS = 1003
    NOT_REGISTERED = 1004
    INTERNAL_ERROR = 1500


class FederationError(Exception):
    """Base class for all errors raised by the aggregation core."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, layer_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.layer_index = layer_index


class ContributionRejectedError(FederationError):
    """A submitted parameter set was refused. Pool and quorum state are untouched."""


class ShapeMismatchError(ContributionRejectedError):
    """Layer count or a layer's shape signature disagrees with the configuration."""

    error_code = ErrorCode.SHAPE_MISMATCH


class MalformedParametersError(ShapeMismatchError):
    """The payload cannot be interpreted as a parameter set at all (ragged or non-numeric)."""

    error_code = ErrorCode.MALFORMED_PARAMETERS


class NonFiniteValueError(ContributionRejectedError):
    """A leaf value is NaN or infinite."""

    error_code = ErrorCode.NON_FINITE_VALUE


class EmptyAggregationInputError(FederationError):
    """The aggregator was invoked with zero contributions. Always a programming error."""

    error_code = ErrorCode.INTERNAL_ERROR


def error_from_code(error_code: int, message: str) -> FederationError:
    """
    Rebuild the exception matching an ERROR message's code.

    Used on the participant side to surface the rejection reason as a typed
    exception.

    Args:
        error_code: Numeric code from the ERROR payload
        message: Human readable message from the ERROR payload

    Returns:
        FederationError subclass instance (plain FederationError for unknown codes)
    """
    by_code = {
        ErrorCode.SHAPE_MISMATCH: ShapeMismatchError,
        ErrorCode.NON_FINITE_VALUE: NonFiniteValueError,
        ErrorCode.MALFORMED_PARAMETERS: MalformedParametersError,
    }
    try:
        code = ErrorCode(error_code)
    except ValueError:
        return FederationError(message)
    error_cls = by_code.get(code, FederationError)
    return error_cls(message)
