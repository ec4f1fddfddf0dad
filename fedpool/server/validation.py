"""
Structural and numeric validation of submitted parameter sets.

The validator is seeded once with the expected per-layer shape signatures and
never infers shapes from submissions. Structural checks (layer count, then
each layer's signature) run before the finiteness check, so a submission that
is both mis-shaped and non-finite is reported as a shape mismatch.
"""

from typing import Iterable

from loguru import logger

from fedpool.common.errors import ContributionRejectedError, NonFiniteValueError, ShapeMismatchError
from fedpool.common.tensor import ParameterSet, ShapeSignature, format_signature, normalize_signatures


class ShapeValidator:
    """
    Checks ParameterSets against a fixed list of layer shape signatures.

    Example:
        >>> validator = ShapeValidator([(16, 20), (16,)])
        >>> validator.validate(params)   # raises on mismatch
    """

    def __init__(self, expected_signatures: Iterable[Iterable[int]]):
        self.expected_signatures = normalize_signatures(expected_signatures)

        log = logger.bind(context="ShapeValidator.__init__")
        log.info(
            f"Validator expects {len(self.expected_signatures)} layers: "
            f"{format_signature(self.expected_signatures)}"
        )

    def validate(self, parameters: ParameterSet):
        """
        Raise if the ParameterSet does not match the configured structure.

        Args:
            parameters: Submitted ParameterSet

        Raises:
            ShapeMismatchError: Layer count or a layer signature differs
            NonFiniteValueError: Any leaf is NaN or infinite
        """
        log = logger.bind(context="ShapeValidator.validate")

        if len(parameters) != len(self.expected_signatures):
            log.debug(f"Layer count {len(parameters)} != {len(self.expected_signatures)}")
            raise ShapeMismatchError(
                f"Expected {len(self.expected_signatures)} layers, got {len(parameters)}"
            )

        for index, (layer, expected) in enumerate(zip(parameters, self.expected_signatures)):
            if layer.shape != expected:
                log.debug(f"Layer {index} shape {layer.shape} != {expected}")
                raise ShapeMismatchError(
                    f"Layer {index} has shape {layer.shape}, expected {expected}",
                    layer_index=index,
                )

        for index, layer in enumerate(parameters):
            if not layer.is_finite():
                log.debug(f"Layer {index} contains non-finite values")
                raise NonFiniteValueError(
                    f"Layer {index} contains NaN or infinite values",
                    layer_index=index,
                )

    def is_valid(self, parameters: ParameterSet) -> bool:
        """Return True when ``validate`` would accept the ParameterSet."""
        try:
            self.validate(parameters)
        except ContributionRejectedError:
            return False
        return True

    def expected_signature(self, layer_index: int) -> ShapeSignature:
        return self.expected_signatures[layer_index]
