"""
Tensor and ParameterSet data types.

A Tensor holds one layer's parameters as an immutable flat float64 buffer plus
an explicit shape signature (the length at each nesting depth, e.g. a 16x20
weight matrix has signature ``(16, 20)``). Comparing two tensors' structure is
therefore a tuple comparison rather than a recursive walk.

A ParameterSet is the ordered sequence of Tensors making up a model, one per
layer, in the globally agreed layer order.

Key Components:
    - Tensor: immutable n-dimensional parameter block
    - ParameterSet: immutable ordered collection of Tensors
    - infer_shape: shape signature of a nested Python sequence
    - normalize_signatures: canonical form of configured layer shapes

Both types are immutable: every operation produces a new object and the
underlying numpy buffers are marked read-only.
"""

import numbers
from typing import Any, Iterable, Iterator, List, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from .errors import MalformedParametersError, NonFiniteValueError, ShapeMismatchError

ShapeSignature = Tuple[int, ...]
SignatureList = Tuple[ShapeSignature, ...]


def _is_scalar(value: Any) -> bool:
    """True for real numbers, False for bools and everything else."""
    if isinstance(value, (bool, np.bool_)):
        return False
    return isinstance(value, numbers.Real)


def infer_shape(nested: Any) -> ShapeSignature:
    """
    Compute the shape signature of a nested numeric sequence.

    Args:
        nested: Scalar or (possibly nested) list/tuple of numbers

    Returns:
        Tuple of lengths at each nesting depth (``()`` for a scalar)

    Raises:
        ShapeMismatchError: If siblings disagree in length or depth (ragged)
        MalformedParametersError: If a leaf is not a real number
    """
    if _is_scalar(nested):
        return ()
    if isinstance(nested, np.ndarray):
        return tuple(int(d) for d in nested.shape)
    if not isinstance(nested, (list, tuple)):
        raise MalformedParametersError(
            f"Leaf values must be real numbers, got {type(nested).__name__}"
        )
    if len(nested) == 0:
        return (0,)

    child_shape = infer_shape(nested[0])
    for i, child in enumerate(nested[1:], start=1):
        shape = infer_shape(child)
        if shape != child_shape:
            raise ShapeMismatchError(
                f"Ragged nesting: element {i} has shape {shape}, expected {child_shape}"
            )
    return (len(nested),) + child_shape


def normalize_signatures(signatures: Iterable[Iterable[int]]) -> SignatureList:
    """
    Convert configured layer shapes (e.g. lists loaded from YAML) to tuples.

    Args:
        signatures: One iterable of dimension lengths per layer

    Returns:
        Tuple of shape signature tuples

    Raises:
        ValueError: If a dimension is not a non-negative integer
    """
    normalized = []
    for layer_index, signature in enumerate(signatures):
        dims = []
        for dim in signature:
            if isinstance(dim, bool) or not isinstance(dim, numbers.Integral) or dim < 0:
                raise ValueError(f"Layer {layer_index} has invalid dimension {dim!r}")
            dims.append(int(dim))
        normalized.append(tuple(dims))
    return tuple(normalized)


def format_signature(signature: Sequence[ShapeSignature]) -> str:
    """Human readable rendering of a signature list for log messages."""
    return "[" + ", ".join(str(tuple(s)) for s in signature) + "]"


class Tensor:
    """
    Immutable block of float64 parameters with an explicit shape signature.

    Example:
        >>> t = Tensor.from_nested([[2.0, 4.0], [6.0, 8.0]])
        >>> t.shape
        (2, 2)
        >>> t.to_nested()
        [[2.0, 4.0], [6.0, 8.0]]
    """

    __slots__ = ("_data",)

    def __init__(self, data: np.ndarray):
        array = np.array(data, dtype=np.float64, copy=True)
        array.flags.writeable = False
        self._data = array

    @classmethod
    def from_nested(cls, nested: Any) -> "Tensor":
        """
        Build a Tensor from a nested list of numbers.

        Raises:
            ShapeMismatchError: If the nesting is ragged
            MalformedParametersError: If a leaf is not a real number
            NonFiniteValueError: If an integer leaf overflows float64
        """
        if isinstance(nested, np.ndarray):
            return cls.from_array(nested)
        shape = infer_shape(nested)
        try:
            array = np.array(nested, dtype=np.float64)
        except OverflowError as e:
            raise NonFiniteValueError(f"Leaf value out of float64 range: {e}") from e
        if array.shape != shape:
            raise ShapeMismatchError(f"Could not build tensor of shape {shape}")
        return cls(array)

    @classmethod
    def from_array(cls, array: Any) -> "Tensor":
        """
        Build a Tensor from a numpy array (or array-like exposing ``__array__``).

        Raises:
            MalformedParametersError: If the array is not numeric
        """
        array = np.asarray(array)
        if array.dtype == np.bool_ or not np.issubdtype(array.dtype, np.number):
            raise MalformedParametersError(f"Tensor dtype must be numeric, got {array.dtype}")
        if np.iscomplexobj(array):
            raise MalformedParametersError("Complex tensors are not supported")
        return cls(array)

    @classmethod
    def zeros(cls, shape: ShapeSignature) -> "Tensor":
        """Tensor of the given shape filled with zeros."""
        return cls(np.zeros(shape, dtype=np.float64))

    @property
    def shape(self) -> ShapeSignature:
        """Shape signature: length at each nesting depth."""
        return tuple(int(d) for d in self._data.shape)

    @property
    def rank(self) -> int:
        return self._data.ndim

    @property
    def size(self) -> int:
        """Number of scalar leaves."""
        return int(self._data.size)

    @property
    def data(self) -> np.ndarray:
        """Read-only view of the underlying buffer."""
        return self._data

    def is_finite(self) -> bool:
        """True when no leaf is NaN or infinite."""
        return bool(np.isfinite(self._data).all())

    def to_nested(self) -> Union[float, List[Any]]:
        """Export as nested Python lists of floats."""
        return self._data.tolist()

    def allclose(self, other: "Tensor", rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        """Element-wise comparison within floating point tolerance."""
        if not isinstance(other, Tensor) or other.shape != self.shape:
            return False
        return bool(np.allclose(self._data, other._data, rtol=rtol, atol=atol))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tensor):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._data, other._data))

    __hash__ = None

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape})"


class ParameterSet:
    """
    Immutable ordered sequence of Tensors, one per model layer.

    The shape signature list of a ParameterSet is what the coordinator checks
    submissions against.

    Example:
        >>> params = ParameterSet.from_nested([[[1.0, 2.0]], [0.5]])
        >>> params.signature
        ((1, 2), (1,))
    """

    __slots__ = ("_layers",)

    def __init__(self, layers: Iterable[Tensor]):
        layers = tuple(layers)
        for i, layer in enumerate(layers):
            if not isinstance(layer, Tensor):
                raise TypeError(f"Layer {i} must be a Tensor, got {type(layer).__name__}")
        self._layers: Tuple[Tensor, ...] = layers

    @classmethod
    def from_nested(cls, layers: Any) -> "ParameterSet":
        """
        Build a ParameterSet from a list of nested lists (one per layer).

        This is the plain wire format: ``[layer0, layer1, ...]`` where each
        layer is a nested list of numbers.

        Raises:
            MalformedParametersError: If the outer value is not a list of layers
            ShapeMismatchError: If a layer is ragged
        """
        log = logger.bind(context="ParameterSet.from_nested")
        if not isinstance(layers, (list, tuple)):
            log.warning(f"Expected a list of layers, got {type(layers).__name__}")
            raise MalformedParametersError(
                f"Parameter set must be a list of layers, got {type(layers).__name__}"
            )

        tensors = []
        for i, layer in enumerate(layers):
            try:
                tensors.append(Tensor.from_nested(layer))
            except ShapeMismatchError as e:
                e.layer_index = i
                raise
        log.trace(f"Built parameter set with {len(tensors)} layers")
        return cls(tensors)

    @classmethod
    def from_arrays(cls, arrays: Iterable[Any]) -> "ParameterSet":
        """Build a ParameterSet from numpy arrays (one per layer)."""
        return cls(Tensor.from_array(a) for a in arrays)

    @classmethod
    def zeros(cls, signatures: Iterable[ShapeSignature]) -> "ParameterSet":
        """ParameterSet of zeros matching a signature list."""
        return cls(Tensor.zeros(tuple(s)) for s in signatures)

    @property
    def layers(self) -> Tuple[Tensor, ...]:
        return self._layers

    @property
    def signature(self) -> SignatureList:
        """Per-layer shape signatures in layer order."""
        return tuple(layer.shape for layer in self._layers)

    @property
    def num_parameters(self) -> int:
        """Total number of scalar leaves across all layers."""
        return sum(layer.size for layer in self._layers)

    def is_finite(self) -> bool:
        return all(layer.is_finite() for layer in self._layers)

    def to_nested(self) -> List[Any]:
        """Export as a list of nested lists, one per layer."""
        return [layer.to_nested() for layer in self._layers]

    def to_arrays(self) -> List[np.ndarray]:
        """Export as writable numpy copies, one per layer."""
        return [np.array(layer.data, copy=True) for layer in self._layers]

    def copy(self) -> "ParameterSet":
        """Deep copy with freshly allocated buffers."""
        return ParameterSet(Tensor(layer.data) for layer in self._layers)

    def allclose(self, other: "ParameterSet", rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        """Layer-wise comparison within floating point tolerance."""
        if not isinstance(other, ParameterSet) or len(other) != len(self):
            return False
        return all(a.allclose(b, rtol=rtol, atol=atol) for a, b in zip(self._layers, other._layers))

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self) -> Iterator[Tensor]:
        return iter(self._layers)

    def __getitem__(self, index: int) -> Tensor:
        return self._layers[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterSet):
            return NotImplemented
        return self._layers == other._layers

    __hash__ = None

    def __repr__(self) -> str:
        return f"ParameterSet(layers={len(self._layers)}, signature={format_signature(self.signature)})"
