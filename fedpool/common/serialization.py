"""
ParameterSet serialization for the wire protocol.

Two encodings are supported:

    - ``nested``: a JSON list with one nested list of floats per layer.
      Human readable and what the reference participants send by default.
    - ``base64``: an ``.npz`` archive (one array per layer, keyed
      ``layer_0``, ``layer_1``, ...) optionally gzip-compressed and base64
      encoded so it fits in a JSON text frame.

The encoded base64 form is a dict::

    {"serialized_data": "<base64>", "encoding": "base64", "compression": true}

Usage:
    serializer = ParameterSetSerializer(encoding="base64", compression=True)
    payload = serializer.serialize(params)
    restored = serializer.deserialize(payload)
"""

import base64
import binascii
import gzip
import io
import zipfile
from typing import Any, Dict, List, Union

import numpy as np
from loguru import logger

from .errors import MalformedParametersError
from .tensor import ParameterSet

SUPPORTED_ENCODINGS = ("nested", "base64")

EncodedParameters = Union[List[Any], Dict[str, Any]]


class ParameterSetSerializer:
    """
    Converts ParameterSets to and from their JSON-compatible wire form.

    Attributes:
        encoding: ``"nested"`` or ``"base64"``
        compression: Whether base64 payloads are gzip-compressed
    """

    def __init__(self, encoding: str = "nested", compression: bool = False):
        if encoding not in SUPPORTED_ENCODINGS:
            raise ValueError(
                f"Unsupported encoding: {encoding}. Use one of {SUPPORTED_ENCODINGS}"
            )
        self.encoding = encoding
        self.compression = compression

        log = logger.bind(context="ParameterSetSerializer.__init__")
        log.debug(f"Initialized serializer with encoding={encoding}, compression={compression}")

    def serialize(self, parameters: ParameterSet) -> EncodedParameters:
        """
        Encode a ParameterSet for transmission.

        Args:
            parameters: ParameterSet to encode

        Returns:
            List of nested lists, or a dict holding the base64 archive
        """
        log = logger.bind(context="ParameterSetSerializer.serialize")

        if self.encoding == "nested":
            log.trace(f"Serializing {len(parameters)} layers as nested lists")
            return parameters.to_nested()

        # Step 1: Pack layers into an npz archive
        buffer = io.BytesIO()
        np.savez(buffer, **{f"layer_{i}": layer.data for i, layer in enumerate(parameters)})
        data = buffer.getvalue()
        log.debug(f"Packed {len(parameters)} layers into {len(data)} bytes")

        # Step 2: Optionally compress
        if self.compression:
            data = self._compress(data)

        # Step 3: Encode for JSON
        encoded = base64.b64encode(data).decode("utf-8")
        log.debug(f"Serialization complete, final size: {len(encoded)} chars")

        return {
            "serialized_data": encoded,
            "encoding": "base64",
            "compression": self.compression,
        }

    def deserialize(self, payload: Any) -> ParameterSet:
        """
        Decode a wire payload back into a ParameterSet.

        The encoding is detected from the payload itself, so a coordinator
        can accept both forms regardless of its own configured encoding.

        Args:
            payload: Nested list form or base64 dict form

        Returns:
            Decoded ParameterSet

        Raises:
            MalformedParametersError: If the payload cannot be decoded
            ShapeMismatchError: If a nested layer is ragged
        """
        log = logger.bind(context="ParameterSetSerializer.deserialize")

        if isinstance(payload, dict):
            return self._deserialize_archive(payload)

        if isinstance(payload, (list, tuple)):
            parameters = ParameterSet.from_nested(payload)
            log.trace(f"Deserialized {len(parameters)} nested layers")
            return parameters

        log.warning(f"Unrecognized parameter payload type: {type(payload).__name__}")
        raise MalformedParametersError(
            f"Cannot decode parameters from {type(payload).__name__}"
        )

    def _deserialize_archive(self, payload: Dict[str, Any]) -> ParameterSet:
        log = logger.bind(context="ParameterSetSerializer._deserialize_archive")

        if payload.get("encoding") != "base64" or "serialized_data" not in payload:
            raise MalformedParametersError("Archive payload needs 'serialized_data' and encoding 'base64'")

        try:
            data = base64.b64decode(payload["serialized_data"], validate=True)
            if payload.get("compression", False):
                data = self._decompress(data)
            with np.load(io.BytesIO(data), allow_pickle=False) as archive:
                keys = sorted(archive.files, key=self._layer_order)
                arrays = [archive[key] for key in keys]
        except (binascii.Error, AttributeError, EOFError, OSError, ValueError, TypeError, zipfile.BadZipFile) as e:
            log.warning(f"Failed to decode parameter archive: {e}")
            raise MalformedParametersError(f"Failed to decode parameter archive: {e}") from e

        parameters = ParameterSet.from_arrays(arrays)
        log.debug(f"Deserialized {len(parameters)} layers ({parameters.num_parameters:,} parameters)")
        return parameters

    @staticmethod
    def _layer_order(key: str) -> int:
        prefix, _, index = key.partition("_")
        if prefix != "layer" or not index.isdigit():
            raise ValueError(f"Unexpected archive entry: {key}")
        return int(index)

    def _compress(self, data: bytes) -> bytes:
        log = logger.bind(context="ParameterSetSerializer._compress")
        original_size = len(data)
        compressed = gzip.compress(data, compresslevel=6)
        ratio = (1 - len(compressed) / original_size) * 100 if original_size else 0.0
        log.debug(f"Compressed {original_size} -> {len(compressed)} bytes ({ratio:.1f}% reduction)")
        return compressed

    def _decompress(self, data: bytes) -> bytes:
        log = logger.bind(context="ParameterSetSerializer._decompress")
        decompressed = gzip.decompress(data)
        log.debug(f"Decompressed {len(data)} -> {len(decompressed)} bytes")
        return decompressed
