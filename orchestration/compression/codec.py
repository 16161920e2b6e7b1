"""
Compression Codec
=================
Top-k sparsification followed by linear quantization of the kept values.

Clients call ``encode`` before upload; the coordinator calls ``decode``
on arrival, before any privacy accounting. The decoded vector is dense,
with exact zeros at every index that was not transmitted.

Wire layout of ``EncodedWeights.to_bytes()`` (little endian):

    header  : length u32 | k u32 | bits u8 | min f64 | scale f64
    indices : k x u32 (ascending)
    values  : k x f64            when bits == 0
              k x u8 / k x u16   codes when 1 <= bits <= 8 / 9 <= bits <= 16

References:
- Lin et al. (2018) "Deep Gradient Compression"
- Alistarh et al. (2017) "QSGD: Communication-Efficient SGD via Gradient Quantization"
"""

import struct
from dataclasses import dataclass
from typing import Any, Optional, Union

import numpy as np
import structlog

from core.exceptions import CompressionError
from core.models import CompressionConfig
from core.utils import round_half_up

logger = structlog.get_logger(__name__)

_HEADER = struct.Struct("<IIBdd")
MAX_QUANT_BITS = 16


def code_dtype(bits: int) -> np.dtype:
    """Storage dtype for quantization codes of the given width."""
    return np.dtype(np.uint8) if bits <= 8 else np.dtype("<u2")


@dataclass
class CompressionStats:
    """Statistics about compression performance."""

    original_size_bytes: int
    compressed_size_bytes: int
    compression_ratio: float
    sparsity: float  # fraction of exact zeros after decoding
    reconstruction_error: float  # relative L2 error


@dataclass(frozen=True)
class EncodedWeights:
    """Sparse, optionally quantized representation of a weight vector."""

    length: int
    indices: np.ndarray
    values: np.ndarray  # float64 values, or integer codes when bits > 0
    bits: int = 0
    min_value: float = 0.0
    scale: float = 1.0

    @property
    def k(self) -> int:
        return int(self.indices.shape[0])

    @property
    def nbytes(self) -> int:
        """Size of the serialized payload in bytes."""
        return _HEADER.size + self.k * (4 + self._value_dtype().itemsize)

    def to_bytes(self) -> bytes:
        header = _HEADER.pack(self.length, self.k, self.bits, self.min_value, self.scale)
        return (
            header
            + self.indices.astype("<u4").tobytes()
            + self.values.astype(self._value_dtype()).tobytes()
        )

    def _value_dtype(self) -> np.dtype:
        return np.dtype("<f8") if self.bits == 0 else code_dtype(self.bits)

    @classmethod
    def from_bytes(cls, payload: bytes) -> "EncodedWeights":
        """
        Parse a serialized payload.

        Raises:
            CompressionError: If the payload is truncated or inconsistent.
        """
        if len(payload) < _HEADER.size:
            raise CompressionError(f"Payload too short: {len(payload)} bytes")

        length, k, bits, min_value, scale = _HEADER.unpack_from(payload, 0)
        if bits > MAX_QUANT_BITS:
            raise CompressionError(f"Unsupported quantization width: {bits} bits")

        value_dtype = np.dtype("<f8") if bits == 0 else code_dtype(bits)
        expected = _HEADER.size + k * 4 + k * value_dtype.itemsize
        if len(payload) != expected:
            raise CompressionError(
                f"Payload size {len(payload)} does not match header (expected {expected})"
            )

        offset = _HEADER.size
        indices = np.frombuffer(payload, dtype="<u4", count=k, offset=offset)
        values = np.frombuffer(payload, dtype=value_dtype, count=k, offset=offset + k * 4)
        return cls(
            length=length,
            indices=indices.astype(np.int64),
            values=values.copy(),
            bits=bits,
            min_value=min_value,
            scale=scale,
        )


class CompressionCodec:
    """
    Top-k sparsification plus linear quantization.

    Example:
        >>> codec = CompressionCodec(CompressionConfig(top_k_ratio=0.1, quant_bits=8))
        >>> encoded = codec.encode(weights)
        >>> dense = codec.decode(encoded, expected_length=len(weights))
    """

    def __init__(self, config: Optional[CompressionConfig] = None):
        self.config = config or CompressionConfig()

    @property
    def top_k_ratio(self) -> float:
        return self.config.top_k_ratio

    @property
    def quant_bits(self) -> int:
        return self.config.quant_bits

    def num_kept(self, length: int) -> int:
        """k = max(1, round(top_k_ratio * N)), never more than N."""
        return min(length, max(1, round_half_up(self.top_k_ratio * length)))

    def encode(self, weights: Any) -> EncodedWeights:
        """
        Sparsify and quantize a weight vector.

        Args:
            weights: 1-D array-like of finite floats.

        Returns:
            EncodedWeights carrying the k largest-magnitude coordinates.
        """
        vector = np.asarray(weights, dtype=np.float64).ravel()
        n = vector.shape[0]
        if n == 0:
            raise CompressionError("Cannot encode an empty vector")

        k = self.num_kept(n)
        if k < n:
            top = np.argpartition(np.abs(vector), -k)[-k:]
            indices = np.sort(top)
        else:
            indices = np.arange(n)
        kept = vector[indices]

        bits = self.quant_bits
        if bits == 0:
            return EncodedWeights(length=n, indices=indices, values=kept.copy())

        vmin = float(kept.min())
        vmax = float(kept.max())
        levels = (1 << bits) - 1
        scale = (vmax - vmin) / levels if vmax > vmin else 1.0
        codes = np.clip(np.round((kept - vmin) / scale), 0, levels).astype(code_dtype(bits))

        return EncodedWeights(
            length=n,
            indices=indices,
            values=codes,
            bits=bits,
            min_value=vmin,
            scale=scale,
        )

    def decode(
        self,
        encoded: Union[EncodedWeights, bytes],
        expected_length: Optional[int] = None,
    ) -> np.ndarray:
        """
        Rebuild the dense float64 vector.

        Args:
            encoded: EncodedWeights or its serialized bytes.
            expected_length: Model size N the vector must have.

        Returns:
            Dense vector of length N.

        Raises:
            CompressionError: If the payload is malformed or has the wrong length.
        """
        if isinstance(encoded, (bytes, bytearray, memoryview)):
            encoded = EncodedWeights.from_bytes(bytes(encoded))
        if not isinstance(encoded, EncodedWeights):
            raise CompressionError(
                f"Unsupported payload type: {type(encoded).__name__}"
            )

        self._check(encoded, expected_length)

        dense = np.zeros(encoded.length, dtype=np.float64)
        if encoded.bits == 0:
            dense[encoded.indices] = encoded.values.astype(np.float64)
        else:
            dense[encoded.indices] = encoded.min_value + encoded.values.astype(np.float64) * encoded.scale
        return dense

    def decode_payload(self, payload: Any, expected_length: int) -> np.ndarray:
        """
        Decode whatever a client submitted: encoded form or a plain vector.

        Raises:
            CompressionError: If the payload cannot be turned into a vector
                of ``expected_length``.
        """
        if isinstance(payload, (EncodedWeights, bytes, bytearray, memoryview)):
            return self.decode(payload, expected_length=expected_length)

        try:
            dense = np.array(payload, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise CompressionError(f"Payload is not a numeric vector: {e}") from e
        if dense.ndim != 1 or dense.shape[0] != expected_length:
            raise CompressionError(
                f"Vector has shape {dense.shape}, expected ({expected_length},)"
            )
        return dense

    @staticmethod
    def payload_size(payload: Any) -> int:
        """Bytes a submitted payload occupies on the wire."""
        if isinstance(payload, EncodedWeights):
            return payload.nbytes
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return len(payload)
        return int(np.asarray(payload, dtype=np.float64).nbytes)

    def _check(self, encoded: EncodedWeights, expected_length: Optional[int]) -> None:
        if expected_length is not None and encoded.length != expected_length:
            raise CompressionError(
                f"Encoded length {encoded.length} does not match model size {expected_length}"
            )
        if encoded.indices.ndim != 1 or encoded.values.ndim != 1:
            raise CompressionError("Indices and values must be 1-D")
        if encoded.indices.shape[0] != encoded.values.shape[0]:
            raise CompressionError(
                f"{encoded.indices.shape[0]} indices but {encoded.values.shape[0]} values"
            )
        if encoded.k > 0:
            if encoded.indices.min() < 0 or encoded.indices.max() >= encoded.length:
                raise CompressionError("Index out of range")
            if np.unique(encoded.indices).shape[0] != encoded.k:
                raise CompressionError("Duplicate indices in payload")
        if not (np.isfinite(encoded.min_value) and np.isfinite(encoded.scale)):
            raise CompressionError("Non-finite quantization parameters")
        if encoded.bits > MAX_QUANT_BITS:
            raise CompressionError(f"Unsupported quantization width: {encoded.bits} bits")
        if encoded.bits > 0 and encoded.k > 0:
            if encoded.values.min() < 0 or encoded.values.max() > (1 << encoded.bits) - 1:
                raise CompressionError("Quantization code out of range")
        if encoded.bits == 0 and not np.all(np.isfinite(encoded.values)):
            raise CompressionError("Non-finite values in payload")

    def compression_stats(self, original: Any, encoded: EncodedWeights) -> CompressionStats:
        """Compression ratio, sparsity and reconstruction error."""
        original = np.asarray(original, dtype=np.float64)
        reconstructed = self.decode(encoded, expected_length=original.shape[0])
        compressed_size = encoded.nbytes
        error = np.linalg.norm(original - reconstructed) / (np.linalg.norm(original) + 1e-10)

        return CompressionStats(
            original_size_bytes=int(original.nbytes),
            compressed_size_bytes=compressed_size,
            compression_ratio=original.nbytes / compressed_size if compressed_size > 0 else float("inf"),
            sparsity=float(np.mean(reconstructed == 0)),
            reconstruction_error=float(error),
        )
