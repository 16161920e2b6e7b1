"""
Compression Module
==================
Top-k sparsification and linear quantization of weight vectors.
"""

from .codec import CompressionCodec, CompressionStats, EncodedWeights

__all__ = [
    "CompressionCodec",
    "CompressionStats",
    "EncodedWeights",
]
