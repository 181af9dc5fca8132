"""
Cache Value Encoding

Values are stored as JSON in both cache tiers so a value read back from
the local fallback looks exactly like one read back from Redis.

Redis payloads additionally carry a 1-byte framing marker and are
compressed with LZ4 (or ZSTD for very large listings) above a threshold.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import lz4.frame
import zstandard


logger = logging.getLogger(__name__)


# Framing markers (1-byte prefix)
MARKER_RAW = b'\x00'
MARKER_LZ4 = b'\x01'
MARKER_ZSTD = b'\x02'


@dataclass
class CompressionStats:
    """Size accounting for one compressed payload."""
    original_size: int
    compressed_size: int
    algorithm: str

    @property
    def saved_bytes(self) -> int:
        return self.original_size - self.compressed_size


class CacheCompressor:
    """
    Frames and optionally compresses serialized cache values.

    LZ4 is used for typical listing pages; ZSTD kicks in above
    `zstd_threshold` where its ratio pays for the extra CPU.
    """

    def __init__(
        self,
        enabled: bool = True,
        threshold: int = 1024,
        zstd_threshold: int = 102400,
    ):
        self.enabled = enabled
        self.threshold = threshold
        self.zstd_threshold = zstd_threshold
        self._zstd_compressor = zstandard.ZstdCompressor(level=3)
        self._zstd_decompressor = zstandard.ZstdDecompressor()

    def compress(self, data: bytes) -> Tuple[bytes, Optional[CompressionStats]]:
        """
        Frame `data`, compressing it when that actually saves space.

        Returns:
            Tuple of (framed_payload, stats) where stats is None when the
            payload was stored raw.
        """
        if not self.enabled or len(data) < self.threshold:
            return MARKER_RAW + data, None

        if len(data) >= self.zstd_threshold:
            compressed = self._zstd_compressor.compress(data)
            marker, algorithm = MARKER_ZSTD, "zstd"
        else:
            compressed = lz4.frame.compress(data)
            marker, algorithm = MARKER_LZ4, "lz4"

        if len(compressed) >= len(data):
            return MARKER_RAW + data, None

        stats = CompressionStats(
            original_size=len(data),
            compressed_size=len(compressed) + 1,
            algorithm=algorithm,
        )
        return marker + compressed, stats

    def decompress(self, payload: bytes) -> bytes:
        """
        Strip the framing marker and decompress if needed.

        Payloads without a marker (counters written by INCR) are returned
        untouched; JSON text never starts with a marker byte.
        """
        if not payload:
            return payload

        marker, body = payload[0:1], payload[1:]

        if marker == MARKER_RAW:
            return body
        if marker == MARKER_LZ4:
            return lz4.frame.decompress(body)
        if marker == MARKER_ZSTD:
            return self._zstd_decompressor.decompress(body)

        return payload


def _default(obj: Any) -> Any:
    if hasattr(obj, 'isoformat'):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if hasattr(obj, '__dict__'):
        return {k: v for k, v in obj.__dict__.items() if not k.startswith('_')}
    return str(obj)


def serialize_value(value: Any) -> bytes:
    """Serialize a domain payload to JSON bytes."""
    return json.dumps(value, default=_default, ensure_ascii=False).encode('utf-8')


def deserialize_value(data: bytes) -> Any:
    """Deserialize JSON bytes back to a Python value."""
    return json.loads(data.decode('utf-8'))
