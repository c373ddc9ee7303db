"""Zstd compression codec for checkpoint payloads"""

from typing import Tuple

import zstandard as zstd

from ..utils.errors import CorruptRecordError

DEFAULT_COMPRESSION_LEVEL = 3
DEFAULT_COMPRESSION_THRESHOLD = 1024


class CompressionCodec:
    """Reversible zstd compression with a size threshold policy

    ``pack`` only compresses payloads strictly larger than ``threshold``
    bytes. ``compress``/``decompress`` are unconditional.
    """

    def __init__(
        self,
        level: int = DEFAULT_COMPRESSION_LEVEL,
        threshold: int = DEFAULT_COMPRESSION_THRESHOLD
    ):
        """Initialize codec

        Args:
            level: Zstd compression level (1-22)
            threshold: Payloads above this many bytes get compressed by pack()
        """
        self.level = level
        self.threshold = threshold
        self._compressor = zstd.ZstdCompressor(level=level)
        self._decompressor = zstd.ZstdDecompressor()

    def compress(self, data: bytes) -> bytes:
        return self._compressor.compress(data)

    def decompress(self, data: bytes) -> bytes:
        """Decompress a zstd frame

        Raises:
            CorruptRecordError: if the bytes are not a valid frame
        """
        try:
            return self._decompressor.decompress(data)
        except zstd.ZstdError as e:
            raise CorruptRecordError(f"Failed to decompress payload: {e}", cause=e) from e

    def should_compress(self, size: int) -> bool:
        return size > self.threshold

    def pack(self, raw: bytes) -> Tuple[bytes, bool]:
        """Apply the threshold policy

        Returns:
            Tuple of (stored bytes, compressed flag)
        """
        if self.should_compress(len(raw)):
            return self.compress(raw), True
        return raw, False

    def unpack(self, payload: bytes, compressed: bool) -> bytes:
        return self.decompress(payload) if compressed else payload
