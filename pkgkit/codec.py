from __future__ import annotations

import lzma
from typing import Optional

from .constants import CODEC_XZ, DEFAULT_XZ_PRESET
from .errors import CodecError


class Codec:
    def __init__(self, codec_id: int, level: Optional[int] = None):
        self.codec_id = codec_id
        self.level = level

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_XZ:
            preset = self.level if self.level is not None else DEFAULT_XZ_PRESET
            try:
                return lzma.compress(data, format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC64, preset=preset)
            except (lzma.LZMAError, ValueError) as e:
                raise CodecError(f"xz compression failed: {e}") from e
        # Unknown/unsupported codec: fail fast
        raise CodecError(f"unsupported codec id: {self.codec_id}")

    def decompress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_XZ:
            try:
                return lzma.decompress(data, format=lzma.FORMAT_XZ)
            except lzma.LZMAError as e:
                raise CodecError(f"xz decompression failed: {e}") from e
        raise CodecError(f"unsupported codec id: {self.codec_id}")
