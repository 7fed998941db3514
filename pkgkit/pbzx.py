"""pbzx chunk streams.

pbzx is the chunked XZ framing Apple uses for the ``Payload`` of an
installer package. A stream is a 12-byte header followed by chunk records:

    magic[4]            b"pbzx"
    chunk_size u64      default (uncompressed) chunk size, big-endian
    repeat:
        flags u64       CHUNK_FLAG_XZ = xz stream, anything else = raw bytes
        length u64      number of payload bytes that follow
        payload[length]

Decoding concatenates the chunk outputs in stream order. Encoding stores a
chunk raw whenever xz does not make it strictly smaller, so output never
grows by more than the 16-byte chunk header per chunk.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, Optional

from .codec import Codec
from .constants import (
    PBZX_MAGIC,
    PBZX_HEADER_SIZE,
    CHUNK_HEADER_SIZE,
    CHUNK_FLAG_RAW,
    CHUNK_FLAG_XZ,
    CODEC_XZ,
    DEFAULT_CHUNK_SIZE,
)
from .errors import BadMagic, InvalidChunkSize, TooShort, TruncatedChunk


_STREAM_HDR_STRUCT = struct.Struct(">4sQ")
_CHUNK_HDR_STRUCT = struct.Struct(">QQ")


@dataclass
class ChunkInfo:
    offset: int  # stream offset of the chunk header
    flags: int
    length: int

    @property
    def compressed(self) -> bool:
        return self.flags == CHUNK_FLAG_XZ

    @property
    def payload_offset(self) -> int:
        return self.offset + CHUNK_HEADER_SIZE


def is_stream(data: bytes) -> bool:
    """Return True when ``data`` starts with the pbzx magic (no further checks)."""
    return len(data) >= len(PBZX_MAGIC) and data[: len(PBZX_MAGIC)] == PBZX_MAGIC


def read_header(stream: bytes) -> int:
    """Validate the stream header and return the declared default chunk size."""
    if len(stream) < PBZX_HEADER_SIZE:
        raise TooShort(f"Data too short to be a pbzx stream ({len(stream)} bytes)")
    magic, chunk_size = _STREAM_HDR_STRUCT.unpack_from(stream, 0)
    if magic != PBZX_MAGIC:
        raise BadMagic(f"Not a pbzx stream: magic {magic!r} (expected {PBZX_MAGIC!r})")
    return chunk_size


def iter_chunks(stream: bytes) -> Iterator[ChunkInfo]:
    """Yield the chunk headers of ``stream`` in order without decompressing.

    Trailing bytes shorter than one chunk header are ignored.
    """
    read_header(stream)
    offset = PBZX_HEADER_SIZE
    total = len(stream)
    while total - offset >= CHUNK_HEADER_SIZE:
        flags, length = _CHUNK_HDR_STRUCT.unpack_from(stream, offset)
        remaining = total - offset - CHUNK_HEADER_SIZE
        if length > remaining:
            raise TruncatedChunk(
                f"Chunk data truncated: need {length} bytes at offset "
                f"{offset + CHUNK_HEADER_SIZE}, but only {remaining} bytes remain"
            )
        yield ChunkInfo(offset=offset, flags=flags, length=length)
        offset += CHUNK_HEADER_SIZE + length


def decode(stream: bytes) -> bytes:
    """Decode a pbzx stream into its raw content (typically cpio)."""
    codec = Codec(CODEC_XZ)
    out = bytearray()
    view = memoryview(stream)
    for chunk in iter_chunks(stream):
        payload = view[chunk.payload_offset : chunk.payload_offset + chunk.length]
        if chunk.compressed:
            out += codec.decompress(bytes(payload))
        else:
            # Any flag word other than CHUNK_FLAG_XZ is stored data
            out += payload
    return bytes(out)


def encode(data: bytes, chunk_size: int, *, preset: Optional[int] = None) -> bytes:
    """Encode ``data`` as a pbzx stream, splitting it into ``chunk_size`` slices."""
    if chunk_size <= 0:
        raise InvalidChunkSize("Chunk size must be greater than 0")
    codec = Codec(CODEC_XZ, level=preset)
    out = bytearray(_STREAM_HDR_STRUCT.pack(PBZX_MAGIC, chunk_size))
    view = memoryview(data)
    for pos in range(0, len(data), chunk_size):
        raw = bytes(view[pos : pos + chunk_size])
        enc = codec.compress(raw)
        if len(enc) < len(raw):
            out += _CHUNK_HDR_STRUCT.pack(CHUNK_FLAG_XZ, len(enc))
            out += enc
        else:
            out += _CHUNK_HDR_STRUCT.pack(CHUNK_FLAG_RAW, len(raw))
            out += raw
    return bytes(out)


def compress(data: bytes, *, preset: Optional[int] = None) -> bytes:
    return encode(data, DEFAULT_CHUNK_SIZE, preset=preset)


decompress = decode
