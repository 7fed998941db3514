"""Installer package (.pkg) reading and writing.

A ``.pkg`` is a XAR archive holding a ``Payload`` entry. The payload is a
pbzx chunk stream which decodes to a cpio archive with the installed files.
``PkgReader`` undoes that chain and iterates the cpio entries;
``PkgWriter`` collects entries and produces the chain.

Reading::

    with PkgReader.open("installer.pkg") as pkg:
        for entry in pkg:
            print(entry.path, entry.size)

Writing::

    pkg = PkgWriter()
    pkg.add_file("usr/local/bin/hello", b"#!/bin/sh\\necho hello\\n")
    pkg.add_directory("usr/local/share/myapp")
    pkg.write("output.pkg")
"""

from __future__ import annotations

import io
import os
import time
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Sequence, Union

from . import pbzx
from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DIR_MODE,
    DEFAULT_FILE_MODE,
    DEFAULT_SYMLINK_MODE,
    KIND_DIR,
    KIND_FILE,
    KIND_SYMLINK,
    PAYLOAD_NAME,
)
from .cpio import CpioEntry, CpioReader, CpioWriter
from .errors import InvalidChunkSize, MissingPayload, PkgError
from .xar import XarReader, XarWriter


# Reader states
STATE_CLOSED = "closed"
STATE_LOCATING = "locating"
STATE_STREAMING = "streaming"


def _is_payload_name(name: str) -> bool:
    return name == PAYLOAD_NAME or name.endswith("/" + PAYLOAD_NAME)


def extract_payload(source: Union[str, os.PathLike, bytes, BinaryIO]) -> bytes:
    """Return the raw bytes of the first ``Payload`` entry of a XAR archive."""
    with XarReader(source) as xar:
        while True:
            entry = xar.next_entry()
            if entry is None:
                break
            if _is_payload_name(entry.path):
                return xar.read_data_to_vec()
    raise MissingPayload("No Payload entry found in .pkg file")


class PkgReader:
    """Iterates the files of an installer package.

    The reader owns the decoded cpio buffer; entries and data it returns are
    copies, so nothing handed out depends on the reader staying alive.
    """

    def __init__(self):
        self.state = STATE_CLOSED
        self.payload_size = 0
        self.cpio_size = 0
        self._cpio: Optional[bytes] = None
        self._inner: Optional[CpioReader] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __iter__(self):
        while True:
            entry = self.next_entry()
            if entry is None:
                return
            yield entry

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> "PkgReader":
        """Open a ``.pkg`` file: XAR -> Payload -> pbzx -> cpio."""
        reader = cls()
        reader.state = STATE_LOCATING
        try:
            payload = extract_payload(path)
            reader._start_pbzx(payload)
        except (PkgError, OSError):
            reader.close()
            raise
        return reader

    @classmethod
    def from_xar_bytes(cls, data: bytes) -> "PkgReader":
        """Open a package already held in memory (e.g. ``PkgWriter.write_to_vec()``)."""
        reader = cls()
        reader.state = STATE_LOCATING
        try:
            reader._start_pbzx(extract_payload(bytes(data)))
        except (PkgError, OSError):
            reader.close()
            raise
        return reader

    @classmethod
    def from_pbzx(cls, data: bytes) -> "PkgReader":
        """Start from Payload bytes that were extracted from the XAR elsewhere."""
        reader = cls()
        reader.state = STATE_LOCATING
        try:
            reader._start_pbzx(data)
        except (PkgError, OSError):
            reader.close()
            raise
        return reader

    @classmethod
    def from_cpio(cls, data: bytes) -> "PkgReader":
        """Start from an already decoded cpio archive."""
        reader = cls()
        reader._start_cpio(bytes(data))
        return reader

    def _start_pbzx(self, payload: bytes) -> None:
        self.payload_size = len(payload)
        self._start_cpio(pbzx.decode(payload))

    def _start_cpio(self, cpio_data: bytes) -> None:
        self._cpio = cpio_data
        self.cpio_size = len(cpio_data)
        self._inner = CpioReader(self._cpio)
        self.state = STATE_STREAMING

    def _reader(self) -> CpioReader:
        if self.state != STATE_STREAMING or self._inner is None:
            raise PkgError(f"package reader is {self.state}")
        return self._inner

    def next_entry(self) -> Optional[CpioEntry]:
        return self._reader().next_entry()

    def read_data(self, size: int = -1) -> bytes:
        return self._reader().read_data(size)

    def read_data_to_vec(self) -> bytes:
        return self._reader().read_data_to_vec()

    def skip_data(self) -> None:
        self._reader().skip_data()

    def close(self) -> None:
        self._inner = None
        self._cpio = None
        self.state = STATE_CLOSED


@dataclass
class PackageEntry:
    path: str
    kind: int  # 0=file, 1=dir, 2=symlink
    data: bytes = b""
    mode: int = DEFAULT_FILE_MODE
    mtime: int = 0
    symlink_target: Optional[str] = None

    def to_cpio(self) -> CpioEntry:
        return CpioEntry(
            path=self.path,
            kind=self.kind,
            size=len(self.data),
            mode=self.mode,
            mtime=self.mtime,
            symlink_target=self.symlink_target,
        )


class PkgWriter:
    """Collects files, directories and symlinks and writes a ``.pkg``.

    Entries are written in the order they were added.
    """

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        preset: Optional[int] = None,
        mtime: Optional[int] = None,
        checksum: str = "sha1",
        signing_key=None,
        certificates: Sequence[bytes] = (),
    ):
        if chunk_size <= 0:
            raise InvalidChunkSize("Chunk size must be greater than 0")
        self.chunk_size = chunk_size
        self.preset = preset
        self.mtime = mtime
        self.checksum = checksum
        self.signing_key = signing_key
        self.certificates = list(certificates)
        self.entries: List[PackageEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def _now(self) -> int:
        return int(time.time()) if self.mtime is None else int(self.mtime)

    def add_file(self, path: str, data: bytes) -> None:
        self.add_file_with_perm(path, data, DEFAULT_FILE_MODE)

    def add_file_with_perm(self, path: str, data: bytes, perm: int) -> None:
        self.entries.append(
            PackageEntry(path=str(path), kind=KIND_FILE, data=bytes(data), mode=perm, mtime=self._now())
        )

    def add_directory(self, path: str, perm: int = DEFAULT_DIR_MODE) -> None:
        self.entries.append(PackageEntry(path=str(path), kind=KIND_DIR, mode=perm, mtime=self._now()))

    def add_symlink(self, path: str, target: str) -> None:
        if not target:
            raise PkgError(f"symlink {path!r} needs a target")
        self.entries.append(
            PackageEntry(
                path=str(path),
                kind=KIND_SYMLINK,
                mode=DEFAULT_SYMLINK_MODE,
                mtime=self._now(),
                symlink_target=target,
            )
        )

    def build_cpio(self) -> bytes:
        buf = io.BytesIO()
        archive = CpioWriter(buf)
        for entry in self.entries:
            archive.write_header(entry.to_cpio())
            if entry.kind == KIND_FILE and entry.data:
                archive.write_data(entry.data)
        archive.finish()
        return buf.getvalue()

    def build_payload(self) -> bytes:
        return pbzx.encode(self.build_cpio(), self.chunk_size, preset=self.preset)

    def _xar(self, target) -> XarWriter:
        return XarWriter(
            target,
            checksum=self.checksum,
            signing_key=self.signing_key,
            certificates=self.certificates,
        )

    def write(self, path: Union[str, os.PathLike]) -> None:
        """Write the package to ``path`` (cpio -> pbzx -> XAR)."""
        payload = self.build_payload()
        xar = self._xar(path)
        xar.add_file(PAYLOAD_NAME, payload, mode=DEFAULT_FILE_MODE, mtime=self._now())
        xar.finish()

    def write_to_vec(self) -> bytes:
        """Build the package in memory and return the XAR bytes."""
        payload = self.build_payload()
        xar = self._xar(None)
        xar.add_file(PAYLOAD_NAME, payload, mode=DEFAULT_FILE_MODE, mtime=self._now())
        return xar.finish()
