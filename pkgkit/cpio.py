"""cpio archives as found inside installer payloads.

Writing always produces the POSIX "odc" variant (magic ``070707``), which is
what Apple's ``mkbom``/``pkgbuild`` tooling emits. Reading also accepts the
SVR4 "newc" variants (``070701`` and ``070702``).

odc header (76 bytes, octal ASCII):
    magic[6] dev[6] ino[6] mode[6] uid[6] gid[6] nlink[6] rdev[6]
    mtime[11] namesize[6] filesize[11]
followed by the NUL-terminated name and the body, without padding.
"""

from __future__ import annotations

import stat
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .constants import (
    CPIO_MAGIC_ODC,
    CPIO_MAGIC_NEWC,
    CPIO_MAGIC_NEWC_CRC,
    CPIO_TRAILER,
    CPIO_ODC_HEADER_SIZE,
    CPIO_NEWC_HEADER_SIZE,
    KIND_FILE,
    KIND_DIR,
    KIND_SYMLINK,
)
from .errors import ContainerError


# (field name, width) in header order after the magic
_ODC_FIELDS = (
    ("dev", 6),
    ("ino", 6),
    ("mode", 6),
    ("uid", 6),
    ("gid", 6),
    ("nlink", 6),
    ("rdev", 6),
    ("mtime", 11),
    ("namesize", 6),
    ("filesize", 11),
)
_NEWC_FIELDS = (
    "ino",
    "mode",
    "uid",
    "gid",
    "nlink",
    "mtime",
    "filesize",
    "devmajor",
    "devminor",
    "rdevmajor",
    "rdevminor",
    "namesize",
    "check",
)

_MAX_ODC_INO = 0o777777

# int() also takes signs, spaces and underscores; header fields are bare digits
_DIGITS = {8: frozenset(b"01234567"), 16: frozenset(b"0123456789abcdefABCDEF")}

_KIND_TO_IFMT = {
    KIND_FILE: stat.S_IFREG,
    KIND_DIR: stat.S_IFDIR,
    KIND_SYMLINK: stat.S_IFLNK,
}


@dataclass
class CpioEntry:
    path: str
    kind: int = KIND_FILE  # 0=file, 1=dir, 2=symlink, -1=other (device, fifo, ...)
    size: int = 0
    mode: int = 0o644  # permission bits only
    mtime: int = 0
    uid: int = 0
    gid: int = 0
    ino: int = 0
    nlink: int = 1
    dev: int = 0
    rdev: int = 0
    symlink_target: Optional[str] = None

    @property
    def pathname(self) -> str:
        return self.path

    @property
    def is_file(self) -> bool:
        return self.kind == KIND_FILE

    @property
    def is_dir(self) -> bool:
        return self.kind == KIND_DIR

    @property
    def is_symlink(self) -> bool:
        return self.kind == KIND_SYMLINK


def _kind_from_mode(mode: int) -> int:
    fmt = stat.S_IFMT(mode)
    if fmt == stat.S_IFREG or fmt == 0:
        return KIND_FILE
    if fmt == stat.S_IFDIR:
        return KIND_DIR
    if fmt == stat.S_IFLNK:
        return KIND_SYMLINK
    return -1


def _octal(value: int, width: int, field: str) -> bytes:
    if value < 0 or value >= 8 ** width:
        raise ContainerError(f"cpio field {field}={value} does not fit in {width} octal digits")
    return b"%0*o" % (width, value)


def _pad4(n: int) -> int:
    return (4 - (n % 4)) % 4


class CpioWriter:
    """Writes odc cpio records to a binary stream."""

    def __init__(self, fh: BinaryIO):
        self.fh = fh
        self._next_ino = 1
        self._remaining = 0
        self._current: Optional[str] = None
        self._finished = False

    def _check_body_complete(self):
        if self._remaining:
            raise ContainerError(f"cpio entry {self._current!r} is missing {self._remaining} body bytes")

    def _write_record(self, *, name: str, mode: int, filesize: int, ino: int = 0, nlink: int = 1,
                      uid: int = 0, gid: int = 0, mtime: int = 0, dev: int = 0, rdev: int = 0) -> None:
        name_bytes = name.encode("utf-8") + b"\x00"
        values = {
            "dev": dev,
            "ino": ino,
            "mode": mode,
            "uid": uid,
            "gid": gid,
            "nlink": nlink,
            "rdev": rdev,
            "mtime": mtime,
            "namesize": len(name_bytes),
            "filesize": filesize,
        }
        hdr = bytearray(CPIO_MAGIC_ODC)
        for field, width in _ODC_FIELDS:
            hdr += _octal(values[field], width, field)
        self.fh.write(bytes(hdr))
        self.fh.write(name_bytes)

    def write_header(self, entry: CpioEntry) -> None:
        if self._finished:
            raise ContainerError("cpio archive already finished")
        self._check_body_complete()
        if entry.kind not in _KIND_TO_IFMT:
            raise ContainerError(f"unsupported cpio entry kind: {entry.kind}")
        if entry.kind == KIND_SYMLINK:
            if not entry.symlink_target:
                raise ContainerError(f"symlink {entry.path!r} has no target")
            size = len(entry.symlink_target.encode("utf-8"))
        elif entry.kind == KIND_DIR:
            size = 0
        else:
            size = entry.size
        ino = entry.ino
        if not ino:
            # odc inode field is 6 octal digits; wrap auto-assigned numbers
            ino = self._next_ino
            self._next_ino = self._next_ino % _MAX_ODC_INO + 1
        self._write_record(
            name=entry.path,
            mode=_KIND_TO_IFMT[entry.kind] | (entry.mode & 0o7777),
            filesize=size,
            ino=ino,
            nlink=entry.nlink or 1,
            uid=entry.uid,
            gid=entry.gid,
            mtime=entry.mtime,
            dev=entry.dev,
            rdev=entry.rdev,
        )
        self._current = entry.path
        self._remaining = size
        if entry.kind == KIND_SYMLINK:
            self.write_data(entry.symlink_target.encode("utf-8"))

    def write_data(self, data: bytes) -> int:
        if len(data) > self._remaining:
            raise ContainerError(
                f"cpio entry {self._current!r} body overflow: {len(data)} bytes written, {self._remaining} expected"
            )
        self.fh.write(data)
        self._remaining -= len(data)
        return len(data)

    def finish(self) -> None:
        if self._finished:
            return
        self._check_body_complete()
        self._write_record(name=CPIO_TRAILER, mode=0, filesize=0, nlink=1)
        self._finished = True


class CpioReader:
    """Sequential reader over an in-memory cpio archive.

    The reader owns a reference to ``data`` and only ever returns copies, so
    entries stay valid after the reader moves on or is discarded.
    """

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0
        self._body_start = 0
        self._body_end = 0
        self._body_pad = 0
        self._read_pos = 0
        self._done = False
        self.current: Optional[CpioEntry] = None

    def __iter__(self):
        while True:
            entry = self.next_entry()
            if entry is None:
                return
            yield entry

    def _take(self, n: int, what: str) -> bytes:
        if n < 0:
            raise ContainerError(f"cpio {what} length {n} is negative at offset {self._pos}")
        end = self._pos + n
        if end > len(self._data):
            raise ContainerError(f"cpio archive truncated in {what} at offset {self._pos}")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def _parse_fields(self, raw: bytes, widths, base: int, what: str) -> dict:
        out = {}
        off = 0
        for name, width in widths:
            txt = raw[off : off + width]
            if not txt or not set(txt) <= _DIGITS[base]:
                raise ContainerError(f"cpio {what} header has bad {name} field {txt!r}")
            out[name] = int(txt, base)
            off += width
        return out

    def next_entry(self) -> Optional[CpioEntry]:
        if self._done:
            return None
        if self.current is not None:
            self.skip_data()
            self._pos = self._body_end + self._body_pad
        self.current = None
        if self._pos >= len(self._data):
            self._done = True
            return None

        magic = self._take(6, "header")
        if magic == CPIO_MAGIC_ODC:
            raw = self._take(CPIO_ODC_HEADER_SIZE - 6, "header")
            f = self._parse_fields(raw, _ODC_FIELDS, 8, "odc")
            name = self._take(f["namesize"], "name")
            name_pad = 0
            body_pad = 0
            dev, rdev = f["dev"], f["rdev"]
        elif magic in (CPIO_MAGIC_NEWC, CPIO_MAGIC_NEWC_CRC):
            raw = self._take(CPIO_NEWC_HEADER_SIZE - 6, "header")
            f = self._parse_fields(raw, [(n, 8) for n in _NEWC_FIELDS], 16, "newc")
            name = self._take(f["namesize"], "name")
            name_pad = _pad4(CPIO_NEWC_HEADER_SIZE + f["namesize"])
            body_pad = _pad4(f["filesize"])
            dev = (f["devmajor"] << 8) | f["devminor"]
            rdev = (f["rdevmajor"] << 8) | f["rdevminor"]
        else:
            raise ContainerError(f"Not a cpio header: magic {magic!r} at offset {self._pos - 6}")

        path = name.rstrip(b"\x00").decode("utf-8", errors="surrogateescape")
        if path == CPIO_TRAILER:
            self._done = True
            return None
        self._pos = min(self._pos + name_pad, len(self._data))

        size = f["filesize"]
        self._body_start = self._pos
        self._body_end = self._pos + size
        self._body_pad = body_pad
        if self._body_end > len(self._data):
            raise ContainerError(f"cpio entry {path!r} body truncated")
        self._read_pos = self._body_start

        mode = f["mode"]
        kind = _kind_from_mode(mode)
        entry = CpioEntry(
            path=path,
            kind=kind,
            size=size,
            mode=stat.S_IMODE(mode),
            mtime=f["mtime"],
            uid=f["uid"],
            gid=f["gid"],
            ino=f["ino"],
            nlink=f["nlink"],
            dev=dev,
            rdev=rdev,
        )
        if kind == KIND_SYMLINK:
            target = self._data[self._body_start : self._body_end]
            entry.symlink_target = target.decode("utf-8", errors="surrogateescape")
        self.current = entry
        return entry

    def read_data(self, size: int = -1) -> bytes:
        if self.current is None:
            return b""
        left = self._body_end - self._read_pos
        n = left if size is None or size < 0 else min(size, left)
        out = self._data[self._read_pos : self._read_pos + n]
        self._read_pos += n
        return bytes(out)

    def read_data_to_vec(self) -> bytes:
        return self.read_data(-1)

    def skip_data(self) -> None:
        if self.current is not None:
            self._read_pos = self._body_end
