"""XAR archives, the outer container of an installer package.

Layout:

    header (28 bytes, big-endian)
        magic[4] "xar!", header_size u16, version u16,
        toc_compressed_len u64, toc_uncompressed_len u64, cksum_alg u32
    table of contents: zlib-compressed XML
    heap: TOC checksum, optional signature, then entry bodies

Entry offsets in the TOC are relative to the start of the heap. Directories
are ``<file>`` elements that nest their children.
"""

from __future__ import annotations

import base64
import bz2
import hashlib
import io
import lzma
import os
import struct
import time
import zlib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import BinaryIO, Dict, List, Optional, Sequence, Union

from . import signing
from .constants import (
    XAR_MAGIC,
    XAR_HEADER_SIZE,
    XAR_VERSION,
    XAR_CKSUM_NONE,
    XAR_CKSUM_SHA1,
    XAR_CKSUM_MD5,
    XAR_CKSUM_OTHER,
    XAR_CKSUM_NAMES,
    XAR_ENCODING_NONE,
    XAR_ENCODING_GZIP,
    XAR_ENCODING_BZIP2,
    XAR_ENCODING_XZ,
    XAR_ENCODING_LZMA,
    XMLDSIG_NS,
    KIND_FILE,
    KIND_DIR,
    KIND_SYMLINK,
    DEFAULT_FILE_MODE,
    DEFAULT_DIR_MODE,
)
from .errors import ChecksumMismatch, ContainerError, SignatureError
from .pathutil import split_path


_XAR_HDR_STRUCT = struct.Struct(">4sHHQQI")

_TYPE_TO_KIND = {
    "file": KIND_FILE,
    "directory": KIND_DIR,
    "symlink": KIND_SYMLINK,
}
_KIND_TO_TYPE = {v: k for k, v in _TYPE_TO_KIND.items()}

_TIME_FMT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass
class XarHeader:
    header_size: int
    version: int
    toc_compressed_len: int
    toc_uncompressed_len: int
    cksum_alg: int


@dataclass
class XarEntry:
    id: str
    path: str
    name: str
    kind: int
    size: int = 0
    length: int = 0
    offset: int = 0
    encoding: str = XAR_ENCODING_NONE
    mode: Optional[int] = None
    mtime: Optional[int] = None
    symlink_target: Optional[str] = None
    archived_checksum: Optional[tuple] = None  # (style, hexdigest)
    extracted_checksum: Optional[tuple] = None
    has_data: bool = False

    @property
    def pathname(self) -> str:
        return self.path


@dataclass
class XarSignature:
    style: str
    offset: int
    size: int
    certificates: List[bytes] = field(default_factory=list)


def _format_time(sec: int) -> str:
    return time.strftime(_TIME_FMT, time.gmtime(sec))


def _parse_time(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    for fmt in (_TIME_FMT, "%Y-%m-%dT%H:%M:%S"):
        try:
            dt = datetime.strptime(text.strip(), fmt)
        except ValueError:
            continue
        return int(dt.replace(tzinfo=timezone.utc).timestamp())
    return None


def _int_text(elem: Optional[ET.Element], default: int = 0) -> int:
    if elem is None or elem.text is None:
        return default
    try:
        value = int(elem.text.strip())
    except ValueError as exc:
        raise ContainerError(f"XAR TOC has a non-integer <{elem.tag}>: {elem.text!r}") from exc
    if value < 0:
        raise ContainerError(f"XAR TOC has a negative <{elem.tag}>: {value}")
    return value


def _checksum_tuple(elem: Optional[ET.Element]) -> Optional[tuple]:
    if elem is None or not elem.text:
        return None
    return (elem.get("style", "sha1").lower(), elem.text.strip().lower())


def _new_hash(style: str):
    try:
        return hashlib.new(style.lower())
    except ValueError as exc:
        raise ContainerError(f"unsupported XAR checksum algorithm: {style}") from exc


def parse_header(data: bytes) -> XarHeader:
    if len(data) < XAR_HEADER_SIZE:
        raise ContainerError("Data too small for XAR header")
    magic, header_size, version, toc_clen, toc_ulen, cksum_alg = _XAR_HDR_STRUCT.unpack_from(data, 0)
    if magic != XAR_MAGIC:
        raise ContainerError(f"Not a XAR file: magic {magic!r} (expected {XAR_MAGIC!r})")
    if header_size < XAR_HEADER_SIZE:
        raise ContainerError(f"XAR header size {header_size} is too small")
    return XarHeader(header_size, version, toc_clen, toc_ulen, cksum_alg)


class XarReader:
    """Reader for XAR archives held fully in memory.

    ``source`` may be a filesystem path, the archive bytes, or a binary file
    object positioned at the start of the archive.
    """

    def __init__(self, source: Union[str, os.PathLike, bytes, bytearray, BinaryIO]):
        if isinstance(source, (bytes, bytearray, memoryview)):
            self.data = bytes(source)
        elif isinstance(source, (str, os.PathLike)):
            with open(source, "rb") as fh:
                self.data = fh.read()
        else:
            if not hasattr(source, "read"):
                raise ContainerError("File-like object must have a read() method")
            self.data = source.read()
        self.header = parse_header(self.data)
        self.toc_compressed = self._slice(
            self.header.header_size, self.header.toc_compressed_len, "table of contents"
        )
        try:
            toc_xml = zlib.decompress(self.toc_compressed)
        except zlib.error as exc:
            raise ContainerError(f"XAR table of contents is not valid zlib data: {exc}") from exc
        try:
            self.root = ET.fromstring(toc_xml)
        except ET.ParseError as exc:
            raise ContainerError(f"XAR table of contents is not valid XML: {exc}") from exc
        toc = self.root.find("toc")
        if toc is None:
            raise ContainerError("XAR table of contents has no <toc> element")
        self.toc = toc
        self.heap_start = self.header.header_size + self.header.toc_compressed_len

        ck = toc.find("checksum")
        self.checksum_style: Optional[str] = None
        self.checksum_offset = 0
        self.checksum_size = 0
        if ck is not None:
            self.checksum_style = ck.get("style", XAR_CKSUM_NAMES.get(self.header.cksum_alg, "sha1")).lower()
            self.checksum_offset = _int_text(ck.find("offset"))
            self.checksum_size = _int_text(ck.find("size"))

        self.signature: Optional[XarSignature] = None
        sig = toc.find("signature")
        if sig is not None:
            certs = []
            for el in sig.iter():
                if el.tag.endswith("X509Certificate") and el.text:
                    try:
                        certs.append(base64.b64decode("".join(el.text.split())))
                    except ValueError as exc:
                        raise ContainerError("XAR signature certificate is not valid base64") from exc
            self.signature = XarSignature(
                style=sig.get("style", "RSA"),
                offset=_int_text(sig.find("offset")),
                size=_int_text(sig.find("size")),
                certificates=certs,
            )

        self._entries: List[XarEntry] = []
        self._walk(toc, "")
        self._cursor = 0
        self.current: Optional[XarEntry] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.current = None

    def _slice(self, start: int, length: int, what: str) -> bytes:
        if start < 0 or length < 0:
            raise ContainerError(f"XAR {what} has a negative offset or length")
        end = start + length
        if end > len(self.data):
            raise ContainerError(f"XAR data truncated: {what} extends past end of data")
        return self.data[start:end]

    def _walk(self, parent: ET.Element, prefix: str) -> None:
        for file_elem in parent.findall("file"):
            name_elem = file_elem.find("name")
            name = (name_elem.text or "") if name_elem is not None else ""
            path = f"{prefix}/{name}" if prefix else name
            type_elem = file_elem.find("type")
            type_text = (type_elem.text or "file").strip() if type_elem is not None else "file"
            mode_elem = file_elem.find("mode")
            mode = None
            if mode_elem is not None and mode_elem.text:
                try:
                    mode = int(mode_elem.text.strip(), 8)
                except ValueError:
                    mode = None
            entry = XarEntry(
                id=file_elem.get("id", ""),
                path=path,
                name=name,
                kind=_TYPE_TO_KIND.get(type_text, -1),
                mode=mode,
                mtime=_parse_time(file_elem.findtext("mtime")),
            )
            if entry.kind == KIND_SYMLINK:
                entry.symlink_target = file_elem.findtext("link")
            data_elem = file_elem.find("data")
            if data_elem is not None:
                enc = data_elem.find("encoding")
                entry.has_data = True
                entry.length = _int_text(data_elem.find("length"))
                entry.offset = _int_text(data_elem.find("offset"))
                entry.size = _int_text(data_elem.find("size"), entry.length)
                entry.encoding = enc.get("style", XAR_ENCODING_NONE) if enc is not None else XAR_ENCODING_NONE
                entry.archived_checksum = _checksum_tuple(data_elem.find("archived-checksum"))
                entry.extracted_checksum = _checksum_tuple(data_elem.find("extracted-checksum"))
            self._entries.append(entry)
            self._walk(file_elem, path)

    def entries(self) -> List[XarEntry]:
        return list(self._entries)

    def next_entry(self) -> Optional[XarEntry]:
        if self._cursor >= len(self._entries):
            self.current = None
            return None
        self.current = self._entries[self._cursor]
        self._cursor += 1
        return self.current

    def read_data_to_vec(self) -> bytes:
        if self.current is None:
            raise ContainerError("No current XAR entry")
        return self.read_entry(self.current)

    def read_entry(self, entry: XarEntry, *, verify: bool = False) -> bytes:
        if not entry.has_data:
            return b""
        raw = self._slice(self.heap_start + entry.offset, entry.length, f"entry {entry.path!r}")
        if verify and entry.archived_checksum:
            self._check_digest(entry.archived_checksum, raw, f"archived data of {entry.path!r}")
        out = _decode_body(entry.encoding, raw, entry.path)
        if verify and entry.extracted_checksum:
            self._check_digest(entry.extracted_checksum, out, f"extracted data of {entry.path!r}")
        return out

    def _check_digest(self, checksum: tuple, data: bytes, what: str) -> None:
        style, expected = checksum
        h = _new_hash(style)
        h.update(data)
        if h.hexdigest() != expected:
            raise ChecksumMismatch(f"{style} checksum mismatch for {what}")

    def verify(self) -> bool:
        """Check the stored TOC checksum against the compressed TOC.

        Archives without a TOC checksum verify trivially.
        """
        if self.checksum_style is None or self.header.cksum_alg == XAR_CKSUM_NONE:
            return True
        stored = self._slice(self.heap_start + self.checksum_offset, self.checksum_size, "TOC checksum")
        h = _new_hash(self.checksum_style)
        h.update(self.toc_compressed)
        if h.digest() != stored:
            raise ChecksumMismatch(f"XAR table of contents {self.checksum_style} checksum mismatch")
        return True

    def verify_signature(self, public_key=None) -> bool:
        if self.signature is None:
            raise SignatureError("XAR archive is not signed")
        if self.checksum_style is None:
            raise SignatureError("signed XAR archive has no TOC checksum")
        self.verify()
        if public_key is None:
            if not self.signature.certificates:
                raise SignatureError("no public key given and no certificate embedded in the signature")
            public_key = self.signature.certificates[0]
        key = signing.load_public_key(public_key)
        sig = self._slice(self.heap_start + self.signature.offset, self.signature.size, "signature")
        return signing.verify_digest(key, self.checksum_style, self.toc_compressed, sig)


def _decode_body(encoding: str, raw: bytes, path: str) -> bytes:
    try:
        if encoding in ("", XAR_ENCODING_NONE):
            return raw
        if encoding == XAR_ENCODING_GZIP:
            # xar's "gzip" bodies are zlib streams; accept gzip framing too
            return zlib.decompress(raw, 47)
        if encoding == XAR_ENCODING_BZIP2:
            return bz2.decompress(raw)
        if encoding in (XAR_ENCODING_XZ, XAR_ENCODING_LZMA):
            return lzma.decompress(raw)
    except (zlib.error, OSError, ValueError, lzma.LZMAError) as exc:
        raise ContainerError(f"cannot decode {encoding} body of {path!r}: {exc}") from exc
    raise ContainerError(f"unsupported XAR encoding {encoding!r} for {path!r}")


def _encode_body(encoding: str, data: bytes) -> bytes:
    if encoding == XAR_ENCODING_NONE:
        return data
    if encoding == XAR_ENCODING_GZIP:
        return zlib.compress(data, 6)
    if encoding == XAR_ENCODING_BZIP2:
        return bz2.compress(data)
    if encoding == XAR_ENCODING_XZ:
        return lzma.compress(data, format=lzma.FORMAT_XZ)
    raise ContainerError(f"unsupported XAR encoding {encoding!r}")


_ENCODING_ALIASES = {
    "none": XAR_ENCODING_NONE,
    "gzip": XAR_ENCODING_GZIP,
    "bzip2": XAR_ENCODING_BZIP2,
    "xz": XAR_ENCODING_XZ,
}


@dataclass
class _Node:
    name: str
    kind: int
    mode: int
    mtime: int
    data: bytes = b""
    children: Dict[str, "_Node"] = field(default_factory=dict)


class XarWriter:
    """Builds a XAR archive in memory and writes it out on ``finish()``."""

    def __init__(
        self,
        target: Union[str, os.PathLike, BinaryIO, None] = None,
        *,
        checksum: str = "sha1",
        encoding: str = "none",
        signing_key=None,
        certificates: Sequence[bytes] = (),
    ):
        self.target = target
        self.checksum = checksum.lower()
        if self.checksum not in ("none", "sha1", "md5"):
            raise ContainerError(f"unsupported XAR checksum algorithm: {checksum}")
        self.encoding = _ENCODING_ALIASES.get(encoding, encoding)
        self.signing_key = signing.load_key(signing_key) if signing_key is not None else None
        if self.signing_key is not None and self.checksum == "none":
            raise ContainerError("signing requires a TOC checksum")
        self.certificates = list(certificates)
        self._root: Dict[str, _Node] = {}
        self._finished = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.finish()

    def _parent(self, parts: List[str], mtime: int) -> Dict[str, _Node]:
        level = self._root
        for part in parts:
            node = level.get(part)
            if node is None:
                node = _Node(name=part, kind=KIND_DIR, mode=DEFAULT_DIR_MODE, mtime=mtime)
                level[part] = node
            elif node.kind != KIND_DIR:
                raise ContainerError(f"XAR path component {part!r} is not a directory")
            level = node.children
        return level

    def _add(self, path: str, kind: int, mode: int, mtime: Optional[int], data: bytes = b"") -> None:
        if self._finished:
            raise ContainerError("XAR archive already finished")
        try:
            parts = split_path(path)
        except ValueError as exc:
            raise ContainerError(str(exc)) from exc
        if not parts:
            raise ContainerError(f"invalid XAR entry path: {path!r}")
        when = int(time.time()) if mtime is None else int(mtime)
        level = self._parent(parts[:-1], when)
        existing = level.get(parts[-1])
        if existing is not None:
            if kind == KIND_DIR and existing.kind == KIND_DIR:
                existing.mode, existing.mtime = mode, when
                return
            raise ContainerError(f"duplicate XAR entry: {path!r}")
        level[parts[-1]] = _Node(name=parts[-1], kind=kind, mode=mode, mtime=when, data=data)

    def add_file(self, path: str, data: bytes, *, mode: int = DEFAULT_FILE_MODE, mtime: Optional[int] = None) -> None:
        self._add(path, KIND_FILE, mode, mtime, bytes(data))

    def add_directory(self, path: str, *, mode: int = DEFAULT_DIR_MODE, mtime: Optional[int] = None) -> None:
        self._add(path, KIND_DIR, mode, mtime)

    def _build_toc(self, heap: io.BytesIO) -> ET.Element:
        root = ET.Element("xar")
        toc = ET.SubElement(root, "toc")
        ET.SubElement(toc, "creation-time").text = _format_time(int(time.time()))
        if self.checksum != "none":
            digest_size = hashlib.new(self.checksum).digest_size
            ck = ET.SubElement(toc, "checksum", style=self.checksum)
            ET.SubElement(ck, "offset").text = "0"
            ET.SubElement(ck, "size").text = str(digest_size)
            heap.write(b"\x00" * digest_size)
        if self.signing_key is not None:
            sig_size = signing.signature_size(self.signing_key)
            sig = ET.SubElement(toc, "signature", style="RSA")
            ET.SubElement(sig, "offset").text = str(heap.tell())
            ET.SubElement(sig, "size").text = str(sig_size)
            key_info = ET.SubElement(sig, "KeyInfo", xmlns=XMLDSIG_NS)
            x509 = ET.SubElement(key_info, "X509Data")
            for cert in self.certificates:
                ET.SubElement(x509, "X509Certificate").text = base64.b64encode(cert).decode("ascii")
            heap.write(b"\x00" * sig_size)

        next_id = [1]

        def emit(parent: ET.Element, nodes: Dict[str, _Node]) -> None:
            for node in nodes.values():
                fe = ET.SubElement(parent, "file", id=str(next_id[0]))
                next_id[0] += 1
                if node.kind == KIND_FILE:
                    archived = _encode_body(self.encoding, node.data)
                    de = ET.SubElement(fe, "data")
                    ET.SubElement(de, "length").text = str(len(archived))
                    ET.SubElement(de, "offset").text = str(heap.tell())
                    ET.SubElement(de, "size").text = str(len(node.data))
                    ET.SubElement(de, "encoding", style=self.encoding)
                    if self.checksum != "none":
                        ET.SubElement(de, "archived-checksum", style=self.checksum).text = (
                            hashlib.new(self.checksum, archived).hexdigest()
                        )
                        ET.SubElement(de, "extracted-checksum", style=self.checksum).text = (
                            hashlib.new(self.checksum, node.data).hexdigest()
                        )
                    heap.write(archived)
                ET.SubElement(fe, "name").text = node.name
                ET.SubElement(fe, "type").text = _KIND_TO_TYPE[node.kind]
                ET.SubElement(fe, "mode").text = "%04o" % (node.mode & 0o7777)
                ET.SubElement(fe, "mtime").text = _format_time(node.mtime)
                if node.kind == KIND_DIR:
                    emit(fe, node.children)

        emit(toc, self._root)
        return root

    def to_bytes(self) -> bytes:
        heap = io.BytesIO()
        root = self._build_toc(heap)
        toc_xml = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        toc_compressed = zlib.compress(toc_xml, 9)
        heap_bytes = bytearray(heap.getvalue())
        if self.checksum == "none":
            cksum_alg = XAR_CKSUM_NONE
        else:
            cksum_alg = {"sha1": XAR_CKSUM_SHA1, "md5": XAR_CKSUM_MD5}.get(self.checksum, XAR_CKSUM_OTHER)
            digest = hashlib.new(self.checksum, toc_compressed).digest()
            heap_bytes[0 : len(digest)] = digest
            if self.signing_key is not None:
                sig = signing.sign_digest(self.signing_key, self.checksum, toc_compressed)
                heap_bytes[len(digest) : len(digest) + len(sig)] = sig
        header = _XAR_HDR_STRUCT.pack(
            XAR_MAGIC, XAR_HEADER_SIZE, XAR_VERSION, len(toc_compressed), len(toc_xml), cksum_alg
        )
        return header + toc_compressed + bytes(heap_bytes)

    def finish(self) -> Optional[bytes]:
        """Serialize the archive to ``target``; with no target, return the bytes."""
        if self._finished:
            raise ContainerError("XAR archive already finished")
        blob = self.to_bytes()
        self._finished = True
        if self.target is None:
            return blob
        if isinstance(self.target, (str, os.PathLike)):
            with open(self.target, "wb") as fh:
                fh.write(blob)
        else:
            self.target.write(blob)
        return blob
