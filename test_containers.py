from __future__ import annotations

import io
import re
import struct
import unittest
import zlib

from Cryptodome.PublicKey import RSA

from pkgkit.constants import KIND_DIR, KIND_FILE, KIND_SYMLINK, XAR_ENCODING_GZIP
from pkgkit.cpio import CpioEntry, CpioReader, CpioWriter
from pkgkit.errors import ChecksumMismatch, ContainerError, SignatureError
from pkgkit.xar import XarReader, XarWriter, parse_header


def _newc_record(name: str, mode: int, data: bytes, ino: int = 1) -> bytes:
    nb = name.encode("utf-8") + b"\x00"
    fields = [ino, mode, 0, 0, 1, 0, len(data), 0, 0, 0, 0, len(nb), 0]
    rec = b"070701" + b"".join(b"%08X" % v for v in fields) + nb
    rec += b"\x00" * ((4 - len(rec) % 4) % 4)
    rec += data + b"\x00" * ((4 - len(data) % 4) % 4)
    return rec


def _odc(entries) -> bytes:
    buf = io.BytesIO()
    w = CpioWriter(buf)
    for entry, body in entries:
        w.write_header(entry)
        if body:
            w.write_data(body)
    w.finish()
    return buf.getvalue()


class CpioTests(unittest.TestCase):
    def test_odc_roundtrip(self):
        data = _odc(
            [
                (CpioEntry(path="bin/tool", size=6, mode=0o755, mtime=1_700_000_000), b"binary"),
                (CpioEntry(path="share", kind=KIND_DIR, mode=0o750), None),
                (CpioEntry(path="bin/link", kind=KIND_SYMLINK, mode=0o777, symlink_target="tool"), None),
            ]
        )
        self.assertTrue(data.startswith(b"070707"))
        r = CpioReader(data)
        e = r.next_entry()
        self.assertEqual((e.path, e.kind, e.size, e.mode, e.mtime), ("bin/tool", KIND_FILE, 6, 0o755, 1_700_000_000))
        self.assertEqual(r.read_data_to_vec(), b"binary")
        e = r.next_entry()
        self.assertEqual((e.path, e.kind, e.mode), ("share", KIND_DIR, 0o750))
        e = r.next_entry()
        self.assertTrue(e.is_symlink)
        self.assertEqual(e.symlink_target, "tool")
        self.assertIsNone(r.next_entry())
        self.assertIsNone(r.next_entry())

    def test_partial_reads_and_skip(self):
        data = _odc(
            [
                (CpioEntry(path="a", size=10), b"0123456789"),
                (CpioEntry(path="b", size=3), b"xyz"),
                (CpioEntry(path="c", size=2), b"ok"),
            ]
        )
        r = CpioReader(data)
        r.next_entry()
        self.assertEqual(r.read_data(4), b"0123")
        self.assertEqual(r.read_data(4), b"4567")
        # unread tail of "a" is skipped automatically
        self.assertEqual(r.next_entry().path, "b")
        r.skip_data()
        self.assertEqual(r.read_data(), b"")
        self.assertEqual(r.next_entry().path, "c")
        self.assertEqual(r.read_data(100), b"ok")
        self.assertEqual(r.read_data(100), b"")

    def test_inode_numbers_are_unique(self):
        data = _odc([(CpioEntry(path=f"f{i}", size=0), None) for i in range(5)])
        inos = [e.ino for e in CpioReader(data)]
        self.assertEqual(len(set(inos)), 5)

    def test_empty_input(self):
        self.assertIsNone(CpioReader(b"").next_entry())

    def test_newc_reading(self):
        data = (
            _newc_record("hello.txt", 0o100644, b"hi there", ino=1)
            + _newc_record("dir", 0o040755, b"", ino=2)
            + _newc_record("lnk", 0o120777, b"hello.txt", ino=3)
            + _newc_record("TRAILER!!!", 0, b"", ino=0)
        )
        entries = []
        r = CpioReader(data)
        while True:
            e = r.next_entry()
            if e is None:
                break
            entries.append((e.path, e.kind, e.mode, r.read_data_to_vec()))
        self.assertEqual(
            entries,
            [
                ("hello.txt", KIND_FILE, 0o644, b"hi there"),
                ("dir", KIND_DIR, 0o755, b""),
                ("lnk", KIND_SYMLINK, 0o777, b"hello.txt"),
            ],
        )

    def test_bad_magic(self):
        with self.assertRaises(ContainerError):
            CpioReader(b"garbage header that is not cpio at all" * 3).next_entry()

    def test_truncated_body(self):
        data = _odc([(CpioEntry(path="a", size=10), b"0123456789")])
        with self.assertRaises(ContainerError):
            CpioReader(data[:80]).next_entry()

    def test_body_overflow_and_short_body(self):
        w = CpioWriter(io.BytesIO())
        w.write_header(CpioEntry(path="a", size=2))
        with self.assertRaises(ContainerError):
            w.write_data(b"too long")
        w2 = CpioWriter(io.BytesIO())
        w2.write_header(CpioEntry(path="a", size=2))
        w2.write_data(b"x")
        with self.assertRaises(ContainerError):
            w2.finish()

    def test_value_out_of_range(self):
        w = CpioWriter(io.BytesIO())
        with self.assertRaises(ContainerError):
            w.write_header(CpioEntry(path="a", size=0, uid=8 ** 6))

    def test_signed_namesize_rejected(self):
        # -00114 octal is -76: would rewind onto the same header
        header = b"070707" + b"000000" * 7 + b"00000000000" + b"-00114" + b"00000000000"
        self.assertEqual(len(header), 76)
        with self.assertRaises(ContainerError):
            CpioReader(header).next_entry()
        with self.assertRaises(ContainerError):
            list(CpioReader(header + header))

    def test_non_digit_fields_rejected(self):
        good = _odc([(CpioEntry(path="a", size=1), b"x")])
        # filesize is the last 11 bytes of the 76-byte header
        for bad in (b"-0000000001", b" 0000000001", b"0_000000001", b"00000000009"):
            with self.assertRaises(ContainerError):
                CpioReader(good[:65] + bad + good[76:]).next_entry()
        rec = _newc_record("a", 0o100644, b"")
        for bad in (b"-0000001", b" 000000A", b"+0000010"):
            # newc filesize field sits at 54..62
            with self.assertRaises(ContainerError):
                CpioReader(rec[:54] + bad + rec[62:]).next_entry()


class XarTests(unittest.TestCase):
    def test_nested_paths_and_gzip_encoding(self):
        w = XarWriter(None, encoding="gzip")
        w.add_file("a/b/c.txt", b"nested content " * 20, mtime=1_600_000_000)
        w.add_file("top.bin", b"\x00\x01\x02")
        blob = w.finish()
        x = XarReader(blob)
        self.assertTrue(x.verify())
        entries = x.entries()
        self.assertEqual([e.path for e in entries], ["a", "a/b", "a/b/c.txt", "top.bin"])
        self.assertEqual([e.kind for e in entries], [KIND_DIR, KIND_DIR, KIND_FILE, KIND_FILE])
        c = entries[2]
        self.assertEqual(c.encoding, XAR_ENCODING_GZIP)
        self.assertEqual(c.mtime, 1_600_000_000)
        self.assertEqual(c.mode, 0o644)
        self.assertEqual(x.read_entry(c, verify=True), b"nested content " * 20)
        self.assertEqual(x.read_entry(entries[3]), b"\x00\x01\x02")

    def test_sequential_interface(self):
        w = XarWriter(None)
        w.add_file("one", b"1")
        w.add_file("two", b"22")
        x = XarReader(w.finish())
        seen = []
        while True:
            e = x.next_entry()
            if e is None:
                break
            seen.append((e.path, x.read_data_to_vec()))
        self.assertEqual(seen, [("one", b"1"), ("two", b"22")])

    def test_toc_checksum_mismatch(self):
        w = XarWriter(None)
        w.add_file("Payload", b"payload bytes")
        blob = bytearray(w.finish())
        x = XarReader(bytes(blob))
        blob[x.heap_start] ^= 0xFF
        with self.assertRaises(ChecksumMismatch):
            XarReader(bytes(blob)).verify()

    def test_entry_checksum_mismatch(self):
        w = XarWriter(None)
        w.add_file("Payload", b"payload bytes")
        blob = bytearray(w.finish())
        x = XarReader(bytes(blob))
        entry = x.entries()[0]
        blob[x.heap_start + entry.offset] ^= 0xFF
        x2 = XarReader(bytes(blob))
        with self.assertRaises(ChecksumMismatch):
            x2.read_entry(x2.entries()[0], verify=True)

    def test_no_checksum(self):
        w = XarWriter(None, checksum="none")
        w.add_file("f", b"data")
        x = XarReader(w.finish())
        self.assertIsNone(x.checksum_style)
        self.assertTrue(x.verify())
        self.assertEqual(x.read_entry(x.entries()[0], verify=True), b"data")

    def test_not_xar(self):
        with self.assertRaises(ContainerError):
            XarReader(b"short")
        with self.assertRaises(ContainerError):
            XarReader(b"zip!" + b"\x00" * 40)

    def test_truncated_toc(self):
        w = XarWriter(None)
        w.add_file("f", b"data")
        blob = w.finish()
        with self.assertRaises(ContainerError):
            XarReader(blob[:40])

    def test_negative_toc_offset(self):
        w = XarWriter(None, checksum="none")
        w.add_file("f", b"data")
        blob = w.finish()
        hdr = parse_header(blob)
        toc_end = hdr.header_size + hdr.toc_compressed_len
        toc = zlib.decompress(blob[hdr.header_size:toc_end])
        bad_toc = re.sub(rb"<offset>\d+</offset>", b"<offset>-20</offset>", toc)
        self.assertNotEqual(bad_toc, toc)
        packed = zlib.compress(bad_toc)
        head = struct.pack(">4sHHQQI", b"xar!", hdr.header_size, hdr.version, len(packed), len(bad_toc), hdr.cksum_alg)
        tampered = head + blob[len(head):hdr.header_size] + packed + blob[toc_end:]
        with self.assertRaises(ContainerError):
            XarReader(tampered)

    def test_duplicate_and_escaping_paths(self):
        w = XarWriter(None)
        w.add_file("f", b"1")
        with self.assertRaises(ContainerError):
            w.add_file("f", b"2")
        with self.assertRaises(ContainerError):
            w.add_file("../evil", b"x")


class XarSignatureTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.key = RSA.generate(2048)

    def _signed(self) -> bytes:
        w = XarWriter(None, signing_key=self.key)
        w.add_file("Payload", b"signed payload")
        return w.finish()

    def test_sign_and_verify(self):
        x = XarReader(self._signed())
        self.assertIsNotNone(x.signature)
        self.assertEqual(x.signature.style, "RSA")
        self.assertEqual(x.signature.size, 256)
        self.assertTrue(x.verify_signature(self.key.public_key().export_key(format="DER")))
        self.assertEqual(x.read_entry(x.entries()[0], verify=True), b"signed payload")

    def test_wrong_key(self):
        other = RSA.generate(2048)
        x = XarReader(self._signed())
        with self.assertRaises(SignatureError):
            x.verify_signature(other.public_key())

    def test_tampered_signature(self):
        blob = bytearray(self._signed())
        x = XarReader(bytes(blob))
        blob[x.heap_start + x.signature.offset] ^= 0x01
        with self.assertRaises(SignatureError):
            XarReader(bytes(blob)).verify_signature(self.key.public_key())

    def test_unsigned_and_certless(self):
        w = XarWriter(None)
        w.add_file("Payload", b"x")
        with self.assertRaises(SignatureError):
            XarReader(w.finish()).verify_signature(self.key.public_key())
        with self.assertRaises(SignatureError):
            XarReader(self._signed()).verify_signature()


if __name__ == "__main__":
    unittest.main()
