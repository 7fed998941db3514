from __future__ import annotations

import argparse
import os
import stat
import sys
import time
from typing import Iterable, List, Optional, Tuple

from pkgkit import pbzx
from pkgkit.constants import DEFAULT_CHUNK_SIZE, KIND_DIR, KIND_FILE, KIND_SYMLINK, PAYLOAD_NAME
from pkgkit.errors import ChecksumMismatch, PkgError, SignatureError
from pkgkit.pathutil import is_within, norm_path, safe_join
from pkgkit.pkg import PkgReader, PkgWriter, extract_payload
from pkgkit.xar import XarReader


_KIND_NAMES = {KIND_FILE: "file", KIND_DIR: "dir", KIND_SYMLINK: "symlink"}


def _safe_chmod(path: str, mode: Optional[int]) -> None:
    """Best-effort chmod that never raises."""
    if mode is None:
        return
    try:
        os.chmod(path, mode)
    except OSError as exc:
        print(f"Warning: failed to set mode on {path}: {exc}", file=sys.stderr)


def _safe_utime(path: str, mtime: Optional[int]) -> None:
    """Best-effort utime that never raises."""
    if not mtime:
        return
    try:
        os.utime(path, (mtime, mtime), follow_symlinks=False)
    except (OSError, NotImplementedError) as exc:
        print(f"Warning: failed to set timestamps on {path}: {exc}", file=sys.stderr)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(data)


def _walk_inputs(inputs: Iterable[str]) -> List[Tuple[str, str, str]]:
    """Expand input files/directories into (kind, archive path, fs path) in walk order.

    A directory input is stored under its own base name, like ``tar`` does.
    """
    items: List[Tuple[str, str, str]] = []
    for inp in inputs:
        inp = os.path.normpath(inp)
        base = os.path.basename(inp)
        if os.path.islink(inp):
            items.append(("symlink", base, inp))
            continue
        if not os.path.isdir(inp):
            items.append(("file", base, inp))
            continue
        items.append(("dir", base, inp))
        for root, dirs, files in os.walk(inp):
            dirs.sort()
            rel_root = os.path.relpath(root, inp)
            prefix = base if rel_root == "." else f"{base}/{rel_root.replace(os.sep, '/')}"
            for d in list(dirs):
                full = os.path.join(root, d)
                if os.path.islink(full):
                    items.append(("symlink", f"{prefix}/{d}", full))
                    dirs.remove(d)
                else:
                    items.append(("dir", f"{prefix}/{d}", full))
            for fn in sorted(files):
                full = os.path.join(root, fn)
                kind = "symlink" if os.path.islink(full) else "file"
                items.append((kind, f"{prefix}/{fn}", full))
    return items


def cmd_create(output: str, inputs: List[str], *, chunk_size: int = DEFAULT_CHUNK_SIZE,
               preset: Optional[int] = None, sign_key: Optional[str] = None,
               certs: Optional[List[str]] = None, quiet: bool = False) -> bool:
    """Build a package from files and directories on disk."""
    t0 = time.time()
    key = _read_file(sign_key) if sign_key else None
    writer = PkgWriter(
        chunk_size=chunk_size,
        preset=preset,
        signing_key=key,
        certificates=[_read_file(c) for c in (certs or [])],
    )
    n_files = n_dirs = n_links = 0
    total = 0
    for kind, arc, full in _walk_inputs(inputs):
        st = os.lstat(full)
        if kind == "dir":
            writer.add_directory(arc, stat.S_IMODE(st.st_mode))
            n_dirs += 1
        elif kind == "symlink":
            writer.add_symlink(arc, os.readlink(full))
            n_links += 1
        else:
            data = _read_file(full)
            writer.add_file_with_perm(arc, data, stat.S_IMODE(st.st_mode))
            total += len(data)
            n_files += 1
        if not quiet:
            print(f"  adding: {arc}")
    writer.write(output)
    dt = max(0.000001, time.time() - t0)
    mib = total / (1024.0 * 1024.0)
    print(f"Done: {n_files} files, {n_dirs} dirs, {n_links} links; {mib:.2f} MiB in {dt:.1f}s")
    return True


def cmd_list(package: str) -> bool:
    """List package entries as kind, size and path."""
    with PkgReader.open(package) as r:
        for e in r:
            k = _KIND_NAMES.get(e.kind, "other")
            if e.kind == KIND_FILE:
                print(f"{k}\t{e.size}\t{e.path}")
            elif e.kind == KIND_SYMLINK:
                print(f"{k}\t-> {e.symlink_target}\t{e.path}")
            else:
                print(f"{k}\t{e.path}")
    return True


def cmd_extract(package: str, *, outdir: str = ".", quiet: bool = False) -> bool:
    """Extract the package tree below ``outdir``."""
    os.makedirs(outdir, exist_ok=True)
    dirs: List[Tuple[str, int, int]] = []
    n_files = 0
    with PkgReader.open(package) as r:
        for e in r:
            try:
                dst = safe_join(outdir, e.path)
            except ValueError as exc:
                print(f"Warning: skipping {e.path!r}: {exc}", file=sys.stderr)
                continue
            # earlier symlink entries may redirect a parent directory
            check = dst if e.kind == KIND_DIR else os.path.dirname(dst)
            if not is_within(outdir, check):
                print(f"Warning: skipping {e.path!r}: resolves outside {outdir}", file=sys.stderr)
                continue
            if e.kind == KIND_DIR:
                os.makedirs(dst, exist_ok=True)
                if not quiet:
                    print(f"   creating: {norm_path(e.path)}/")
                dirs.append((dst, e.mode, e.mtime))
                continue
            os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
            if e.kind == KIND_SYMLINK:
                if os.path.lexists(dst):
                    os.remove(dst)
                try:
                    os.symlink(e.symlink_target, dst)
                except (OSError, NotImplementedError) as exc:
                    print(f"Warning: cannot create symlink {dst}: {exc}", file=sys.stderr)
                    continue
                if not quiet:
                    print(f"  symlinking: {e.path} -> {e.symlink_target}")
                continue
            if e.kind != KIND_FILE:
                print(f"Warning: skipping special file {e.path!r}", file=sys.stderr)
                continue
            if os.path.islink(dst):
                os.remove(dst)
            _write_file(dst, r.read_data_to_vec())
            _safe_chmod(dst, e.mode)
            _safe_utime(dst, e.mtime)
            n_files += 1
            if not quiet:
                print(f" extracting: {e.path}")
    # Directory metadata last so file writes don't disturb it
    for dst, mode, mtime in reversed(dirs):
        _safe_chmod(dst, mode)
        _safe_utime(dst, mtime)
    print(f"Done: {n_files} files, {len(dirs)} dirs")
    return True


def cmd_info(package: str, *, key: Optional[str] = None) -> bool:
    """Show the outer entries, payload layers and signature state."""
    with XarReader(package) as x:
        print(f"Package: {package}")
        print(f"  XAR version: {x.header.version}")
        print(f"  TOC: {x.header.toc_compressed_len} bytes compressed, {x.header.toc_uncompressed_len} bytes")
        try:
            x.verify()
            ck_state = "OK"
        except ChecksumMismatch:
            ck_state = "MISMATCH"
        print(f"  TOC checksum: {x.checksum_style or 'none'} ({ck_state})")
        for e in x.entries():
            print(f"  {_KIND_NAMES.get(e.kind, 'other')}\t{e.size}\t{e.path}")
        if x.signature is None:
            print("  Signature: none")
        else:
            try:
                x.verify_signature(_read_file(key) if key else None)
                state = "valid"
            except (SignatureError, ChecksumMismatch) as exc:
                state = f"INVALID ({exc})"
            print(f"  Signature: {x.signature.style}, {len(x.signature.certificates)} certificate(s), {state}")
    payload = extract_payload(package)
    chunks = list(pbzx.iter_chunks(payload))
    xz = sum(1 for c in chunks if c.compressed)
    print(f"  {PAYLOAD_NAME}: {len(payload)} bytes, chunk size {pbzx.read_header(payload)}")
    print(f"    Chunks: {len(chunks)} ({xz} xz, {len(chunks) - xz} raw)")
    with PkgReader.from_pbzx(payload) as r:
        entries = list(r)
        print(f"    cpio: {r.cpio_size} bytes, {len(entries)} entries")
        print(f"      Files: {len([e for e in entries if e.kind == KIND_FILE])}")
        print(f"      Directories: {len([e for e in entries if e.kind == KIND_DIR])}")
        print(f"      Symlinks: {len([e for e in entries if e.kind == KIND_SYMLINK])}")
    return True


def cmd_pbzx(action: str, src: str, dst: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    """Decode or encode a standalone pbzx stream."""
    data = _read_file(src)
    if action == "decode":
        out = pbzx.decode(data)
    else:
        out = pbzx.encode(data, chunk_size)
    _write_file(dst, out)
    print(f"{action}: {len(data)} -> {len(out)} bytes")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="pkgkit",
        description="macOS installer package (.pkg) tool",
        epilog="Packages are XAR archives whose Payload is a pbzx-compressed cpio archive.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_create = sub.add_parser("create", help="Create a package")
    ap_create.add_argument("output", help="Output .pkg path")
    ap_create.add_argument("inputs", nargs="+", help="Input files/directories")
    ap_create.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                           help=f"pbzx chunk size in bytes (default {DEFAULT_CHUNK_SIZE})")
    ap_create.add_argument("--preset", type=int, choices=range(0, 10), help="XZ preset (0-9)")
    ap_create.add_argument("--sign-key", help="RSA private key (PEM/DER) used to sign the TOC")
    ap_create.add_argument("--cert", action="append", help="DER certificate to embed (repeatable)")
    ap_create.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List package contents")
    ap_list.add_argument("package", help="Package path")

    ap_info = sub.add_parser("info", help="Show package structure")
    ap_info.add_argument("package", help="Package path")
    ap_info.add_argument("--key", help="Public key or certificate to verify the signature with")

    ap_extract = sub.add_parser("extract", help="Extract package contents")
    ap_extract.add_argument("package", help="Package path")
    ap_extract.add_argument("--outdir", default=".", help="Output directory")
    ap_extract.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_pbzx = sub.add_parser("pbzx", help="Decode or encode a raw pbzx stream")
    ap_pbzx.add_argument("action", choices=["decode", "encode"])
    ap_pbzx.add_argument("input", help="Input path")
    ap_pbzx.add_argument("output", help="Output path")
    ap_pbzx.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Chunk size for encode")

    args = ap.parse_args(argv)
    try:
        if args.cmd == "create":
            cmd_create(args.output, args.inputs, chunk_size=args.chunk_size, preset=args.preset,
                       sign_key=args.sign_key, certs=args.cert, quiet=args.quiet)
        elif args.cmd == "list":
            cmd_list(args.package)
        elif args.cmd == "info":
            cmd_info(args.package, key=args.key)
        elif args.cmd == "extract":
            cmd_extract(args.package, outdir=args.outdir, quiet=args.quiet)
        elif args.cmd == "pbzx":
            cmd_pbzx(args.action, args.input, args.output, chunk_size=args.chunk_size)
        else:
            raise RuntimeError("Unknown command")
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (PkgError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
