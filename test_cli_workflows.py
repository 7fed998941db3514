from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict, Tuple

from pkgkit import pbzx
from pkgkit.pkg import PkgWriter


def _build_fixture_tree(root: Path, *, include_symlink: bool = True) -> Dict[str, Tuple[str, bytes]]:
    files: Dict[str, Tuple[str, bytes]] = {}
    (root / "docs").mkdir()
    (root / "docs" / "notes").mkdir()
    content = b"hello world\n" * 20
    (root / "docs" / "readme.txt").write_bytes(content)
    os.chmod(root / "docs" / "readme.txt", 0o644)
    files["docs/readme.txt"] = ("file", content)

    bin_data = os.urandom(2048)
    (root / "docs" / "notes" / "binary.bin").write_bytes(bin_data)
    os.chmod(root / "docs" / "notes" / "binary.bin", 0o600)
    files["docs/notes/binary.bin"] = ("file", bin_data)

    (root / "docs" / "notes" / "empty.txt").write_text("")
    files["docs/notes/empty.txt"] = ("file", b"")

    if include_symlink and hasattr(os, "symlink"):
        try:
            os.symlink("notes", root / "docs" / "ln_notes")
            files["docs/ln_notes"] = ("symlink", b"notes")
        except (OSError, NotImplementedError):
            pass
    return files


class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, cwd: Path | None = None):
        cmd = [sys.executable, "-m", "pkgkit.cli"] + list(args)
        env = os.environ.copy()
        repo_root = Path(__file__).resolve().parent
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"
            )
        return proc

    def test_create_list_extract(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "src"
            src.mkdir()
            files = _build_fixture_tree(src)
            pkg = root / "out.pkg"
            self.run_cli(["create", str(pkg), str(src / "docs"), "--chunk-size", "4096", "--quiet"])

            listing = self.run_cli(["list", str(pkg)]).stdout
            self.assertIn("dir\tdocs", listing)
            self.assertIn("file\t240\tdocs/readme.txt", listing)
            if "docs/ln_notes" in files:
                self.assertIn("symlink\t-> notes\tdocs/ln_notes", listing)

            out = root / "extract"
            self.run_cli(["extract", str(pkg), "--outdir", str(out), "--quiet"])
            for rel, (kind, payload) in files.items():
                dst = out / rel
                if kind == "symlink":
                    self.assertTrue(os.path.islink(dst))
                    self.assertEqual(os.readlink(dst), payload.decode())
                else:
                    self.assertEqual(dst.read_bytes(), payload)
            if os.name == "posix":
                self.assertEqual(os.stat(out / "docs" / "notes" / "binary.bin").st_mode & 0o777, 0o600)

    def test_info(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "one.txt").write_text("one\n" * 100)
            pkg = root / "one.pkg"
            self.run_cli(["create", str(pkg), str(root / "one.txt")])
            info = self.run_cli(["info", str(pkg)]).stdout
            self.assertIn("TOC checksum: sha1 (OK)", info)
            self.assertIn("Payload", info)
            self.assertIn("Chunks: 1", info)
            self.assertIn("Signature: none", info)
            self.assertIn("Files: 1", info)

    def test_pbzx_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            raw = root / "raw.bin"
            raw.write_bytes(b"abc" * 5000)
            enc = root / "raw.pbzx"
            dec = root / "raw.out"
            self.run_cli(["pbzx", "encode", str(raw), str(enc), "--chunk-size", "1000"])
            self.assertTrue(pbzx.is_stream(enc.read_bytes()))
            self.assertEqual(len(list(pbzx.iter_chunks(enc.read_bytes()))), 15)
            self.run_cli(["pbzx", "decode", str(enc), str(dec)])
            self.assertEqual(dec.read_bytes(), raw.read_bytes())

    @unittest.skipUnless(hasattr(os, "symlink") and os.name == "posix", "needs symlinks")
    def test_extract_refuses_writes_through_symlink(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            outside = root / "outside"
            outside.mkdir()
            writer = PkgWriter()
            writer.add_symlink("evil", str(outside))
            writer.add_file("evil/pwned.txt", b"gotcha")
            writer.add_file("safe.txt", b"fine")
            pkg = root / "evil.pkg"
            writer.write(pkg)

            out = root / "extract"
            proc = self.run_cli(["extract", str(pkg), "--outdir", str(out)])
            self.assertFalse((outside / "pwned.txt").exists())
            self.assertIn("resolves outside", proc.stderr)
            self.assertTrue(os.path.islink(out / "evil"))
            self.assertEqual((out / "safe.txt").read_bytes(), b"fine")

    def test_errors_exit_2(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            proc = self.run_cli(["list", str(root / "missing.pkg")], expect=2)
            self.assertIn("Error:", proc.stderr)
            bogus = root / "bogus.pkg"
            bogus.write_bytes(b"this is not a xar archive at all")
            proc = self.run_cli(["list", str(bogus)], expect=2)
            self.assertIn("Not a XAR file", proc.stderr)
            proc = self.run_cli(["pbzx", "decode", str(bogus), str(root / "x")], expect=2)
            self.assertIn("Not a pbzx stream", proc.stderr)


if __name__ == "__main__":
    unittest.main()
