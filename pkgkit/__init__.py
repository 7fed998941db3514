"""
pkgkit: read and write macOS installer packages (.pkg).

A package is three nested layers:

- an outer XAR archive (zlib-compressed XML table of contents plus heap)
  holding a single ``Payload`` entry,
- whose body is a pbzx chunk stream (chunked XZ compression),
- which decodes to a cpio archive holding the installed file tree.

``pkgkit.pbzx`` is the chunk codec, ``pkgkit.pkg`` the reader/writer
pipeline, ``pkgkit.xar`` and ``pkgkit.cpio`` the two containers. XAR
signatures (RSA over the TOC checksum) are handled via PyCryptodomex.
"""

from .pkg import PackageEntry, PkgReader, PkgWriter

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "pbzx",
    "pkg",
    "xar",
    "cpio",
    "PkgReader",
    "PkgWriter",
    "PackageEntry",
]
