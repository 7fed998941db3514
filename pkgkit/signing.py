"""RSA signatures over a XAR table of contents, backed by PyCryptodomex.

A signed XAR stores, in its heap, the checksum of the compressed TOC followed
by an RSA PKCS#1 v1.5 signature of that checksum. Signing the hash object of
the compressed TOC therefore produces exactly the bytes ``xar``/``productsign``
place there, and the same holds for verification.
"""

from __future__ import annotations

from typing import Union

from Cryptodome.Hash import MD5, SHA1, SHA256
from Cryptodome.PublicKey import RSA
from Cryptodome.Signature import pkcs1_15

from .errors import SignatureError


_HASHES = {
    "sha1": SHA1,
    "md5": MD5,
    "sha256": SHA256,
}


def _hash_for(algorithm: str, toc_compressed: bytes):
    mod = _HASHES.get(algorithm.lower())
    if mod is None:
        raise SignatureError(f"unsupported signature checksum algorithm: {algorithm}")
    return mod.new(toc_compressed)


def load_key(material: Union[bytes, str, RSA.RsaKey]) -> RSA.RsaKey:
    """Import an RSA key from DER/PEM bytes, a PEM string, or an X.509 certificate."""
    if isinstance(material, RSA.RsaKey):
        return material
    try:
        return RSA.import_key(material)
    except (ValueError, IndexError, TypeError) as exc:
        raise SignatureError(f"cannot load RSA key: {exc}") from exc


def load_public_key(material: Union[bytes, str, RSA.RsaKey]) -> RSA.RsaKey:
    return load_key(material).public_key()


def signature_size(key: RSA.RsaKey) -> int:
    return key.size_in_bytes()


def sign_digest(key: RSA.RsaKey, algorithm: str, toc_compressed: bytes) -> bytes:
    if not key.has_private():
        raise SignatureError("signing requires a private RSA key")
    return pkcs1_15.new(key).sign(_hash_for(algorithm, toc_compressed))


def verify_digest(public_key: RSA.RsaKey, algorithm: str, toc_compressed: bytes, signature: bytes) -> bool:
    try:
        pkcs1_15.new(public_key).verify(_hash_for(algorithm, toc_compressed), signature)
    except (ValueError, TypeError) as exc:
        raise SignatureError("XAR signature does not match the table of contents") from exc
    return True
