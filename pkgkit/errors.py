class PkgError(Exception):
    """Base class for pkgkit errors."""


# Chunk stream framing
class FormatError(PkgError):
    """Raised when a pbzx chunk stream cannot be encoded or decoded."""


class TooShort(FormatError):
    pass


class BadMagic(FormatError):
    pass


class TruncatedChunk(FormatError):
    pass


class CodecError(FormatError):
    """Underlying XZ compression or decompression failed."""


class InvalidChunkSize(FormatError):
    pass


# Package pipeline
class MissingPayload(PkgError):
    pass


# Container (xar/cpio) related
class ContainerError(PkgError):
    pass


class ChecksumMismatch(ContainerError):
    pass


class SignatureError(ContainerError):
    pass
