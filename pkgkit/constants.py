# pbzx chunk stream
PBZX_MAGIC = b"pbzx"
PBZX_HEADER_SIZE = 12      # magic[4] + default chunk size u64
CHUNK_HEADER_SIZE = 16     # flags u64 + length u64

# Chunk flag words
CHUNK_FLAG_RAW = 0
CHUNK_FLAG_XZ = 0x0100_0000

DEFAULT_CHUNK_SIZE = 1_048_576  # 1 MiB, as written by Apple's tooling
DEFAULT_XZ_PRESET = 6

# Codec IDs; stored chunks bypass the codec
CODEC_XZ = 1

# Package layout
PAYLOAD_NAME = "Payload"

# Entry kinds
KIND_FILE = 0
KIND_DIR = 1
KIND_SYMLINK = 2

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755
DEFAULT_SYMLINK_MODE = 0o777


# XAR outer container
XAR_MAGIC = b"xar!"
XAR_HEADER_SIZE = 28
XAR_VERSION = 1

XAR_CKSUM_NONE = 0
XAR_CKSUM_SHA1 = 1
XAR_CKSUM_MD5 = 2
XAR_CKSUM_OTHER = 3

XAR_CKSUM_NAMES = {
    XAR_CKSUM_NONE: "none",
    XAR_CKSUM_SHA1: "sha1",
    XAR_CKSUM_MD5: "md5",
}

XAR_ENCODING_NONE = "application/octet-stream"
XAR_ENCODING_GZIP = "application/x-gzip"
XAR_ENCODING_BZIP2 = "application/x-bzip2"
XAR_ENCODING_XZ = "application/x-xz"
XAR_ENCODING_LZMA = "application/x-lzma"

XMLDSIG_NS = "http://www.w3.org/2000/09/xmldsig#"


# cpio inner container
CPIO_MAGIC_ODC = b"070707"
CPIO_MAGIC_NEWC = b"070701"
CPIO_MAGIC_NEWC_CRC = b"070702"
CPIO_TRAILER = "TRAILER!!!"

CPIO_ODC_HEADER_SIZE = 76
CPIO_NEWC_HEADER_SIZE = 110
