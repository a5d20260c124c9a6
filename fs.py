import struct
import attr

from crc32 import crc32

IMAGE_MAGIC = b"MSFS"
IMAGE_VERSION = 1

HEADER_FIELDS_FORMAT = "<4sHHIIIQ"
CHECKSUM_FORMAT = "<I"
HEADER_FORMAT = HEADER_FIELDS_FORMAT + CHECKSUM_FORMAT[1:]
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 32
DIR_RECORD_FORMAT = "<HII"
DIR_RECORD_SIZE = struct.calcsize(DIR_RECORD_FORMAT)  # 10
FILE_RECORD_FORMAT = "<HQI"
FILE_RECORD_SIZE = struct.calcsize(FILE_RECORD_FORMAT)  # 14
PATH_RECORD_FORMAT = "<I"
PATH_RECORD_SIZE = struct.calcsize(PATH_RECORD_FORMAT)
BLOCK_INDEX_SIZE = 4


class ImageError(OSError):
    """Base class for image persistence failures"""


class ImageNotFound(ImageError):
    """Image file is missing or cannot be read"""


class ImageBroken(ImageError):
    """Image file exists but is not a valid filesystem image"""


@attr.s(auto_attribs=True)
class ImageHeader:
    """Fixed header at offset 0 of every image"""
    block_size: int
    total_blocks: int
    used_blocks: int
    payload_size: int
    checksum: int = 0
    magic: bytes = IMAGE_MAGIC
    version: int = IMAGE_VERSION
    flags: int = 0

    def pack_fields(self) -> bytes:
        # Everything except the trailing checksum
        return struct.pack(
            HEADER_FIELDS_FORMAT,
            self.magic,
            self.version,
            self.flags,
            self.block_size,
            self.total_blocks,
            self.used_blocks,
            self.payload_size,
        )

    def calc_checksum(self, payload: bytes) -> int:
        return crc32(payload, crc32(self.pack_fields()))

    def seal(self, payload: bytes) -> None:
        """Fill in size and checksum for the payload that follows the header"""
        self.payload_size = len(payload)
        self.checksum = self.calc_checksum(payload)

    def verify(self, payload: bytes) -> bool:
        return len(payload) == self.payload_size and self.calc_checksum(payload) == self.checksum

    def min_payload_size(self) -> int:
        """Bytes taken by the bitmap and the stored blocks alone"""
        return (self.total_blocks + 7) // 8 + self.used_blocks * self.block_size

    def pack(self) -> bytes:
        return self.pack_fields() + struct.pack(CHECKSUM_FORMAT, self.checksum)

    @classmethod
    def unpack(cls, data: bytes) -> "ImageHeader":
        if len(data) < HEADER_SIZE:
            raise ImageBroken("Image is too short to hold a header")
        magic, version, flags, block_size, total_blocks, used_blocks, payload_size, checksum = struct.unpack(
            HEADER_FORMAT, data[:HEADER_SIZE]
        )
        return cls(
            block_size=block_size,
            total_blocks=total_blocks,
            used_blocks=used_blocks,
            payload_size=payload_size,
            checksum=checksum,
            magic=magic,
            version=version,
            flags=flags,
        )


@attr.s(auto_attribs=True)
class DirRecord:
    """Directory record header, followed by the UTF-8 name"""
    name_len: int
    file_count: int
    subdir_count: int

    def pack(self) -> bytes:
        return struct.pack(DIR_RECORD_FORMAT, self.name_len, self.file_count, self.subdir_count)

    @classmethod
    def unpack(cls, data: bytes) -> "DirRecord":
        return cls(*struct.unpack(DIR_RECORD_FORMAT, data[:DIR_RECORD_SIZE]))


@attr.s(auto_attribs=True)
class FileRecord:
    """File record header, followed by the UTF-8 name and block_count indices"""
    name_len: int
    size: int
    block_count: int

    def pack(self) -> bytes:
        return struct.pack(FILE_RECORD_FORMAT, self.name_len, self.size, self.block_count)

    @classmethod
    def unpack(cls, data: bytes) -> "FileRecord":
        return cls(*struct.unpack(FILE_RECORD_FORMAT, data[:FILE_RECORD_SIZE]))


def pack_path(path: str) -> bytes:
    """Encode a path with its length prefix"""
    path_bytes = path.encode("utf-8")
    return struct.pack(PATH_RECORD_FORMAT, len(path_bytes)) + path_bytes


def pack_block_indices(indices) -> bytes:
    return struct.pack(f"<{len(indices)}I", *indices)
