"""Image persistence: the whole FileSystem in one versioned, checksummed file.

Layout (little endian):

    ImageHeader            CRC-32 covers the header fields and the payload
    bitmap                 ceil(total_blocks / 8) bytes
    used block contents    block_size bytes per set bit, ascending index
    cursor path            u32 length + UTF-8 path of the current directory
    directory records      pre-order from the root: DirRecord + name, then
                           its FileRecords, then the records of its children
"""

import struct
from typing import List, Set, Tuple

from fs import (
    BLOCK_INDEX_SIZE,
    DIR_RECORD_SIZE,
    FILE_RECORD_SIZE,
    HEADER_SIZE,
    IMAGE_MAGIC,
    IMAGE_VERSION,
    PATH_RECORD_FORMAT,
    PATH_RECORD_SIZE,
    DirRecord,
    FileRecord,
    ImageBroken,
    ImageHeader,
    ImageNotFound,
    pack_block_indices,
    pack_path,
)
from fsapi import Bitmap, Directory, File, FileSystem, check_name


def _pack_directory(directory: Directory, out: List[bytes]):
    name_bytes = directory.name.encode("utf-8")
    out.append(DirRecord(len(name_bytes), len(directory.files), len(directory.subdirs)).pack())
    out.append(name_bytes)
    for file in directory.files.values():
        file_name = file.name.encode("utf-8")
        out.append(FileRecord(len(file_name), file.size, len(file.blocks)).pack())
        out.append(file_name)
        out.append(pack_block_indices(file.blocks))


def encode_image(fs: FileSystem) -> bytes:
    """Serialize fs into image bytes"""
    parts = [fs.bitmap.to_bytes()]
    used = 0
    for index in fs.bitmap:
        parts.append(fs.blocks.read(index, 0, fs.block_size))
        used += 1
    parts.append(pack_path(fs.cwd.path))
    for directory in fs.root.walk():
        _pack_directory(directory, parts)
    payload = b"".join(parts)

    header = ImageHeader(
        block_size=fs.block_size,
        total_blocks=fs.total_blocks,
        used_blocks=used,
        payload_size=0,
    )
    header.seal(payload)
    return header.pack() + payload


class _Reader:
    """Sequential cursor over the payload"""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if size < 0 or end > len(self.data):
            raise ImageBroken("Image is truncated")
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def take_name(self, size: int) -> str:
        try:
            return self.take(size).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ImageBroken(f"Image holds an undecodable name: {e}") from e

    def remaining(self) -> int:
        return len(self.data) - self.offset


def _unpack_directory(reader: _Reader, fs: FileSystem, parent, owned: Set[int]) -> Tuple[Directory, int]:
    """Read one directory record and its files. Returns the directory and its child count."""
    record = DirRecord.unpack(reader.take(DIR_RECORD_SIZE))
    name = reader.take_name(record.name_len)
    if parent is None:
        directory = fs.root
    else:
        _check_record_name(name)
        directory = Directory(name, parent)

    for _ in range(record.file_count):
        file_record = FileRecord.unpack(reader.take(FILE_RECORD_SIZE))
        file_name = reader.take_name(file_record.name_len)
        _check_record_name(file_name)
        raw = reader.take(file_record.block_count * BLOCK_INDEX_SIZE)
        blocks = list(struct.unpack(f"<{file_record.block_count}I", raw))
        for index in blocks:
            if index >= fs.total_blocks or not fs.bitmap.is_set(index):
                raise ImageBroken(f"File {file_name} references free block {index}")
            if index in owned:
                raise ImageBroken(f"Block {index} is owned by more than one file")
            owned.add(index)
        if file_record.size > len(blocks) * fs.block_size:
            raise ImageBroken(f"File {file_name} is larger than its blocks")
        if not directory.add_file(File(file_name, blocks, file_record.size)):
            raise ImageBroken(f"Duplicate file {file_name} in {directory.path}")
    return directory, record.subdir_count


def _unpack_tree(reader: _Reader, fs: FileSystem):
    owned: Set[int] = set()
    root, subdir_count = _unpack_directory(reader, fs, None, owned)
    # [directory, children still to read]
    stack = [[root, subdir_count]]
    while stack:
        top = stack[-1]
        if top[1] == 0:
            stack.pop()
            continue
        top[1] -= 1
        child, child_count = _unpack_directory(reader, fs, top[0], owned)
        if not top[0].add_directory(child):
            raise ImageBroken(f"Duplicate directory {child.name} in {top[0].path}")
        stack.append([child, child_count])


def _check_record_name(name: str):
    try:
        check_name(name)
    except ValueError as e:
        raise ImageBroken(str(e)) from e


def decode_image(data: bytes) -> FileSystem:
    """Rebuild a FileSystem from image bytes, raising ImageBroken on any inconsistency"""
    header = ImageHeader.unpack(data)
    if header.magic != IMAGE_MAGIC:
        raise ImageBroken("Bad image magic")
    if header.version != IMAGE_VERSION:
        raise ImageBroken(f"Unsupported image version {header.version}")
    if header.block_size == 0 or header.total_blocks == 0:
        raise ImageBroken("Image has no blocks")

    payload = data[HEADER_SIZE:]
    if header.payload_size != len(payload) or header.min_payload_size() > header.payload_size:
        raise ImageBroken("Image size does not match its header")
    if not header.verify(payload):
        raise ImageBroken("Image checksum mismatch")

    try:
        fs = FileSystem(header.total_blocks, header.block_size)
    except (MemoryError, OverflowError) as e:
        raise ImageBroken(f"Image geometry cannot be mounted: {e!r}") from e
    reader = _Reader(payload)
    try:
        fs.bitmap = Bitmap(fs.total_blocks, reader.take((fs.total_blocks + 7) // 8))
        used = list(fs.bitmap)
        if len(used) != header.used_blocks or (used and used[-1] >= fs.total_blocks):
            raise ImageBroken("Bitmap does not match header")
        for index in used:
            fs.blocks.write(index, 0, reader.take(fs.block_size))

        (path_len,) = struct.unpack(PATH_RECORD_FORMAT, reader.take(PATH_RECORD_SIZE))
        cursor_path = reader.take_name(path_len)

        _unpack_tree(reader, fs)
        if reader.remaining():
            raise ImageBroken("Trailing data after directory tree")
        fs.cwd = fs.find_directory(cursor_path)
    except (struct.error, ValueError, FileNotFoundError) as e:
        raise ImageBroken(f"Image is broken: {e}") from e
    return fs


def save_image(path: str, fs: FileSystem):
    data = encode_image(fs)
    with open(path, "wb") as f:
        f.write(data)


def load_image(path: str) -> FileSystem:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ImageNotFound(f"{path} disk image not found") from e
    return decode_image(data)
