import weakref
from typing import Dict, Iterator, List, Optional, Tuple

import attr

# File system constants
BLOCK_SIZE = 256
TOTAL_BLOCKS = 4096  # 1MB with 256-byte blocks

# Path constants
PATH_SEPARATOR = "/"
PARENT_DIR = ".."
CURRENT_DIR = "."
MAX_NAME_LEN = 255  # bytes of UTF-8

# Entry kinds reported by listings
ENTRY_DIR = "DIR"
ENTRY_FILE = "FILE"

# Trailing bytes stripped from text reads (NUL padding and ASCII whitespace)
TRIM_BYTES = bytes(range(0x21))


class AllocatorExhausted(OSError):
    """No clear bit left in the block bitmap"""


class BlockStore:
    """Contiguous arena of equally sized blocks addressed by index"""

    def __init__(self, total_blocks: int, block_size: int = BLOCK_SIZE):
        self.total_blocks = total_blocks
        self.block_size = block_size
        self.data = bytearray(total_blocks * block_size)

    def _block_offset(self, index: int) -> int:
        if not 0 <= index < self.total_blocks:
            raise IndexError(f"Block {index} is out of range")
        return index * self.block_size

    def _clip(self, offset: int, length: int) -> int:
        if offset < 0:
            raise ValueError(f"Invalid block offset {offset}")
        return max(0, min(length, self.block_size - offset))

    def write(self, index: int, offset: int, data: bytes) -> int:
        """Copy data into a block, dropping whatever does not fit. Returns bytes copied."""
        start = self._block_offset(index) + offset
        count = self._clip(offset, len(data))
        self.data[start : start + count] = data[:count]
        return count

    def read(self, index: int, offset: int = 0, length: Optional[int] = None) -> bytes:
        if length is None:
            length = self.block_size
        start = self._block_offset(index) + offset
        count = self._clip(offset, length)
        return bytes(self.data[start : start + count])

    def clear(self, index: int):
        start = self._block_offset(index)
        self.data[start : start + self.block_size] = bytes(self.block_size)


class Bitmap:
    """One bit per block, set while the block belongs to a file"""

    def __init__(self, total_bits: int, data: Optional[bytes] = None):
        self.total_bits = total_bits
        size = (total_bits + 7) // 8
        if data is None:
            self.bits = bytearray(size)
        else:
            if len(data) != size:
                raise ValueError(f"Bitmap needs {size} bytes, got {len(data)}")
            self.bits = bytearray(data)
        # No clear bit exists in bytes before this one
        self._first_free_byte = 0

    def is_set(self, index: int) -> bool:
        self._check(index)
        return bool(self.bits[index // 8] & (1 << (index % 8)))

    def mark(self, index: int):
        self._check(index)
        self.bits[index // 8] |= 1 << (index % 8)

    def allocate(self) -> int:
        """Set the lowest clear bit and return its index"""
        for byte_idx in range(self._first_free_byte, len(self.bits)):
            if self.bits[byte_idx] != 0xFF:
                for bit_idx in range(8):
                    index = byte_idx * 8 + bit_idx
                    if index >= self.total_bits:
                        break
                    if not (self.bits[byte_idx] & (1 << bit_idx)):
                        self.bits[byte_idx] |= 1 << bit_idx
                        self._first_free_byte = byte_idx
                        return index
        self._first_free_byte = len(self.bits)
        raise AllocatorExhausted("No more free blocks available")

    def free(self, index: int):
        self._check(index)
        self.bits[index // 8] &= ~(1 << (index % 8)) & 0xFF
        self._first_free_byte = min(self._first_free_byte, index // 8)

    def used_count(self) -> int:
        return sum(bin(byte).count("1") for byte in self.bits)

    def free_count(self) -> int:
        return self.total_bits - self.used_count()

    def __iter__(self) -> Iterator[int]:
        """Yield set indices in ascending order"""
        for byte_idx, byte in enumerate(self.bits):
            if byte:
                for bit_idx in range(8):
                    if byte & (1 << bit_idx):
                        yield byte_idx * 8 + bit_idx

    def to_bytes(self) -> bytes:
        return bytes(self.bits)

    def _check(self, index: int):
        if not 0 <= index < self.total_bits:
            raise IndexError(f"Block {index} is out of range")


@attr.s(auto_attribs=True)
class File:
    """A named, ordered list of block indices"""
    name: str
    blocks: List[int] = attr.ib(factory=list)
    size: int = 0


class Directory:
    """Directory node. Owns its files and children; the parent link is weak."""

    def __init__(self, name: str, parent: Optional["Directory"] = None):
        self.name = name
        self.files: Dict[str, File] = {}
        self.subdirs: Dict[str, "Directory"] = {}
        if parent is None:
            self._parent = None
            self.path = PATH_SEPARATOR
        else:
            self._parent = weakref.ref(parent)
            self.path = parent.path + name + PATH_SEPARATOR

    @property
    def parent(self) -> Optional["Directory"]:
        if self._parent is None:
            return None
        return self._parent()

    def add_file(self, file: File) -> bool:
        if file.name in self.files:
            return False
        self.files[file.name] = file
        return True

    def add_directory(self, directory: "Directory") -> bool:
        if directory.name in self.subdirs:
            return False
        self.subdirs[directory.name] = directory
        return True

    def walk(self) -> Iterator["Directory"]:
        """Pre-order traversal of this directory and everything below it"""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(list(node.subdirs.values())))

    def __repr__(self):
        return f"Directory({self.path!r}, files={list(self.files)}, subdirs={list(self.subdirs)})"


def check_name(name: str):
    if not name or PATH_SEPARATOR in name or name in (CURRENT_DIR, PARENT_DIR):
        raise ValueError(f"Invalid name: {name!r}")
    if len(name.encode("utf-8")) > MAX_NAME_LEN:
        raise ValueError(f"Name is longer than {MAX_NAME_LEN} bytes")


class FileSystem:
    """Block filesystem held in memory"""

    def __init__(self, total_blocks: int = TOTAL_BLOCKS, block_size: int = BLOCK_SIZE):
        if total_blocks <= 0 or block_size <= 0:
            raise ValueError("Block count and block size must be positive")
        self.total_blocks = total_blocks
        self.block_size = block_size
        self.blocks = BlockStore(total_blocks, block_size)
        self.bitmap = Bitmap(total_blocks)
        self.root = Directory(PATH_SEPARATOR)
        self.cwd = self.root

    # Directory tree

    def change_directory(self, name: str) -> Directory:
        if name == PARENT_DIR:
            if self.cwd.parent is not None:
                self.cwd = self.cwd.parent
        elif name in self.cwd.subdirs:
            self.cwd = self.cwd.subdirs[name]
        else:
            raise FileNotFoundError(f"Directory not found: {name}")
        return self.cwd

    def make_directory(self, name: str) -> Directory:
        check_name(name)
        if name in self.cwd.subdirs:
            raise FileExistsError(f"Directory already exists: {name}")
        directory = Directory(name, self.cwd)
        self.cwd.add_directory(directory)
        return directory

    def remove_directory(self, name: str, recursive: bool = False) -> Directory:
        """Detach a child directory.

        Blocks of files below it stay marked in the bitmap unless
        recursive is set, in which case every one of them is freed.
        """
        directory = self.cwd.subdirs.pop(name, None)
        if directory is None:
            raise FileNotFoundError(f"Directory not found: {name}")
        if recursive:
            for node in directory.walk():
                for file in node.files.values():
                    self._free_file_blocks(file)
        return directory

    def list_directory(self, with_sizes: bool = False) -> List[Tuple]:
        """Entries of the current directory, directories first.

        Each entry is (kind, name), or (kind, name, size) with with_sizes;
        directories report a size of None.
        """
        entries = []
        for name in self.cwd.subdirs:
            entries.append((ENTRY_DIR, name, None) if with_sizes else (ENTRY_DIR, name))
        for name, file in self.cwd.files.items():
            entries.append((ENTRY_FILE, name, file.size) if with_sizes else (ENTRY_FILE, name))
        return entries

    def find_directory(self, path: str) -> Directory:
        """Resolve an absolute directory path such as /docs/notes/"""
        node = self.root
        for component in path.split(PATH_SEPARATOR):
            if not component:
                continue
            if component not in node.subdirs:
                raise FileNotFoundError(f"Directory not found: {path}")
            node = node.subdirs[component]
        return node

    # Files

    def _get_file(self, name: str) -> File:
        file = self.cwd.files.get(name)
        if file is None:
            raise FileNotFoundError(f"File not found: {name}")
        return file

    def create_file(self, name: str) -> File:
        check_name(name)
        if name in self.cwd.files:
            raise FileExistsError(f"File already exists: {name}")
        file = File(name)
        self.cwd.add_file(file)
        return file

    def write_file(self, name: str, data: bytes) -> int:
        """Append data to a file one block per chunk.

        If the bitmap runs out mid-way the chunks already written stay in
        the file and AllocatorExhausted is raised.
        """
        file = self._get_file(name)
        written = 0
        for start in range(0, len(data), self.block_size):
            chunk = data[start : start + self.block_size]
            try:
                index = self.bitmap.allocate()
            except AllocatorExhausted as e:
                raise AllocatorExhausted(
                    f"{e}: wrote {written} of {len(data)} bytes to {name}"
                ) from e
            self.blocks.clear(index)
            self.blocks.write(index, 0, chunk)
            file.blocks.append(index)
            file.size += len(chunk)
            written += len(chunk)
        return written

    def read_file_raw(self, name: str) -> bytes:
        """Full content of every block of the file, padding included"""
        file = self._get_file(name)
        return b"".join(self.blocks.read(index, 0, self.block_size) for index in file.blocks)

    def read_file(self, name: str) -> bytes:
        """File content with trailing NUL padding and whitespace removed"""
        return self.read_file_raw(name).rstrip(TRIM_BYTES)

    def remove_file(self, name: str) -> List[int]:
        file = self.cwd.files.pop(name, None)
        if file is None:
            raise FileNotFoundError(f"File not found: {name}")
        return self._free_file_blocks(file)

    def _free_file_blocks(self, file: File) -> List[int]:
        for index in file.blocks:
            self.bitmap.free(index)
        return list(file.blocks)

    # Usage

    def used_blocks(self) -> int:
        return self.bitmap.used_count()

    def free_blocks(self) -> int:
        return self.total_blocks - self.used_blocks()


# Global filesystem instance
_fs_instance = None


def init_filesystem(image_path: str) -> FileSystem:
    """Load the filesystem stored in image_path and make it current"""
    from image import load_image

    global _fs_instance
    _fs_instance = load_image(image_path)
    return _fs_instance


def set_filesystem(fs: FileSystem) -> FileSystem:
    global _fs_instance
    _fs_instance = fs
    return fs


def get_filesystem() -> FileSystem:
    """Get current filesystem instance"""
    if _fs_instance is None:
        raise RuntimeError("Filesystem not initialized")
    return _fs_instance


# Convenience functions that mirror the API
def cd(name: str) -> Directory:
    return get_filesystem().change_directory(name)


def mkdir(name: str) -> Directory:
    return get_filesystem().make_directory(name)


def rmdir(name: str, recursive: bool = False) -> Directory:
    return get_filesystem().remove_directory(name, recursive)


def ls(with_sizes: bool = False) -> List[Tuple]:
    return get_filesystem().list_directory(with_sizes)


def touch(name: str) -> File:
    return get_filesystem().create_file(name)


def write(name: str, data: bytes) -> int:
    return get_filesystem().write_file(name, data)


def read(name: str) -> bytes:
    return get_filesystem().read_file(name)


def unlink(name: str) -> List[int]:
    return get_filesystem().remove_file(name)
