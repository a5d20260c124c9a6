import sys
from typing import Optional

from rich.console import Console
from rich.markup import escape

from fs import ImageBroken, ImageNotFound
from fsapi import BLOCK_SIZE, TOTAL_BLOCKS, FileSystem
from image import load_image, save_image

DEFAULT_IMAGE = "fs.img"

console = Console()


def mkfs(image_path: str, total_blocks: int = TOTAL_BLOCKS, block_size: int = BLOCK_SIZE) -> FileSystem:
    """Create an empty filesystem and write it to image_path"""
    fs = FileSystem(total_blocks, block_size)
    save_image(image_path, fs)
    return fs


def load_filesystem(image_path: str, out: Console = console) -> Optional[FileSystem]:
    """Load an image, reporting failures. Returns None when there is no usable image."""
    out.print("mounting disk image ....")
    try:
        return load_image(image_path)
    except ImageNotFound:
        out.print(f"[red]{escape(image_path)} disk image not found![/red]")
    except ImageBroken as e:
        out.print(f"[red]Disk image is broken! Create a new one or format it ({escape(str(e))})[/red]")
    return None


def main():
    image_path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_IMAGE
    try:
        total_blocks = int(sys.argv[2]) if len(sys.argv) > 2 else TOTAL_BLOCKS
        block_size = int(sys.argv[3]) if len(sys.argv) > 3 else BLOCK_SIZE
    except ValueError:
        console.print("[red]Error: block count and block size must be integers[/red]")
        sys.exit(1)

    try:
        fs = mkfs(image_path, total_blocks, block_size)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error creating filesystem: {escape(str(e))}[/red]")
        sys.exit(1)

    console.print(f"Created {escape(image_path)}: {fs.total_blocks} blocks of {fs.block_size} bytes")


if __name__ == "__main__":
    main()
