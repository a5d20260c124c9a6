#!/usr/bin/env python3
"""
Tests for the in-memory filesystem engine
"""

import random

import pytest

from fsapi import (
    AllocatorExhausted,
    Bitmap,
    BlockStore,
    Directory,
    ENTRY_DIR,
    ENTRY_FILE,
    FileSystem,
)


def test_block_store_clips_writes_and_reads():
    store = BlockStore(4, 4)
    assert store.write(0, 0, b"abcdef") == 4
    assert store.read(0) == b"abcd"

    assert store.write(1, 2, b"xyz") == 2
    assert store.read(1, 0, 4) == b"\x00\x00xy"
    assert store.read(1, 3, 10) == b"y"
    assert store.read(1, 4, 1) == b""


def test_block_store_rejects_out_of_range_index():
    store = BlockStore(4, 4)
    with pytest.raises(IndexError):
        store.read(4)
    with pytest.raises(IndexError):
        store.write(-1, 0, b"a")


def test_block_store_clear():
    store = BlockStore(2, 4)
    store.write(1, 0, b"data")
    store.clear(1)
    assert store.read(1) == b"\x00" * 4


def test_bitmap_allocates_lowest_index_first():
    bitmap = Bitmap(10)
    assert [bitmap.allocate() for _ in range(10)] == list(range(10))
    with pytest.raises(AllocatorExhausted):
        bitmap.allocate()

    bitmap.free(7)
    bitmap.free(3)
    assert bitmap.allocate() == 3
    assert bitmap.allocate() == 7


def test_bitmap_free_is_idempotent():
    bitmap = Bitmap(8)
    bitmap.allocate()
    bitmap.free(0)
    bitmap.free(0)
    bitmap.free(5)
    assert bitmap.used_count() == 0
    assert bitmap.allocate() == 0
    assert bitmap.allocate() == 1


def test_bitmap_matches_reference_model():
    rng = random.Random(1234)
    bitmap = Bitmap(37)
    used = set()
    for _ in range(2000):
        if used and rng.random() < 0.45:
            index = rng.choice(sorted(used))
            bitmap.free(index)
            used.discard(index)
        elif len(used) < 37:
            index = bitmap.allocate()
            assert index not in used
            assert index == min(set(range(37)) - used)
            used.add(index)
        else:
            with pytest.raises(AllocatorExhausted):
                bitmap.allocate()
        assert list(bitmap) == sorted(used)
        assert bitmap.free_count() == 37 - len(used)


def test_bitmap_from_raw_bytes():
    bitmap = Bitmap(12, b"\x05\x08")
    assert list(bitmap) == [0, 2, 11]
    assert bitmap.is_set(2)
    assert not bitmap.is_set(1)
    assert bitmap.allocate() == 1
    bitmap.mark(3)
    assert bitmap.to_bytes() == b"\x0f\x08"

    with pytest.raises(ValueError):
        Bitmap(12, b"\x00")


def test_directory_paths_and_weak_parent():
    root = Directory("/")
    docs = Directory("docs", root)
    notes = Directory("notes", docs)
    assert root.path == "/"
    assert docs.path == "/docs/"
    assert notes.path == "/docs/notes/"
    assert notes.parent is docs
    assert root.parent is None

    root.add_directory(docs)
    docs.add_directory(notes)
    assert [d.path for d in root.walk()] == ["/", "/docs/", "/docs/notes/"]


def test_example_scenario_four_blocks_of_four_bytes():
    fs = FileSystem(4, 4)
    fs.make_directory("docs")
    fs.change_directory("docs")
    fs.create_file("f")

    assert fs.write_file("f", b"abcdefghij") == 10
    f = fs.cwd.files["f"]
    assert f.size == 10
    assert f.blocks == [0, 1, 2]
    assert [fs.blocks.read(i) for i in f.blocks] == [b"abcd", b"efgh", b"ij\x00\x00"]
    assert fs.free_blocks() == 1

    fs.write_file("f", b"Z")
    assert f.blocks == [0, 1, 2, 3]
    assert f.size == 11
    assert fs.free_blocks() == 0

    with pytest.raises(AllocatorExhausted):
        fs.write_file("f", b"Q")
    assert f.size == 11


def test_write_appends_instead_of_overwriting():
    fs = FileSystem(8, 4)
    fs.create_file("a.txt")
    fs.write_file("a.txt", b"abcdefghij")
    fs.write_file("a.txt", b"Z")
    assert fs.read_file_raw("a.txt") == b"abcdefghij\x00\x00Z\x00\x00\x00"
    assert fs.read_file("a.txt") == b"abcdefghij\x00\x00Z"


def test_write_block_count_is_ceil_of_length():
    fs = FileSystem(200, 8)
    for length in (0, 1, 7, 8, 9, 64, 65):
        name = f"file{length}"
        fs.create_file(name)
        fs.write_file(name, b"x" * length)
        f = fs.cwd.files[name]
        assert f.size == length
        assert len(f.blocks) == (length + 7) // 8


def test_partial_write_on_exhaustion_is_kept():
    fs = FileSystem(3, 4)
    fs.create_file("big")
    with pytest.raises(AllocatorExhausted):
        fs.write_file("big", b"0123456789abcdefghij")
    f = fs.cwd.files["big"]
    assert f.blocks == [0, 1, 2]
    assert f.size == 12
    assert fs.read_file("big") == b"0123456789ab"


def test_read_trims_trailing_padding_and_whitespace():
    fs = FileSystem(4, 8)
    fs.create_file("t")
    fs.write_file("t", b"  hi \n")
    assert fs.read_file("t") == b"  hi"
    assert fs.read_file_raw("t") == b"  hi \n\x00\x00"


def test_reused_block_does_not_leak_old_bytes():
    fs = FileSystem(4, 4)
    fs.create_file("old")
    fs.write_file("old", b"abcd")
    fs.remove_file("old")
    fs.create_file("new")
    fs.write_file("new", b"xy")
    assert fs.cwd.files["new"].blocks == [0]
    assert fs.read_file_raw("new") == b"xy\x00\x00"


def test_create_file_twice_reports_conflict():
    fs = FileSystem(4, 4)
    fs.create_file("a.txt")
    fs.write_file("a.txt", b"keep")
    with pytest.raises(FileExistsError):
        fs.create_file("a.txt")
    assert list(fs.cwd.files) == ["a.txt"]
    assert fs.cwd.files["a.txt"].size == 4


def test_missing_file_operations():
    fs = FileSystem(4, 4)
    with pytest.raises(FileNotFoundError):
        fs.write_file("nope", b"data")
    with pytest.raises(FileNotFoundError):
        fs.read_file("nope")
    with pytest.raises(FileNotFoundError):
        fs.remove_file("nope")
    assert fs.used_blocks() == 0


def test_change_directory():
    fs = FileSystem(4, 4)
    fs.change_directory("..")
    assert fs.cwd is fs.root

    fs.make_directory("docs")
    fs.change_directory("docs")
    assert fs.cwd.path == "/docs/"

    with pytest.raises(FileNotFoundError):
        fs.change_directory("missing")
    assert fs.cwd.path == "/docs/"

    fs.change_directory("..")
    assert fs.cwd is fs.root


def test_make_directory_conflict_and_invalid_names():
    fs = FileSystem(4, 4)
    docs = fs.make_directory("docs")
    with pytest.raises(FileExistsError):
        fs.make_directory("docs")
    assert fs.root.subdirs == {"docs": docs}

    for bad in ("", ".", "..", "a/b"):
        with pytest.raises(ValueError):
            fs.make_directory(bad)
        with pytest.raises(ValueError):
            fs.create_file(bad)


def test_remove_file_frees_exactly_its_blocks():
    fs = FileSystem(10, 4)
    fs.create_file("a")
    fs.create_file("b")
    fs.write_file("a", b"aaaa")
    fs.write_file("b", b"bbbbbbbbbb")
    fs.write_file("a", b"AAAA")
    assert fs.cwd.files["b"].blocks == [1, 2, 3]

    assert fs.remove_file("b") == [1, 2, 3]
    assert "b" not in fs.cwd.files
    assert list(fs.bitmap) == [0, 4]
    assert fs.bitmap.allocate() == 1


def test_remove_directory_keeps_nested_blocks_allocated():
    fs = FileSystem(8, 4)
    fs.make_directory("docs")
    fs.change_directory("docs")
    fs.create_file("f")
    fs.write_file("f", b"abcdefgh")
    fs.change_directory("..")

    fs.remove_directory("docs")
    assert "docs" not in fs.root.subdirs
    assert fs.used_blocks() == 2

    with pytest.raises(FileNotFoundError):
        fs.remove_directory("docs")


def test_recursive_remove_directory_frees_nested_blocks():
    fs = FileSystem(8, 4)
    fs.make_directory("docs")
    fs.change_directory("docs")
    fs.create_file("f")
    fs.write_file("f", b"abcdefgh")
    fs.make_directory("deep")
    fs.change_directory("deep")
    fs.create_file("g")
    fs.write_file("g", b"xyz")
    fs.change_directory("..")
    fs.change_directory("..")

    fs.remove_directory("docs", recursive=True)
    assert fs.used_blocks() == 0
    assert fs.bitmap.allocate() == 0


def test_list_directory_puts_directories_first():
    fs = FileSystem(8, 4)
    fs.create_file("a.txt")
    fs.make_directory("docs")
    fs.create_file("b.txt")
    fs.write_file("b.txt", b"hello")

    assert fs.list_directory() == [
        (ENTRY_DIR, "docs"),
        (ENTRY_FILE, "a.txt"),
        (ENTRY_FILE, "b.txt"),
    ]
    assert fs.list_directory(with_sizes=True) == [
        (ENTRY_DIR, "docs", None),
        (ENTRY_FILE, "a.txt", 0),
        (ENTRY_FILE, "b.txt", 5),
    ]


def test_find_directory():
    fs = FileSystem(4, 4)
    fs.make_directory("docs")
    fs.change_directory("docs")
    notes = fs.make_directory("notes")
    assert fs.find_directory("/docs/notes/") is notes
    assert fs.find_directory("/") is fs.root
    with pytest.raises(FileNotFoundError):
        fs.find_directory("/nope/")


def test_names_are_limited_to_255_bytes():
    fs = FileSystem(4, 4)
    fs.make_directory("d" * 255)
    fs.create_file("é" * 127)
    with pytest.raises(ValueError):
        fs.make_directory("d" * 256)
    with pytest.raises(ValueError):
        fs.create_file("é" * 128)


def test_walk_handles_deep_trees():
    fs = FileSystem(4, 4)
    for _ in range(2000):
        fs.make_directory("a")
        fs.change_directory("a")
    paths = [d.path for d in fs.root.walk()]
    assert len(paths) == 2001
    assert paths[-1] == "/" + "a/" * 2000
