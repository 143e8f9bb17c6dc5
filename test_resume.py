#!/usr/bin/env python3
"""
Test Resume Capability
======================
Validates checkpoint loading, crash recovery and append behaviour.
"""

import os
import tempfile
from pathlib import Path
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from phash_checkpoint import CheckpointOpenError, PhashCheckpoint, parse_line


def _load_bytes(content: bytes):
    """Write ``content`` to a temp checkpoint, load it and return (tmpdir, path, checkpoint, cache)."""
    tmpdir = tempfile.TemporaryDirectory()
    checkpoint_file = Path(tmpdir.name) / "phashes.tsv"
    checkpoint_file.write_bytes(content)

    checkpoint = PhashCheckpoint.open(checkpoint_file)
    cache = checkpoint.load()
    return tmpdir, checkpoint_file, checkpoint, cache


def test_checkpoint_creation():
    """Test that a missing checkpoint file is created empty."""
    print("\n[TEST] Checkpoint Creation")

    with tempfile.TemporaryDirectory() as tmpdir:
        checkpoint_file = Path(tmpdir) / "phashes.tsv"

        with PhashCheckpoint.open(checkpoint_file) as checkpoint:
            cache = checkpoint.load()

        assert checkpoint_file.exists(), "Checkpoint file not created"
        assert cache == {}, "New checkpoint should be empty"
        assert checkpoint_file.read_bytes() == b"", "New checkpoint should have no content"
        print("✓ Checkpoint file created")


def test_checkpoint_loading():
    """Test that well-formed entries are loaded."""
    print("\n[TEST] Checkpoint Loading")

    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(
        b"a.jpg\t123\nb.jpg\t18446744073709551615\nc d.png\t0\n"
    )
    with tmpdir, checkpoint:
        assert cache == {
            "a.jpg": 123,
            "b.jpg": 18446744073709551615,
            "c d.png": 0,
        }, "Wrong entries loaded"
        assert checkpoint.file.tell() == len(checkpoint_file.read_bytes()), \
            "Cursor should be at end of a clean file"
        print("✓ Entries loaded correctly")


def test_truncated_tail_recovery():
    """Test that an unterminated last line is discarded and overwritten."""
    print("\n[TEST] Truncated Tail Recovery")

    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(b"a.jpg\t123\nb.jpg\t4")
    with tmpdir:
        assert cache == {"a.jpg": 123}, "Only the complete line should load"
        assert checkpoint.file.tell() == len(b"a.jpg\t123\n"), "Cursor not after last valid line"
        print("✓ Truncated line discarded")

        assert checkpoint.append("c.jpg", 789)
        checkpoint.close()

        assert checkpoint_file.read_bytes() == b"a.jpg\t123\nc.jpg\t789\n", \
            "Append should overwrite the truncated tail"
        print("✓ Append overwrote the garbage tail")


@pytest.mark.parametrize("tail", [
    b"b.jpg\n",                # missing hash field
    b"b.jpg\t1\t2\n",          # too many fields
    b"b.jpg\tabc\n",           # not a number
    b"b.jpg\t-5\n",            # negative
    b"b.jpg\t\n",              # empty hash
    b"b.jpg\t18446744073709551616\n",  # 2**64 does not fit
    b"b\xff.jpg\t5\n",         # not UTF-8
])
def test_malformed_lines_stop_scan(tail):
    """Test that scanning stops at the first malformed line."""
    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(b"a.jpg\t1\n" + tail + b"z.jpg\t9\n")
    with tmpdir, checkpoint:
        assert cache == {"a.jpg": 1}, f"Scan should stop at {tail!r}"
        assert checkpoint.file.tell() == len(b"a.jpg\t1\n")


def test_whitespace_around_fields():
    """Test that fields are trimmed like the reference reader."""
    assert parse_line(b"a.jpg\t 42 \n") == ("a.jpg", 42)
    assert parse_line(b"a.jpg\t42\r\n") == ("a.jpg", 42)
    assert parse_line(b"a.jpg\t42") is None


def test_close_drops_leftover_garbage():
    """Test that a garbage tail longer than the new data does not survive."""
    print("\n[TEST] Leftover Garbage Removal")

    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(
        b"a.jpg\t1\nbroken-line-that-is-long\nx\t7\n"
    )
    with tmpdir:
        assert cache == {"a.jpg": 1}
        checkpoint.append("b.jpg", 2)
        checkpoint.close()

        assert checkpoint_file.read_bytes() == b"a.jpg\t1\nb.jpg\t2\n", "Stale tail should be removed"
        print("✓ Stale tail removed on close")


def test_close_without_load_keeps_content():
    """Test that closing an unloaded checkpoint does not truncate it."""
    with tempfile.TemporaryDirectory() as tmpdir:
        checkpoint_file = Path(tmpdir) / "phashes.tsv"
        checkpoint_file.write_bytes(b"a.jpg\t1\n")

        PhashCheckpoint.open(checkpoint_file).close()

        assert checkpoint_file.read_bytes() == b"a.jpg\t1\n"


def test_delimiter_paths_refused():
    """Test that paths containing tab or newline are never written."""
    print("\n[TEST] Delimiter Safety")

    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(b"")
    with tmpdir:
        assert checkpoint.append("tab\there.jpg", 1) is False
        assert checkpoint.append("new\nline.jpg", 2) is False
        assert checkpoint.append("ok.jpg", 3) is True
        checkpoint.close()

        content = checkpoint_file.read_bytes().decode('utf-8')
        assert content == "ok.jpg\t3\n", "Only the valid path should be written"
        for line in content.splitlines():
            assert len(line.split('\t')) == 2
        print("✓ Delimiter paths skipped")


def test_undecodable_path_refused():
    """Test that surrogate-escaped paths are refused instead of crashing."""
    tmpdir, checkpoint_file, checkpoint, cache = _load_bytes(b"")
    with tmpdir, checkpoint:
        bad_path = b"caf\xe9.jpg".decode('utf-8', errors='surrogateescape')
        assert checkpoint.append(bad_path, 1) is False


def test_reload_after_append():
    """Test that a second session sees what the first one appended."""
    print("\n[TEST] Reload After Append")

    with tempfile.TemporaryDirectory() as tmpdir:
        checkpoint_file = Path(tmpdir) / "phashes.tsv"

        with PhashCheckpoint.open(checkpoint_file) as checkpoint:
            checkpoint.load()
            checkpoint.append("one.png", 11)
            checkpoint.append("two.png", 22)

        with PhashCheckpoint.open(checkpoint_file) as checkpoint:
            cache = checkpoint.load()
            checkpoint.append("three.png", 33)

        with PhashCheckpoint.open(checkpoint_file) as checkpoint:
            final = checkpoint.load()

        assert cache == {"one.png": 11, "two.png": 22}
        assert final == {"one.png": 11, "two.png": 22, "three.png": 33}
        print("✓ Entries persisted across sessions")


def test_open_failure():
    """Test that an unopenable checkpoint raises CheckpointOpenError."""
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(CheckpointOpenError):
            PhashCheckpoint.open(Path(tmpdir))

        with pytest.raises(CheckpointOpenError):
            PhashCheckpoint.open(Path(tmpdir) / "missing" / "phashes.tsv")


def run_all_tests():
    """Run all resume capability tests."""
    print("=" * 60)
    print("Resume Capability Test Suite")
    print("=" * 60)

    tests = [
        test_checkpoint_creation,
        test_checkpoint_loading,
        test_truncated_tail_recovery,
        test_whitespace_around_fields,
        test_close_drops_leftover_garbage,
        test_close_without_load_keeps_content,
        test_delimiter_paths_refused,
        test_undecodable_path_refused,
        test_reload_after_append,
        test_open_failure,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except AssertionError as e:
            print(f"✗ FAILED: {e}")
            failed += 1
        except Exception as e:
            print(f"✗ ERROR: {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"Results: {passed} passed, {failed} failed")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
