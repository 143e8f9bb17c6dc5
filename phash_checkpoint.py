#!/usr/bin/env python3
"""
Phash Checkpoint File
=====================
Append-only, crash-tolerant store of ``<path>\\t<hash>\\n`` lines.

The file is both the resume state and the final output. A line only counts
once it is newline-terminated and well formed; anything after the first bad
line is left over from an interrupted run and gets overwritten by new
appends.

License: MIT
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

MAX_HASH = (1 << 64) - 1
RESERVED_CHARS = ('\t', '\n')


class CheckpointOpenError(Exception):
    """The checkpoint file could not be opened (fatal)."""


def parse_line(raw: bytes) -> Optional[tuple]:
    """
    Parse one raw checkpoint line.

    Returns:
        ``(path, phash)`` or None if the line is not authoritative
    """
    if not raw.endswith(b'\n'):
        return None

    try:
        line = raw.decode('utf-8')
    except UnicodeDecodeError:
        return None

    parts = [part.strip() for part in line.split('\t')]
    if len(parts) != 2:
        return None

    path, value = parts
    if not (value.isascii() and value.isdigit()):
        return None

    phash = int(value)
    if phash > MAX_HASH:
        return None

    return path, phash


class PhashCheckpoint:
    """
    Checkpoint file owned by a single writer.

    Usage:
        with PhashCheckpoint.open('phashes.tsv') as checkpoint:
            cache = checkpoint.load()
            checkpoint.append('a.jpg', 123)
    """

    def __init__(self, fileobj, path: Union[str, Path] = '<checkpoint>'):
        self.file = fileobj
        self.path = Path(path)
        self.entries: Dict[str, int] = {}
        self.valid_len = 0
        self.loaded = False

    @classmethod
    def open(cls, path: Union[str, Path]) -> 'PhashCheckpoint':
        """Open ``path`` for read+write, creating it if absent."""
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
            fileobj = os.fdopen(fd, 'r+b')
        except OSError as e:
            raise CheckpointOpenError(f"Cannot open checkpoint file {path}: {e}") from e
        return cls(fileobj, path)

    def load(self) -> Dict[str, int]:
        """
        Read every authoritative entry and position the file for appending.

        Scanning stops at the first line that is unterminated or malformed.
        The write cursor is left right after the last valid line so the
        next append overwrites whatever followed it.
        """
        self.entries = {}
        self.valid_len = 0
        self.file.seek(0)

        while True:
            raw = self.file.readline()
            if not raw:
                break

            entry = parse_line(raw)
            if entry is None:
                logger.debug(f"Discarding checkpoint tail at byte {self.valid_len} in {self.path}")
                break

            path, phash = entry
            self.entries[path] = phash
            self.valid_len += len(raw)

        self.file.seek(self.valid_len)
        self.loaded = True
        logger.info(f"Loaded {len(self.entries)} cached phashes from {self.path}")
        return self.entries

    def append(self, path: str, phash: int) -> bool:
        """
        Durably write one entry.

        Returns:
            True if written, False if the path was refused
        """
        if any(char in path for char in RESERVED_CHARS):
            logger.warning(f"Path contains tab or newline, it will be skipped: {path!r}")
            return False

        try:
            line = f"{path}\t{phash}\n".encode('utf-8')
        except UnicodeEncodeError:
            logger.warning(f"Path is not valid UTF-8, it will be skipped: {path!r}")
            return False

        self.file.write(line)
        self.file.flush()
        os.fsync(self.file.fileno())
        return True

    def close(self) -> None:
        """Drop any leftover tail beyond the last written entry and close."""
        if self.file.closed:
            return
        try:
            if self.loaded:
                self.file.truncate(self.file.tell())
                self.file.flush()
        finally:
            self.file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
