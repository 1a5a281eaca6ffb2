"""
Shard discovery and TSO-window filtering.

A shard is one append-only binlog file. Files written by the same source
live in the same directory and follow each other in commit order; files
from different directories are not ordered relative to each other.
"""

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pitr.errors import DecodeError, PitrIOError
from pitr.events import read_events

logger = logging.getLogger(__name__)

BINLOG_PREFIX = "binlog"


@dataclass(frozen=True)
class ShardFile:
    """A shard path with the metadata read from its head."""
    path: Path
    first_commit_ts: int
    size: int


def is_binlog_file(name: str) -> bool:
    return name.startswith(BINLOG_PREFIX) and not name.startswith(".")


def discover_files(directory: Path) -> list[Path]:
    """
    Find all shard files under a directory, recursively.

    Args:
        directory: Root of the binlog directory tree

    Returns:
        Sorted list of shard paths

    Raises:
        PitrIOError: If the directory does not exist or cannot be listed
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise PitrIOError(f"binlog directory does not exist: {directory}")

    def _raise(err: OSError):
        raise PitrIOError(f"walk {directory} failed: {err}") from err

    found = []
    for root, dirs, files in os.walk(directory, onerror=_raise):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        for name in files:
            path = Path(root) / name
            if is_binlog_file(name) and path.is_file():
                found.append(path)
    return sorted(found)


def _read_head(path: Path) -> tuple[Optional[int], int]:
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise PitrIOError(f"stat {path} failed: {e}") from e

    events = read_events(path)
    try:
        for event in events:
            return event.commit_ts, size
    finally:
        events.close()
    return None, size


def first_commit_ts_and_size(path: Path) -> tuple[int, int]:
    """
    Read the first event's commit TSO and the file size.

    Raises:
        DecodeError: If the shard holds no event or its head is malformed
        PitrIOError: If the file cannot be read
    """
    first_ts, size = _read_head(path)
    if first_ts is None:
        raise DecodeError("shard contains no event", path=str(path))
    return first_ts, size


def filter_by_window(
    paths: list[Path],
    start_tso: int,
    stop_tso: int,
) -> tuple[list[ShardFile], int]:
    """
    Keep the shards that can contain events inside [start_tso, stop_tso].

    - Empty shards are skipped.
    - A shard whose first event is after stop_tso is dropped.
    - Within one source directory, a shard whose successor starts strictly
      before start_tso only holds events older than the window and is dropped.

    Returns:
        (shards sorted by first commit TSO, total size in bytes)
    """
    by_source: dict[Path, list[ShardFile]] = defaultdict(list)
    for path in paths:
        first_ts, size = _read_head(path)
        if first_ts is None:
            logger.warning(f"Skipping empty binlog file {path}")
            continue
        by_source[Path(path).parent].append(ShardFile(Path(path), first_ts, size))

    kept: list[ShardFile] = []
    for source, shards in by_source.items():
        shards.sort(key=lambda s: (s.first_commit_ts, str(s.path)))
        for i, shard in enumerate(shards):
            if stop_tso and shard.first_commit_ts > stop_tso:
                logger.debug(f"Drop {shard.path}: starts at {shard.first_commit_ts} after stop {stop_tso}")
                continue
            successor = shards[i + 1] if i + 1 < len(shards) else None
            if successor is not None and successor.first_commit_ts < start_tso:
                logger.debug(f"Drop {shard.path}: ends before start {start_tso}")
                continue
            kept.append(shard)

    kept.sort(key=lambda s: (s.first_commit_ts, str(s.path)))
    total_size = sum(s.size for s in kept)
    logger.info(f"{len(kept)} of {len(paths)} binlog files remain for [{start_tso}, {stop_tso}], {total_size} bytes")
    return kept, total_size
