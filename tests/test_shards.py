"""Tests for shard discovery and window filtering."""

import pytest

from pitr.errors import DecodeError, PitrIOError
from pitr.shards import discover_files, filter_by_window, first_commit_ts_and_size, is_binlog_file


class TestDiscoverFiles:

    def test_recursive_and_sorted(self, shard_writer):
        shard_writer("node-b/binlog-000001", [5])
        shard_writer("node-a/binlog-000002", [7])
        shard_writer("node-a/binlog-000001", [1])
        files = discover_files(shard_writer.root)
        assert [f.relative_to(shard_writer.root).as_posix() for f in files] == [
            "node-a/binlog-000001",
            "node-a/binlog-000002",
            "node-b/binlog-000001",
        ]

    def test_ignores_other_and_hidden_files(self, shard_writer):
        shard_writer("binlog-000001", [1])
        shard_writer("savepoint", [1])
        shard_writer(".binlog-000002", [1])
        shard_writer(".cache/binlog-000003", [1])
        files = discover_files(shard_writer.root)
        assert [f.name for f in files] == ["binlog-000001"]

    def test_empty_directory(self, shard_writer):
        assert discover_files(shard_writer.root) == []

    def test_missing_directory(self, tmp_path):
        with pytest.raises(PitrIOError, match="does not exist"):
            discover_files(tmp_path / "nowhere")

    def test_is_binlog_file(self):
        assert is_binlog_file("binlog-0000000000000001-20240501")
        assert not is_binlog_file("README")


class TestFirstCommitTs:

    def test_reads_head_and_size(self, shard_writer):
        path = shard_writer("binlog-1", [42, 43])
        first_ts, size = first_commit_ts_and_size(path)
        assert first_ts == 42
        assert size == path.stat().st_size

    def test_empty_shard(self, shard_writer):
        path = shard_writer("binlog-1", [])
        with pytest.raises(DecodeError, match="no event"):
            first_commit_ts_and_size(path)


class TestFilterByWindow:

    def test_keeps_everything_when_unbounded(self, shard_writer):
        a = shard_writer("binlog-1", [10, 20])
        b = shard_writer("binlog-2", [30, 40])
        kept, total = filter_by_window([a, b], 0, 0)
        assert [s.path for s in kept] == [a, b]
        assert total == a.stat().st_size + b.stat().st_size

    def test_drops_shard_starting_after_stop(self, shard_writer):
        a = shard_writer("binlog-1", [10, 20])
        b = shard_writer("binlog-2", [30, 40])
        kept, _ = filter_by_window([a, b], 0, 25)
        assert [s.path for s in kept] == [a]

    def test_drops_predecessor_ending_before_start(self, shard_writer):
        a = shard_writer("binlog-1", [10, 20])
        b = shard_writer("binlog-2", [30, 40])
        c = shard_writer("binlog-3", [50, 60])
        kept, _ = filter_by_window([a, b, c], 35, 0)
        assert [s.path for s in kept] == [b, c]

    def test_successor_starting_at_start_keeps_predecessor(self, shard_writer):
        a = shard_writer("binlog-1", [10, 20])
        b = shard_writer("binlog-2", [30, 40])
        kept, _ = filter_by_window([a, b], 30, 0)
        assert [s.path for s in kept] == [a, b]

    def test_sources_are_filtered_independently(self, shard_writer):
        a1 = shard_writer("node-a/binlog-1", [10, 20, 30])
        b1 = shard_writer("node-b/binlog-1", [15, 25])
        b2 = shard_writer("node-b/binlog-2", [100])
        kept, _ = filter_by_window([a1, b1, b2], 12, 26)
        assert [s.path for s in kept] == [a1, b1]

    def test_result_sorted_by_first_commit_ts(self, shard_writer):
        a1 = shard_writer("node-a/binlog-1", [20])
        b1 = shard_writer("node-b/binlog-1", [5])
        kept, _ = filter_by_window([a1, b1], 0, 0)
        assert [s.first_commit_ts for s in kept] == [5, 20]

    def test_skips_empty_shards(self, shard_writer, caplog):
        a = shard_writer("binlog-1", [])
        b = shard_writer("binlog-2", [30])
        kept, _ = filter_by_window([a, b], 0, 0)
        assert [s.path for s in kept] == [b]
        assert "Skipping empty binlog file" in caplog.text
