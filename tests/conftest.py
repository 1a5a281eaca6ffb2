import json
import logging

import pytest

from pitr.config import PitrConfig


def write_shard(path, events):
    """Write event dicts (or bare commit ts ints) as a JSON Lines shard."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = []
    for event in events:
        if isinstance(event, int):
            event = {"commit_ts": event, "type": "dml", "db": "shop", "table": "orders",
                     "op": "insert", "values": [event]}
        lines.append(json.dumps(event))
    path.write_text("\n".join(lines) + ("\n" if lines else ""))
    return path


def read_merged(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


@pytest.fixture
def shard_writer(tmp_path):
    """Return a function writing shards under tmp_path/binlog."""
    root = tmp_path / "binlog"
    root.mkdir()

    def _write(relative, events):
        return write_shard(root / relative, events)

    _write.root = root
    return _write


@pytest.fixture
def test_config(tmp_path):
    return PitrConfig(
        data_dir=tmp_path / "binlog",
        dest_dir=tmp_path / "out",
        temp_dir=tmp_path / "tmp",
        map_workers=2,
    )


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    # Never read the developer's real config
    monkeypatch.setenv("PITR_HOME", str(tmp_path / "pitr-home"))


@pytest.fixture(autouse=True)
def reset_pitr_logger():
    # setup_logging changes the level and handlers of the shared "pitr" logger
    yield
    logger = logging.getLogger("pitr")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
    logger.setLevel(logging.NOTSET)
