from pathlib import Path

import pytest
import yaml

from pitr.config import PitrConfig, get_pitr_home, load_config
from pitr.errors import ConfigError
from pitr.filter import TableName
from pitr.tso import datetime_to_tso, parse_datetime


def test_get_pitr_home_default(monkeypatch):
    monkeypatch.delenv("PITR_HOME", raising=False)
    assert get_pitr_home() == Path("~/.config/pitr").expanduser()


def test_get_pitr_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("PITR_HOME", str(custom_home))
    assert get_pitr_home() == custom_home


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="pitr config not found"):
        load_config()


def test_load_config_valid(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({
        "data_dir": "/data/binlog",
        "dest_dir": "/data/out",
        "start_tso": 100,
        "store_endpoints": "tidb-0:10080,tidb-1:10080",
        "ignore_dbs": ["test"],
        "ignore_tables": [{"db_name": "shop", "tbl_name": "~^tmp_"}],
    }))

    cfg = load_config(config_path)
    assert isinstance(cfg, PitrConfig)
    assert cfg.data_dir == Path("/data/binlog")
    assert cfg.dest_dir == Path("/data/out")
    assert cfg.start_tso == 100
    assert cfg.store_endpoints == ["tidb-0:10080", "tidb-1:10080"]


def test_load_config_default_location(monkeypatch, tmp_path):
    monkeypatch.setenv("PITR_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("data_dir: /data/binlog\n")
    assert load_config().data_dir == Path("/data/binlog")


def test_load_config_empty_file(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("")
    assert load_config(config_path).data_dir is None


def test_load_config_invalid_yaml(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("data_dir: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(config_path)


def test_load_config_not_a_mapping(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_config(config_path)


def test_unknown_keys_rejected():
    with pytest.raises(ConfigError, match="unknown configuration keys: bogus"):
        PitrConfig.from_dict({"data_dir": "/x", "bogus": 1})


def test_with_overrides_ignores_none(tmp_path):
    cfg = PitrConfig(data_dir=tmp_path, start_tso=5)
    updated = cfg.with_overrides(start_tso=None, stop_tso=9, dest_dir=str(tmp_path / "o"))
    assert updated.start_tso == 5
    assert updated.stop_tso == 9
    assert updated.dest_dir == tmp_path / "o"
    assert cfg.stop_tso == 0


class TestValidate:

    def test_valid(self, tmp_path):
        cfg = PitrConfig(data_dir=tmp_path, ignore_tables=["shop.audit"], log_level="debug",
                         store_endpoints=["tidb-0:10080"])
        cfg.validate()
        assert cfg.ignore_tables == [TableName("shop", "audit")]
        assert cfg.log_level == "DEBUG"
        assert cfg.store_endpoints == ["http://tidb-0:10080"]

    def test_data_dir_required(self):
        with pytest.raises(ConfigError, match="data_dir is required"):
            PitrConfig().validate()

    def test_start_after_stop(self, tmp_path):
        with pytest.raises(ConfigError, match="greater than stop"):
            PitrConfig(data_dir=tmp_path, start_tso=10, stop_tso=5).validate()

    def test_non_integer_tso(self, tmp_path):
        with pytest.raises(ConfigError, match="start_tso must be an integer"):
            PitrConfig(data_dir=tmp_path, start_tso="10").validate()

    def test_datetime_bounds(self, tmp_path):
        cfg = PitrConfig(data_dir=tmp_path, start_datetime="2024-05-01 00:00:00",
                         stop_datetime="2024-05-02 00:00:00")
        cfg.validate()
        assert cfg.start_tso == datetime_to_tso(parse_datetime("2024-05-01 00:00:00"))
        assert cfg.stop_tso > cfg.start_tso

    def test_datetime_and_tso_exclusive(self, tmp_path):
        cfg = PitrConfig(data_dir=tmp_path, start_tso=1, start_datetime="2024-05-01 00:00:00")
        with pytest.raises(ConfigError, match="mutually exclusive"):
            cfg.validate()

    def test_bad_datetime(self, tmp_path):
        with pytest.raises(ConfigError, match="stop_datetime"):
            PitrConfig(data_dir=tmp_path, stop_datetime="tomorrow").validate()

    @pytest.mark.parametrize("kwargs,match", [
        ({"map_workers": 0}, "map_workers"),
        ({"store_timeout": 0}, "store_timeout"),
        ({"log_level": "LOUD"}, "log_level"),
        ({"log_format": "xml"}, "log_format"),
        ({"store_endpoints": "nohost"}, "host:port"),
        ({"do_tables": ["orders"]}, "do_tables"),
    ])
    def test_invalid_values(self, tmp_path, kwargs, match):
        with pytest.raises(ConfigError, match=match):
            PitrConfig(data_dir=tmp_path, **kwargs).validate()
