"""Tests for server configuration and YAML loading."""

import pytest

from seedlink_engine.config import (
    BackpressureConfig,
    RetentionPolicy,
    ServerConfig,
    load_config,
)
from seedlink_engine.fanout import BackpressurePolicy

YAML_CONFIG = """\
seedlink:
  host: 127.0.0.1
  port: 18500
  organization: Test Network
  versions: ["4.0", "3.1"]
  strict_stations: true
  stations:
    XX_ABC: Station ABC
  retention:
    max_records: 500
    max_age: 3600
  backpressure:
    policy: disconnect
    max_lag: 50
"""


class TestServerConfig:
    """Defaults and validation"""

    def test_defaults(self):
        config = ServerConfig()
        assert config.port == 18000
        assert config.versions == ((4, 0), (3, 1))
        assert config.v4_enabled

    def test_v3_only(self):
        config = ServerConfig(versions=("3.1",))
        assert config.versions == ((3, 1),)
        assert not config.v4_enabled

    @pytest.mark.parametrize("versions", [(), ((5, 0),)])
    def test_bad_versions(self, versions):
        with pytest.raises(ValueError):
            ServerConfig(versions=versions)

    def test_from_dict(self):
        config = ServerConfig.from_dict(
            {"retention": {"max_records": 10}, "backpressure": {"policy": "DROP_OLDEST"}}
        )
        assert config.retention == RetentionPolicy(max_records=10)
        assert config.backpressure.policy is BackpressurePolicy.DROP_OLDEST

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="unknown"):
            ServerConfig.from_dict({"prot": 1})


class TestPolicies:
    """Retention and backpressure validation"""

    def test_retention_needs_a_bound(self):
        with pytest.raises(ValueError):
            RetentionPolicy(max_records=None, max_age=None)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_records": 0}, {"max_age": -1.0}, {"high_water_factor": 0.5}],
    )
    def test_retention_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetentionPolicy(**kwargs)

    def test_backpressure_policy_names(self):
        assert BackpressureConfig("disconnect").policy is BackpressurePolicy.DISCONNECT
        with pytest.raises(ValueError):
            BackpressureConfig("block")


class TestLoadConfig:
    """YAML files"""

    def test_section(self, tmp_path):
        path = tmp_path / "server.yaml"
        path.write_text(YAML_CONFIG)
        config = load_config(str(path), "seedlink")
        assert (config.host, config.port) == ("127.0.0.1", 18500)
        assert config.strict_stations
        assert config.stations == {"XX_ABC": "Station ABC"}
        assert config.retention.max_age == 3600
        assert config.backpressure.policy is BackpressurePolicy.DISCONNECT
        assert config.backpressure.max_lag == 50

    def test_missing_section(self, tmp_path):
        path = tmp_path / "server.yaml"
        path.write_text(YAML_CONFIG)
        with pytest.raises(ValueError, match="section"):
            load_config(str(path), "other")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == ServerConfig()
