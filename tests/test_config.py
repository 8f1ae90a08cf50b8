"""Tests for configuration loading."""

import pytest

from hostmesh.config import (
    DEFAULT_SIGNALING_WEBSOCKET,
    Config,
    ConnectionTuning,
    IceServerConfig,
)

ENV_VARS = (
    "HOSTMESH_ENV",
    "HOSTMESH_SIGNALING_WS",
    "HOSTMESH_RELAY_URL",
    "HOSTMESH_KV_URL",
    "HOSTMESH_KV_DIR",
    "HOSTMESH_ORIGIN",
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty cwd, an empty home and no HOSTMESH_* variables."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(home))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _write_config(directory, text):
    path = directory / "hostmesh.toml"
    path.write_text(text)
    return path


class TestConnectionTuning:
    """Timing defaults and validation."""

    def test_defaults(self):
        tuning = ConnectionTuning()
        assert tuning.heartbeat_interval("mobile") == 5
        assert tuning.heartbeat_interval("desktop") == 30
        assert tuning.heartbeat_interval(None) == 30
        assert tuning.liveness_factor == 2
        assert tuning.backoff_base == 2
        assert tuning.max_retries == 3
        assert tuning.watchdog_interval == 2
        assert tuning.stall_threshold == 3
        assert tuning.staleness_window == 30
        assert tuning.negotiation_timeout == 30

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"stall_threshold": 0},
            {"backoff_base": 0},
            {"heartbeat_interval_mobile": -5},
            {"negotiation_timeout": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ConnectionTuning(**kwargs)

    def test_from_dict_skips_unknown_keys(self):
        tuning = ConnectionTuning.from_dict({"max_retries": 5, "bogus": 1})
        assert tuning.max_retries == 5


class TestIceServerConfig:
    def test_single_url_becomes_list(self):
        server = IceServerConfig(urls="stun:stun.example:3478")
        assert server.urls == ["stun:stun.example:3478"]

    def test_empty_urls_rejected(self):
        with pytest.raises(ValueError):
            IceServerConfig(urls=[])


class TestConfigLoading:
    """File, environment and default precedence."""

    def test_defaults_without_file(self, isolated):
        config = Config()
        config.load()
        assert config.environment == "production"
        assert config.signaling_websocket == DEFAULT_SIGNALING_WEBSOCKET
        assert config.kv_url is None
        assert config.tuning == ConnectionTuning()

    def test_file_values_and_environment_section(self, isolated, monkeypatch):
        _write_config(
            isolated,
            """
origin = "https://live.example"

[timing]
max_retries = 5
backoff_base = 1.0

[[ice_servers]]
urls = ["turn:turn.example:3478"]
username = "u"
credential = "c"

[environments.staging]
signaling_websocket = "wss://signal.staging.example"
""",
        )
        monkeypatch.setenv("HOSTMESH_ENV", "staging")

        config = Config()
        config.load()

        assert config.origin == "https://live.example"
        assert config.signaling_websocket == "wss://signal.staging.example"
        assert config.tuning.max_retries == 5
        assert config.tuning.backoff_base == 1.0
        assert config.ice_servers[0].username == "u"
        rtc = config.get_rtc_configuration()
        assert rtc.iceServers[0].urls == ["turn:turn.example:3478"]

    def test_home_config_used_when_cwd_has_none(self, isolated):
        home_dir = isolated / "home" / ".hostmesh"
        home_dir.mkdir()
        (home_dir / "config.toml").write_text('relay_url = "https://relay.example"\n')
        config = Config()
        config.load()
        assert config.relay_url == "https://relay.example"

    def test_env_overrides_file(self, isolated, monkeypatch):
        _write_config(isolated, 'kv_dir = "/from/file"\n')
        monkeypatch.setenv("HOSTMESH_KV_DIR", "/from/env")
        config = Config()
        config.load()
        assert config.kv_dir == "/from/env"

    def test_invalid_timing_keeps_defaults(self, isolated):
        _write_config(isolated, "[timing]\nstall_threshold = 0\n")
        config = Config()
        config.load()
        assert config.tuning.stall_threshold == 3

    def test_malformed_file_keeps_defaults(self, isolated):
        _write_config(isolated, "this is = = not toml")
        config = Config()
        config.load()
        assert config.origin == Config().origin

    def test_invalid_environment_falls_back(self, isolated, monkeypatch):
        monkeypatch.setenv("HOSTMESH_ENV", "moon")
        config = Config()
        config.load()
        assert config.environment == "production"

    def test_bad_ice_server_entry_skipped(self, isolated):
        _write_config(
            isolated,
            '[[ice_servers]]\nurls = []\n\n[[ice_servers]]\nurls = "stun:ok.example"\n',
        )
        config = Config()
        config.load()
        assert [s.urls for s in config.ice_servers] == [["stun:ok.example"]]
