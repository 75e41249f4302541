"""Tests for ServiceConfig loading and validation."""

import json

import pytest

from rconwatch.config import ServiceConfig


class TestLoad:
    def test_defaults(self):
        cfg = ServiceConfig()
        assert cfg.keepalive_interval == 30
        assert cfg.watchdog_timeout == 60
        assert cfg.response_timeout == 5
        assert cfg.liveness_timeout == 120
        cfg.validate()

    def test_server_section(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "server": {"host": "10.0.0.2", "rconPort": "2305", "rconPassword": "pw"},
        }))
        cfg = ServiceConfig.load(path)
        assert (cfg.host, cfg.port, cfg.password) == ("10.0.0.2", 2305, "pw")

    def test_flat_keys_win(self):
        cfg = ServiceConfig.from_dict({
            "server": {"host": "10.0.0.2", "rconPort": 2305},
            "host": "10.0.0.9",
            "poll_interval": 15,
        })
        assert cfg.host == "10.0.0.9"
        assert cfg.port == 2305
        assert cfg.poll_interval == 15

    def test_unknown_keys_ignored(self):
        cfg = ServiceConfig.from_dict({"discord": {"token": "x"}, "port": 2400})
        assert cfg.port == 2400

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            ServiceConfig.load(path)


class TestValidate:
    @pytest.mark.parametrize("changes", [
        {"host": ""},
        {"port": 0},
        {"port": 70000},
        {"keepalive_interval": 46},
        {"keepalive_interval": 0},
        {"response_timeout": 0},
        {"reconnect_max_delay": 1},
        {"max_consecutive_timeouts": 0},
    ])
    def test_rejected(self, changes):
        with pytest.raises(ValueError):
            ServiceConfig(**changes).validate()

    def test_keepalive_at_limit_allowed(self):
        ServiceConfig(keepalive_interval=45).validate()


def test_redacted_masks_password():
    out = ServiceConfig(password="hunter2").redacted()
    assert out["password"] == "***"
    assert out["host"] == "127.0.0.1"
