"""
Tests for the JSON configuration and the worker arguments it produces.
"""

import json

import pytest

from proxy_tray.config import (
    ACCOUNT_BUSINESS,
    ACCOUNT_INDIVIDUAL,
    DEFAULT_CONFIG,
    Config,
    config_fingerprint,
)


@pytest.fixture
def cfg(tmp_path):
    return Config(tmp_path / "config.json")


class TestPersistence:
    def test_defaults_are_written_on_first_load(self, tmp_path):
        path = tmp_path / "config.json"
        Config(path)
        assert json.loads(path.read_text(encoding="utf-8")) == DEFAULT_CONFIG

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = Config(path)
        cfg.port = 5123
        cfg.verbose = True
        cfg.save()

        reloaded = Config(path)
        assert reloaded.port == 5123
        assert reloaded.verbose is True

    def test_missing_keys_take_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"port": 8080}), encoding="utf-8")
        cfg = Config(path)
        assert cfg.port == 8080
        assert cfg.account_type == ACCOUNT_INDIVIDUAL

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_bad_file_falls_back_to_defaults(self, tmp_path, content):
        path = tmp_path / "config.json"
        path.write_text(content, encoding="utf-8")
        assert Config(path).port == DEFAULT_CONFIG["port"]

    def test_reset(self, cfg):
        cfg.port = 9999
        cfg.reset()
        assert cfg.port == DEFAULT_CONFIG["port"]


class TestAccessors:
    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_port_range(self, cfg, port):
        with pytest.raises(ValueError):
            cfg.port = port

    def test_unknown_account_type(self, cfg):
        cfg.account_type = "galactic"
        assert cfg.account_type == ACCOUNT_INDIVIDUAL

    def test_rate_limit_blank_is_none(self, cfg):
        cfg.rate_limit_seconds = ""
        assert cfg.rate_limit_seconds is None
        cfg.rate_limit_seconds = -4
        assert cfg.rate_limit_seconds == 0


class TestCliArgs:
    def test_defaults(self, cfg):
        assert cfg.to_cli_args() == ["start", "--port", "4399"]

    def test_all_options(self, cfg):
        cfg.port = 5000
        cfg.account_type = ACCOUNT_BUSINESS
        cfg.verbose = True
        cfg.manual_approve = True
        cfg.rate_limit_seconds = 30
        cfg.rate_limit_wait = True
        cfg.proxy_env = True
        cfg.show_token = True
        assert cfg.to_cli_args() == [
            "start", "--port", "5000",
            "--account-type", "business",
            "--verbose",
            "--manual",
            "--rate-limit", "30",
            "--wait",
            "--proxy-env",
            "--show-token",
        ]


class TestRiskAcceptance:
    def test_needed_until_accepted(self, cfg):
        assert cfg.needs_risk_acceptance()
        cfg.accept_risk("2026-01-01T00:00:00+00:00")
        assert not cfg.needs_risk_acceptance()

    def test_setting_change_asks_again(self, cfg):
        cfg.accept_risk("2026-01-01T00:00:00+00:00")
        cfg.manual_approve = True
        assert cfg.needs_risk_acceptance()

    def test_cosmetic_change_does_not_ask_again(self, cfg):
        cfg.accept_risk("2026-01-01T00:00:00+00:00")
        cfg.default_model = "gpt-4o"
        cfg.start_minimized = True
        assert not cfg.needs_risk_acceptance()

    def test_fingerprint_format(self):
        fp = config_fingerprint({"port": 1, "verbose": True, "rate_limit_seconds": None})
        assert fp == (
            "port=1|account_type=|verbose=True|manual_approve=|"
            "rate_limit_seconds=|rate_limit_wait=|proxy_env=|show_token="
        )
