"""Tests for environment configuration and header construction."""

import base64

import pytest

from loadrig.config import Settings, build_headers, get_settings, reset_settings
from loadrig.exceptions import ConfigError

ENV_VARS = [
    "TARGET_ENDPOINT",
    "V_USERS",
    "TEST_DURATION",
    "RAMP_UP_TIME",
    "RPS_RATE",
    "AUTH_TYPE",
    "BASIC_AUTH_USER",
    "BASIC_AUTH_PASS",
    "BEARER_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.target_endpoint == "https://httpbin.org"
        assert settings.v_users == 10
        assert settings.test_duration_seconds == 300
        assert settings.ramp_up_seconds == 60
        assert settings.rps_rate is None
        assert not settings.arrival_mode
        assert settings.auth_type == "none"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("TARGET_ENDPOINT", "http://api.local:8080/")
        monkeypatch.setenv("V_USERS", "25")
        monkeypatch.setenv("TEST_DURATION", "1m30s")
        monkeypatch.setenv("RAMP_UP_TIME", "10s")
        monkeypatch.setenv("RPS_RATE", "40")

        settings = Settings()

        assert settings.target_endpoint == "http://api.local:8080"
        assert settings.v_users == 25
        assert settings.test_duration_seconds == 90
        assert settings.ramp_up_seconds == 10
        assert settings.rps_rate == 40
        assert settings.arrival_mode

    def test_empty_values_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("V_USERS", "")
        monkeypatch.setenv("RPS_RATE", "  ")
        settings = Settings()
        assert settings.v_users == 10
        assert settings.rps_rate is None

    @pytest.mark.parametrize("value", ["abc", "0", "-3", "2.5"])
    def test_invalid_v_users(self, monkeypatch, value):
        monkeypatch.setenv("V_USERS", value)
        with pytest.raises(ConfigError) as exc_info:
            Settings()
        assert exc_info.value.details["variable"] == "V_USERS"

    def test_invalid_rps_rate(self, monkeypatch):
        monkeypatch.setenv("RPS_RATE", "fast")
        with pytest.raises(ConfigError):
            Settings()

    def test_invalid_duration(self, monkeypatch):
        monkeypatch.setenv("TEST_DURATION", "forever")
        with pytest.raises(ConfigError) as exc_info:
            Settings()
        assert exc_info.value.details["variable"] == "TEST_DURATION"

    def test_invalid_auth_type(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "oauth")
        with pytest.raises(ConfigError):
            Settings()

    def test_describe_omits_credentials(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "bearer_token")
        monkeypatch.setenv("BEARER_TOKEN", "secret")
        summary = Settings().describe()
        assert "secret" not in str(summary)
        assert summary["rps_rate"] == "not specified"

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("V_USERS", "99")
        assert get_settings() is first
        reset_settings()
        assert get_settings().v_users == 99


class TestBuildHeaders:
    def test_no_auth(self):
        headers = build_headers(Settings(), "loadrig-load-test/1.0")
        assert headers == {
            "Content-Type": "application/json",
            "User-Agent": "loadrig-load-test/1.0",
        }

    def test_basic_auth(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "basic_auth")
        monkeypatch.setenv("BASIC_AUTH_USER", "alice")
        monkeypatch.setenv("BASIC_AUTH_PASS", "s3cret")
        headers = build_headers(Settings(), "ua")
        expected = base64.b64encode(b"alice:s3cret").decode("ascii")
        assert headers["Authorization"] == f"Basic {expected}"

    def test_basic_auth_needs_both_credentials(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "basic_auth")
        monkeypatch.setenv("BASIC_AUTH_USER", "alice")
        assert "Authorization" not in build_headers(Settings(), "ua")

    def test_bearer_token(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "bearer_token")
        monkeypatch.setenv("BEARER_TOKEN", "tok")
        assert build_headers(Settings(), "ua")["Authorization"] == "Bearer tok"

    def test_bearer_without_token(self, monkeypatch):
        monkeypatch.setenv("AUTH_TYPE", "bearer_token")
        assert "Authorization" not in build_headers(Settings(), "ua")
