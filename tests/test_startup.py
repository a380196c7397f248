"""Startup config logging keeps credentials out of the log."""

from chainpay.common import startup
from chainpay.common.startup import _safe_env, log_startup_config


def test_token_settings_are_not_redacted(monkeypatch):
    monkeypatch.setenv("TOKEN_CONTRACT", "0xdAC17F958D2ee523a2206206994597C13D831ec7")
    monkeypatch.setenv("TOKEN_DECIMALS", "6")

    assert _safe_env("TOKEN_CONTRACT") == "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    assert _safe_env("TOKEN_DECIMALS") == "6"


def test_secret_like_names_are_redacted(monkeypatch):
    monkeypatch.setenv("API_KEY", "test-api-key")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql+psycopg2://chainpay:hunter2@db/deposits")
    monkeypatch.setenv("RPC_URL", "https://mainnet.example/v3/abc123")
    monkeypatch.setenv("ACCESS_TOKEN", "abc")
    monkeypatch.setenv("DB_PASSWORD", "hunter2")

    for name in ("API_KEY", "POSTGRES_DSN", "RPC_URL", "ACCESS_TOKEN", "DB_PASSWORD"):
        assert _safe_env(name) == "<redacted>"


def test_unset_variable_is_marked(monkeypatch):
    monkeypatch.delenv("CHAIN_ID", raising=False)
    assert _safe_env("CHAIN_ID") == "<unset>"


def test_log_startup_config_reports_problems(monkeypatch):
    monkeypatch.setenv("API_KEY", "test-api-key")
    monkeypatch.setenv("TOKEN_CONTRACT", "0xdAC17F958D2ee523a2206206994597C13D831ec7")
    calls = []

    class RecordingLogger:
        def info(self, msg, *args):
            calls.append(("info", msg % args))

        def error(self, msg, *args):
            calls.append(("error", msg % args))

    monkeypatch.setattr(startup, "logger", RecordingLogger())
    log_startup_config("deposit-scanner", ["API_KEY", "TOKEN_CONTRACT"], problems=["TREASURY_ADDRESS is not set"])

    level, line = calls[0]
    assert level == "info"
    assert "<redacted>" in line and "test-api-key" not in line
    assert "0xdAC17F958D2ee523a2206206994597C13D831ec7" in line
    assert calls[1] == ("error", "startup_config_invalid reason=TREASURY_ADDRESS is not set scanning_disabled=true")
