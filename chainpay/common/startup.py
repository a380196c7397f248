"""Startup-time helpers for safe config logging."""

import os

from chainpay.common.logging import logger

# Matched against the end of the name so TOKEN_CONTRACT and TOKEN_DECIMALS stay visible.
# RPC URLs and DSNs routinely embed credentials.
SECRET_SUFFIXES = ("KEY", "SECRET", "PASSWORD", "_TOKEN", "DSN", "RPC_URL")


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if name.upper().endswith(SECRET_SUFFIXES):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str], problems: list[str] | None = None) -> None:
    """Log selected startup config keys, plus any configuration problems."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    for problem in problems or []:
        logger.error("startup_config_invalid reason=%s scanning_disabled=true", problem)
