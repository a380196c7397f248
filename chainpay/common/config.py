"""Central environment-driven settings for the deposit scanner.

Loaded once per process at startup. Every key can be overridden through the
environment or a local `.env` file (see `.env.example`).
"""

import re

from pydantic_settings import BaseSettings, SettingsConfigDict


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PLACEHOLDER_ADDRESSES = {"0x_your_treasury_address_here", "0x" + "0" * 40}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "deposit-scanner"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    redis_url: str = "redis://redis:6379/0"
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    rpc_url: str = "https://eth.llamarpc.com"
    rpc_timeout_seconds: int = 30
    chain_id: int = 1
    token_contract: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    token_decimals: int = 6
    treasury_address: str = ""

    confirmation_threshold: int = 12
    confirming_threshold: int = 6
    scan_lookback_blocks: int = 1000
    scan_chunk_blocks: int = 2000
    scan_interval_seconds: float = 20.0
    scanner_enabled: bool = True

    deposit_intent_ttl_seconds: int = 3600
    deposit_intent_rate_per_hour: int = 5
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def configuration_errors(self) -> list[str]:
        """Return the reasons scan passes must be refused, if any."""

        errors = []
        treasury = self.treasury_address.strip()
        if not treasury or treasury.lower() in PLACEHOLDER_ADDRESSES:
            errors.append("treasury address is not configured")
        elif not _ADDRESS_RE.match(treasury):
            errors.append(f"treasury address is malformed: {treasury!r}")
        if not _ADDRESS_RE.match(self.token_contract.strip()):
            errors.append(f"token contract is missing or malformed: {self.token_contract!r}")
        if self.confirmation_threshold < self.confirming_threshold:
            errors.append("confirmation threshold must not be below the confirming threshold")
        return errors


settings = CommonSettings()
