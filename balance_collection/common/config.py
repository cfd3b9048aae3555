import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()

# TronGrid endpoint and USDT (TRC-20) contract on mainnet
DEFAULT_TRON_API_URL = "https://api.trongrid.io/wallet/triggerconstantcontract"
DEFAULT_TRC20_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


def _env(name: str, default: str):
    """Read an environment variable when the Settings instance is created"""
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: str):
    return field(default_factory=lambda: int(os.getenv(name, default)))


@dataclass
class Settings:
    # Logging
    log_level: str = _env("LOG_LEVEL", "INFO")
    log_dir: str = _env("LOG_DIR", "./logs")

    # Remote API
    tron_api_url: str = _env("TRON_API_URL", DEFAULT_TRON_API_URL)
    trc20_contract_address: str = _env("TRC20_CONTRACT_ADDRESS", DEFAULT_TRC20_CONTRACT)
    token_decimals: int = _env_int("TOKEN_DECIMALS", "6")

    # HTTP Settings
    http_timeout: int = _env_int("HTTP_TIMEOUT", "30")  # seconds
    tls_verify: bool = field(
        default_factory=lambda: os.getenv("TLS_VERIFY", "true").lower() in ("true", "1", "yes")
    )
    max_retries: int = _env_int("MAX_RETRIES", "3")
    retry_backoff_unit: float = field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_UNIT", "1.0"))
    )  # seconds per backoff step

    # Throughput
    requests_per_second: int = _env_int("REQUESTS_PER_SECOND", "12")
    max_concurrency: int = _env_int("MAX_CONCURRENCY", "1")

    # API key pool
    key_usage_limit: int = _env_int("KEY_USAGE_LIMIT", "100000")
    usage_ledger_path: str = _env("USAGE_LEDGER_PATH", "")

    def validate(self):
        """Validate configuration on startup"""
        if not self.tron_api_url:
            raise ValueError("TRON_API_URL must be set")
        if self.requests_per_second < 1:
            raise ValueError("REQUESTS_PER_SECOND must be at least 1")
        if self.max_retries < 1:
            raise ValueError("MAX_RETRIES must be at least 1")
        if self.key_usage_limit < 1:
            raise ValueError("KEY_USAGE_LIMIT must be at least 1")
        if not 1 <= self.max_concurrency <= 50:
            raise ValueError("MAX_CONCURRENCY must be between 1 and 50")
        return True

settings = Settings()
settings.validate()

def get_config():
    """Get configuration settings"""
    return {
        "log_level": settings.log_level,
        "log_dir": settings.log_dir,
        "tron_api_url": settings.tron_api_url,
        "http_timeout": settings.http_timeout,
        "max_retries": settings.max_retries,
        "requests_per_second": settings.requests_per_second,
        "max_concurrency": settings.max_concurrency,
        "key_usage_limit": settings.key_usage_limit,
    }
