import hashlib
import json
import sys
import pytest
from pathlib import Path
from unittest.mock import patch

import base58


# Ensure the project root (containing balance_collection and services) is importable.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from balance_collection.common.usage_ledger import UsageLedger  # noqa: E402
from services.trc20.credential_pool import CredentialPool  # noqa: E402

# Mainnet USDT contract, in Base58 and 21-byte hex
USDT_ADDRESS = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
USDT_HEX = "41a614f803b6fd780986a42c78ec9c7f77e6ded13c"


def make_address(body: bytes) -> str:
    """Build a valid Base58Check TRON address from a 20-byte body"""
    payload = b"\x41" + body
    checksum = hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]
    return base58.b58encode(payload + checksum).decode("ascii")


def balance_response(hex_value: str) -> str:
    """triggerconstantcontract success body"""
    return json.dumps({
        "result": {"result": True},
        "energy_used": 935,
        "constant_result": [hex_value],
    })


class FakeResponse:
    def __init__(self, status: int, body):
        self.status = status
        self._body = body

    async def read(self):
        if isinstance(self._body, bytes):
            return self._body
        return self._body.encode("utf-8")

    async def text(self):
        return (await self.read()).decode("utf-8")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stand-in for aiohttp.ClientSession replaying scripted responses.

    Each item is either ``(status, body)`` or an exception to raise.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, **kwargs):
        self.calls.append({"url": url, "json": json, "headers": headers, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        status, body = item
        return FakeResponse(status, body)


@pytest.fixture
def valid_addresses():
    """Five distinct valid addresses"""
    return [make_address(bytes([i + 1]) * 20) for i in range(5)]


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "apikey_stats.json"


@pytest.fixture
def ledger(ledger_path):
    ledger = UsageLedger(ledger_path)
    yield ledger
    ledger.close()


@pytest.fixture
def pool(ledger):
    pool = CredentialPool(ledger=ledger, usage_limit=100)
    yield pool
    pool.close()


@pytest.fixture
def temp_log_dir(tmp_path):
    """Create temporary log directory for tests"""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def mock_settings(temp_log_dir):
    """Mock settings for tests"""
    with patch('balance_collection.common.config.settings') as mock_settings:
        mock_settings.log_level = "INFO"
        mock_settings.log_dir = str(temp_log_dir)
        mock_settings.tron_api_url = "https://api.trongrid.io/wallet/triggerconstantcontract"
        mock_settings.trc20_contract_address = USDT_ADDRESS
        mock_settings.token_decimals = 6
        mock_settings.http_timeout = 30
        mock_settings.tls_verify = True
        mock_settings.max_retries = 3
        mock_settings.retry_backoff_unit = 0
        mock_settings.requests_per_second = 1000
        mock_settings.max_concurrency = 1
        mock_settings.key_usage_limit = 100
        mock_settings.usage_ledger_path = ""
        yield mock_settings
