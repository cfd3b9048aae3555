"""TronGrid client for TRC-20 balance queries.

Calls ``/wallet/triggerconstantcontract`` with ``balanceOf(address)`` and turns
the returned ABI word into a decimal balance string. Each client carries its
own token bucket, so one client per API key keeps keys from throttling each
other.
"""

import asyncio
import json
import string
import threading
from typing import Any, Dict, Optional, Tuple

import aiohttp
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from balance_collection.common import config
from balance_collection.common.logging_setup import mask_key
from . import address_codec
from .address_codec import AddressError
from .rate_limiter import RateLimiter

logger = structlog.get_logger()

BALANCE_OF_SELECTOR = "balanceOf(address)"
API_KEY_HEADER = "TRON-PRO-API-KEY"
HTTP_TOO_MANY_REQUESTS = 429


class ClientError(Exception):
    """Base exception for balance query failures."""
    pass


class EncodingFailedError(ClientError):
    """Raised when the address cannot be encoded into request parameters."""
    pass


class TransportError(ClientError):
    """Raised when the request could not be delivered after all attempts."""
    pass


class RemoteError(ClientError):
    """Raised when the API answers with a non-200 status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API returned HTTP {status_code}" + (f": {body[:200]}" if body else ""))


class QueryFailedError(ClientError):
    """Raised when the API reports that the contract call failed."""
    pass


class ResponseParseError(ClientError):
    """Raised when the response body cannot be interpreted."""
    pass


class QueryCancelledError(ClientError):
    """Raised when cancellation is observed before an attempt."""
    pass


class RateLimitedError(ClientError):
    """HTTP 429 from the API; retried internally, surfaced as RemoteError."""

    def __init__(self, body: str = ""):
        self.body = body
        super().__init__("Rate limited (HTTP 429)")


RETRYABLE_ERRORS = (RateLimitedError, aiohttp.ClientError, asyncio.TimeoutError)


def format_units(value: int, decimals: int = 6) -> str:
    """Render an integer amount of base units as a decimal string.

    Trailing fractional zeros are trimmed and a zero remainder has no
    fractional part: 1500000 -> "1.5", 2000000 -> "2", 1 -> "0.000001".
    """
    if decimals == 0:
        return str(value)
    whole, fraction = divmod(value, 10 ** decimals)
    fraction_str = str(fraction).zfill(decimals).rstrip("0")
    if not fraction_str:
        return str(whole)
    return f"{whole}.{fraction_str}"


def _decode_message(message: Any) -> str:
    """TronGrid hex-encodes some error messages; decode them when possible"""
    if not message:
        return ""
    message = str(message)
    if len(message) % 2 == 0 and all(c in string.hexdigits for c in message):
        try:
            text = bytes.fromhex(message).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return message
        if text and text.isprintable():
            return text
    return message


class TronBalanceClient:
    """Async client for TRC-20 ``balanceOf`` calls against TronGrid."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        requests_per_second: Optional[int] = None,
        timeout: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_unit: Optional[float] = None,
        decimals: Optional[int] = None,
        visible: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize TronGrid client.

        Args:
            api_key: TronGrid API key; requests go out without the key header when empty
            base_url: triggerconstantcontract endpoint (defaults to TRON_API_URL)
            contract_address: TRC-20 contract to query (defaults to USDT)
            rate_limiter: Limiter to use instead of a fresh per-client bucket
            requests_per_second: Bucket size for the per-client limiter
            timeout: Per-request timeout in seconds
            max_attempts: Total attempts for 429 and transport failures
            backoff_unit: Seconds per backoff step between attempts
            decimals: Token decimals used to format balances
            visible: Send owner_address as Base58 (True) or 21-byte hex (False)
            session: Shared aiohttp session; a session per request is opened when None
        """
        settings = config.settings
        self.api_key = api_key or ""
        self.base_url = base_url or settings.tron_api_url
        self.contract_address = contract_address or settings.trc20_contract_address
        self.rate_limiter = rate_limiter or RateLimiter(
            rate=requests_per_second or settings.requests_per_second,
            interval=1.0,
        )
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.http_timeout)
        self.max_attempts = max_attempts or settings.max_retries
        self.backoff_unit = settings.retry_backoff_unit if backoff_unit is None else backoff_unit
        self.decimals = settings.token_decimals if decimals is None else decimals
        self.visible = visible
        self.tls_verify = settings.tls_verify
        self.session = session

        self.logger = logger.bind(component="tron_client", api_key=mask_key(self.api_key))

    def set_base_url(self, url: str) -> None:
        """Point the client at a custom TRON node"""
        self.base_url = url

    def build_request(self, address: str) -> Dict[str, Any]:
        """Build the triggerconstantcontract body for ``balanceOf(address)``.

        Raises:
            EncodingFailedError: If the address cannot be encoded
        """
        try:
            owner_hex = address_codec.to_owner_hex(address)
            parameter = address_codec.to_call_parameter(address)
            contract = (
                self.contract_address if self.visible
                else address_codec.to_owner_hex(self.contract_address)
            )
        except AddressError as e:
            raise EncodingFailedError(f"Address encoding failed: {e}") from e

        return {
            "owner_address": address if self.visible else owner_hex,
            "contract_address": contract,
            "function_selector": BALANCE_OF_SELECTOR,
            "parameter": parameter,
            "visible": self.visible,
        }

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key
        return headers

    async def _send(
        self,
        session: aiohttp.ClientSession,
        payload: Dict[str, Any],
    ) -> Tuple[int, str]:
        async with session.post(
            self.base_url,
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
            ssl=self.tls_verify,
        ) as response:
            # Invalid UTF-8 becomes U+FFFD and fails later as a parse error
            body = (await response.read()).decode("utf-8", errors="replace")
            if response.status == HTTP_TOO_MANY_REQUESTS:
                raise RateLimitedError(body)
            return response.status, body

    async def _post(self, payload: Dict[str, Any]) -> Tuple[int, str]:
        if self.session is not None:
            return await self._send(self.session, payload)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._send(session, payload)

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        """429 waits attempt * 2 units, transport failures wait attempt units"""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        attempt = retry_state.attempt_number
        if isinstance(exc, RateLimitedError):
            return attempt * 2 * self.backoff_unit
        return attempt * self.backoff_unit

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            "request_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
            rate_limited=isinstance(exc, RateLimitedError),
        )

    async def _post_with_retry(
        self,
        payload: Dict[str, Any],
        cancel_token: Optional[threading.Event],
    ) -> Tuple[int, str]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if cancel_token is not None and cancel_token.is_set():
                        raise QueryCancelledError("Query cancelled")
                    return await self._post(payload)
        except RateLimitedError as e:
            raise RemoteError(HTTP_TOO_MANY_REQUESTS, e.body) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Request failed: {str(e) or type(e).__name__}") from e
        raise TransportError("Request failed: no attempt was made")

    def parse_balance(self, status: int, body: str) -> str:
        """Turn a triggerconstantcontract response into a balance string.

        Raises:
            RemoteError: On a non-200 status
            ResponseParseError: If the body is not JSON or the balance is not hex
            QueryFailedError: If the API reports a failure or returns no result
        """
        if status != 200:
            raise RemoteError(status, body)

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Invalid JSON response: {e}, body: {body[:200]}") from e
        if not isinstance(data, dict):
            raise ResponseParseError(f"Unexpected response shape: {body[:200]}")

        # Top-level error channel
        if data.get("Error"):
            raise QueryFailedError(
                f"API error: {data.get('Error Description') or data['Error']}"
            )

        result = data.get("result")
        if not isinstance(result, dict):
            result = {}
        if result.get("result") is not True:
            message = (
                _decode_message(result.get("message"))
                or result.get("code")
                or "unknown"
            )
            raise QueryFailedError(f"Query failed: {message}")

        constant_result = data.get("constant_result")
        if not constant_result:
            raise QueryFailedError("Query failed: no constant_result in response")
        if not isinstance(constant_result, list) or not isinstance(constant_result[0], str):
            raise ResponseParseError(f"Unexpected constant_result: {str(constant_result)[:200]}")

        balance_hex = constant_result[0].strip() or "0"
        try:
            value = int(balance_hex, 16)
        except ValueError as e:
            raise ResponseParseError(f"Cannot parse hex balance: {balance_hex!r}") from e
        if value < 0:
            raise ResponseParseError(f"Negative balance in response: {balance_hex!r}")

        return format_units(value, self.decimals)

    async def query_balance(
        self,
        address: str,
        cancel_token: Optional[threading.Event] = None,
    ) -> str:
        """Query the TRC-20 balance of one address.

        Args:
            address: Base58 TRON address
            cancel_token: Event checked before every attempt

        Returns:
            Decimal balance string, e.g. "1234.5"

        Raises:
            ClientError: Any failure; see the subclasses above
        """
        log = self.logger.bind(address=address)

        await self.rate_limiter.acquire()

        payload = self.build_request(address)
        status, body = await self._post_with_retry(payload, cancel_token)
        balance = self.parse_balance(status, body)

        log.debug("balance_fetched", balance=balance)
        return balance
