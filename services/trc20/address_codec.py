"""TRON address codec.

A TRON address is Base58Check text that decodes to 25 bytes:
1 version byte (0x41) + 20 byte account body + 4 byte checksum, where the
checksum is the first 4 bytes of sha256(sha256(version + body)).

triggerconstantcontract needs the same account in two shapes, so the codec
exposes both as separate operations:

- ``to_owner_hex``: 21 bytes (version + body), 42 hex chars, for ``owner_address``
- ``to_call_parameter``: body left-padded to 32 bytes, 64 hex chars, for the
  ABI-encoded ``balanceOf(address)`` argument
"""

import hashlib
from enum import Enum
from typing import Optional

import base58

ADDRESS_LENGTH = 25
PAYLOAD_LENGTH = 21
CHECKSUM_LENGTH = 4
ABI_WORD_LENGTH = 32


class AddressError(Exception):
    """Base exception for malformed or unusable addresses."""
    pass


class InvalidAddressError(AddressError):
    """Raised when an address cannot be decoded into an account body."""
    pass


class AddressErrorKind(Enum):
    WRONG_LENGTH = "wrong length"
    CHECKSUM_MISMATCH = "checksum mismatch"


def _decode(raw: str) -> bytes:
    """Base58-decode, treating undecodable text as an empty payload"""
    if not isinstance(raw, str) or not raw:
        return b""
    try:
        return base58.b58decode(raw)
    except ValueError:
        return b""


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:CHECKSUM_LENGTH]


def validate_with_reason(raw: str) -> Optional[AddressErrorKind]:
    """Validate an address and say why it failed.

    Returns:
        None for a valid address, otherwise the failure kind
    """
    decoded = _decode(raw)
    if len(decoded) != ADDRESS_LENGTH:
        return AddressErrorKind.WRONG_LENGTH

    payload, checksum = decoded[:PAYLOAD_LENGTH], decoded[PAYLOAD_LENGTH:]
    if _checksum(payload) != checksum:
        return AddressErrorKind.CHECKSUM_MISMATCH
    return None


def validate(raw: str) -> bool:
    """True only for a 25-byte Base58Check address with a matching checksum"""
    return validate_with_reason(raw) is None


def _payload(raw: str) -> bytes:
    decoded = _decode(raw)
    if len(decoded) < PAYLOAD_LENGTH:
        raise InvalidAddressError(f"Invalid TRON address: {raw!r}")
    return decoded[:PAYLOAD_LENGTH]


def to_call_parameter(raw: str) -> str:
    """Encode the address as a 32-byte ABI word (64 lowercase hex chars).

    Raises:
        InvalidAddressError: If the address decodes to fewer than 21 bytes
    """
    body = _payload(raw)[1:]
    return body.rjust(ABI_WORD_LENGTH, b"\x00").hex()


def to_owner_hex(raw: str) -> str:
    """Encode the address as version + body (42 lowercase hex chars).

    Raises:
        InvalidAddressError: If the address decodes to fewer than 21 bytes
    """
    return _payload(raw).hex()


def from_hex(hex_address: str) -> str:
    """Render a 21-byte hex address (``41...``) as Base58Check text.

    Raises:
        InvalidAddressError: If the input is not 21 bytes of hex
    """
    value = hex_address[2:] if hex_address.lower().startswith("0x") else hex_address
    try:
        payload = bytes.fromhex(value)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid hex address: {hex_address!r}") from e
    if len(payload) != PAYLOAD_LENGTH:
        raise InvalidAddressError(f"Hex address must be {PAYLOAD_LENGTH} bytes: {hex_address!r}")
    return base58.b58encode(payload + _checksum(payload)).decode("ascii")
