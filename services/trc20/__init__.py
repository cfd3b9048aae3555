"""TRC-20 balance query services.

This package provides address encoding, per-key rate limiting, the TronGrid
balance client, the API key pool and the concurrent query orchestrator.
"""

from .address_codec import (
    AddressError,
    AddressErrorKind,
    InvalidAddressError,
    from_hex,
    to_call_parameter,
    to_owner_hex,
    validate,
    validate_with_reason,
)
from .rate_limiter import RateLimiter
from .tron_client import (
    ClientError,
    EncodingFailedError,
    QueryCancelledError,
    QueryFailedError,
    RemoteError,
    ResponseParseError,
    TransportError,
    TronBalanceClient,
    format_units,
)
from .credential_pool import (
    CredentialLoadError,
    CredentialNotFoundError,
    CredentialPool,
    CredentialStatus,
    NoValidCredentialsError,
    PoolEmptyError,
    PoolError,
    PoolExhaustedError,
)
from .orchestrator import BatchState, QueryOrchestrator, QueryResult, ResultStatus
from .address_loader import AddressLoadError, load_addresses_from_file, load_addresses_from_text
from .result_export import export_results

__all__ = [
    # Address codec
    'AddressError',
    'AddressErrorKind',
    'InvalidAddressError',
    'from_hex',
    'to_call_parameter',
    'to_owner_hex',
    'validate',
    'validate_with_reason',

    # Client
    'RateLimiter',
    'TronBalanceClient',
    'format_units',
    'ClientError',
    'EncodingFailedError',
    'QueryCancelledError',
    'QueryFailedError',
    'RemoteError',
    'ResponseParseError',
    'TransportError',

    # Key pool
    'CredentialPool',
    'CredentialStatus',
    'PoolError',
    'PoolEmptyError',
    'PoolExhaustedError',
    'CredentialNotFoundError',
    'NoValidCredentialsError',
    'CredentialLoadError',

    # Orchestration
    'QueryOrchestrator',
    'QueryResult',
    'ResultStatus',
    'BatchState',

    # Ingestion and export
    'AddressLoadError',
    'load_addresses_from_file',
    'load_addresses_from_text',
    'export_results',
]
