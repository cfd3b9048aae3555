"""API key pool with round-robin selection and persisted usage counters."""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import structlog

from balance_collection.common import config
from balance_collection.common.logging_setup import mask_key
from balance_collection.common.usage_ledger import UsageLedger

logger = structlog.get_logger()
audit_logger = logging.getLogger("audit")


class PoolError(Exception):
    """Base exception for API key pool failures."""
    pass


class PoolEmptyError(PoolError):
    """Raised when the pool holds no keys."""
    pass


class PoolExhaustedError(PoolError):
    """Raised when every key is disabled or has reached its usage limit."""
    pass


class CredentialNotFoundError(PoolError):
    """Raised when removing a key the pool does not hold."""
    pass


class NoValidCredentialsError(PoolError):
    """Raised when a load yields no usable keys."""
    pass


class CredentialLoadError(PoolError):
    """Raised when the key file cannot be read."""
    pass


@dataclass
class Credential:
    key: str
    used: int = 0
    usage_limit: int = 100_000
    enabled: bool = True

    @property
    def available(self) -> bool:
        return self.enabled and self.used < self.usage_limit


@dataclass(frozen=True)
class CredentialStatus:
    """Read-only view of one key for front-ends"""
    key: str
    used: int
    remaining: int
    usage_limit: int
    enabled: bool
    display_name: str


class CredentialPool:
    """Owns the API keys, their usage counters and the rotation cursor.

    Every mutation happens under one lock. After a selection the counters are
    handed to the ledger's background writer; a failed write is logged by the
    ledger and never reaches the caller.
    """

    def __init__(
        self,
        ledger: Optional[UsageLedger] = None,
        usage_limit: Optional[int] = None,
    ):
        self.ledger = ledger or UsageLedger()
        self.usage_limit = usage_limit or config.settings.key_usage_limit
        self._credentials: List[Credential] = []
        self._cursor = 0
        self._total_used = 0
        # Usage of keys seen in earlier runs, kept so removed keys never reset
        self._history: Dict[str, int] = {}
        self._lock = threading.Lock()

        self.logger = logger.bind(component="credential_pool")

    # Persistence

    def _snapshot(self) -> Dict[str, int]:
        counts = dict(self._history)
        for credential in self._credentials:
            counts[credential.key] = credential.used
        return counts

    def _persist(self) -> None:
        """Queue a ledger write of the current counters (lock must be held)"""
        self.ledger.save_in_background(self._snapshot())

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until queued ledger writes have finished"""
        self.ledger.flush(timeout)

    def close(self) -> None:
        self.ledger.close()

    @property
    def ledger_path(self) -> Path:
        return self.ledger.path

    # Loading

    def load_from_source(self, entries: Iterable[str]) -> None:
        """Replace the pool with ``entries``, carrying persisted usage forward.

        Raises:
            NoValidCredentialsError: If no non-blank key remains after dedup
        """
        keys = []
        seen = set()
        for entry in entries:
            key = (entry or "").strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)

        if not keys:
            raise NoValidCredentialsError("No valid API key found")

        persisted = self.ledger.load_or_empty()

        with self._lock:
            self._history.update(persisted)
            self._credentials = [
                Credential(
                    key=key,
                    used=max(persisted.get(key, 0), self._history.get(key, 0)),
                    usage_limit=self.usage_limit,
                )
                for key in keys
            ]
            self._cursor = 0
            self._persist()

        self.logger.info(
            "keys_loaded",
            count=len(keys),
            with_history=sum(1 for key in keys if key in persisted),
        )

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load keys from a line-delimited file.

        Raises:
            CredentialLoadError: If the file cannot be read
            NoValidCredentialsError: If the file holds no keys
        """
        try:
            with open(path, "r", encoding="utf-8-sig") as f:
                lines = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialLoadError(f"Failed to read key file {path}: {e}") from e

        try:
            self.load_from_source(lines)
        except NoValidCredentialsError:
            raise NoValidCredentialsError(f"No valid API key found in {path}")

    def merge_persisted_usage(self) -> None:
        """Re-read the ledger and raise in-memory counters to persisted values"""
        persisted = self.ledger.load_or_empty()
        with self._lock:
            self._history.update(persisted)
            for credential in self._credentials:
                if credential.key in persisted:
                    credential.used = max(credential.used, persisted[credential.key])

    # Removal

    def remove(self, key: str) -> None:
        """Remove one key.

        Raises:
            CredentialNotFoundError: If the key is not in the pool
        """
        with self._lock:
            remaining = [c for c in self._credentials if c.key != key]
            if len(remaining) == len(self._credentials):
                raise CredentialNotFoundError(f"API key not found: {mask_key(key)}")

            removed = next(c for c in self._credentials if c.key == key)
            self._history[key] = removed.used
            self._credentials = remaining
            if self._cursor >= len(self._credentials):
                self._cursor = 0
            self._persist()

        audit_logger.info(f"Removed API key {mask_key(key)} after {removed.used} uses")

    def remove_by_usage_threshold(self, threshold: int) -> int:
        """Remove every key whose usage reached ``threshold``; returns how many"""
        with self._lock:
            if not self._credentials:
                return 0

            kept = []
            removed = []
            for credential in self._credentials:
                if credential.used >= threshold:
                    removed.append(credential)
                else:
                    kept.append(credential)

            for credential in removed:
                self._history[credential.key] = credential.used
            self._credentials = kept
            if self._cursor >= len(self._credentials):
                self._cursor = 0
            self._persist()

        if removed:
            audit_logger.info(
                f"Removed {len(removed)} API keys with usage >= {threshold}"
            )
        return len(removed)

    # Selection

    def _select(self, credential: Credential) -> str:
        credential.used += 1
        self._total_used += 1
        self._persist()
        return credential.key

    def next_credential(self) -> str:
        """Pick the next usable key in round-robin order and count one use.

        Raises:
            PoolEmptyError: If the pool is empty
            PoolExhaustedError: If no key is enabled and under its limit
        """
        with self._lock:
            if not self._credentials:
                raise PoolEmptyError("No API key available")

            if len(self._credentials) == 1:
                credential = self._credentials[0]
                if credential.available:
                    return self._select(credential)
                raise PoolExhaustedError("API key has reached its usage limit")

            count = len(self._credentials)
            for _ in range(count):
                credential = self._credentials[self._cursor]
                self._cursor = (self._cursor + 1) % count
                if credential.available:
                    return self._select(credential)

        self.logger.warning("keys_exhausted", count=count)
        raise PoolExhaustedError("All API keys have reached their usage limit")

    def set_enabled(self, key: str, enabled: bool) -> None:
        """Take a key out of rotation (or put it back) without removing it.

        Raises:
            CredentialNotFoundError: If the key is not in the pool
        """
        with self._lock:
            for credential in self._credentials:
                if credential.key == key:
                    credential.enabled = enabled
                    return
        raise CredentialNotFoundError(f"API key not found: {mask_key(key)}")

    # Introspection

    def key_status(self) -> List[CredentialStatus]:
        with self._lock:
            return [
                CredentialStatus(
                    key=c.key,
                    used=c.used,
                    remaining=max(c.usage_limit - c.used, 0),
                    usage_limit=c.usage_limit,
                    enabled=c.enabled,
                    display_name=f"Key {i + 1}",
                )
                for i, c in enumerate(self._credentials)
            ]

    def keys(self) -> List[str]:
        with self._lock:
            return [c.key for c in self._credentials]

    def usage(self, key: str) -> int:
        """Current usage counter of ``key``.

        Raises:
            CredentialNotFoundError: If the key is not in the pool
        """
        with self._lock:
            for credential in self._credentials:
                if credential.key == key:
                    return credential.used
        raise CredentialNotFoundError(f"API key not found: {mask_key(key)}")

    @property
    def total_used(self) -> int:
        with self._lock:
            return self._total_used

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._credentials)

    def __len__(self) -> int:
        return self.count
