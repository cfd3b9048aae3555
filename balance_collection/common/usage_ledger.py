import json
import os
import sys
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Union

from . import config
from .logging_setup import get_logger

logger = get_logger(__name__)

LEDGER_FILE_NAME = "apikey_stats.json"


class PersistenceError(Exception):
    """Raised when the usage ledger cannot be read or written."""
    pass


def _program_dir() -> Path:
    """Directory the running program was launched from"""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    if sys.argv and sys.argv[0]:
        return Path(sys.argv[0]).resolve().parent
    return Path.cwd()


def _is_transient(directory: Path) -> bool:
    temp_root = Path(tempfile.gettempdir()).resolve()
    try:
        directory.resolve().relative_to(temp_root)
        return True
    except ValueError:
        pass
    return not os.access(directory, os.W_OK)


def resolve_ledger_path(explicit: Optional[str] = None) -> Path:
    """Resolve where the usage ledger lives.

    An explicit path (argument or USAGE_LEDGER_PATH) wins. Otherwise the ledger
    sits next to the running program, unless that directory is a temporary or
    read-only location, in which case the working directory is used.
    """
    explicit = explicit or config.settings.usage_ledger_path
    if explicit:
        return Path(explicit)

    program_dir = _program_dir()
    if _is_transient(program_dir):
        return Path.cwd() / LEDGER_FILE_NAME
    return program_dir / LEDGER_FILE_NAME


class UsageLedger:
    """Durable record of API key -> usage count.

    File format: ``{"keys": {"<api key>": <used>}}``. Writes replace the file
    atomically. Background writes go through a single worker thread; while one
    write is still queued, newer snapshots replace its payload instead of
    queueing another full rewrite, so only the latest counters hit the disk.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else resolve_ledger_path()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._pending: Optional[Future] = None
        self._latest: Optional[Dict[str, int]] = None

    def load(self) -> Dict[str, int]:
        """Read the ledger; a missing file is an empty ledger.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read usage ledger {self.path}: {e}") from e

        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, dict):
            return {}

        counts = {}
        for key, used in keys.items():
            if isinstance(used, int) and used >= 0:
                counts[str(key)] = used
        return counts

    def load_or_empty(self) -> Dict[str, int]:
        """Like load(), but logs and returns an empty ledger on failure"""
        try:
            return self.load()
        except PersistenceError as e:
            logger.log_operation(
                operation="load_ledger",
                params={"path": str(self.path)},
                status="failed",
                error=str(e),
            )
            return {}

    def save(self, counts: Dict[str, int]) -> None:
        """Write the ledger synchronously.

        Raises:
            PersistenceError: If the file cannot be written
        """
        payload = {"keys": dict(counts)}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".apikey_stats.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write usage ledger {self.path}: {e}") from e

        logger.log_operation(
            operation="save_ledger",
            params={"path": str(self.path), "keys": len(counts)},
            status="completed",
            message=f"Usage ledger saved with {len(counts)} keys",
        )

    def save_in_background(self, counts: Dict[str, int]) -> Future:
        """Queue a write; failures are logged and never raised to the caller"""
        snapshot = dict(counts)
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="usage-ledger"
                )
            self._latest = snapshot
            pending = self._pending
            if pending is not None and not pending.running() and not pending.done():
                return pending
            future = self._executor.submit(self._save_latest)
            self._pending = future
        return future

    def _save_latest(self) -> bool:
        with self._executor_lock:
            counts, self._latest = self._latest, None
        if counts is None:
            return True
        return self._save_quietly(counts)

    def _save_quietly(self, counts: Dict[str, int]) -> bool:
        try:
            self.save(counts)
            return True
        except PersistenceError as e:
            logger.log_operation(
                operation="save_ledger",
                params={"path": str(self.path)},
                status="failed",
                error=str(e),
            )
            return False

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued write has finished"""
        with self._executor_lock:
            pending = self._pending
        if pending is not None:
            pending.result(timeout=timeout)

    def close(self) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
            self._pending = None
        if executor is not None:
            executor.shutdown(wait=True)
