"""Concurrent balance query orchestration.

This module fans a list of addresses out to a bounded set of async workers,
each drawing an API key from the pool per address, and collects one terminal
result per address. Batches can be cancelled cooperatively and resumed by
resubmitting the unprocessed suffix.
"""

import asyncio
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from balance_collection.common import config
from balance_collection.common.logging_setup import get_logger, log_summary
from .credential_pool import CredentialPool, PoolError
from .tron_client import ClientError, QueryCancelledError, TronBalanceClient

logger = get_logger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 50

ProgressCallback = Callable[[int, int], None]
ClientFactory = Callable[[str, Optional[aiohttp.ClientSession]], TronBalanceClient]


class ResultStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class QueryResult:
    address: str
    balance: str = ""
    status: ResultStatus = ResultStatus.PENDING
    error: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status != ResultStatus.PENDING


def clamp_concurrency(value: Optional[int]) -> int:
    if value is None:
        value = config.settings.max_concurrency
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def default_client_factory(
    api_key: str,
    session: Optional[aiohttp.ClientSession],
    base_url: Optional[str] = None,
    requests_per_second: Optional[int] = None,
) -> TronBalanceClient:
    return TronBalanceClient(
        api_key=api_key,
        base_url=base_url,
        requests_per_second=requests_per_second,
        session=session,
    )


class QueryOrchestrator:
    """Runs one batch of balance queries against a key pool."""

    def __init__(
        self,
        pool: CredentialPool,
        base_url: Optional[str] = None,
        requests_per_second: Optional[int] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        """Initialize orchestrator.

        Args:
            pool: API key pool shared by all workers
            base_url: Custom TRON node endpoint (defaults to TRON_API_URL)
            requests_per_second: Per-key request ceiling
            client_factory: Builds a client for (api_key, session); used for
                custom transports and tests
        """
        self.pool = pool
        self.base_url = base_url
        self.requests_per_second = requests_per_second
        self.client_factory = client_factory or self._build_client

        self._results: List[QueryResult] = []
        self._addresses: List[str] = []
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._clients: Dict[str, TronBalanceClient] = {}
        self._completed = 0
        self._state = BatchState.IDLE
        self._executor: Optional[ThreadPoolExecutor] = None

    def _build_client(
        self,
        api_key: str,
        session: Optional[aiohttp.ClientSession],
    ) -> TronBalanceClient:
        return default_client_factory(
            api_key,
            session,
            base_url=self.base_url,
            requests_per_second=self.requests_per_second,
        )

    # Control surface

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def cancel_token(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Stop starting new queries; in-flight requests finish on their own"""
        self._cancel_event.set()
        logger.log_operation(
            operation="cancel_batch",
            status="requested",
            message="Cancellation requested",
        )

    def get_results(self) -> List[QueryResult]:
        """Snapshot copy of the result table"""
        with self._lock:
            return list(self._results)

    def get_stats(self) -> Tuple[int, int, int]:
        """(total, succeeded, failed) over the current result table"""
        with self._lock:
            total = len(self._results)
            succeeded = sum(1 for r in self._results if r.status == ResultStatus.SUCCESS)
            failed = sum(1 for r in self._results if r.status == ResultStatus.ERROR)
        return total, succeeded, failed

    @property
    def resume_index(self) -> Optional[int]:
        """Index of the first address that was cancelled before being queried"""
        with self._lock:
            for index, result in enumerate(self._results):
                if result.status == ResultStatus.CANCELLED:
                    return index
        return None

    def remaining_addresses(self) -> List[str]:
        """Addresses from ``resume_index`` on, for resubmission as a new batch"""
        index = self.resume_index
        if index is None:
            return []
        return list(self._addresses[index:])

    # Batch execution

    def _record(self, index: int, result: QueryResult) -> int:
        """Write a terminal result and return the new completed count"""
        with self._lock:
            self._results[index] = result
            self._completed += 1
            return self._completed

    def _report(self, on_progress: Optional[ProgressCallback], completed: int, total: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(completed, total)
        except Exception as e:
            logger.log_operation(
                operation="progress_callback",
                status="failed",
                error=str(e),
            )

    def _client_for(
        self,
        api_key: str,
        session: Optional[aiohttp.ClientSession],
    ) -> TronBalanceClient:
        client = self._clients.get(api_key)
        if client is None:
            client = self.client_factory(api_key, session)
            self._clients[api_key] = client
        return client

    async def _process(
        self,
        index: int,
        session: Optional[aiohttp.ClientSession],
    ) -> QueryResult:
        address = self._addresses[index]

        if self._cancel_event.is_set():
            return QueryResult(address=address, status=ResultStatus.CANCELLED, error="Cancelled")

        try:
            api_key = self.pool.next_credential()
        except PoolError as e:
            return QueryResult(
                address=address,
                status=ResultStatus.ERROR,
                error=f"API key acquisition failed: {e}",
            )

        client = self._client_for(api_key, session)
        try:
            balance = await client.query_balance(address, self._cancel_event)
        except QueryCancelledError:
            return QueryResult(address=address, status=ResultStatus.CANCELLED, error="Cancelled")
        except ClientError as e:
            return QueryResult(address=address, status=ResultStatus.ERROR, error=str(e))
        except Exception as e:
            # Anything else still ends this address, not the batch
            logger.log_operation(
                operation="query_balance",
                params={"index": index},
                status="failed",
                error=f"{type(e).__name__}: {e}",
            )
            return QueryResult(
                address=address,
                status=ResultStatus.ERROR,
                error=f"Unexpected error: {type(e).__name__}: {e}",
            )

        return QueryResult(address=address, balance=balance, status=ResultStatus.SUCCESS)

    async def _worker(
        self,
        queue: "asyncio.Queue[int]",
        session: Optional[aiohttp.ClientSession],
        total: int,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            result = await self._process(index, session)
            completed = self._record(index, result)
            self._report(on_progress, completed, total)
            queue.task_done()

    async def run(
        self,
        addresses: Sequence[str],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[QueryResult]:
        """Query every address and return the final result table.

        Args:
            addresses: Addresses to query; result i belongs to addresses[i]
            concurrency: Number of workers, clamped to [1, 50]
            on_progress: Called with (completed, total) after every result

        Returns:
            Snapshot of the result table

        Raises:
            RuntimeError: If this orchestrator already ran a batch
        """
        if self._state != BatchState.IDLE:
            raise RuntimeError(f"Batch already {self._state.value}; create a new orchestrator")

        self._state = BatchState.RUNNING
        self._addresses = list(addresses)
        total = len(self._addresses)
        with self._lock:
            self._results = [QueryResult(address=a) for a in self._addresses]
            self._completed = 0

        start_time = time.time()
        workers = min(clamp_concurrency(concurrency), max(total, 1))

        logger.log_operation(
            operation="run_batch",
            params={"addresses": total, "concurrency": workers},
            status="started",
            message=f"Querying {total} addresses with {workers} workers",
        )

        if self.pool.count == 0:
            with self._lock:
                self._results = [
                    QueryResult(address=a, status=ResultStatus.ERROR, error="No API key available")
                    for a in self._addresses
                ]
                self._completed = total
            self._report(on_progress, total, total)
            self._finish(start_time)
            return self.get_results()

        queue: "asyncio.Queue[int]" = asyncio.Queue()
        for index in range(total):
            queue.put_nowait(index)

        timeout = aiohttp.ClientTimeout(total=config.settings.http_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            await asyncio.gather(*[
                self._worker(queue, session, total, on_progress)
                for _ in range(workers)
            ])

        self._finish(start_time)
        return self.get_results()

    def _finish(self, start_time: float) -> None:
        self._state = (
            BatchState.CANCELLED if self.resume_index is not None else BatchState.COMPLETED
        )
        total, succeeded, failed = self.get_stats()
        log_summary(
            component=__name__,
            batch=self._state.value,
            total=total,
            succeeded=succeeded,
            failed=failed,
            duration_seconds=time.time() - start_time,
        )
        self._clients.clear()

    def submit(
        self,
        addresses: Sequence[str],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "Future[List[QueryResult]]":
        """Run the batch on a background thread; for synchronous front-ends"""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="balance-batch")
        return self._executor.submit(
            asyncio.run, self.run(addresses, concurrency, on_progress)
        )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
