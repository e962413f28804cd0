"""Batched, multi-threaded, optionally multi-head ingestion."""

import logging
import re
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import DatabaseConnectionError, IngestError, RemoteApiError, SchemaMismatchError
from .session import KineticaSession
from .type_mapper import RemoteTableType, to_remote_record
from .utils import CancellationToken, mask_credentials

logger = logging.getLogger("kinetica_spark.ingester")

ENABLE_WORKER_HTTP_SERVERS = "conf.enable_worker_http_servers"
WORKER_HTTP_SERVER_URLS = "conf.worker_http_server_urls"


class _LocalCounter:
    """Add-only counter safe for concurrent increments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0

    def add(self, term: int) -> None:
        with self._lock:
            self._value += term

    @property
    def value(self) -> int:
        return self._value


class ProgressCounters:
    """
    Total / converted / failed row counters.

    Backed by Spark accumulators when created with ``for_spark`` so executors
    can add to them; values are only readable on the driver in that case.
    """

    def __init__(self, total=None, converted=None, failed=None):
        self.total = total if total is not None else _LocalCounter()
        self.converted = converted if converted is not None else _LocalCounter()
        self.failed = failed if failed is not None else _LocalCounter()

    @classmethod
    def for_spark(cls, spark_context) -> "ProgressCounters":
        return cls(
            total=spark_context.accumulator(0),
            converted=spark_context.accumulator(0),
            failed=spark_context.accumulator(0),
        )

    def snapshot(self) -> Dict[str, int]:
        return {
            "total_rows": self.total.value,
            "converted_rows": self.converted.value,
            "failed_rows": self.failed.value,
        }


@dataclass
class IngestReport:
    """Aggregate outcome of one or more ingestion runs."""

    batches_dispatched: int = 0
    batch_sizes: List[int] = field(default_factory=list)
    rows_inserted: int = 0
    rows_updated: int = 0
    failed_rows: int = 0
    failed_batches: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "IngestReport") -> "IngestReport":
        self.batches_dispatched += other.batches_dispatched
        self.batch_sizes.extend(other.batch_sizes)
        self.rows_inserted += other.rows_inserted
        self.rows_updated += other.rows_updated
        self.failed_rows += other.failed_rows
        self.failed_batches += other.failed_batches
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batches_dispatched": self.batches_dispatched,
            "batch_sizes": list(self.batch_sizes),
            "rows_inserted": self.rows_inserted,
            "rows_updated": self.rows_updated,
            "failed_rows": self.failed_rows,
            "failed_batches": self.failed_batches,
            "errors": list(self.errors),
        }

    def log_summary(self, table_name: str) -> None:
        logger.info(
            f"Ingestion into '{table_name}' completed: {self.batches_dispatched} batches, "
            f"{self.rows_inserted:,} inserted, {self.rows_updated:,} updated"
        )
        if self.failed_rows:
            logger.warning(
                f"{self.failed_rows:,} row(s) in {self.failed_batches} batch(es) failed; "
                f"first error: {self.errors[0] if self.errors else 'n/a'}"
            )


def parse_worker_urls(value: str, ip_regex: str = "") -> List[str]:
    """
    Parse ``conf.worker_http_server_urls`` into one URL per worker rank.

    Ranks are ``;``-separated with rank 0 (the head) first; a rank may list
    several ``,``-separated addresses, of which the first matching
    ``ip_regex`` is used.
    """
    pattern = re.compile(ip_regex) if ip_regex else None
    ranks = [rank.strip() for rank in value.split(";")]
    urls = []
    for rank_index, rank in enumerate(ranks[1:], start=1):
        candidates = [url.strip() for url in rank.split(",") if url.strip()]
        if pattern is not None:
            candidates = [url for url in candidates if pattern.search(url)]
        if not candidates:
            logger.warning(f"No usable address for worker rank {rank_index}")
            continue
        urls.append(candidates[0])
    return urls


def is_unreachable(exc: Exception) -> bool:
    """Whether a dispatch failure means the worker itself is down, not just this batch."""
    if isinstance(exc, DatabaseConnectionError):
        return True
    return isinstance(exc, RemoteApiError) and exc.transient


class WorkerRouter:
    """Round-robin choice of worker endpoints that skips workers seen failing."""

    def __init__(self, session: KineticaSession):
        self.session = session
        self._lock = threading.Lock()
        self._workers: List[str] = []
        self._down: set = set()
        self._next = 0
        self.refresh()

    @property
    def workers(self) -> List[str]:
        return list(self._workers)

    def _discover(self) -> List[str]:
        properties = self.session.client.show_system_properties(
            [ENABLE_WORKER_HTTP_SERVERS, WORKER_HTTP_SERVER_URLS]
        )
        if properties.get(ENABLE_WORKER_HTTP_SERVERS, "").upper() != "TRUE":
            logger.warning("Worker HTTP servers are disabled; multi-head ingestion falls back to the head node")
            return [self.session.config.require_url()]
        urls = parse_worker_urls(properties.get(WORKER_HTTP_SERVER_URLS, ""), self.session.config.ip_regex)
        if not urls:
            logger.warning("No worker URLs discovered; multi-head ingestion falls back to the head node")
            return [self.session.config.require_url()]
        return urls

    def refresh(self) -> None:
        workers = self._discover()
        with self._lock:
            self._workers = workers
            self._down = set()
            self._next = 0
        logger.info(f"Multi-head ingestion across {len(workers)} worker(s)")

    def next(self) -> str:
        with self._lock:
            for _ in range(len(self._workers)):
                url = self._workers[self._next % len(self._workers)]
                self._next += 1
                if url not in self._down:
                    return url
        logger.warning("All known workers are down; rediscovering the cluster topology")
        self.refresh()
        with self._lock:
            url = self._workers[self._next % len(self._workers)]
            self._next += 1
            return url

    def mark_down(self, url: str) -> None:
        with self._lock:
            self._down.add(url)
        logger.warning(f"Marked worker {mask_credentials(url)} as down")


@dataclass
class _DispatchResult:
    seq: int
    size: int
    inserted: int = 0
    updated: int = 0
    error: Optional[str] = None


class BatchIngester:
    """
    Convert rows to records and dispatch them in size-bounded batches.

    Up to ``threads`` batches are sent concurrently. Counters are only updated
    from the thread calling ``ingest``.
    """

    def __init__(
        self,
        session: KineticaSession,
        table_type: RemoteTableType,
        counters: Optional[ProgressCounters] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        self.session = session
        self.config = session.config
        self.table_type = table_type
        self.counters = counters or ProgressCounters()
        self.cancel = cancel
        self.router: Optional[WorkerRouter] = None
        if self.config.multi_head and not self.config.dry_run:
            self.router = WorkerRouter(session)

    def _dispatch(self, seq: int, batch: List[Dict[str, Any]]) -> _DispatchResult:
        config = self.config
        update = config.write_mode.update_on_existing_pk
        last_exc: Optional[Exception] = None

        for attempt in range(config.retry_count + 1):
            url = self.router.next() if self.router is not None else None
            try:
                client = self.session.client_for(url) if url else self.session.client
                inserted, updated = client.insert_records(config.table_name, batch, update)
                return _DispatchResult(seq, len(batch), inserted, updated)
            except (RemoteApiError, DatabaseConnectionError) as exc:
                last_exc = exc
                if self.router is not None and url and is_unreachable(exc):
                    self.router.mark_down(url)
                if attempt < config.retry_count:
                    delay = config.retry_backoff_sec * (attempt + 1)
                    logger.warning(
                        f"Batch {seq} ({len(batch)} rows) failed (attempt {attempt + 1}/"
                        f"{config.retry_count + 1}), retrying in {delay:.1f}s: {exc}"
                    )
                    time.sleep(delay)

        return _DispatchResult(seq, len(batch), error=f"batch {seq}: {last_exc}")

    def ingest(self, rows: Iterable[Any]) -> IngestReport:
        """
        Ingest ``rows`` and return the aggregate report.

        Raises:
            IngestError: If ``fail_on_error`` is set and a row or batch fails
            OperationCancelledError: If cancelled between batches
        """
        config = self.config
        report = IngestReport()
        successes: List[_DispatchResult] = []
        in_flight: Dict[Future, int] = {}
        max_in_flight = 2 * config.threads
        tz = self.session.timezone
        seq = 0

        def collect(done) -> None:
            for future in done:
                in_flight.pop(future)
                result = future.result()
                if result.error is None:
                    self.counters.converted.add(result.size)
                    successes.append(result)
                    continue
                self.counters.failed.add(result.size)
                report.failed_rows += result.size
                report.failed_batches += 1
                report.errors.append(result.error)
                logger.error(f"Giving up on {result.error}")
                if config.fail_on_error:
                    raise IngestError(config.table_name, result.size, result.error)

        def submit(batch: List[Dict[str, Any]]) -> None:
            nonlocal seq
            if self.cancel is not None:
                self.cancel.raise_if_cancelled(f"ingesting into '{config.table_name}' before batch {seq}")
            if config.dry_run:
                self.counters.converted.add(len(batch))
                successes.append(_DispatchResult(seq, len(batch)))
            else:
                while len(in_flight) >= max_in_flight:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    collect(done)
                in_flight[executor.submit(self._dispatch, seq, batch)] = seq
            seq += 1

        executor = ThreadPoolExecutor(max_workers=config.threads)
        completed = False
        try:
            batch: List[Dict[str, Any]] = []
            for row in rows:
                self.counters.total.add(1)
                try:
                    batch.append(to_remote_record(
                        row, self.table_type, tz, config.map_to_schema, config.truncate_to_size
                    ))
                except SchemaMismatchError as err:
                    self.counters.failed.add(1)
                    report.failed_rows += 1
                    report.errors.append(str(err))
                    if config.fail_on_error:
                        raise IngestError(config.table_name, 1, str(err)) from err
                    continue
                if len(batch) >= config.batch_size:
                    submit(batch)
                    batch = []
            if batch:
                submit(batch)
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                collect(done)
            completed = True
        finally:
            executor.shutdown(wait=True, cancel_futures=not completed)

        successes.sort(key=lambda result: result.seq)
        report.batches_dispatched = len(successes)
        report.batch_sizes = [result.size for result in successes]
        report.rows_inserted = sum(result.inserted for result in successes)
        report.rows_updated = sum(result.updated for result in successes)
        report.log_summary(config.qualified_table_name)
        return report
