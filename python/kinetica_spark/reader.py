"""Chunked, range-addressed reads of one partition."""

import logging
import time
from datetime import tzinfo
from typing import Any, Dict, Iterator, List, Optional, Sequence

from pyspark.sql import Row
from pyspark.sql.types import StructType

from .client import KineticaClient
from .exceptions import FetchError, RemoteApiError
from .partition_planner import Partition
from .type_mapper import record_converter
from .utils import CancellationToken

logger = logging.getLogger("kinetica_spark.reader")

MAX_ROWS_TO_FETCH = 10_000


def _fetch_with_retry(
    client: KineticaClient,
    table_name: str,
    columns: Sequence[str],
    offset: int,
    limit: int,
    expression: Optional[str],
    retries: int,
    retry_backoff_sec: float,
) -> List[Dict[str, Any]]:
    attempt = 0
    last_exc: Optional[Exception] = None
    while attempt <= retries:
        try:
            return client.get_records_by_column(table_name, columns, offset, limit, expression)
        except RemoteApiError as exc:
            last_exc = exc
            if not exc.transient:
                break
            attempt += 1
            if attempt > retries:
                break
            delay = retry_backoff_sec * attempt
            logger.warning(
                f"Fetch of {limit} rows at offset {offset} from '{table_name}' failed "
                f"(attempt {attempt}/{retries + 1}), retrying in {delay:.1f}s: {exc}"
            )
            time.sleep(delay)
    raise FetchError(table_name, offset, limit, last_exc) from last_exc


def iter_chunks(
    client: KineticaClient,
    table_name: str,
    columns: Sequence[str],
    partition: Partition,
    chunk_size: int = MAX_ROWS_TO_FETCH,
    expression: Optional[str] = None,
    retries: int = 0,
    retry_backoff_sec: float = 0.0,
    cancel: Optional[CancellationToken] = None,
) -> Iterator[List[Dict[str, Any]]]:
    """
    Yield the partition's records one bounded fetch at a time.

    Raises:
        FetchError: If a chunk cannot be fetched after ``retries`` retries
        OperationCancelledError: If ``cancel`` is set between chunks
    """
    chunk_size = max(1, chunk_size)
    offset = partition.start
    remaining = partition.count

    while remaining > 0:
        if cancel is not None:
            cancel.raise_if_cancelled(f"reading partition {partition.index} of '{table_name}' at offset {offset}")

        limit = min(chunk_size, remaining)
        records = _fetch_with_retry(
            client, table_name, columns, offset, limit, expression, retries, retry_backoff_sec
        )
        if records:
            yield records

        if len(records) < limit:
            logger.warning(
                f"Partition {partition.index} of '{table_name}' ended early at offset "
                f"{offset + len(records)}; expected {remaining} more rows"
            )
            return
        offset += limit
        remaining -= limit


def read_partition(
    client: KineticaClient,
    table_name: str,
    columns: Sequence[str],
    schema: StructType,
    partition: Partition,
    chunk_size: int = MAX_ROWS_TO_FETCH,
    expression: Optional[str] = None,
    retries: int = 0,
    retry_backoff_sec: float = 0.0,
    cancel: Optional[CancellationToken] = None,
    tz: Optional[tzinfo] = None,
) -> Iterator[Row]:
    """
    Lazily read one partition as Rows of ``schema``.

    The returned generator fetches at most ``chunk_size`` rows at a time, so
    callers can consume rows before the whole partition is fetched. It is not
    restartable; call ``read_partition`` again to re-read.

    Raises:
        FetchError: If a chunk cannot be fetched after ``retries`` retries
        SchemaMismatchError: If a record does not fit ``schema``
        OperationCancelledError: If ``cancel`` is set between chunks
    """
    convert = record_converter(schema, tz)
    start_time = time.time()
    total_rows = 0

    for records in iter_chunks(
        client, table_name, columns, partition, chunk_size, expression, retries, retry_backoff_sec, cancel
    ):
        total_rows += len(records)
        for record in records:
            yield convert(record)

    wall_time_ms = (time.time() - start_time) * 1000
    logger.info(f"Partition {partition.index}: {total_rows:,} rows, {wall_time_ms:.1f}ms")
