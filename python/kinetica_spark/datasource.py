"""
Framework-free Arrow data source over a Kinetica table.

Nothing in this module needs a running Spark context: schemas are built with
``pyspark.sql.types`` only, and data comes back as Arrow record batches.

Usage:
    from kinetica_spark.datasource import KineticaArrowDataSource

    datasource = KineticaArrowDataSource()
    options = {
        "database.url": "http://localhost:9191",
        "table.name": "sales.orders",
        "spark.num_partitions": "4",
    }
    table = datasource.to_arrow_table(options)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import pyarrow as pa
from pyspark.sql.types import StructType

from . import filters
from ._config import load_config
from .filters import Predicate
from .options import LoaderConfig
from .partition_planner import Partition, plan_partitions
from .reader import iter_chunks
from .session import KineticaSession, table_size
from .type_mapper import record_converter, to_arrow_schema, to_spark_schema
from .utils import CancellationToken

logger = logging.getLogger("kinetica_spark.datasource")


class KineticaArrowDataSource:
    """
    Arrow batch data source for one Kinetica table.

    Args:
        predicates: Filters pushed down to every fetch and to the row count
        columns: Columns to read; all table columns when omitted
        cancel: Token checked between fetched chunks
    """

    def __init__(
        self,
        predicates: Optional[Sequence[Predicate]] = None,
        columns: Optional[Sequence[str]] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        self.predicates = list(predicates or [])
        self.columns = list(columns) if columns else None
        self.cancel = cancel

    @property
    def expression(self) -> Optional[str]:
        return filters.render_expression(self.predicates) or None

    def open_session(self, options: Mapping[str, Any]) -> KineticaSession:
        return KineticaSession(LoaderConfig.from_options(options))

    def spark_schema(self, session: KineticaSession) -> StructType:
        return to_spark_schema(session.table_type(), self.columns)

    def infer_schema(self, options: Mapping[str, Any]) -> pa.Schema:
        """Resolve the table type and return the Arrow schema of read batches."""
        session = self.open_session(options)
        try:
            return to_arrow_schema(self.spark_schema(session))
        finally:
            session.close()

    def count_rows(self, session: KineticaSession) -> int:
        """
        Count the rows a read will return.

        Filtered counts go through the SQL endpoint; unfiltered counts use the
        table size reported by the row API.

        Raises:
            InvalidOptionsError: If predicates are given without a SQL endpoint
            CountQueryError: If the count query fails
        """
        config = session.config
        if self.predicates:
            return filters.count(session.sql, config.table_name, self.predicates, schema_name=config.schema_name)
        return table_size(session.client, config.table_name)

    def plan_partitions(self, options: Mapping[str, Any]) -> List[Dict[str, Any]]:
        session = self.open_session(options)
        try:
            total_rows = self.count_rows(session)
        finally:
            session.close()
        logger.info(f"Table '{session.config.qualified_table_name}' has {total_rows:,} rows to read")
        return [partition.to_dict() for partition in plan_partitions(total_rows, session.config.num_partitions)]

    def read_partition(
        self,
        partition_spec: Dict[str, Any],
        options: Mapping[str, Any],
        session: Optional[KineticaSession] = None,
    ) -> Iterator[pa.RecordBatch]:
        """
        Read one partition, yielding one record batch per fetched chunk.

        Raises:
            FetchError: If a chunk cannot be fetched after the configured retries
            OperationCancelledError: If cancelled between chunks
        """
        owns_session = session is None
        session = session or self.open_session(options)
        try:
            config = session.config
            schema = self.spark_schema(session)
            arrow_schema = to_arrow_schema(schema)
            convert = record_converter(schema, session.timezone)
            chunks = iter_chunks(
                session.client,
                config.table_name,
                schema.fieldNames(),
                Partition.from_dict(partition_spec),
                chunk_size=config.fetch_chunk_rows,
                expression=self.expression,
                retries=config.retry_count,
                retry_backoff_sec=config.retry_backoff_sec,
                cancel=self.cancel,
            )
            for records in chunks:
                rows = [convert(record).asDict() for record in records]
                yield pa.RecordBatch.from_pylist(rows, schema=arrow_schema)
        finally:
            if owns_session:
                session.close()

    def to_arrow_table(self, options: Mapping[str, Any]) -> pa.Table:
        """Read the whole table locally, partitions in parallel, in partition order."""
        session = self.open_session(options)
        try:
            arrow_schema = to_arrow_schema(self.spark_schema(session))
            total_rows = self.count_rows(session)
            partitions = plan_partitions(total_rows, session.config.num_partitions)

            def fetch(partition: Partition) -> List[pa.RecordBatch]:
                return list(self.read_partition(partition.to_dict(), options, session))

            if len(partitions) == 1:
                results = [fetch(partitions[0])]
            else:
                parallelism = min(len(partitions), load_config().max_parallelism)
                with ThreadPoolExecutor(max_workers=parallelism) as executor:
                    results = list(executor.map(fetch, partitions))
        finally:
            session.close()

        batches = [batch for batch_list in results for batch in batch_list]
        return pa.Table.from_batches(batches, schema=arrow_schema)
