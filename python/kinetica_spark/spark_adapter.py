"""
Spark entry points for reading and writing Kinetica tables.

This is the only module that needs a live SparkSession. The driver resolves
types, counts rows, and plans partitions; executors rebuild their own
``KineticaSession`` from the broadcast configuration and never share handles
with the driver.

Usage:
    from kinetica_spark.spark_adapter import read_kinetica, write_kinetica

    options = {"database.url": "http://localhost:9191", "table.name": "sales.orders"}
    df = read_kinetica(spark, options)
    report = write_kinetica(df, {**options, "table.name": "sales.orders_copy", "table.create": "true"})
"""

import logging
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

from pyspark.sql import DataFrame, Row, SparkSession

from .datasource import KineticaArrowDataSource
from .filters import Predicate
from .ingester import BatchIngester, IngestReport, ProgressCounters
from .options import LoaderConfig
from .partition_planner import Partition, plan_partitions
from .reader import read_partition
from .session import KineticaSession
from .table_setup import prepare_table

logger = logging.getLogger("kinetica_spark.spark_adapter")


def read_kinetica(
    spark: SparkSession,
    options: Mapping[str, Any],
    predicates: Optional[Sequence[Predicate]] = None,
    columns: Optional[Sequence[str]] = None,
) -> DataFrame:
    """
    Read a Kinetica table into a Spark DataFrame.

    Cancellation on executors is left to Spark: a killed task stops its
    Python worker, so no ``CancellationToken`` is checked between chunks
    here. Use ``KineticaArrowDataSource`` for cooperative cancellation.

    Args:
        spark: SparkSession
        options: Connector options (see ``kinetica_spark.options``)
        predicates: Filters pushed down to the count and to every fetch
        columns: Columns to read; all table columns when omitted

    Returns:
        Spark DataFrame with one Spark partition per planned row range

    Raises:
        InvalidOptionsError: If options are invalid
        DatabaseConnectionError: If the database cannot be reached
        TypeResolutionError: If the table does not exist
        CountQueryError: If the filtered row count fails
    """
    datasource = KineticaArrowDataSource(predicates=predicates, columns=columns)
    config = LoaderConfig.from_options(options)
    session = KineticaSession(config)
    try:
        table_type = session.table_type()
        schema = datasource.spark_schema(session)
        total_rows = datasource.count_rows(session)
    finally:
        session.close()

    partitions = plan_partitions(total_rows, config.num_partitions)
    logger.info(
        f"Reading '{config.qualified_table_name}' ({total_rows:,} rows) "
        f"with {len(partitions)} partition(s)"
    )

    sc = spark.sparkContext
    broadcast_config = sc.broadcast(config)
    broadcast_type = sc.broadcast(table_type)
    broadcast_partitions = sc.broadcast([partition.to_dict() for partition in partitions])
    column_names = schema.fieldNames()
    expression = datasource.expression

    def partition_reader(partition_iter: Iterator[int]) -> Iterator[Row]:
        """Read partitions on executors."""
        executor_config = broadcast_config.value
        executor_session = KineticaSession(executor_config, broadcast_type.value)
        try:
            for partition_idx in partition_iter:
                partition = Partition.from_dict(broadcast_partitions.value[partition_idx])
                yield from read_partition(
                    executor_session.client,
                    executor_config.table_name,
                    column_names,
                    schema,
                    partition,
                    chunk_size=executor_config.fetch_chunk_rows,
                    expression=expression,
                    retries=executor_config.retry_count,
                    retry_backoff_sec=executor_config.retry_backoff_sec,
                    tz=executor_session.timezone,
                )
        finally:
            executor_session.close()

    rdd = sc.parallelize(range(len(partitions)), numSlices=len(partitions))
    row_rdd = rdd.mapPartitions(partition_reader)
    return spark.createDataFrame(row_rdd, schema=schema)


def write_kinetica(df: DataFrame, options: Mapping[str, Any]) -> IngestReport:
    """
    Write a Spark DataFrame into a Kinetica table.

    The target table is prepared once on the driver according to the write
    mode; each Spark partition is then ingested by its executor in batches.
    As with reads, a cancelled job stops when Spark kills the executor's
    Python worker; batches already sent stay in the table.

    Returns:
        The merged ingestion report of all partitions

    Raises:
        InvalidOptionsError: If options are invalid or contradictory
        TypeResolutionError: If the target table cannot be prepared
        UnsupportedColumnTypeError: If the DataFrame has an unmappable column
    """
    config = LoaderConfig.from_options(options)
    session = KineticaSession(config)
    try:
        table_type = prepare_table(session, df.schema)
    finally:
        session.close()

    sc = df.sparkSession.sparkContext
    counters = ProgressCounters.for_spark(sc)
    broadcast_config = sc.broadcast(config)
    broadcast_type = sc.broadcast(table_type)

    def ingest_partition(rows: Iterator[Row]) -> Iterator[Dict[str, Any]]:
        """Ingest one partition on an executor."""
        executor_session = KineticaSession(broadcast_config.value, broadcast_type.value)
        try:
            report = BatchIngester(executor_session, broadcast_type.value, counters).ingest(rows)
        finally:
            executor_session.close()
        yield report.to_dict()

    report = IngestReport()
    for partition_report in df.rdd.mapPartitions(ingest_partition).collect():
        report.merge(IngestReport(**partition_report))

    totals = counters.snapshot()
    logger.info(
        f"Wrote DataFrame to '{config.qualified_table_name}': {totals['total_rows']:,} rows seen, "
        f"{totals['converted_rows']:,} ingested, {totals['failed_rows']:,} failed"
        f"{' (dry run)' if config.dry_run else ''}"
    )
    return report
