"""Kinetica connector for Spark - partitioned reads and batched writes.

Core layer (no running Spark needed):
    ├── KineticaArrowDataSource (Arrow record batches per partition)
    ├── KineticaSession / LoaderConfig (connection and options)
    └── BatchIngester (batched, multi-head ingestion)

Adapter layer:
    └── spark_adapter → Spark DataFrame read / write

Usage - With Spark:
    from kinetica_spark import read_kinetica, write_kinetica

    options = {
        "database.url": "http://localhost:9191",
        "database.username": "admin",
        "database.password": "secret",
        "table.name": "sales.orders",
    }
    df = read_kinetica(spark, options)
    report = write_kinetica(df, {**options, "table.name": "sales.orders_copy", "table.create": "true"})

Usage - Pure Arrow:
    from kinetica_spark import KineticaArrowDataSource

    table = KineticaArrowDataSource().to_arrow_table(options)
"""

import logging

from .datasource import KineticaArrowDataSource
from .exceptions import (
    CountQueryError,
    DatabaseConnectionError,
    FetchError,
    IngestError,
    InvalidOptionsError,
    KineticaConnectorError,
    OperationCancelledError,
    RemoteApiError,
    SchemaMismatchError,
    TransportSetupError,
    TypeResolutionError,
    UnsupportedColumnTypeError,
    UnsupportedPredicateError,
)
from .filters import Predicate
from .ingester import BatchIngester, IngestReport, ProgressCounters
from .options import LoaderConfig, WriteMode
from .session import KineticaSession
from .utils import CancellationToken

__all__ = [
    # Core
    "KineticaArrowDataSource",
    "KineticaSession",
    "LoaderConfig",
    "WriteMode",
    "Predicate",
    "BatchIngester",
    "IngestReport",
    "ProgressCounters",
    "CancellationToken",

    # Spark convenience functions
    "read_kinetica",
    "write_kinetica",

    # Exceptions
    "KineticaConnectorError",
    "InvalidOptionsError",
    "DatabaseConnectionError",
    "TransportSetupError",
    "RemoteApiError",
    "TypeResolutionError",
    "SchemaMismatchError",
    "UnsupportedColumnTypeError",
    "UnsupportedPredicateError",
    "FetchError",
    "CountQueryError",
    "IngestError",
    "OperationCancelledError",
]

# Set up logging
logger = logging.getLogger("kinetica_spark")
logger.setLevel(logging.INFO)

# Add console handler if not already added
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def read_kinetica(spark, options, predicates=None, columns=None):
    """
    Read a Kinetica table into a Spark DataFrame.

    See ``kinetica_spark.spark_adapter.read_kinetica``.
    """
    # Lazy import so the core stays usable without a Spark runtime
    from .spark_adapter import read_kinetica as _read
    return _read(spark, options, predicates=predicates, columns=columns)


def write_kinetica(df, options):
    """
    Write a Spark DataFrame into a Kinetica table.

    See ``kinetica_spark.spark_adapter.write_kinetica``.
    """
    from .spark_adapter import write_kinetica as _write
    return _write(df, options)
