"""Connector options normalization and validation."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from ._config import load_config
from .exceptions import InvalidOptionsError
from .transport import TransportConfig
from .type_mapper import resolve_timezone

logger = logging.getLogger("kinetica_spark.options")

KINETICA_URL_PARAM = "database.url"
KINETICA_JDBCURL_PARAM = "database.jdbc_url"
KINETICA_ODBC_DRIVER_PARAM = "database.odbc_driver"
KINETICA_USERNAME_PARAM = "database.username"
KINETICA_PASSWORD_PARAM = "database.password"
KINETICA_RETRYCOUNT_PARAM = "database.retry_count"
KINETICA_TIMEOUT_PARAM = "database.timeout_ms"
KINETICA_BATCHSIZE_PARAM = "ingester.batch_size"
KINETICA_NUMTHREADS_PARAM = "ingester.num_threads"
KINETICA_MULTIHEAD_PARAM = "ingester.multi_head"
KINETICA_IPREGEX_PARAM = "ingester.ip_regex"
KINETICA_USESNAPPY_PARAM = "ingester.use_snappy"
KINETICA_DRYRUN_PARAM = "ingester.analyze_data_only"
KINETICA_ERROR_HANDLING_PARAM = "ingester.fail_on_errors"
KINETICA_FLATTEN_SCHEMA_PARAM = "ingester.flatten_source_schema"
CONNECTOR_NUMPARTITIONS_PARAM = "spark.num_partitions"
CONNECTOR_FETCH_CHUNK_PARAM = "spark.fetch_chunk_rows"
KINETICA_TABLENAME_PARAM = "table.name"
KINETICA_TABLENAME_CONTAINS_SCHEMA_PARAM = "table.name_contains_schema"
KINETICA_CREATETABLE_PARAM = "table.create"
KINETICA_TRUNCATETABLE_PARAM = "table.truncate"
KINETICA_UPDATEONEXISTINGPK_PARAM = "table.update_on_existing_pk"
KINETICA_REPLICATEDTABLE_PARAM = "table.is_replicated"
KINETICA_ALTERTABLE_PARAM = "table.append_new_columns"
KINETICA_MAPTOSCHEMA_PARAM = "table.map_to_schema"
KINETICA_TRUNCATE_TO_SIZE_PARAM = "table.truncate_to_size"
KINETICA_SSLBYPASSCERTCHECK_PARAM = "ssl.bypass_cert_check"
KINETICA_TRUSTSTORE_PARAM = "ssl.truststore_path"
KINETICA_TRUSTSTOREPASSWORD_PARAM = "ssl.truststore_password"
KINETICA_KEYSTORE_PARAM = "ssl.keystore_path"
KINETICA_KEYSTOREPASSWORD_PARAM = "ssl.keystore_password"
KINETICA_TIMEZONE_PARAM = "timezone"

_OPTION_KEY_ALIASES = {
    "url": KINETICA_URL_PARAM,
    "jdbc_url": KINETICA_JDBCURL_PARAM,
    "jdbcurl": KINETICA_JDBCURL_PARAM,
    "sql_url": KINETICA_JDBCURL_PARAM,
    "username": KINETICA_USERNAME_PARAM,
    "user": KINETICA_USERNAME_PARAM,
    "password": KINETICA_PASSWORD_PARAM,
    "table": KINETICA_TABLENAME_PARAM,
    "dbtable": KINETICA_TABLENAME_PARAM,
    "numpartitions": CONNECTOR_NUMPARTITIONS_PARAM,
    "num_partitions": CONNECTOR_NUMPARTITIONS_PARAM,
    "fetchsize": CONNECTOR_FETCH_CHUNK_PARAM,
    "batch_size": KINETICA_BATCHSIZE_PARAM,
    "dry_run": KINETICA_DRYRUN_PARAM,
    "ingester.dry_run": KINETICA_DRYRUN_PARAM,
    "fail_on_error": KINETICA_ERROR_HANDLING_PARAM,
    "ingester.fail_on_error": KINETICA_ERROR_HANDLING_PARAM,
    "ingester.use_compression": KINETICA_USESNAPPY_PARAM,
    "ingester.use_timezone": KINETICA_TIMEZONE_PARAM,
}

MIN_TIMEOUT_MS = 1


class WriteMode(enum.Enum):
    """How ingestion treats the target table."""

    APPEND = "append"
    CREATE_IF_ABSENT = "create_if_absent"
    TRUNCATE_THEN_WRITE = "truncate_then_write"
    UPSERT_BY_KEY = "upsert_by_key"

    @property
    def update_on_existing_pk(self) -> bool:
        return self is WriteMode.UPSERT_BY_KEY


def resolve_write_mode(create: bool, truncate: bool, update_on_existing_pk: bool) -> WriteMode:
    """
    Collapse the table flags into a single write mode.

    Raises:
        InvalidOptionsError: If the flags ask for contradictory behavior
    """
    if update_on_existing_pk and truncate:
        raise InvalidOptionsError(
            f"{KINETICA_UPDATEONEXISTINGPK_PARAM} cannot be combined with {KINETICA_TRUNCATETABLE_PARAM}"
        )
    if update_on_existing_pk and create:
        raise InvalidOptionsError(
            f"{KINETICA_UPDATEONEXISTINGPK_PARAM} cannot be combined with {KINETICA_CREATETABLE_PARAM}; "
            f"a table created from a DataFrame schema has no primary key"
        )
    if truncate:
        return WriteMode.TRUNCATE_THEN_WRITE
    if update_on_existing_pk:
        return WriteMode.UPSERT_BY_KEY
    if create:
        return WriteMode.CREATE_IF_ABSENT
    return WriteMode.APPEND


def split_table_name(name: str, contains_schema: bool = True) -> Tuple[str, str]:
    """
    Split ``schema.table`` into its parts.

    Only the first dot separates the schema; the remainder is the table name
    and may itself contain dots. A leading dot means no schema.

    Returns:
        (schema_name, table_name); schema_name is empty when not given
    """
    if contains_schema and "." in name:
        schema_name, table_name = name.split(".", 1)
        if table_name:
            return schema_name, table_name
    return "", name


def canonicalize_option_key(key: str) -> str:
    normalized = key.strip().lower()
    return _OPTION_KEY_ALIASES.get(normalized, normalized)


def _parse_bool(opts: Dict[str, str], key: str, default: bool) -> bool:
    if key not in opts:
        return default
    value = str(opts[key]).strip().lower()
    if value in {"1", "true", "yes"}:
        return True
    if value in {"0", "false", "no", ""}:
        return False
    raise InvalidOptionsError(f"{key} must be a boolean, got: {opts[key]}")


def _parse_int(opts: Dict[str, str], key: str, default: int) -> int:
    if key not in opts:
        return default
    try:
        return int(opts[key])
    except (TypeError, ValueError):
        raise InvalidOptionsError(f"{key} must be an integer, got: {opts[key]}")


@dataclass(frozen=True)
class LoaderConfig:
    """Normalized & validated connector configuration."""

    table_name: str
    url: Optional[str] = None
    schema_name: str = ""
    sql_url: Optional[str] = None
    odbc_driver: str = "Kinetica"
    username: str = ""
    password: str = field(default="", repr=False)
    threads: int = 4
    timeout_ms: int = 1_800_000
    use_compression: bool = False
    retry_count: int = 0
    retry_backoff_sec: float = 1.5
    batch_size: int = 10_000
    multi_head: bool = False
    ip_regex: str = ""
    num_partitions: int = 4
    fetch_chunk_rows: int = 10_000
    write_mode: WriteMode = WriteMode.APPEND
    replicated: bool = False
    alter_table: bool = False
    map_to_schema: bool = True
    truncate_to_size: bool = False
    transport: TransportConfig = field(default_factory=TransportConfig)
    timezone: Optional[str] = None
    dry_run: bool = False
    fail_on_error: bool = False
    flatten_schema: bool = False

    @property
    def qualified_table_name(self) -> str:
        if self.schema_name:
            return f"{self.schema_name}.{self.table_name}"
        return self.table_name

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "LoaderConfig":
        """
        Convert a Spark-style option dict to a LoaderConfig.

        Keys are matched case-insensitively and short aliases
        (``url``, ``table``, ``user``...) are accepted.

        Raises:
            InvalidOptionsError: If options are missing or inconsistent
        """
        if not options:
            raise InvalidOptionsError("Options cannot be empty")

        opts: Dict[str, str] = {}
        for key, value in options.items():
            if value is None:
                continue
            opts[canonicalize_option_key(key)] = str(value)

        raw_table = opts.get(KINETICA_TABLENAME_PARAM, "").strip()
        if not raw_table:
            raise InvalidOptionsError(f"Parameter is required: {KINETICA_TABLENAME_PARAM}")

        contains_schema = _parse_bool(opts, KINETICA_TABLENAME_CONTAINS_SCHEMA_PARAM, True)
        schema_name, table_name = split_table_name(raw_table, contains_schema)

        defaults = load_config()

        write_mode = resolve_write_mode(
            create=_parse_bool(opts, KINETICA_CREATETABLE_PARAM, False),
            truncate=_parse_bool(opts, KINETICA_TRUNCATETABLE_PARAM, False),
            update_on_existing_pk=_parse_bool(opts, KINETICA_UPDATEONEXISTINGPK_PARAM, False),
        )

        transport = TransportConfig(
            bypass_cert_check=_parse_bool(opts, KINETICA_SSLBYPASSCERTCHECK_PARAM, False),
            trust_store_path=opts.get(KINETICA_TRUSTSTORE_PARAM) or None,
            trust_store_password=opts.get(KINETICA_TRUSTSTOREPASSWORD_PARAM) or None,
            key_store_path=opts.get(KINETICA_KEYSTORE_PARAM) or None,
            key_store_password=opts.get(KINETICA_KEYSTOREPASSWORD_PARAM) or None,
        )

        config = cls(
            table_name=table_name,
            url=opts.get(KINETICA_URL_PARAM) or None,
            schema_name=schema_name,
            sql_url=opts.get(KINETICA_JDBCURL_PARAM) or None,
            odbc_driver=opts.get(KINETICA_ODBC_DRIVER_PARAM, "Kinetica"),
            username=opts.get(KINETICA_USERNAME_PARAM, ""),
            password=opts.get(KINETICA_PASSWORD_PARAM, ""),
            threads=_parse_int(opts, KINETICA_NUMTHREADS_PARAM, 4),
            timeout_ms=_parse_int(opts, KINETICA_TIMEOUT_PARAM, 1_800_000),
            use_compression=_parse_bool(opts, KINETICA_USESNAPPY_PARAM, False),
            retry_count=_parse_int(opts, KINETICA_RETRYCOUNT_PARAM, 0),
            retry_backoff_sec=defaults.retry_backoff_sec,
            batch_size=_parse_int(opts, KINETICA_BATCHSIZE_PARAM, 10_000),
            multi_head=_parse_bool(opts, KINETICA_MULTIHEAD_PARAM, False),
            ip_regex=opts.get(KINETICA_IPREGEX_PARAM, ""),
            num_partitions=_parse_int(opts, CONNECTOR_NUMPARTITIONS_PARAM, 4),
            fetch_chunk_rows=_parse_int(opts, CONNECTOR_FETCH_CHUNK_PARAM, defaults.fetch_chunk_rows),
            write_mode=write_mode,
            replicated=_parse_bool(opts, KINETICA_REPLICATEDTABLE_PARAM, False),
            alter_table=_parse_bool(opts, KINETICA_ALTERTABLE_PARAM, False),
            map_to_schema=_parse_bool(opts, KINETICA_MAPTOSCHEMA_PARAM, True),
            truncate_to_size=_parse_bool(opts, KINETICA_TRUNCATE_TO_SIZE_PARAM, False),
            transport=transport,
            timezone=opts.get(KINETICA_TIMEZONE_PARAM) or None,
            dry_run=_parse_bool(opts, KINETICA_DRYRUN_PARAM, False),
            fail_on_error=_parse_bool(opts, KINETICA_ERROR_HANDLING_PARAM, False),
            flatten_schema=_parse_bool(opts, KINETICA_FLATTEN_SCHEMA_PARAM, False),
        )
        config.validate()
        logger.debug(f"Resolved options for '{config.qualified_table_name}': write_mode={config.write_mode.value}")
        return config

    def validate(self) -> None:
        """
        Validate option consistency.

        Raises:
            InvalidOptionsError: If options are inconsistent
        """
        if not self.table_name:
            raise InvalidOptionsError(f"Parameter is required: {KINETICA_TABLENAME_PARAM}")
        if self.threads < 1:
            raise InvalidOptionsError(f"{KINETICA_NUMTHREADS_PARAM} must be >= 1, got: {self.threads}")
        if self.batch_size < 1:
            raise InvalidOptionsError(f"{KINETICA_BATCHSIZE_PARAM} must be >= 1, got: {self.batch_size}")
        if self.retry_count < 0:
            raise InvalidOptionsError(f"{KINETICA_RETRYCOUNT_PARAM} must be >= 0, got: {self.retry_count}")
        if self.timeout_ms < MIN_TIMEOUT_MS:
            raise InvalidOptionsError(f"{KINETICA_TIMEOUT_PARAM} must be positive, got: {self.timeout_ms}")
        if self.fetch_chunk_rows < 1:
            raise InvalidOptionsError(
                f"{CONNECTOR_FETCH_CHUNK_PARAM} must be >= 1, got: {self.fetch_chunk_rows}"
            )
        if self.timezone:
            resolve_timezone(self.timezone)

    def require_url(self) -> str:
        if not self.url:
            raise InvalidOptionsError(f"Parameter is required: {KINETICA_URL_PARAM}")
        return self.url
