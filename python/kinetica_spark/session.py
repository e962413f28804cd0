"""Connection management for the Kinetica connector.

A ``KineticaSession`` owns the live handles built from one immutable
``LoaderConfig``. Handles are process-local: pickling a session keeps only the
configuration, so every Spark worker reconnects on first use.
"""

import logging
import re
import threading
from typing import Dict, Optional, Tuple

from .client import KineticaClient
from .exceptions import DatabaseConnectionError, InvalidOptionsError, RemoteApiError, TypeResolutionError
from .filters import SqlConnectionFactory
from .options import LoaderConfig
from .transport import build_http_session
from .type_mapper import RemoteTableType, resolve_timezone
from .utils import mask_credentials

logger = logging.getLogger("kinetica_spark.session")

CORE_VERSION = "version.gpudb_core_version"
VERSION_DATE = "version.gpudb_version_date"
MIN_SUPPORTED_VERSION = (6, 2)

COLLECTION_NAMES = "collection_names"
NO_ERROR_IF_NOT_EXISTS = "no_error_if_not_exists"


def parse_version(version: str) -> Tuple[int, int]:
    """Return (major, minor) from a version string such as ``7.1.9.3.20230712``."""
    match = re.search(r"(\d+)\.(\d+)", version or "")
    if not match:
        raise DatabaseConnectionError(f"Cannot parse database version '{version}'")
    return int(match.group(1)), int(match.group(2))


def check_connection(client: KineticaClient) -> str:
    """
    Probe the database and verify it speaks a supported version.

    Returns:
        The reported core version

    Raises:
        DatabaseConnectionError: On transport, authentication, or version failures
    """
    try:
        properties = client.show_system_properties([CORE_VERSION, VERSION_DATE])
    except RemoteApiError as err:
        logger.debug(f"Cannot verify connection health: '{err}'")
        raise DatabaseConnectionError(
            f"Cannot verify connection to {mask_credentials(client.url)}: {err}"
        ) from err

    version = properties.get(CORE_VERSION, "")
    if parse_version(version) < MIN_SUPPORTED_VERSION:
        raise DatabaseConnectionError(
            f"Database version {version} is older than the minimum supported "
            f"{'.'.join(map(str, MIN_SUPPORTED_VERSION))}"
        )
    logger.debug(f"Connected to {version} ({properties.get(VERSION_DATE, '')})")
    return version


def connect(config: LoaderConfig, url: Optional[str] = None) -> KineticaClient:
    """
    Create a client for ``url`` (the head node by default) and check it.

    Raises:
        DatabaseConnectionError: If the connection cannot be verified
        TransportSetupError: If trust or key stores cannot be loaded
    """
    target = url or config.require_url()
    http_session = build_http_session(config.transport)
    logger.info(f"Connecting to {mask_credentials(target)} as <{config.username}>")
    client = KineticaClient(
        target,
        username=config.username,
        password=config.password,
        timeout_sec=config.timeout_sec,
        use_compression=config.use_compression,
        http_session=http_session,
    )
    try:
        check_connection(client)
    except DatabaseConnectionError:
        client.close()
        raise
    return client


def table_exists(client: KineticaClient, table_name: str) -> bool:
    if not client.has_table(table_name):
        return False
    logger.info(f"Found existing table: {table_name}")
    return True


def collection_matches(client: KineticaClient, table_name: str, schema_name: str) -> bool:
    """
    Check that the table belongs to ``schema_name``, if one is given.

    Returns True if no schema is expected, or if the table exists and belongs
    to exactly that collection; False otherwise.
    """
    if not schema_name:
        return True

    response = client.show_table(table_name, {NO_ERROR_IF_NOT_EXISTS: "true"})
    additional_info = response.get("additional_info") or []
    if not additional_info:
        return False

    collection = additional_info[0].get(COLLECTION_NAMES)
    if not collection:
        return False
    return collection == schema_name


def resolve_type(client: KineticaClient, table_name: str) -> RemoteTableType:
    """
    Read the type of an existing table.

    Raises:
        TypeResolutionError: If the table does not exist or its type is unreadable
    """
    try:
        response = client.show_table(table_name, {NO_ERROR_IF_NOT_EXISTS: "true"})
    except RemoteApiError as err:
        logger.error(f"Cannot create a type from the table name '{table_name}'; issue: '{err}'")
        raise TypeResolutionError(f"Cannot read type of table '{table_name}': {err}") from err

    type_schemas = response.get("type_schemas") or []
    if not type_schemas:
        raise TypeResolutionError(f"Table '{table_name}' does not exist and no schema was supplied")

    properties = (response.get("properties") or [{}])[0]
    labels = response.get("type_labels") or [""]
    return RemoteTableType.from_type_schema(type_schemas[0], properties, label=labels[0])


def table_size(client: KineticaClient, table_name: str) -> int:
    response = client.show_table(table_name, {"get_sizes": "true"})
    return int(response.get("total_size", 0))


class KineticaSession:
    """Live handles and cached table type for one configuration."""

    def __init__(self, config: LoaderConfig, table_type: Optional[RemoteTableType] = None):
        self.config = config
        self.timezone = resolve_timezone(config.timezone)
        self._explicit_type = table_type
        self._table_type = table_type
        self._client: Optional[KineticaClient] = None
        self._worker_clients: Dict[str, KineticaClient] = {}
        self._sql_factory: Optional[SqlConnectionFactory] = None
        self._lock = threading.RLock()

    def __getstate__(self):
        return {"config": self.config, "table_type": self._explicit_type}

    def __setstate__(self, state):
        self.__init__(state["config"], state["table_type"])

    @property
    def client(self) -> KineticaClient:
        """Head-node client, created on first use and cached."""
        with self._lock:
            if self._client is None:
                self._client = connect(self.config)
            return self._client

    def client_for(self, url: str) -> KineticaClient:
        """Client for a worker endpoint, created on first use and cached."""
        with self._lock:
            client = self._worker_clients.get(url)
            if client is None:
                client = connect(self.config, url)
                self._worker_clients[url] = client
            return client

    @property
    def sql(self) -> SqlConnectionFactory:
        with self._lock:
            if self._sql_factory is None:
                if not self.config.sql_url:
                    raise InvalidOptionsError("A SQL endpoint (database.jdbc_url) is required for this operation")
                self._sql_factory = SqlConnectionFactory(
                    self.config.sql_url,
                    username=self.config.username,
                    password=self.config.password,
                    driver=self.config.odbc_driver,
                    timeout_sec=self.config.timeout_sec,
                )
            return self._sql_factory

    def check_connection(self) -> str:
        return check_connection(self.client)

    def has_table(self) -> bool:
        return table_exists(self.client, self.config.table_name)

    def collection_matches(self) -> bool:
        return collection_matches(self.client, self.config.table_name, self.config.schema_name)

    def table_type(self) -> RemoteTableType:
        """Return the cached table type, resolving it from the database once."""
        with self._lock:
            if self._table_type is None:
                self._table_type = resolve_type(self.client, self.config.table_name)
            return self._table_type

    def set_table_type(self, table_type: RemoteTableType) -> None:
        with self._lock:
            self._table_type = table_type

    def reset(self) -> None:
        """Drop cached handles and the resolved table type."""
        with self._lock:
            for client in [self._client, *self._worker_clients.values()]:
                if client is not None:
                    client.close()
            self._client = None
            self._worker_clients = {}
            self._sql_factory = None
            self._table_type = self._explicit_type

    close = reset
