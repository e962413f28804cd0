"""Filter pushdown rendering and count queries over ODBC."""

import contextlib
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, Optional, Sequence

import pyodbc

from .exceptions import CountQueryError, DatabaseConnectionError, UnsupportedPredicateError
from .utils import mask_credentials

logger = logging.getLogger("kinetica_spark.filters")

_COMPARISON_OPERATORS = {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE"}
_LIST_OPERATORS = {"IN", "NOT IN"}
_NULL_OPERATORS = {"IS NULL", "IS NOT NULL"}


@dataclass(frozen=True)
class Predicate:
    """A ``column <operator> value`` filter; lists of predicates are AND-ed."""

    column: str
    operator: str
    value: Any = None


def quote_identifier(name: str) -> str:
    """Double-quote an identifier, doubling embedded quotes."""
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def quote_table_name(table_name: str, schema_name: str = "") -> str:
    """
    Quote a table name, prefixed by its quoted schema when one is given.

    Dots inside ``table_name`` are kept as part of the identifier.
    """
    if schema_name:
        return f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}"
    return quote_identifier(table_name)


def render_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return f"'{value.isoformat(sep=' ', timespec='milliseconds')}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def _render_predicate(predicate: Predicate) -> str:
    operator = " ".join(predicate.operator.strip().upper().split())
    column = quote_identifier(predicate.column)

    if operator in _NULL_OPERATORS:
        return f"{column} {operator}"

    if operator in _LIST_OPERATORS:
        values = predicate.value
        if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple, set, frozenset)):
            raise UnsupportedPredicateError(f"{operator} with a non-list value", predicate.column)
        if not values:
            # empty IN matches nothing, empty NOT IN matches everything
            return "1 = 0" if operator == "IN" else "1 = 1"
        rendered = ", ".join(render_literal(v) for v in values)
        return f"{column} {operator} ({rendered})"

    if operator in _COMPARISON_OPERATORS:
        if predicate.value is None:
            raise UnsupportedPredicateError(f"{operator} NULL", predicate.column)
        return f"{column} {operator} {render_literal(predicate.value)}"

    raise UnsupportedPredicateError(predicate.operator, predicate.column)


def render_expression(predicates: Sequence[Predicate]) -> str:
    """
    Render predicates as one boolean expression (no WHERE keyword).

    Raises:
        UnsupportedPredicateError: If an operator cannot be rendered
    """
    return " AND ".join(f"({_render_predicate(p)})" for p in predicates)


def to_where_clause(predicates: Sequence[Predicate]) -> str:
    """
    Render predicates as a WHERE clause, or ``""`` when there are none.

    Raises:
        UnsupportedPredicateError: If an operator cannot be rendered
    """
    expression = render_expression(predicates)
    if not expression:
        return ""
    return f"WHERE {expression}"


_registered_drivers = set()
_registry_lock = threading.Lock()


def register_driver(driver: str) -> None:
    """
    Verify once per process that the ODBC driver is installed.

    Raises:
        DatabaseConnectionError: If the driver is not installed
    """
    with _registry_lock:
        if driver in _registered_drivers:
            return
        installed = pyodbc.drivers()
        if driver not in installed:
            raise DatabaseConnectionError(
                f"ODBC driver '{driver}' is not installed; available drivers: {installed}"
            )
        _registered_drivers.add(driver)
        logger.info(f"Registered ODBC driver '{driver}'")


def odbc_url(url: str) -> str:
    """Translate a ``jdbc:kinetica://host:port`` URL into the HTTP URL the ODBC driver expects."""
    if url.startswith("jdbc:kinetica://"):
        rest = url[len("jdbc:kinetica://"):].split(";", 1)[0]
        return f"http://{rest}"
    return url


class SqlConnectionFactory:
    """Open ODBC connections to the Kinetica SQL endpoint."""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        driver: str = "Kinetica",
        timeout_sec: float = 1800.0,
    ):
        self.url = url
        self.username = username
        self._password = password
        self.driver = driver
        self.timeout_sec = timeout_sec

    def _connection_string(self) -> str:
        return (
            f"DRIVER={{{self.driver}}};URL={odbc_url(self.url)};"
            f"UID={self.username};PWD={self._password}"
        )

    @contextlib.contextmanager
    def connect(self) -> Iterator[Any]:
        """
        Yield an open connection and always close it afterwards.

        Raises:
            DatabaseConnectionError: If the connection cannot be opened
        """
        register_driver(self.driver)
        timeout = max(1, int(self.timeout_sec))
        logger.debug(f"Opening ODBC connection to {mask_credentials(self.url)}")
        try:
            conn = pyodbc.connect(self._connection_string(), timeout=timeout, autocommit=True)
        except pyodbc.Error as err:
            raise DatabaseConnectionError(
                f"Cannot open SQL connection to {mask_credentials(self.url)}: {err}"
            ) from err
        conn.timeout = timeout
        try:
            yield conn
        finally:
            conn.close()


def count(
    connection_factory: SqlConnectionFactory,
    table_name: str,
    predicates: Optional[Sequence[Predicate]] = None,
    schema_name: str = "",
) -> int:
    """
    Count rows of ``table_name`` (in ``schema_name``, if given) matching ``predicates``.

    Raises:
        CountQueryError: If the query returns no row
        UnsupportedPredicateError: If a predicate cannot be rendered
    """
    where_clause = to_where_clause(predicates or [])
    count_query = f"SELECT count(*) FROM {quote_table_name(table_name, schema_name)} {where_clause}"
    logger.info(count_query)
    with connection_factory.connect() as conn:
        cursor = conn.cursor()
        try:
            cursor.execute(count_query)
            row = cursor.fetchone()
        except pyodbc.Error as err:
            raise CountQueryError(f"Count query on table '{table_name}' failed: {err}") from err
        finally:
            cursor.close()
    if row is None:
        raise CountQueryError(f"Could not read count from Kinetica for table '{table_name}'")
    return int(row[0])
