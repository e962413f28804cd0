"""Custom exceptions for the Kinetica Spark connector."""

from typing import Optional


class KineticaConnectorError(Exception):
    """Base exception for connector errors."""
    pass


class InvalidOptionsError(KineticaConnectorError):
    """Raised when connector options are missing or inconsistent."""
    pass


class DatabaseConnectionError(KineticaConnectorError):
    """Raised when the database is unreachable, rejects us, or is too old."""
    pass


class TransportSetupError(DatabaseConnectionError):
    """Raised when a trust store or key store cannot be loaded."""
    pass


class RemoteApiError(KineticaConnectorError):
    """Raised when a row API endpoint call fails."""

    def __init__(self, endpoint: str, message: str, transient: bool = False):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.transient = transient


class TypeResolutionError(KineticaConnectorError):
    """Raised when the remote table type cannot be determined."""
    pass


class SchemaMismatchError(KineticaConnectorError):
    """Raised when a record does not fit the target schema."""
    pass


class UnsupportedColumnTypeError(KineticaConnectorError):
    """Raised when a column type has no remote counterpart."""

    def __init__(self, column: str, type_name: str):
        super().__init__(f"Column '{column}' has unsupported type {type_name}")
        self.column = column
        self.type_name = type_name


class UnsupportedPredicateError(KineticaConnectorError):
    """Raised when a filter operator cannot be rendered."""

    def __init__(self, operator: str, column: Optional[str] = None):
        where = f" on column '{column}'" if column else ""
        super().__init__(f"Unsupported filter operator '{operator}'{where}")
        self.operator = operator
        self.column = column


class FetchError(KineticaConnectorError):
    """Raised when a row range cannot be fetched after all retries."""

    def __init__(self, table: str, offset: int, count: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Failed to fetch {count} rows at offset {offset} from table '{table}': {cause}"
        )
        self.table = table
        self.offset = offset
        self.count = count


class CountQueryError(KineticaConnectorError):
    """Raised when a count query returns no result row."""
    pass


class IngestError(KineticaConnectorError):
    """Raised when ingestion aborts on a failed batch."""

    def __init__(self, table: str, failed_rows: int, message: str):
        super().__init__(f"Ingestion into '{table}' failed ({failed_rows} rows): {message}")
        self.table = table
        self.failed_rows = failed_rows


class OperationCancelledError(KineticaConnectorError):
    """Raised when a read or ingestion is cancelled between chunks."""
    pass
