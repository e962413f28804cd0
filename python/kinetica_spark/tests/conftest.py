"""Shared fixtures: an in-memory Kinetica cluster and a fake ODBC connection."""

import contextlib
from typing import Any, Dict, List, Optional

import pytest

from kinetica_spark import session as session_module
from kinetica_spark.exceptions import RemoteApiError
from kinetica_spark.options import LoaderConfig
from kinetica_spark.session import KineticaSession
from kinetica_spark.type_mapper import PRIMARY_KEY, RemoteColumn, RemoteTableType

HEAD_URL = "http://kinetica-head:9191"


class FakeTable:
    def __init__(self, table_type: RemoteTableType, collection: str = "", rows=None):
        self.table_type = table_type
        self.collection = collection
        self.rows: List[Dict[str, Any]] = list(rows or [])

    @property
    def key_columns(self) -> List[str]:
        return [c.name for c in self.table_type.columns if c.has_property(PRIMARY_KEY)]


class FakeCluster:
    """Shared state behind every FakeKineticaClient."""

    def __init__(self):
        self.tables: Dict[str, FakeTable] = {}
        self.properties: Dict[str, str] = {
            "version.gpudb_core_version": "7.1.9.3",
            "version.gpudb_version_date": "2023-07-12",
            "conf.enable_worker_http_servers": "FALSE",
        }
        self.down_urls = set()
        self.fetch_failures = 0
        self.fetch_failure_transient = True
        # applied to the table, then reported as failed
        self.lost_insert_responses = 0
        # url -> number of inserts rejected for bad data
        self.rejected_inserts: Dict[str, int] = {}
        self.fetches: List[tuple] = []
        self.inserts: List[tuple] = []
        self.calls: List[tuple] = []
        self.clients: Dict[str, "FakeKineticaClient"] = {}
        self.pending_type: Optional[RemoteTableType] = None

    def add_table(self, name, columns, rows=None, collection=""):
        table_type = RemoteTableType(columns=tuple(columns), label=name)
        self.tables[name] = FakeTable(table_type, collection, rows)
        return self.tables[name]

    def client(self, url: str) -> "FakeKineticaClient":
        if url not in self.clients:
            self.clients[url] = FakeKineticaClient(self, url)
        return self.clients[url]


class FakeKineticaClient:
    """In-memory stand-in for ``KineticaClient``."""

    def __init__(self, cluster: FakeCluster, url: str):
        self.cluster = cluster
        self.url = url
        self.closed = False

    def close(self):
        self.closed = True

    def _check_up(self, endpoint):
        if self.url in self.cluster.down_urls:
            raise RemoteApiError(endpoint, f"connection refused by {self.url}", transient=True)

    def show_system_properties(self, keys=()):
        self._check_up("/show/system/properties")
        if not keys:
            return dict(self.cluster.properties)
        return {k: self.cluster.properties[k] for k in keys if k in self.cluster.properties}

    def has_table(self, table_name):
        return table_name in self.cluster.tables

    def show_table(self, table_name, options=None):
        options = options or {}
        table = self.cluster.tables.get(table_name)
        if table is None:
            if options.get("no_error_if_not_exists") == "true":
                return {"type_schemas": [], "additional_info": [], "properties": [], "type_labels": []}
            raise RemoteApiError("/show/table", f"Table {table_name} does not exist")
        return {
            "type_schemas": [table.table_type.to_type_definition()],
            "properties": [table.table_type.to_column_properties()],
            "type_labels": [table.table_type.label],
            "additional_info": [{"collection_names": table.collection}],
            "total_size": len(table.rows),
        }

    def get_records_by_column(self, table_name, column_names, offset, limit, expression=None):
        self.cluster.fetches.append((table_name, offset, limit, expression))
        if self.cluster.fetch_failures > 0:
            self.cluster.fetch_failures -= 1
            raise RemoteApiError(
                "/get/records/bycolumn", "worker busy", transient=self.cluster.fetch_failure_transient
            )
        rows = self.cluster.tables[table_name].rows[offset:offset + limit]
        return [{name: row.get(name) for name in column_names} for row in rows]

    def insert_records(self, table_name, records, update_on_existing_pk=False):
        self._check_up("/insert/records")
        if self.cluster.rejected_inserts.get(self.url, 0) > 0:
            self.cluster.rejected_inserts[self.url] -= 1
            raise RemoteApiError("/insert/records", "invalid value for column quantity")
        self.cluster.inserts.append((self.url, len(records), update_on_existing_pk))
        table = self.cluster.tables[table_name]
        keys = table.key_columns
        inserted = updated = 0
        for record in records:
            match = None
            if keys:
                for index, existing in enumerate(table.rows):
                    if all(existing.get(k) == record.get(k) for k in keys):
                        match = index
                        break
            if match is None:
                table.rows.append(dict(record))
                inserted += 1
            elif update_on_existing_pk:
                table.rows[match] = dict(record)
                updated += 1
        if self.cluster.lost_insert_responses > 0:
            self.cluster.lost_insert_responses -= 1
            raise RemoteApiError("/insert/records", "response lost", transient=True)
        return inserted, updated

    def clear_table(self, table_name, options=None):
        self.cluster.calls.append(("clear_table", table_name))
        self.cluster.tables.pop(table_name, None)

    def create_type(self, type_definition, label, properties):
        self.cluster.calls.append(("create_type", label))
        table_type = RemoteTableType.from_type_schema(type_definition, properties, label=label)
        type_id = f"type-{len(self.cluster.calls)}"
        self.cluster.pending_type = table_type
        return type_id

    def create_table(self, table_name, type_id, options=None):
        options = options or {}
        self.cluster.calls.append(("create_table", table_name, dict(options)))
        self.cluster.tables[table_name] = FakeTable(
            self.cluster.pending_type, options.get("collection_name", "")
        )

    def alter_table(self, table_name, action, value, options=None):
        options = options or {}
        self.cluster.calls.append(("alter_table", table_name, action, value, dict(options)))
        table = self.cluster.tables[table_name]
        props = tuple(p for p in options.get("column_properties", "").split(",") if p and p != "nullable")
        column = RemoteColumn(value, options["column_type"], True, props)
        table.table_type = RemoteTableType(table.table_type.columns + (column,), table.table_type.label)


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.closed = False

    def execute(self, sql):
        self.connection.executed.append(sql)
        if self.connection.error is not None:
            raise self.connection.error

    def fetchone(self):
        return self.connection.result

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, result=(0,), error=None):
        self.result = result
        self.error = error
        self.executed: List[str] = []
        self.cursors: List[FakeCursor] = []

    def cursor(self):
        cursor = FakeCursor(self)
        self.cursors.append(cursor)
        return cursor


class FakeConnectionFactory:
    """Stand-in for ``SqlConnectionFactory`` that hands out one fake connection."""

    def __init__(self, result=(0,), error=None):
        self.connection = FakeConnection(result, error)
        self.opened = 0

    @contextlib.contextmanager
    def connect(self):
        self.opened += 1
        yield self.connection


@pytest.fixture
def cluster(monkeypatch):
    """A fake cluster wired in as the target of every ``connect`` call."""
    fake = FakeCluster()

    def fake_connect(config, url=None):
        return fake.client(url or config.require_url())

    monkeypatch.setattr(session_module, "connect", fake_connect)
    return fake


@pytest.fixture
def make_session(cluster):
    def factory(table="orders", options=None) -> KineticaSession:
        opts = {"database.url": HEAD_URL, "table.name": table}
        opts.update(options or {})
        return KineticaSession(LoaderConfig.from_options(opts))

    return factory


def orders_columns():
    return [
        RemoteColumn("id", "long", False, (PRIMARY_KEY,)),
        RemoteColumn("product", "string", True),
        RemoteColumn("quantity", "int", False),
    ]


def orders_rows(n: int, start: int = 0) -> List[Dict[str, Optional[Any]]]:
    return [{"id": i, "product": f"p{i}", "quantity": i % 7} for i in range(start, start + n)]
