"""Unit tests for the row API client against a mocked HTTP transport."""

import gzip
import json

import pytest
import requests
import requests_mock

from kinetica_spark import session as session_module
from kinetica_spark.client import KineticaClient, _decode_columnar
from kinetica_spark.exceptions import DatabaseConnectionError, RemoteApiError
from kinetica_spark.options import LoaderConfig

URL = "http://kinetica-head:9191"


def ok(data):
    return {"status": "OK", "message": "", "data_type": "", "data": data}


class TrackingSession(requests.Session):
    closed = False

    def close(self):
        self.closed = True
        super().close()


@pytest.fixture
def adapter():
    return requests_mock.Adapter()


@pytest.fixture
def http(adapter):
    session = TrackingSession()
    session.mount("http://", adapter)
    return session


@pytest.fixture
def client(http):
    return KineticaClient(URL, username="admin", password="secret", http_session=http)


class TestResponses:
    """Test envelope decoding and error classification."""

    def test_data_envelope(self, adapter, client):
        adapter.register_uri(
            "POST", f"{URL}/show/system/properties",
            json=ok({"property_map": {"version.gpudb_core_version": "7.1.9.3"}}),
        )

        properties = client.show_system_properties(["version.gpudb_core_version"])

        assert properties == {"version.gpudb_core_version": "7.1.9.3"}
        request = adapter.last_request
        assert request.json() == {"options": {"properties": "version.gpudb_core_version"}}
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Authorization"].startswith("Basic ")

    def test_data_str_envelope(self, adapter, client):
        adapter.register_uri(
            "POST", f"{URL}/has/table",
            json={"status": "OK", "message": "", "data_str": json.dumps({"table_exists": True})},
        )
        assert client.has_table("orders")

    def test_empty_envelope(self, adapter, client):
        adapter.register_uri("POST", f"{URL}/has/table", json={"status": "OK"})
        assert not client.has_table("orders")

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_authentication_rejected(self, adapter, client, status_code):
        adapter.register_uri("POST", f"{URL}/has/table", status_code=status_code, text="denied")

        with pytest.raises(RemoteApiError, match="authentication rejected") as exc_info:
            client.has_table("orders")
        assert not exc_info.value.transient

    def test_server_error_is_transient(self, adapter, client):
        adapter.register_uri("POST", f"{URL}/has/table", status_code=503, text="Service Unavailable")

        with pytest.raises(RemoteApiError, match="HTTP 503") as exc_info:
            client.has_table("orders")
        assert exc_info.value.transient

    def test_server_error_envelope_is_transient(self, adapter, client):
        adapter.register_uri(
            "POST", f"{URL}/has/table", status_code=500,
            json={"status": "ERROR", "message": "rank 1 unavailable"},
        )

        with pytest.raises(RemoteApiError, match="rank 1 unavailable") as exc_info:
            client.has_table("orders")
        assert exc_info.value.transient

    def test_error_status(self, adapter, client):
        adapter.register_uri(
            "POST", f"{URL}/show/table",
            json={"status": "ERROR", "message": "Table orders does not exist"},
        )

        with pytest.raises(RemoteApiError, match="does not exist") as exc_info:
            client.show_table("orders")
        assert exc_info.value.endpoint == "/show/table"
        assert not exc_info.value.transient

    @pytest.mark.parametrize("error", [requests.ConnectionError, requests.exceptions.ConnectTimeout])
    def test_network_error_is_transient(self, adapter, client, error):
        adapter.register_uri("POST", f"{URL}/has/table", exc=error)

        with pytest.raises(RemoteApiError, match="request failed") as exc_info:
            client.has_table("orders")
        assert exc_info.value.transient


class TestRecords:
    """Test record fetch and insert payloads."""

    def test_get_records_by_column(self, adapter, client):
        encoded = json.dumps({
            "column_headers": ["id", "product"],
            "column_1": [1, 2],
            "column_2": ["pen", None],
        })
        adapter.register_uri(
            "POST", f"{URL}/get/records/bycolumn", json=ok({"json_encoded_response": encoded}),
        )

        records = client.get_records_by_column("orders", ["id", "product"], 10, 2, '("id" > 0)')

        assert records == [{"id": 1, "product": "pen"}, {"id": 2, "product": None}]
        assert adapter.last_request.json() == {
            "table_name": "orders",
            "column_names": ["id", "product"],
            "offset": 10,
            "limit": 2,
            "encoding": "json",
            "options": {"expression": '("id" > 0)'},
        }

    def test_decode_columnar_without_columns(self):
        assert _decode_columnar("{}") == []
        assert _decode_columnar(json.dumps({"column_headers": ["id"], "column_1": []})) == []

    def test_insert_records(self, adapter, client):
        adapter.register_uri(
            "POST", f"{URL}/insert/records", json=ok({"count_inserted": 1, "count_updated": 1}),
        )

        result = client.insert_records("orders", [{"id": 1}, {"id": 2}], update_on_existing_pk=True)

        assert result == (1, 1)
        payload = adapter.last_request.json()
        assert payload["list_str"] == ['{"id": 1}', '{"id": 2}']
        assert payload["list_encoding"] == "json"
        assert payload["options"] == {"update_on_existing_pk": "true", "return_record_ids": "false"}

    def test_compressed_body(self, adapter, http):
        adapter.register_uri(
            "POST", f"{URL}/insert/records", json=ok({"count_inserted": 1, "count_updated": 0}),
        )
        client = KineticaClient(URL, use_compression=True, http_session=http)

        client.insert_records("orders", [{"id": 1}])

        request = adapter.last_request
        assert request.headers["Content-Encoding"] == "gzip"
        assert json.loads(gzip.decompress(request.body))["table_name"] == "orders"


class TestConnect:
    """Test client creation with the version check."""

    @pytest.fixture
    def config(self):
        return LoaderConfig.from_options({"database.url": URL, "table.name": "orders", "user": "admin"})

    @pytest.fixture(autouse=True)
    def mocked_transport(self, monkeypatch, http):
        monkeypatch.setattr(session_module, "build_http_session", lambda transport: http)

    def test_connect(self, adapter, http, config):
        adapter.register_uri(
            "POST", f"{URL}/show/system/properties",
            json=ok({"property_map": {"version.gpudb_core_version": "7.2.0.1"}}),
        )

        client = session_module.connect(config)

        assert client.url == URL
        assert client.username == "admin"
        assert not http.closed

    def test_failed_version_check_closes_client(self, adapter, http, config):
        adapter.register_uri("POST", f"{URL}/show/system/properties", status_code=503, text="down")

        with pytest.raises(DatabaseConnectionError, match="Cannot verify"):
            session_module.connect(config)
        assert http.closed

    def test_old_version_closes_client(self, adapter, http, config):
        adapter.register_uri(
            "POST", f"{URL}/show/system/properties",
            json=ok({"property_map": {"version.gpudb_core_version": "6.1.0"}}),
        )

        with pytest.raises(DatabaseConnectionError, match="older than"):
            session_module.connect(config)
        assert http.closed
