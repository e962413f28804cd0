"""Row API client for Kinetica's HTTP/JSON endpoints."""

import gzip
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from .exceptions import RemoteApiError
from .utils import mask_credentials

logger = logging.getLogger("kinetica_spark.client")

TRUE = "true"
FALSE = "false"


class KineticaClient:
    """
    Thin client over the Kinetica row API.

    Every call is a synchronous POST carrying the configured timeout; failures
    surface as ``RemoteApiError`` with ``transient`` set for network errors and
    5xx responses.
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout_sec: float = 1800.0,
        use_compression: bool = False,
        http_session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.username = username
        self.timeout_sec = timeout_sec
        self.use_compression = use_compression
        self._http = http_session or requests.Session()
        if username or password:
            self._http.auth = (username, password)

    def __repr__(self) -> str:
        return f"KineticaClient({mask_credentials(self.url)!r})"

    def close(self) -> None:
        self._http.close()

    def _post(self, endpoint: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.use_compression:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        logger.debug(f"POST {mask_credentials(self.url)}{endpoint}")
        try:
            response = self._http.post(
                f"{self.url}{endpoint}",
                data=body,
                headers=headers,
                timeout=self.timeout_sec,
            )
        except (requests.ConnectionError, requests.Timeout) as err:
            raise RemoteApiError(endpoint, f"request failed: {err}", transient=True) from err
        except requests.RequestException as err:
            raise RemoteApiError(endpoint, f"request failed: {err}") from err

        if response.status_code in (401, 403):
            raise RemoteApiError(endpoint, f"authentication rejected (HTTP {response.status_code})")

        try:
            envelope = response.json()
        except ValueError as err:
            raise RemoteApiError(
                endpoint,
                f"invalid response (HTTP {response.status_code})",
                transient=response.status_code >= 500,
            ) from err

        if envelope.get("status") != "OK":
            message = envelope.get("message") or f"HTTP {response.status_code}"
            raise RemoteApiError(endpoint, message, transient=response.status_code >= 500)

        data = envelope.get("data")
        if isinstance(data, dict):
            return data
        data_str = envelope.get("data_str")
        if data_str:
            return json.loads(data_str)
        return {}

    def show_system_properties(self, keys: Sequence[str] = ()) -> Dict[str, str]:
        options = {"properties": ",".join(keys)} if keys else {}
        data = self._post("/show/system/properties", {"options": options})
        return dict(data.get("property_map", {}))

    def has_table(self, table_name: str) -> bool:
        data = self._post("/has/table", {"table_name": table_name, "options": {}})
        return bool(data.get("table_exists", False))

    def show_table(self, table_name: str, options: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        return self._post("/show/table", {"table_name": table_name, "options": dict(options or {})})

    def get_records_by_column(
        self,
        table_name: str,
        column_names: Sequence[str],
        offset: int,
        limit: int,
        expression: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch ``limit`` records starting at ``offset`` as a list of dicts."""
        options = {"expression": expression} if expression else {}
        data = self._post(
            "/get/records/bycolumn",
            {
                "table_name": table_name,
                "column_names": list(column_names),
                "offset": offset,
                "limit": limit,
                "encoding": "json",
                "options": options,
            },
        )
        return _decode_columnar(data.get("json_encoded_response") or "{}")

    def insert_records(
        self,
        table_name: str,
        records: Sequence[Mapping[str, Any]],
        update_on_existing_pk: bool = False,
    ) -> Tuple[int, int]:
        """Insert records; returns (count_inserted, count_updated)."""
        data = self._post(
            "/insert/records",
            {
                "table_name": table_name,
                "list": [],
                "list_str": [json.dumps(record) for record in records],
                "list_encoding": "json",
                "options": {
                    "update_on_existing_pk": TRUE if update_on_existing_pk else FALSE,
                    "return_record_ids": FALSE,
                },
            },
        )
        return int(data.get("count_inserted", 0)), int(data.get("count_updated", 0))

    def clear_table(self, table_name: str, options: Optional[Mapping[str, str]] = None) -> None:
        self._post(
            "/clear/table",
            {"table_name": table_name, "authorization": "", "options": dict(options or {})},
        )

    def create_type(self, type_definition: str, label: str, properties: Mapping[str, Sequence[str]]) -> str:
        data = self._post(
            "/create/type",
            {
                "type_definition": type_definition,
                "label": label,
                "properties": {name: list(props) for name, props in properties.items()},
                "options": {},
            },
        )
        return data["type_id"]

    def create_table(self, table_name: str, type_id: str, options: Optional[Mapping[str, str]] = None) -> None:
        self._post(
            "/create/table",
            {"table_name": table_name, "type_id": type_id, "options": dict(options or {})},
        )

    def alter_table(
        self,
        table_name: str,
        action: str,
        value: str,
        options: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._post(
            "/alter/table",
            {"table_name": table_name, "action": action, "value": value, "options": dict(options or {})},
        )


def _decode_columnar(encoded: str) -> List[Dict[str, Any]]:
    """Turn a column-oriented JSON response into row dicts."""
    payload = json.loads(encoded)
    headers = payload.get("column_headers", [])
    columns = [payload.get(f"column_{i + 1}", []) for i in range(len(headers))]
    num_rows = len(columns[0]) if columns else 0
    return [
        {header: column[i] for header, column in zip(headers, columns)}
        for i in range(num_rows)
    ]
