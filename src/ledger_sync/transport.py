"""
Client-to-server transports.

Every server answer has the shape {"result": ...} on success and
{"error": message, "kind": name} on failure. Transports unwrap the result
or raise RemoteError, and turn connection problems into TransportError so
the orchestrator can tell retryable failures from rejected requests.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .changes import ChangeSet
from .errors import RemoteError, TransportError
from .store import Predicate
from .values import format_timestamp

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _unwrap(response: Any, status: Optional[int] = None) -> Any:
    if not isinstance(response, dict):
        raise TransportError(f"Unexpected server response: {response!r}")
    if "error" in response:
        raise RemoteError(str(response["error"]), kind=response.get("kind"), status=status)
    return response.get("result")


def _expect(value: Any, expected: type, what: str) -> Any:
    if isinstance(value, bool) or not isinstance(value, expected):
        raise TransportError(f"Malformed {what} reply: {value!r}")
    return value


def _rows(value: Any) -> List[Dict[str, Any]]:
    _expect(value, list, "search")
    for row in value:
        _expect(row, dict, "search row")
    return value


class Transport(ABC):
    """Operations the client consumes from the server."""

    @abstractmethod
    def sync_get_time(self, start: datetime) -> int:
        """Send a timestamp, get server_now - start in milliseconds."""

    @abstractmethod
    def push(self, change_set: ChangeSet) -> Dict[str, Any]:
        """Submit a ChangeSet, return the server's statistics."""

    @abstractmethod
    def get_schema(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_schema_version(self) -> int:
        pass

    @abstractmethod
    def search(self, table: str, predicate: Predicate = None, order_by: Any = None) -> List[Dict[str, Any]]:
        pass


class LocalTransport(Transport):
    """
    In-process transport to a SyncServer.

    Payloads still go through a JSON round trip so that both ends see
    exactly what they would see over the network.
    """

    def __init__(self, server: Any):
        self.server = server

    def _call(self, operation: str, payload: Any = None) -> Any:
        wire = json.loads(json.dumps(payload, default=_json_default))
        response = json.loads(json.dumps(self.server.handle(operation, wire), default=_json_default))
        return _unwrap(response)

    def sync_get_time(self, start: datetime) -> int:
        return _expect(self._call("syncGetTime", start), int, "clock")

    def push(self, change_set: ChangeSet) -> Dict[str, Any]:
        return _expect(self._call("sync", change_set.to_dict()), dict, "sync")

    def get_schema(self) -> Dict[str, Any]:
        return _expect(self._call("schema"), dict, "schema")

    def get_schema_version(self) -> int:
        return _expect(self._call("schemaVersion") or 0, int, "schema version")

    def search(self, table: str, predicate: Predicate = None, order_by: Any = None) -> List[Dict[str, Any]]:
        return _rows(self._call("search", {"table": table, "conditions": predicate, "orderBy": order_by}))


class HttpTransport(Transport):
    """
    Transport over HTTP with requests.

    Endpoints, relative to base_url:
        POST syncGetTime      body: ISO timestamp
        POST sync             body: ChangeSet
        GET  schema
        GET  schemaVersion
        GET  <table>?search=  query: {"conditions", "orderBy"} as JSON
    """

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/") + "/"
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Any = None, params: Optional[dict] = None) -> Any:
        url = self.base_url + path
        data = json.dumps(payload, default=_json_default) if payload is not None else None
        try:
            response = self.session.request(
                method,
                url,
                data=data,
                params=params,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            if isinstance(body, dict) and "error" in body:
                _unwrap(body, response.status_code)
            raise RemoteError(response.text or response.reason or "HTTP error", status=response.status_code)
        if body is None:
            raise TransportError(f"{method} {url} returned invalid JSON")
        return _unwrap(body, response.status_code)

    def sync_get_time(self, start: datetime) -> int:
        return _expect(self._request("POST", "syncGetTime", format_timestamp(start)), int, "clock")

    def push(self, change_set: ChangeSet) -> Dict[str, Any]:
        logger.debug("Pushing %d changes to %s", len(change_set.changes), self.base_url)
        return _expect(self._request("POST", "sync", change_set.to_dict()), dict, "sync")

    def get_schema(self) -> Dict[str, Any]:
        return _expect(self._request("GET", "schema"), dict, "schema")

    def get_schema_version(self) -> int:
        return _expect(self._request("GET", "schemaVersion") or 0, int, "schema version")

    def search(self, table: str, predicate: Predicate = None, order_by: Any = None) -> List[Dict[str, Any]]:
        search = json.dumps({"conditions": predicate, "orderBy": order_by}, default=_json_default)
        return _rows(self._request("GET", table, params={"search": search}))
