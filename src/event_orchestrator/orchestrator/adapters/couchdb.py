"""CouchDB document store over its HTTP API.

One `CouchDBStore` talks to one database; the engine uses one for events
and rules and one for jobs.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import requests

from event_orchestrator.orchestrator.errors import StoreError

logger = logging.getLogger(__name__)


class CouchDBStore:
    def __init__(
        self,
        *,
        url: str,
        db: str,
        user: str = "",
        password: str = "",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not db:
            raise ValueError("CouchDB database name is required")

        self._base_url = url.rstrip("/")
        self._db = db
        self._timeout = timeout
        self._session = session or requests.Session()
        if user and password:
            self._session.auth = (user, password)

    @property
    def db(self) -> str:
        return self._db

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, quote(self._db, safe="")] + list(parts))

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise StoreError(f"{self._db}: {e}") from e

    @staticmethod
    def _error(response: requests.Response) -> StoreError:
        try:
            body = response.json()
        except ValueError:
            return StoreError(f"HTTP {response.status_code}: {response.text}")
        return StoreError(f"{body.get('error', response.status_code)}: {body.get('reason', '')}")

    def ping(self) -> None:
        """Fail loudly when the database is unreachable."""

        response = self._request("GET", self._url())
        if response.status_code != 200:
            raise self._error(response)

    def get(self, doc_id: str) -> dict[str, Any] | None:
        response = self._request("GET", self._url(quote(doc_id, safe="")))
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._error(response)
        return response.json()

    def put(self, doc: Mapping[str, Any]) -> tuple[str, str]:
        doc_id = doc.get("_id")
        if doc_id:
            response = self._request("PUT", self._url(quote(str(doc_id), safe="")), json=dict(doc))
        else:
            response = self._request("POST", self._url(), json=dict(doc))

        if response.status_code not in (200, 201, 202):
            raise self._error(response)
        body = response.json()
        return body["id"], body["rev"]

    def query(
        self,
        view: str,
        *,
        key: Any = None,
        start_key: Any = None,
        end_key: Any = None,
        include_docs: bool = True,
    ) -> list[dict[str, Any]]:
        """Query `design/view`; returns documents (or row values)."""

        design, _, name = view.partition("/")
        if not name:
            raise ValueError(f"view must look like 'design/name', got {view!r}")

        params: dict[str, str] = {"include_docs": "true" if include_docs else "false"}
        if key is not None:
            params["key"] = json.dumps(key)
        if start_key is not None:
            params["startkey"] = json.dumps(start_key)
        if end_key is not None:
            params["endkey"] = json.dumps(end_key)

        response = self._request(
            "GET", self._url("_design", quote(design, safe=""), "_view", quote(name, safe="")),
            params=params,
        )
        if response.status_code != 200:
            raise self._error(response)

        rows = response.json().get("rows", [])
        if include_docs:
            return [row["doc"] for row in rows if row.get("doc")]
        return [row.get("value") for row in rows]

    def lookup(self, key: str, view: str = "config/backend") -> Any:
        """Walk a `platform/section/...` path through a per-platform config view."""

        if not key:
            raise ValueError("a key to look up is required")

        path = [part for part in key.split("/") if part]
        rows = self.query(view, key=path[0], include_docs=False)
        node: Any = {path[0]: rows[0]} if rows else None
        for part in path:
            if not isinstance(node, Mapping) or not node.get(part):
                return None
            node = node[part]
        return node or None

    def close(self) -> None:
        self._session.close()
