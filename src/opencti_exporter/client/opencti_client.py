"""
OpenCTI client over the GraphQL API, built on httpx.

Only the two calls the exporter needs: the /health endpoint and a
stixCyberObservables listing with ordering. Every failure is mapped
onto one of the exceptions in opencti_exporter.errors.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import httpx

from opencti_exporter import __version__
from opencti_exporter.client.base import ORDER_ASC, ORDER_DESC, OpenCTIReader
from opencti_exporter.errors import (
    ConfigurationError,
    OpenCTIConnectionError,
    OpenCTIHealthError,
    OpenCTIQueryError,
    OpenCTITimeoutError,
)
from opencti_exporter.metrics import ObservableRecord


log = logging.getLogger(__name__)

OBSERVABLE_PROPERTIES = "id entity_type observable_value created_at updated_at"

LIST_OBSERVABLES_QUERY = """
query StixCyberObservables($first: Int, $orderBy: StixCyberObservablesOrdering, $orderMode: OrderingMode) {
  stixCyberObservables(first: $first, orderBy: $orderBy, orderMode: $orderMode) {
    edges {
      node {
        %s
      }
    }
  }
}
""" % OBSERVABLE_PROPERTIES


def _validate_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigurationError(f"invalid OpenCTI URL {url!r}: {e}") from e

    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ConfigurationError(f"invalid OpenCTI URL {url!r}: expected http(s)://host[:port]")

    return url.rstrip("/")


class OpenCTIClient(OpenCTIReader):

    def __init__(
        self,
        url: str,
        token: str,
        health_access_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not token:
            raise ConfigurationError("an OpenCTI token is required")

        self._url = _validate_url(url)
        self._health_access_key = health_access_key
        self._timeout = timeout_seconds
        self._client = httpx.Client(
            base_url=self._url,
            timeout=self._timeout,
            verify=verify,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "User-Agent": f"opencti-exporter/{__version__}",
            },
        )

    @property
    def url(self) -> str:
        return self._url

    def _request(self, method: str, path: str, timeout: Optional[float], **kwargs) -> httpx.Response:
        """Send a request and read the whole body within `timeout` seconds.

        httpx applies its timeout to each connect/read/write on its own, so
        a server trickling bytes could hold a request open indefinitely.
        The deadline is checked again after every chunk of the body.
        """
        budget = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        chunks = []
        try:
            with self._client.stream(method, path, timeout=budget, **kwargs) as response:
                for chunk in response.iter_bytes():
                    chunks.append(chunk)
                    if time.monotonic() >= deadline:
                        break
        except httpx.TimeoutException as e:
            raise OpenCTITimeoutError(f"{method} {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise OpenCTIConnectionError(f"{method} {path} failed: {e}") from e

        if time.monotonic() >= deadline:
            raise OpenCTITimeoutError(f"{method} {path} did not complete within {budget:.1f}s")

        # Body is already decoded; drop headers describing the wire encoding
        headers = [
            (key, value) for key, value in response.headers.multi_items()
            if key.lower() not in ("content-encoding", "content-length", "transfer-encoding")
        ]
        return httpx.Response(
            response.status_code,
            headers=headers,
            content=b"".join(chunks),
            request=response.request,
        )

    def health_check(self, timeout: Optional[float] = None) -> None:
        params = {}
        if self._health_access_key:
            params["health_access_key"] = self._health_access_key

        response = self._request("GET", "/health", timeout, params=params)
        if not response.is_success:
            raise OpenCTIHealthError(f"health check returned HTTP {response.status_code}")

        try:
            status = response.json().get("status")
        except (ValueError, AttributeError) as e:
            # AttributeError: valid JSON, but not an object
            raise OpenCTIHealthError(f"unreadable health check response: {e}") from e

        if status != "success":
            raise OpenCTIHealthError(f"health check status is {status!r}")

    def list_observables(
        self,
        first: int,
        order_by: str,
        order_mode: str = ORDER_DESC,
        timeout: Optional[float] = None,
    ) -> List[ObservableRecord]:
        if order_mode not in (ORDER_ASC, ORDER_DESC):
            raise ValueError(f"order_mode must be {ORDER_ASC!r} or {ORDER_DESC!r}, got {order_mode!r}")

        payload = {
            "query": LIST_OBSERVABLES_QUERY,
            "variables": {"first": first, "orderBy": order_by, "orderMode": order_mode},
        }
        response = self._request("POST", "/graphql", timeout, json=payload)
        if not response.is_success:
            raise OpenCTIQueryError(f"GraphQL request returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise OpenCTIQueryError(f"GraphQL response is not JSON: {e}") from e
        if not isinstance(body, dict):
            raise OpenCTIQueryError("GraphQL response is not a JSON object")

        if body.get("errors"):
            messages = "; ".join(
                str(err.get("message", err) if isinstance(err, dict) else err) for err in body["errors"]
            )
            raise OpenCTIQueryError(f"GraphQL errors: {messages}")

        data = body.get("data") or {}
        connection = data.get("stixCyberObservables") if isinstance(data, dict) else None
        connection = connection or {}
        if not isinstance(data, dict) or not isinstance(connection, dict):
            raise OpenCTIQueryError("unexpected shape for stixCyberObservables in GraphQL response")

        records = []
        for edge in connection.get("edges") or []:
            try:
                records.append(ObservableRecord.from_node(edge["node"]))
            except (KeyError, TypeError, ValueError) as e:
                raise OpenCTIQueryError(f"unexpected observable in response: {e}") from e

        log.debug("Listed %d observables ordered by %s %s", len(records), order_by, order_mode)
        return records

    def name(self) -> str:
        return f"OpenCTI ({self._url})"

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
