"""S3-compatible object store over HTTP with ETag preconditions."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx
from defusedxml import ElementTree

from burstpool.errors import StoreUnavailableError
from burstpool.store.base import PutResult, StoredObject

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_PRECONDITION_STATUS_CODES = frozenset({409, 412})
_LIST_PAGE_SIZE = 1000


class HttpObjectStore:
    """Path-style S3 REST client: ``{endpoint}/{bucket}/{key}``.

    ``If-None-Match: *`` implements create-only writes and ``If-Match: <etag>``
    implements compare-and-swap; the store answers 412 (or 409 when a
    concurrent conditional write is in flight) when the precondition fails.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        bucket: str,
        auth_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.bucket = bucket
        base_headers: dict[str, str] = {}
        if auth_token:
            base_headers["Authorization"] = f"Bearer {auth_token}"
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport,
        )

    def get(self, key: str) -> StoredObject | None:
        response = self._send("GET", self._object_url(key))
        if response.status_code == 404:
            return None
        self._raise_for_status(response, operation="get")
        etag = response.headers.get("ETag")
        if not etag:
            raise StoreUnavailableError(f"GET {key} returned no ETag", operation="get")
        return StoredObject(body=response.content, version=etag)

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult:
        headers = {"Content-Type": "application/octet-stream"}
        if version is None:
            headers["If-None-Match"] = "*"
        else:
            headers["If-Match"] = version
        response = self._send("PUT", self._object_url(key), content=body, headers=headers)
        if response.status_code in _PRECONDITION_STATUS_CODES:
            return PutResult(ok=False)
        self._raise_for_status(response, operation="put")
        return PutResult(ok=True, version=response.headers.get("ETag"))

    def list_keys(self, prefix: str, limit: int | None = None) -> list[str]:
        if limit is not None and limit <= 0:
            return []
        keys: list[str] = []
        continuation: str | None = None
        while True:
            page_size = _LIST_PAGE_SIZE
            if limit is not None:
                page_size = min(page_size, limit - len(keys))
            params = {"list-type": "2", "prefix": prefix, "max-keys": str(page_size)}
            if continuation:
                params["continuation-token"] = continuation
            response = self._send("GET", f"{self.endpoint}/{self.bucket}", params=params)
            self._raise_for_status(response, operation="list")
            page_keys, continuation = _parse_list_page(response.content)
            keys.extend(page_keys)
            if continuation is None or (limit is not None and len(keys) >= limit):
                break
        if limit is not None:
            return keys[:limit]
        return keys

    def delete(self, key: str) -> bool:
        response = self._send("DELETE", self._object_url(key))
        if response.status_code == 404:
            return False
        self._raise_for_status(response, operation="delete")
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpObjectStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _object_url(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{quote(key, safe='/')}"

    def _send(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as error:
            logger.warning("Timeout on %s %s", method, url)
            raise StoreUnavailableError(f"{method} {url} timed out", operation=method) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error on %s %s: %s", method, url, error)
            raise StoreUnavailableError(f"{method} {url} failed: {error}", operation=method) from error

    @staticmethod
    def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
        if response.is_success:
            return
        message = f"Store {operation} returned HTTP {response.status_code}"
        if response.status_code in _TRANSIENT_STATUS_CODES:
            raise StoreUnavailableError(message, operation=operation)
        response.raise_for_status()


def _parse_list_page(content: bytes) -> tuple[list[str], str | None]:
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as error:
        raise StoreUnavailableError(f"Malformed list response: {error}", operation="list") from error
    keys: list[str] = []
    truncated = False
    token: str | None = None
    for element in root:
        tag = _local_name(element.tag)
        if tag == "Contents":
            for child in element:
                if _local_name(child.tag) == "Key" and child.text:
                    keys.append(child.text)
        elif tag == "IsTruncated":
            truncated = (element.text or "").strip().lower() == "true"
        elif tag == "NextContinuationToken":
            token = element.text
    return keys, token if truncated else None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]
