from __future__ import annotations

import hashlib
from urllib.parse import unquote
from xml.sax.saxutils import escape

import allure
import httpx
import pytest

from burstpool.errors import StoreUnavailableError
from burstpool.store import HttpObjectStore

pytestmark = [
    allure.epic("State Store"),
    allure.feature("HTTP Object Store"),
]

S3_NS = "http://s3.amazonaws.com/doc/2006-03-01/"


class FakeS3:
    """Path-style bucket honouring If-Match / If-None-Match preconditions."""

    def __init__(self, bucket: str = "pool", page_size: int = 2) -> None:
        self.bucket = bucket
        self.page_size = page_size
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_next: list[int] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0))
        path = unquote(request.url.path)
        prefix = f"/{self.bucket}"
        if path == prefix:
            return self._list(request)
        key = path[len(prefix) + 1 :]
        if request.method == "GET":
            if key not in self.objects:
                return httpx.Response(404)
            body, etag = self.objects[key]
            return httpx.Response(200, content=body, headers={"ETag": etag})
        if request.method == "PUT":
            return self._put(request, key)
        if request.method == "DELETE":
            if self.objects.pop(key, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        return httpx.Response(405)

    def _put(self, request: httpx.Request, key: str) -> httpx.Response:
        current = self.objects.get(key)
        if request.headers.get("If-None-Match") == "*" and current is not None:
            return httpx.Response(412)
        if_match = request.headers.get("If-Match")
        if if_match is not None and (current is None or current[1] != if_match):
            return httpx.Response(412)
        body = request.content
        etag = f'"{hashlib.md5(body + key.encode()).hexdigest()}-{len(self.objects)}"'  # noqa: S324
        self.objects[key] = (body, etag)
        return httpx.Response(200, headers={"ETag": etag})

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        prefix = params.get("prefix", "")
        max_keys = min(int(params.get("max-keys", "1000")), self.page_size)
        start = int(params.get("continuation-token", "0"))
        keys = sorted(key for key in self.objects if key.startswith(prefix))
        page = keys[start : start + max_keys]
        truncated = start + max_keys < len(keys)
        contents = "".join(f"<Contents><Key>{escape(key)}</Key></Contents>" for key in page)
        token = f"<NextContinuationToken>{start + max_keys}</NextContinuationToken>" if truncated else ""
        xml = (
            f'<?xml version="1.0" encoding="UTF-8"?>'
            f'<ListBucketResult xmlns="{S3_NS}">'
            f"<IsTruncated>{'true' if truncated else 'false'}</IsTruncated>"
            f"{contents}{token}</ListBucketResult>"
        )
        return httpx.Response(200, content=xml.encode())


@pytest.fixture()
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture()
def http_store(fake_s3: FakeS3):
    store = HttpObjectStore(
        endpoint="http://store.test/",
        bucket="pool",
        auth_token="secret",
        transport=httpx.MockTransport(fake_s3),
    )
    yield store
    store.close()


def test_conditional_puts_map_to_precondition_headers(http_store, fake_s3) -> None:
    created = http_store.put_if_match("sessions/s1/manifest", b"{}", None)
    duplicate = http_store.put_if_match("sessions/s1/manifest", b"{}", None)
    updated = http_store.put_if_match("sessions/s1/manifest", b'{"a": 1}', created.version)
    stale = http_store.put_if_match("sessions/s1/manifest", b'{"a": 2}', created.version)

    assert created.ok
    assert not duplicate.ok
    assert updated.ok
    assert not stale.ok
    assert fake_s3.requests[0].headers["If-None-Match"] == "*"
    assert fake_s3.requests[0].headers["Authorization"] == "Bearer secret"
    assert fake_s3.requests[2].headers["If-Match"] == created.version
    assert http_store.get("sessions/s1/manifest").body == b'{"a": 1}'


def test_get_missing_object_returns_none(http_store) -> None:
    assert http_store.get("nope") is None


def test_list_keys_follows_continuation_pages(http_store) -> None:
    for index in range(5):
        http_store.put_if_match(f"sessions/s1/tasks/t{index}/status", b"x", None)
    http_store.put_if_match("sessions/s2/manifest", b"x", None)

    keys = http_store.list_keys("sessions/s1/")
    limited = http_store.list_keys("sessions/s1/", limit=3)

    assert keys == [f"sessions/s1/tasks/t{index}/status" for index in range(5)]
    assert limited == keys[:3]
    assert http_store.list_keys("sessions/s1/", limit=0) == []


def test_delete_missing_object_returns_false(http_store) -> None:
    http_store.put_if_match("k", b"x", None)

    assert http_store.delete("k") is True
    assert http_store.delete("k") is False


def test_transient_status_raises_store_unavailable(http_store, fake_s3) -> None:
    fake_s3.fail_next = [503]

    with pytest.raises(StoreUnavailableError, match="503"):
        http_store.get("k")


def test_client_errors_are_not_retryable(http_store, fake_s3) -> None:
    fake_s3.fail_next = [403]

    with pytest.raises(httpx.HTTPStatusError):
        http_store.get("k")


def test_transport_errors_raise_store_unavailable() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = HttpObjectStore(
        endpoint="http://store.test",
        bucket="pool",
        transport=httpx.MockTransport(_refuse),
    )
    with pytest.raises(StoreUnavailableError):
        store.put_if_match("k", b"x", None)
    store.close()
