"""Pluggable value codecs for payloads and results."""

from __future__ import annotations

import json
import pickle
from typing import Any, Protocol


class Serializer(Protocol):
    """Round-trips values through bytes."""

    name: str

    def encode(self, value: Any) -> bytes: ...

    def decode(self, data: bytes) -> Any: ...


class JsonSerializer:
    """UTF-8 JSON; used for all coordination records."""

    name = "json"

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, ensure_ascii=False, sort_keys=True).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class PickleSerializer:
    """Arbitrary Python values between trusted processes."""

    name = "pickle"

    def encode(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)

    def decode(self, data: bytes) -> Any:
        return pickle.loads(data)  # noqa: S301


_SERIALIZERS: dict[str, type[JsonSerializer] | type[PickleSerializer]] = {
    JsonSerializer.name: JsonSerializer,
    PickleSerializer.name: PickleSerializer,
}


def get_serializer(name: str) -> Serializer:
    try:
        return _SERIALIZERS[name]()
    except KeyError as error:
        raise ValueError(
            f"Unknown serializer {name!r}; expected one of {sorted(_SERIALIZERS)}",
        ) from error
