from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from types import MappingProxyType
from typing import Any


class RequestContext:
    """Immutable bag of request-scoped values.

    ``with_value`` returns a new context; the receiver is never changed, so a
    context handed to one handler cannot be altered by another.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[object, Any] | None = None) -> None:
        self._values: Mapping[object, Any] = MappingProxyType(dict(values or {}))

    def with_value(self, key: object, value: Any) -> RequestContext:
        values = dict(self._values)
        values[key] = value
        return RequestContext(values)

    def value(self, key: object, default: Any = None) -> Any:
        return self._values.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)


@dataclass(frozen=True)
class Request:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    context: RequestContext = field(default_factory=RequestContext)

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        if value is not None:
            return value
        lowered = name.lower()
        for key, candidate in self.headers.items():
            if key.lower() == lowered:
                return candidate
        return None

    def with_context(self, context: RequestContext) -> Request:
        return replace(self, context=context)


@dataclass(frozen=True)
class Response:
    status: HTTPStatus
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)


Handler = Callable[[Request], Response]


def text_response(status: HTTPStatus, text: str) -> Response:
    return Response(
        status=status,
        body=text.encode("utf-8"),
        headers={"Content-Type": "text/plain; charset=utf-8"},
    )


def error_response(status: HTTPStatus, message: str) -> Response:
    response = text_response(status, message + "\n")
    return replace(response, headers={**response.headers, "X-Content-Type-Options": "nosniff"})


def unauthenticated_response() -> Response:
    return error_response(HTTPStatus.UNAUTHORIZED, "unauthenticated")
