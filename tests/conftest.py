from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, cast

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt import algorithms

TEST_KID = "test-kid"
TEST_ISSUER = "test-issuer"
TEST_AUDIENCE = "test-audience"


def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key: Any, kid: str, alg: str | None = "RS256") -> dict[str, Any]:
    public_key = private_key.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        jwk = json.loads(algorithms.RSAAlgorithm.to_jwk(public_key))
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        jwk = json.loads(algorithms.ECAlgorithm.to_jwk(public_key))
    else:
        jwk = json.loads(algorithms.OKPAlgorithm.to_jwk(public_key))
    jwk["kid"] = kid
    if alg:
        jwk["alg"] = alg
    return cast(dict[str, Any], jwk)


def make_token(
    private_key: Any,
    *,
    kid: str | None = TEST_KID,
    alg: str = "RS256",
    **claims: Any,
) -> str:
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": "test-subject",
        "aud": [TEST_AUDIENCE],
        "iss": TEST_ISSUER,
        "exp": now + 3600,
        "iat": now,
        "nbf": now,
    }
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, key=private_key, algorithm=alg, headers=headers)


class JWKSServer:
    """Serves a replaceable JWKS document and counts how often it is fetched."""

    def __init__(self, document: dict[str, Any]) -> None:
        self.document = document
        self.hits = 0
        self.status = 200
        self.cache_control: str | None = None
        self.raw_body: bytes | None = None
        self._lock = threading.Lock()
        owner = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802 - http handler API
                with owner._lock:
                    owner.hits += 1
                    status = owner.status
                    body = owner.raw_body or json.dumps(owner.document).encode("utf-8")
                    cache_control = owner.cache_control
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                if cache_control:
                    self.send_header("Cache-Control", cache_control)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, _fmt: str, *_args: object) -> None:
                return

        self._server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        host, port = cast(tuple[str | bytes, int], self._server.server_address)
        host_text = host.decode("ascii") if isinstance(host, bytes) else host
        self.url = f"http://{host_text}:{port}/.well-known/jwks.json"

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)


@pytest.fixture(scope="session")
def private_key() -> rsa.RSAPrivateKey:
    return rsa_private_key()


@pytest.fixture()
def jwks_server(private_key: rsa.RSAPrivateKey) -> Iterator[JWKSServer]:
    server = JWKSServer({"keys": [public_jwk(private_key, TEST_KID)]})
    server.start()
    try:
        yield server
    finally:
        server.stop()
