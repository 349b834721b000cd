from __future__ import annotations

import logging
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .config import Settings
from .context import (
    Handler,
    Request,
    Response,
    error_response,
    text_response,
    unauthenticated_response,
)
from .identity import request_subject
from .jwks import KeySetCache
from .middleware import AuthMiddleware
from .verify import DEFAULT_LEEWAY, TokenVerifier

logger = logging.getLogger(__name__)


class Router:
    def __init__(self) -> None:
        self._routes: dict[str, Handler] = {}

    def add(self, path: str, handler: Handler) -> None:
        self._routes[path] = handler

    def __call__(self, request: Request) -> Response:
        handler = self._routes.get(request.path.split("?", 1)[0])
        if handler is None:
            return error_response(HTTPStatus.NOT_FOUND, "404 page not found")
        return handler(request)


def subject_handler(request: Request) -> Response:
    subject = request_subject(request)
    if subject is None:
        return unauthenticated_response()
    return text_response(HTTPStatus.OK, subject + "\n")


class Application:
    """The authenticated API: auth middleware in front of the route table."""

    def __init__(
        self,
        jwks_url: str,
        expected_issuer: str,
        expected_audience: str,
        *,
        cache: KeySetCache | None = None,
        leeway: float = DEFAULT_LEEWAY,
        refresh_interval: float | None = None,
    ) -> None:
        self.cache = cache or KeySetCache()
        self.cache.configure(jwks_url, refresh_interval=refresh_interval)
        self.verifier = TokenVerifier(
            self.cache,
            jwks_url,
            issuer=expected_issuer,
            audience=expected_audience,
            leeway=leeway,
        )
        self.router = Router()
        self.router.add("/subject", subject_handler)
        self.handler: Handler = AuthMiddleware(self.verifier, self.router)

    @classmethod
    def from_settings(cls, settings: Settings, cache: KeySetCache | None = None) -> Application:
        return cls(
            settings.jwks_url,
            settings.expected_issuer,
            settings.expected_audience,
            cache=cache,
            leeway=settings.leeway,
            refresh_interval=settings.refresh_interval,
        )

    def __call__(self, request: Request) -> Response:
        return self.handler(request)


class APIServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address: tuple[str, int], app: Application) -> None:
        super().__init__(server_address, APIRequestHandler)
        self.app = app


class APIRequestHandler(BaseHTTPRequestHandler):
    server_version = "auth0-demo/0.1"
    server: APIServer

    def _dispatch(self) -> None:
        request = Request(
            method=self.command,
            path=self.path,
            headers={key: value for key, value in self.headers.items()},
        )
        response = self.server.app(request)
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = do_HEAD = do_OPTIONS = _dispatch  # noqa: N815

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


def make_server(settings: Settings, cache: KeySetCache | None = None) -> APIServer:
    app = Application.from_settings(settings, cache=cache)
    return APIServer((settings.host, settings.port), app)


def serve(settings: Settings) -> None:
    server = make_server(settings)
    logger.info("starting server at http://%s:%d", settings.host, settings.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        server.server_close()
