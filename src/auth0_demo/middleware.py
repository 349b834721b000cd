from __future__ import annotations

import logging
from typing import Protocol

from .context import Handler, Request, Response, unauthenticated_response
from .errors import AuthError
from .identity import context_with_subject
from .verify import Claims

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class Verifier(Protocol):
    def verify(
        self, token: str, issuer: str | None = None, audience: str | None = None
    ) -> Claims: ...


def bearer_token(authorization: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer <token>`` value, else ``None``."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :]
    if not token or any(ch.isspace() for ch in token):
        return None
    return token


class AuthMiddleware:
    """Attach the verified subject of a bearer token to the request context.

    Requests without bearer credentials pass through untouched; handlers that
    need an identity reject them on their own. A token that fails verification
    ends the request with 401 and never reaches ``next_handler``.
    """

    def __init__(self, verifier: Verifier, next_handler: Handler) -> None:
        self.verifier = verifier
        self.next_handler = next_handler

    def __call__(self, request: Request) -> Response:
        token = bearer_token(request.header("Authorization"))
        if token is None:
            return self.next_handler(request)

        try:
            claims = self.verifier.verify(token)
        except AuthError as exc:
            logger.warning("auth error (%s): %s", exc.kind, exc)
            return unauthenticated_response()

        context = context_with_subject(request.context, claims.subject)
        return self.next_handler(request.with_context(context))
