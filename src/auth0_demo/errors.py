from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure that ends in an unauthenticated response."""

    kind = "AuthError"


class KeySetError(AuthError):
    kind = "KeySetError"


class KeySetFetchError(KeySetError):
    """The key-set source could not be reached or answered with an error status."""

    kind = "FetchFailed"


class KeySetParseError(KeySetError):
    """The key-set document is not a usable JWKS."""

    kind = "ParseFailed"


class TokenError(AuthError):
    kind = "TokenError"


class MalformedTokenError(TokenError):
    kind = "Malformed"


class UnknownKeyError(TokenError):
    kind = "UnknownKey"

    def __init__(self, kid: str) -> None:
        super().__init__(f"kid not found in JWKS: {kid}")
        self.kid = kid


class AlgorithmMismatchError(TokenError):
    kind = "AlgorithmMismatch"


class BadSignatureError(TokenError):
    kind = "BadSignature"


class ClaimInvalidError(TokenError):
    kind = "ClaimInvalid"

    def __init__(self, claim: str, message: str | None = None) -> None:
        super().__init__(message or f"{claim} claim is invalid")
        self.claim = claim
