from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import jwt
from jwt import exceptions as jwt_exceptions

from .errors import (
    AlgorithmMismatchError,
    BadSignatureError,
    ClaimInvalidError,
    MalformedTokenError,
    TokenError,
    UnknownKeyError,
)
from .jwks import Key, KeySetCache

DEFAULT_LEEWAY = 5
REQUIRED_CLAIMS = ("sub", "iss", "aud", "exp")

_EC_CURVE_FOR_ALG = {"ES256": "P-256", "ES384": "P-384", "ES512": "P-521"}


@dataclass(frozen=True)
class Claims:
    subject: str
    issuer: str
    audience: tuple[str, ...]
    expiration: datetime
    not_before: datetime | None = None
    issued_at: datetime | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Claims:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise ClaimInvalidError("sub", "sub claim must be a non-empty string")
        aud = payload["aud"]
        audience = (aud,) if isinstance(aud, str) else tuple(aud)
        return cls(
            subject=subject,
            issuer=payload["iss"],
            audience=audience,
            expiration=_as_datetime(_numeric_date(payload, "exp")),
            not_before=_optional_datetime(payload, "nbf"),
            issued_at=_optional_datetime(payload, "iat"),
            raw=dict(payload),
        )


def _numeric_date(payload: Mapping[str, Any], claim: str) -> float:
    value = payload[claim]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ClaimInvalidError(claim, f"{claim} claim must be a number")
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise ClaimInvalidError(claim, f"{claim} claim must be a finite number")
    return number


def _as_datetime(value: float) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, ValueError, OSError):
        # Past the range datetime can represent; saturate at the nearest bound.
        bound = datetime.max if value > 0 else datetime.min
        return bound.replace(tzinfo=timezone.utc)


def _optional_datetime(payload: Mapping[str, Any], claim: str) -> datetime | None:
    if payload.get(claim) is None:
        return None
    return _as_datetime(_numeric_date(payload, claim))


def _expected_kty_for_alg(alg: str) -> str | None:
    if alg.startswith(("RS", "PS")):
        return "RSA"
    if alg.startswith("ES"):
        return "EC"
    if alg == "EdDSA":
        return "OKP"
    return None


def check_algorithm(key: Key, alg: str) -> None:
    """Reject any pairing of header ``alg`` and key that must not verify together."""
    if alg == "none" or alg.startswith("HS"):
        raise AlgorithmMismatchError(f"refusing to verify alg={alg} against a public key")
    if key.alg is not None and key.alg != alg:
        raise AlgorithmMismatchError(
            f"token alg {alg} does not match key {key.kid} alg {key.alg}"
        )
    expected_kty = _expected_kty_for_alg(alg)
    if expected_kty is None:
        raise AlgorithmMismatchError(f"unsupported algorithm: {alg}")
    if key.kty != expected_kty:
        raise AlgorithmMismatchError(
            f"key {key.kid} kty {key.kty} does not match algorithm {alg} (expected {expected_kty})"
        )
    expected_crv = _EC_CURVE_FOR_ALG.get(alg)
    if expected_crv and key.crv != expected_crv:
        raise AlgorithmMismatchError(
            f"key {key.kid} curve {key.crv} does not match algorithm {alg}"
        )


def read_header(token: str) -> dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt_exceptions.PyJWTError as exc:
        raise MalformedTokenError(f"invalid token format: {exc}") from exc
    for name in ("alg", "kid"):
        value = header.get(name)
        if not isinstance(value, str) or not value:
            raise MalformedTokenError(f"token header missing {name}")
    return header


def translate_jwt_error(exc: jwt_exceptions.PyJWTError) -> TokenError:
    """Map a failure from the signature, iss and aud checks onto a :class:`TokenError`.

    Time claims never reach here; :func:`validate_time_claims` owns them.
    """
    if isinstance(exc, jwt_exceptions.InvalidSignatureError):
        return BadSignatureError("signature verification failed")
    if isinstance(exc, jwt_exceptions.InvalidAudienceError):
        return ClaimInvalidError("aud", "aud claim mismatch")
    if isinstance(exc, jwt_exceptions.InvalidIssuerError):
        return ClaimInvalidError("iss", "iss claim mismatch")
    if isinstance(exc, jwt_exceptions.InvalidSubjectError):
        return ClaimInvalidError("sub", "sub claim must be a string")
    if isinstance(exc, jwt_exceptions.MissingRequiredClaimError):
        return ClaimInvalidError(exc.claim, f"missing required claim: {exc.claim}")
    if isinstance(exc, (jwt_exceptions.InvalidAlgorithmError, jwt_exceptions.InvalidKeyError)):
        return AlgorithmMismatchError(str(exc))
    return MalformedTokenError(f"invalid token format: {exc}")


def validate_time_claims(payload: Mapping[str, Any], *, now: float, leeway: float) -> None:
    exp = _numeric_date(payload, "exp")
    if exp <= now - leeway:
        raise ClaimInvalidError("exp", "token is expired")

    if payload.get("nbf") is not None:
        if _numeric_date(payload, "nbf") > now + leeway:
            raise ClaimInvalidError("nbf", "token is not valid yet (nbf in the future)")

    if payload.get("iat") is not None:
        if _numeric_date(payload, "iat") > now + leeway:
            raise ClaimInvalidError("iat", "iat is in the future")


class TokenVerifier:
    """Verifies bearer JWTs against the keys published at ``jwks_url``."""

    def __init__(
        self,
        cache: KeySetCache,
        jwks_url: str,
        *,
        issuer: str,
        audience: str,
        leeway: float = DEFAULT_LEEWAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if leeway < 0:
            raise ValueError("leeway must be non-negative")
        self.cache = cache
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock
        if not cache.is_configured(jwks_url):
            cache.configure(jwks_url)

    def verify(
        self,
        token: str,
        issuer: str | None = None,
        audience: str | None = None,
    ) -> Claims:
        issuer = self.issuer if issuer is None else issuer
        audience = self.audience if audience is None else audience

        header = read_header(token)
        alg, kid = header["alg"], header["kid"]

        key = self.cache.fetch(self.jwks_url).get(kid)
        if key is None:
            raise UnknownKeyError(kid)
        check_algorithm(key, alg)

        try:
            # Time claims are checked below against our own clock.
            payload = jwt.decode(
                token,
                key=key.public_key,
                algorithms=[alg],
                audience=audience,
                issuer=issuer,
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "require": list(REQUIRED_CLAIMS),
                },
            )
        except jwt_exceptions.PyJWTError as exc:
            raise translate_jwt_error(exc) from exc

        validate_time_claims(payload, now=self._clock(), leeway=self.leeway)
        return Claims.from_payload(payload)
