from __future__ import annotations

import functools
import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, cast

from jwt import algorithms
from jwt import exceptions as jwt_exceptions

from .errors import KeySetError, KeySetFetchError, KeySetParseError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 60 * 60.0
MIN_REFRESH_INTERVAL = 15 * 60.0
DEFAULT_FETCH_TIMEOUT = 3.0
MAX_DOCUMENT_BYTES = 512 * 1024

_MAX_AGE_RE = re.compile(r"(?:^|,)\s*max-age\s*=\s*\"?(\d+)\"?\s*(?:,|$)", re.IGNORECASE)

JWKSFetcher = Callable[[str], tuple[dict[str, Any], float | None]]


@dataclass(frozen=True)
class Key:
    kid: str
    kty: str
    alg: str | None
    crv: str | None
    public_key: Any = field(repr=False, compare=False)


class KeySet:
    """Immutable, ordered set of verification keys indexed by ``kid``."""

    __slots__ = ("_keys", "_by_kid")

    def __init__(self, keys: list[Key] | tuple[Key, ...]) -> None:
        by_kid: dict[str, Key] = {}
        for key in keys:
            if key.kid in by_kid:
                raise KeySetParseError(f"duplicate kid in JWKS: {key.kid}")
            by_kid[key.kid] = key
        self._keys = tuple(keys)
        self._by_kid = by_kid

    def get(self, kid: str) -> Key | None:
        return self._by_kid.get(kid)

    def kids(self) -> list[str]:
        return [key.kid for key in self._keys]

    def __contains__(self, kid: object) -> bool:
        return kid in self._by_kid

    def __iter__(self) -> Iterator[Key]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"KeySet(kids={self.kids()!r})"


def _jwk_to_public_key(jwk: dict[str, Any]) -> Any:
    kty = jwk.get("kty")
    jwk_json = json.dumps(jwk)
    try:
        if kty == "RSA":
            key = algorithms.RSAAlgorithm.from_jwk(jwk_json)
        elif kty == "EC":
            key = algorithms.ECAlgorithm.from_jwk(jwk_json)
        elif kty == "OKP":
            key = algorithms.OKPAlgorithm.from_jwk(jwk_json)
        else:
            raise KeySetParseError(f"unsupported JWK kty: {kty}")
    except (jwt_exceptions.PyJWTError, ValueError, KeyError, TypeError) as exc:
        raise KeySetParseError(f"invalid {kty} JWK {jwk.get('kid')!r}: {exc}") from exc
    # A published document should only carry public members; drop any private half.
    return key.public_key() if hasattr(key, "private_bytes") else key


def _optional_str(jwk: Mapping[str, Any], name: str) -> str | None:
    value = jwk.get(name)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise KeySetParseError(f"JWK {name} must be a non-empty string")
    return value


def parse_key_set(document: Mapping[str, Any]) -> KeySet:
    """Build a :class:`KeySet` from a decoded JWKS document.

    Members that can never verify a signed token here are skipped rather than
    rejected: keys without ``kid``, encryption keys and symmetric ``oct`` keys.
    """
    keys = document.get("keys")
    if not isinstance(keys, list):
        raise KeySetParseError("JWKS keys must be a list")

    parsed: list[Key] = []
    for index, item in enumerate(keys):
        if not isinstance(item, dict):
            raise KeySetParseError(f"JWKS member {index} is not an object")
        jwk = cast(dict[str, Any], item)
        kty = jwk.get("kty")
        if not isinstance(kty, str) or not kty.strip():
            raise KeySetParseError(f"JWKS member {index} missing kty")
        kid = jwk.get("kid")
        if not isinstance(kid, str) or not kid:
            logger.debug("skipping JWKS member %d without kid", index)
            continue
        if jwk.get("use") == "enc":
            logger.debug("skipping encryption key %s", kid)
            continue
        if kty == "oct":
            logger.debug("skipping symmetric key %s", kid)
            continue
        parsed.append(
            Key(
                kid=kid,
                kty=kty,
                alg=_optional_str(jwk, "alg"),
                crv=_optional_str(jwk, "crv"),
                public_key=_jwk_to_public_key(jwk),
            )
        )

    if not parsed:
        raise KeySetParseError("JWKS has no usable keys")
    return KeySet(parsed)


def _max_age(cache_control: str | None) -> float | None:
    if not cache_control:
        return None
    if "no-store" in cache_control.lower() or "no-cache" in cache_control.lower():
        return 0.0
    match = _MAX_AGE_RE.search(cache_control)
    if match is None:
        return None
    return float(match.group(1))


def fetch_jwks_document(
    url: str,
    *,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_bytes: int = MAX_DOCUMENT_BYTES,
) -> tuple[dict[str, Any], float | None]:
    """GET a JWKS document, returning it with the response's ``max-age`` (if any)."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        raise KeySetFetchError("JWKS url must be http(s)")

    req = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            body = response.read(max_bytes + 1)
            max_age = _max_age(response.headers.get("Cache-Control"))
    except urllib.error.HTTPError as exc:
        raise KeySetFetchError(f"JWKS url returned HTTP {exc.code}") from exc
    except (urllib.error.URLError, OSError) as exc:
        raise KeySetFetchError(f"failed to fetch JWKS from url: {exc}") from exc
    if len(body) > max_bytes:
        raise KeySetParseError("JWKS response too large")

    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise KeySetParseError("JWKS url did not return valid JSON") from exc
    if not isinstance(document, dict):
        raise KeySetParseError("JWKS must be an object")
    if not isinstance(document.get("keys"), list):
        raise KeySetParseError("JWKS keys must be a list")
    return cast(dict[str, Any], document), max_age


class _Flight:
    """One in-progress blocking fetch shared by every caller that arrives during it."""

    __slots__ = ("done", "key_set", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.key_set: KeySet | None = None
        self.error: KeySetError | None = None


@dataclass
class CacheEntry:
    url: str
    refresh_interval: float | None = None
    key_set: KeySet | None = None
    fetched_at: float | None = None
    next_refresh_at: float = 0.0
    refreshing: bool = False
    last_error: KeySetError | None = None
    flight: _Flight | None = field(default=None, repr=False)


class KeySetCache:
    """Per-URL JWKS cache.

    The first :meth:`fetch` for a URL blocks until the document has been
    retrieved; callers racing it share that single request. Once warm, stale
    entries are refreshed on a background thread while readers keep getting the
    last good key set.
    """

    def __init__(
        self,
        *,
        fetcher: JWKSFetcher | None = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        default_refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        min_refresh_interval: float = MIN_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher: JWKSFetcher = fetcher or functools.partial(
            fetch_jwks_document, timeout=timeout
        )
        self._default_refresh_interval = default_refresh_interval
        self._min_refresh_interval = min_refresh_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

    def configure(self, url: str, *, refresh_interval: float | None = None) -> None:
        if refresh_interval is not None and refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                self._entries[url] = CacheEntry(url=url, refresh_interval=refresh_interval)
            else:
                entry.refresh_interval = refresh_interval

    def is_configured(self, url: str) -> bool:
        with self._lock:
            return url in self._entries

    def entry(self, url: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            return replace(entry, flight=None)

    def fetch(self, url: str) -> KeySet:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                raise KeySetFetchError(f"JWKS url is not configured: {url}")
            if entry.key_set is not None:
                if not entry.refreshing and self._clock() >= entry.next_refresh_at:
                    entry.refreshing = True
                    threading.Thread(
                        target=self._refresh_in_background,
                        args=(entry,),
                        name=f"jwks-refresh {url}",
                        daemon=True,
                    ).start()
                return entry.key_set
            flight = entry.flight
            leader = flight is None
            if flight is None:
                flight = entry.flight = _Flight()

        if leader:
            self._fetch_first(entry, flight)
        else:
            flight.done.wait()
        if flight.key_set is None:
            raise flight.error or KeySetFetchError(f"JWKS fetch from {url} was aborted")
        return flight.key_set

    def _load(self, url: str) -> tuple[KeySet, float | None]:
        try:
            document, max_age = self._fetcher(url)
            key_set = parse_key_set(document)
        except KeySetError:
            raise
        except Exception as exc:
            logger.exception("unexpected error loading JWKS from %s", url)
            raise KeySetFetchError(f"failed to load JWKS from {url}: {exc}") from exc
        logger.info("fetched JWKS from %s (%d keys)", url, len(key_set))
        return key_set, max_age

    def _interval(self, entry: CacheEntry, max_age: float | None) -> float:
        if entry.refresh_interval is not None:
            return entry.refresh_interval
        if max_age is not None:
            return max(max_age, self._min_refresh_interval)
        return self._default_refresh_interval

    def _publish(self, entry: CacheEntry, key_set: KeySet, max_age: float | None) -> None:
        # Caller holds the lock.
        now = self._clock()
        entry.key_set = key_set
        entry.fetched_at = now
        entry.next_refresh_at = now + self._interval(entry, max_age)
        entry.last_error = None

    def _fetch_first(self, entry: CacheEntry, flight: _Flight) -> None:
        try:
            key_set, max_age = self._load(entry.url)
        except KeySetError as exc:
            logger.warning("initial JWKS fetch from %s failed: %s", entry.url, exc)
            flight.error = exc
            with self._lock:
                entry.last_error = exc
        else:
            flight.key_set = key_set
            with self._lock:
                self._publish(entry, key_set, max_age)
        finally:
            if flight.key_set is None and flight.error is None:
                flight.error = KeySetFetchError(f"JWKS fetch from {entry.url} was aborted")
            with self._lock:
                entry.flight = None
            flight.done.set()

    def _refresh_in_background(self, entry: CacheEntry) -> None:
        try:
            key_set, max_age = self._load(entry.url)
        except KeySetError as exc:
            logger.warning(
                "JWKS refresh from %s failed, keeping cached keys: %s", entry.url, exc
            )
            with self._lock:
                entry.last_error = exc
                entry.next_refresh_at = self._clock() + self._min_refresh_interval
        else:
            with self._lock:
                self._publish(entry, key_set, max_age)
        finally:
            with self._lock:
                entry.refreshing = False
