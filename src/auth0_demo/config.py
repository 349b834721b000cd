from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv

from .verify import DEFAULT_LEEWAY

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 4000

# Flag destination -> environment variable supplying its default.
ENV_VARS = {
    "host": "HOST",
    "port": "PORT",
    "jwks_url": "JWKS_URL",
    "expected_issuer": "EXPECTED_ISSUER",
    "expected_audience": "EXPECTED_AUDIENCE",
    "leeway": "JWT_LEEWAY",
    "refresh_interval": "JWKS_REFRESH_INTERVAL",
    "log_level": "LOG_LEVEL",
}


@dataclass(frozen=True)
class Settings:
    jwks_url: str
    expected_issuer: str
    expected_audience: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    leeway: int = DEFAULT_LEEWAY
    refresh_interval: float | None = None
    log_level: str = "INFO"


def load_env_file(path: str | None = None) -> None:
    """Populate ``os.environ`` from a ``.env`` file without overriding real variables."""
    load_dotenv(path, override=False)


def env_defaults(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    return {dest: environ[var] for dest, var in ENV_VARS.items() if environ.get(var)}
