from __future__ import annotations

import os
from pathlib import Path

import pytest

from auth0_demo.cli import parse_args
from auth0_demo.config import Settings, env_defaults, load_env_file

ENV = {
    "JWKS_URL": "https://tenant.example/.well-known/jwks.json",
    "EXPECTED_ISSUER": "https://tenant.example/",
    "EXPECTED_AUDIENCE": "https://api.example",
}


def test_defaults_from_environment() -> None:
    _, settings = parse_args(["serve"], ENV)
    assert settings == Settings(
        jwks_url=ENV["JWKS_URL"],
        expected_issuer=ENV["EXPECTED_ISSUER"],
        expected_audience=ENV["EXPECTED_AUDIENCE"],
        host="0.0.0.0",
        port=4000,
        leeway=5,
        refresh_interval=None,
        log_level="INFO",
    )


def test_environment_values_are_converted() -> None:
    environ = {
        **ENV,
        "PORT": "8080",
        "HOST": "127.0.0.1",
        "JWT_LEEWAY": "30",
        "JWKS_REFRESH_INTERVAL": "600",
        "LOG_LEVEL": "debug",
    }
    _, settings = parse_args(["serve"], environ)
    assert settings.port == 8080
    assert settings.host == "127.0.0.1"
    assert settings.leeway == 30
    assert settings.refresh_interval == 600.0
    assert settings.log_level == "DEBUG"


def test_flags_override_environment() -> None:
    _, settings = parse_args(
        [
            "serve",
            "--port",
            "9000",
            "--jwks-url",
            "https://other.example/jwks",
            "--expected-issuer",
            "flag-issuer",
            "--expected-audience",
            "flag-audience",
        ],
        {**ENV, "PORT": "8080"},
    )
    assert settings.port == 9000
    assert settings.jwks_url == "https://other.example/jwks"
    assert settings.expected_issuer == "flag-issuer"
    assert settings.expected_audience == "flag-audience"


def test_empty_environment_values_are_ignored() -> None:
    defaults = env_defaults({**ENV, "PORT": ""})
    assert "port" not in defaults
    assert defaults["jwks_url"] == ENV["JWKS_URL"]


@pytest.mark.parametrize(
    "argv, environ",
    [
        (["serve"], {}),
        (["serve"], {k: v for k, v in ENV.items() if k != "EXPECTED_AUDIENCE"}),
        (["serve", "--leeway", "-1"], ENV),
        (["serve", "--refresh-interval", "0"], ENV),
        (["serve"], {**ENV, "LOG_LEVEL": "chatty"}),
        (["serve"], {**ENV, "PORT": "eighty"}),
    ],
)
def test_invalid_settings_are_usage_errors(argv: list[str], environ: dict[str, str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        parse_args(argv, environ)
    assert excinfo.value.code == 2


def test_env_file_does_not_override_process_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "JWKS_URL=https://from-file.example/jwks\nEXPECTED_ISSUER=from-file\n",
        encoding="utf-8",
    )
    # Register both variables with monkeypatch so teardown restores the originals.
    monkeypatch.setenv("JWKS_URL", "placeholder")
    monkeypatch.delenv("JWKS_URL")
    monkeypatch.setenv("EXPECTED_ISSUER", "from-env")

    load_env_file(str(env_file))

    assert os.environ["JWKS_URL"] == "https://from-file.example/jwks"
    assert os.environ["EXPECTED_ISSUER"] == "from-env"
