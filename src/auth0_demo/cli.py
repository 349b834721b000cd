from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Mapping

from .config import DEFAULT_HOST, DEFAULT_PORT, Settings, env_defaults, load_env_file
from .errors import AuthError
from .jwks import KeySetCache
from .verify import DEFAULT_LEEWAY, TokenVerifier
from .version import __version__
from .web import serve

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _print_json(obj: object) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _load_token(token_arg: str) -> str:
    if token_arg != "-":
        return token_arg
    token = sys.stdin.read().strip()
    if not token:
        raise ValueError("stdin is empty; expected JWT")
    return token


def _common_options(defaults: Mapping[str, str]) -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--jwks-url",
        default=defaults.get("jwks_url"),
        help="JWKS URL (env: JWKS_URL)",
    )
    common.add_argument(
        "--expected-issuer",
        default=defaults.get("expected_issuer"),
        help="Expected iss claim (env: EXPECTED_ISSUER)",
    )
    common.add_argument(
        "--expected-audience",
        default=defaults.get("expected_audience"),
        help="Expected aud claim (env: EXPECTED_AUDIENCE)",
    )
    common.add_argument(
        "--leeway",
        type=int,
        default=defaults.get("leeway", DEFAULT_LEEWAY),
        help=f"Clock skew in seconds for exp/nbf/iat (env: JWT_LEEWAY, default: {DEFAULT_LEEWAY})",
    )
    common.add_argument(
        "--refresh-interval",
        type=float,
        default=defaults.get("refresh_interval"),
        help="Seconds between JWKS refreshes; defaults to the response max-age "
        "(env: JWKS_REFRESH_INTERVAL)",
    )
    common.add_argument(
        "--log-level",
        default=defaults.get("log_level", "INFO"),
        type=str.upper,
        choices=_LOG_LEVELS,
        help="Log level (env: LOG_LEVEL, default: INFO)",
    )
    return common


def _settings(parser: argparse.ArgumentParser, args: argparse.Namespace) -> Settings:
    missing = [
        flag
        for flag, value in (
            ("--jwks-url", args.jwks_url),
            ("--expected-issuer", args.expected_issuer),
            ("--expected-audience", args.expected_audience),
        )
        if not value
    ]
    if missing:
        parser.error(f"missing required settings: {', '.join(missing)}")
    if args.leeway < 0:
        parser.error("--leeway must be a non-negative integer")
    if args.refresh_interval is not None and args.refresh_interval <= 0:
        parser.error("--refresh-interval must be positive")
    if args.log_level not in _LOG_LEVELS:
        parser.error(f"unknown log level: {args.log_level}")
    return Settings(
        jwks_url=args.jwks_url,
        expected_issuer=args.expected_issuer,
        expected_audience=args.expected_audience,
        host=getattr(args, "host", DEFAULT_HOST),
        port=getattr(args, "port", DEFAULT_PORT),
        leeway=args.leeway,
        refresh_interval=args.refresh_interval,
        log_level=args.log_level,
    )


def _cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    serve(settings)
    return 0


def _cmd_verify(settings: Settings, args: argparse.Namespace) -> int:
    cache = KeySetCache()
    cache.configure(settings.jwks_url, refresh_interval=settings.refresh_interval)
    verifier = TokenVerifier(
        cache,
        settings.jwks_url,
        issuer=settings.expected_issuer,
        audience=settings.expected_audience,
        leeway=settings.leeway,
    )
    claims = verifier.verify(_load_token(args.token))
    _print_json({"valid": True, "subject": claims.subject, "payload": dict(claims.raw)})
    return 0


def build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    defaults = env_defaults(environ)
    common = _common_options(defaults)

    parser = argparse.ArgumentParser(prog="auth0-demo")
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser(
        "serve", parents=[common], help="Run the API behind bearer-token authentication"
    )
    p_serve.add_argument(
        "--host",
        default=defaults.get("host", DEFAULT_HOST),
        help=f"Bind host (env: HOST, default: {DEFAULT_HOST})",
    )
    p_serve.add_argument(
        "--port",
        type=int,
        default=defaults.get("port", DEFAULT_PORT),
        help=f"Port to listen on (env: PORT, default: {DEFAULT_PORT})",
    )
    p_serve.set_defaults(func=_cmd_serve)

    p_verify = sub.add_parser(
        "verify", parents=[common], help="Verify one token against the JWKS and print its claims"
    )
    p_verify.add_argument("--token", required=True, help="JWT string (use '-' to read from stdin)")
    p_verify.set_defaults(func=_cmd_verify)
    return parser


def parse_args(
    argv: list[str] | None, environ: Mapping[str, str]
) -> tuple[argparse.Namespace, Settings]:
    parser = build_parser(environ)
    args = parser.parse_args(argv)
    return args, _settings(parser, args)


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    if environ is None:
        load_env_file()
        environ = os.environ
    args, settings = parse_args(argv, environ)
    logging.basicConfig(level=settings.log_level, format=_LOG_FORMAT)
    try:
        return int(args.func(settings, args))
    except KeyboardInterrupt:
        return 130
    except AuthError as exc:
        print(f"error: {exc.kind}: {exc}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
