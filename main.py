"""Command-line launcher for the partner referral portal."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from portal.config import PortalSettings, load_settings, resolve_config_path

logger = logging.getLogger("partnerportal.main")

_KNOWN_COMMANDS = {"serve", "show-config"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Partner portal utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $PORTAL_CONFIG or config/portal.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the portal web server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the web server")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the web server (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved provider configuration without secrets"
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if any(item in _KNOWN_COMMANDS for item in args_list):
        return parser.parse_args(args_list)
    if any(flag in args_list for flag in ("-h", "--help")):
        return parser.parse_args(args_list)

    # No subcommand given: options belong to ``serve``, after any --config.
    if args_list[:1] == ["--config"]:
        args_list = [*args_list[:2], "serve", *args_list[2:]]
    else:
        args_list = ["serve", *args_list]
    return parser.parse_args(args_list)


def _load(config: str | None) -> PortalSettings:
    path = Path(config).expanduser() if config else resolve_config_path(os.getenv("PORTAL_CONFIG"))
    try:
        settings = load_settings(path)
    except ValueError as exc:
        raise SystemExit(f"Invalid portal configuration: {exc}") from exc
    logger.info("Loaded portal configuration (config file: %s)", path if path.is_file() else "none")
    return settings


def _serve(
    settings: PortalSettings,
    *,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from portal.web import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting partner portal on %s://%s:%s", protocol, host, port)

    try:
        app = create_app(settings=settings)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _show_config(settings: PortalSettings) -> None:
    timeout = f"{settings.provider_timeout:g}s" if settings.provider_timeout else "transport default"
    print(f"Provider URL:     {settings.provider_url}")
    print(f"Provider key:     {settings.provider_key[:6]}… ({len(settings.provider_key)} characters)")
    print(f"Request timeout:  {timeout}")
    print(f"Session secret:   {'configured' if settings.session_secret else 'MISSING'}")
    print(f"Secure cookies:   {'yes' if settings.secure_cookies else 'no'}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = _load(args.config)

    if args.command == "serve":
        _serve(
            settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "show-config":
        _show_config(settings)


if __name__ == "__main__":
    main()
