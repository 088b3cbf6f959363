"""Command line entry point.

    pagemux serve --config site.yaml [--package mysite] [--debug]
    pagemux hash-password [--user NAME] [SECRET]
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from collections.abc import Sequence

import uvloop

from pagemux.config import Config
from pagemux.errors import ConfigurationError
from pagemux.middleware.basic_auth import hash_password
from pagemux.server import create_app, serve
from pagemux.service import create_service

logger = logging.getLogger("pagemux")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagemux", description="Embeddable RSGI page server"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve_parser = commands.add_parser("serve", help="run the server")
    serve_parser.add_argument(
        "-c", "--config", help="YAML configuration file", default=None
    )
    serve_parser.add_argument(
        "-p",
        "--package",
        help="package bundling the templates and static directories",
        default=None,
    )
    serve_parser.add_argument(
        "--debug", action="store_true", help="verbose logging"
    )

    hash_parser = commands.add_parser(
        "hash-password", help="print a password hash for the metrics password file"
    )
    hash_parser.add_argument("--user", help="print a complete NAME:hash line")
    hash_parser.add_argument("secret", nargs="?", help="prompted for when omitted")
    return parser


def _serve(args: argparse.Namespace) -> int:
    try:
        config = Config.load(args.config)
        debug = args.debug or config.get_bool("http.debug")
        logging.basicConfig(level=logging.DEBUG if debug else logging.INFO)
        service = create_service(config, package=args.package, debug=debug)
        app = create_app(service, password_file=config.get_str("http.password.file"))
        address = config.get_str("http.address")
        port = config.get_int("http.port")
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("cannot start server: %s", e, extra={"component": "service"})
        return 1

    try:
        uvloop.run(serve(app, address=address, port=port))
    except KeyboardInterrupt:
        pass
    return 0


def _hash_password(args: argparse.Namespace) -> int:
    secret = args.secret
    if secret is None:
        secret = getpass.getpass("Password: ")
    if not secret.strip():
        print("password must not be blank", file=sys.stderr)
        return 1
    hashed = hash_password(secret)
    print(f"{args.user}:{hashed}" if args.user else hashed)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    return _hash_password(args)


if __name__ == "__main__":
    sys.exit(main())
