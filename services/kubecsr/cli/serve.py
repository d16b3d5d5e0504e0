"""
Run the kubecsr API server.

Run via: python -m kubecsr.cli.serve [--use-custom-token --custom-token TOKEN]

Without a custom token a bearer token is generated at startup and printed
in the server log. TLS is enabled when both a certificate and a key file
are configured (defaults: localhost.crt / localhost.key).
"""

import argparse

import uvicorn

from kubecsr.config import settings
from kubecsr.logging_config import configure_logging, get_logger

logger = get_logger("kubecsr.serve")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubecsr",
        description="Issue short-lived Kubernetes client certificates over an authenticated API.",
    )
    parser.add_argument(
        "--use-custom-token",
        action="store_true",
        help="Start with the token given by --custom-token instead of generating one",
    )
    parser.add_argument(
        "--custom-token",
        default="",
        help="The custom token to use for authorizing API requests",
    )
    parser.add_argument("--host", default=settings.host, help="Address to listen on")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    parser.add_argument(
        "--tls-cert",
        default=str(settings.tls_cert_file or ""),
        help="PEM serving certificate (pass empty values for both to serve plain HTTP)",
    )
    parser.add_argument("--tls-key", default=str(settings.tls_key_file or ""))
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.use_custom_token:
        if not args.custom_token:
            parser.error("--custom-token is required with --use-custom-token")
        settings.api_token = args.custom_token

    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    ssl_options: dict[str, str] = {}
    if args.tls_cert and args.tls_key:
        ssl_options = {"ssl_certfile": args.tls_cert, "ssl_keyfile": args.tls_key}
    else:
        logger.warning("TLS disabled; serving plain HTTP")

    logger.info("Starting server", host=args.host, port=args.port, tls=bool(ssl_options))

    # Imported late so the settings changes above apply to the application
    from kubecsr.api.app import app

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=None,
        **ssl_options,
    )


if __name__ == "__main__":
    main()
