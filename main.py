#!/usr/bin/env python3
"""
Portal - static content behind Microsoft sign-in.
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep portal imports lazy (inside functions) so `.env` is loaded before any
# configuration is read.
#


def check_config() -> bool:
    """Load the configuration up front so a missing credential fails before serving."""
    from portal.auth.config import ConfigError, load_provider_config, load_session_config

    try:
        load_provider_config()
        load_session_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return False
    return True


def print_authorization_url() -> None:
    from portal.auth.config import load_provider_config
    from portal.auth.microsoft import build_authorization_url

    print(build_authorization_url(load_provider_config()))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Serve static content behind Microsoft sign-in",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the portal on port 80
  python main.py serve

  # Run on another port
  python main.py serve --port 8080

  # Show the Microsoft authorization URL for the current configuration
  python main.py authorize-url
        """,
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=80, help="Listen port (default: 80)")

    sub.add_parser("authorize-url", help="Print the provider authorization URL")

    args = parser.parse_args()
    load_dotenv()

    if args.command is None:
        parser.print_help()
        return

    if not check_config():
        sys.exit(2)

    if args.command == "serve":
        from portal.api.server import run

        run(host=args.host, port=args.port)
        return

    if args.command == "authorize-url":
        print_authorization_url()
        return


if __name__ == "__main__":
    main()
