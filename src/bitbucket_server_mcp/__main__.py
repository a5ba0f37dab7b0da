#!/usr/bin/env python3
"""Command line entry point for bitbucket-server-mcp.

Run:
  python -m bitbucket_server_mcp                 # serve MCP over stdio
  python -m bitbucket_server_mcp --check-config  # validate BITBUCKET_* env, print non-secret summary
  python -m bitbucket_server_mcp --test          # list tools/resources then exit
"""

import argparse
import asyncio
import sys

from bitbucket_server_mcp import __version__
from bitbucket_server_mcp.server import check_config, run_server, test_server


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bitbucket-server-mcp",
        description="MCP server exposing Bitbucket Server pull-request operations.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--check-config",
        action="store_true",
        help="Resolve configuration from BITBUCKET_* variables and exit (1 if invalid).",
    )
    mode.add_argument(
        "--test",
        action="store_true",
        help="Build the tool and resource listings without contacting Bitbucket, then exit.",
    )
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args(sys.argv[1:])
    if args.check_config:
        sys.exit(check_config())
    try:
        asyncio.run(test_server() if args.test else run_server())
    except KeyboardInterrupt:
        print("\nServer stopped by user", file=sys.stderr)


if __name__ == "__main__":
    main()
