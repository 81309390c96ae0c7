# FILE: resthost/__main__.py
# Usage: python -m resthost --resources ./resource --port 8800
from __future__ import annotations

import argparse
from typing import List, Optional

from .config import load_settings
from .host import Host
from .logging import configure_json_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="resthost", description="Serve resource definitions over HTTP.")
    parser.add_argument("--resources", help="directory holding <name>/resource.py modules")
    parser.add_argument("--static", help="directory served from /")
    parser.add_argument("--api-prefix", dest="api_prefix", help='url prefix for actions (default "api")')
    parser.add_argument("--host", help="bind address")
    parser.add_argument("--port", type=int, help="bind port")
    parser.add_argument("--log-level", dest="log_level", help="root log level")
    parser.add_argument(
        "--handle-route-errors",
        dest="handle_route_errors",
        action="store_true",
        default=None,
        help="render handler exceptions as 500 responses instead of propagating",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    settings = load_settings(**overrides)
    configure_json_logging(level=settings.log_level)
    Host(settings).run()


if __name__ == "__main__":
    main()
