"""Command line entry point: ``memserve --dir ./public --refresh 30s``."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from memserve.config import (
    STRATEGIES,
    MemserveConfig,
    format_duration,
    get_config,
    parse_addr,
    parse_duration,
    set_config,
    setup_logging,
)
from memserve.errors import MemserveError

logger = logging.getLogger("memserve")


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except MemserveError as e:
        raise argparse.ArgumentTypeError(e.message) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memserve",
        description="Serve a directory tree from memory, rescanning it periodically",
    )
    parser.add_argument("--dir", help="Directory to serve (default: MEMSERVE_DIR or .)")
    parser.add_argument("--addr", help="Address to listen on, e.g. :8080 or 127.0.0.1:9000")
    parser.add_argument("--refresh", type=_duration,
                        help="Refresh interval, e.g. 30s or 5m; 0 loads once and never rescans")
    parser.add_argument("--rate", type=_duration,
                        help="Minimum time between requests from the same IP (e.g. 100ms, 1s); 0 disables")
    parser.add_argument("--ignore", help="Regular expression; matching relative paths are not served")
    parser.add_argument("--strategy", choices=STRATEGIES, help="Reconcile strategy")
    parser.add_argument("--timeout", type=_duration, help="Keep-alive timeout for idle connections")
    parser.add_argument("--https", metavar="DOMAIN", help="Enable HTTPS for this domain")
    parser.add_argument("--cert", help="PEM certificate for --https")
    parser.add_argument("--key", help="PEM private key for --https")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser


def config_from_args(args: argparse.Namespace, base: MemserveConfig) -> MemserveConfig:
    """Overlay command line flags on top of the environment configuration."""
    cache = base.cache
    if args.dir is not None:
        cache = replace(cache, root=Path(args.dir))
    if args.refresh is not None:
        cache = replace(cache, refresh_interval=args.refresh)
    if args.ignore is not None:
        cache = replace(cache, ignore_pattern=args.ignore or None)
    if args.strategy is not None:
        cache = replace(cache, strategy=args.strategy)

    http = base.http
    if args.addr is not None:
        host, port = parse_addr(args.addr)
        http = replace(http, host=host, port=port)
    if args.rate is not None:
        http = replace(http, min_request_interval=args.rate)
    if args.timeout is not None:
        http = replace(http, request_timeout=args.timeout)

    tls = base.tls
    if args.https is not None:
        tls = replace(tls, domain=args.https)
    if args.cert is not None:
        tls = replace(tls, cert_file=Path(args.cert))
    if args.key is not None:
        tls = replace(tls, key_file=Path(args.key))

    log = base.log
    if args.log_level is not None:
        log = replace(log, level=args.log_level)

    return MemserveConfig(cache=cache, http=http, tls=tls, log=log)


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args, get_config())
    except MemserveError as e:
        parser.error(e.message)
    set_config(config)
    setup_logging(config)

    from memserve.server.api import serve
    from memserve.server.state import ServerState

    try:
        state = ServerState.from_config(config)
    except MemserveError as e:
        logger.critical(f"Invalid configuration: {e.message}")
        sys.exit(1)

    if state.rate_limiter is not None:
        logger.info(f"Rate limiting: 1 request per {format_duration(config.http.min_request_interval)} per IP")
    else:
        logger.info("Rate limiting disabled")

    try:
        state.load()
    except MemserveError as e:
        logger.critical(f"Failed to load files: {e.message}")
        sys.exit(1)

    if config.cache.refresh_interval > 0:
        logger.info(f"Serving {config.cache.root} (refreshing every {format_duration(config.cache.refresh_interval)})")
    else:
        logger.info(f"Serving {config.cache.root} (loaded once, no refresh)")

    try:
        serve(state, config)
    except MemserveError as e:
        logger.critical(f"Server failed to start: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
