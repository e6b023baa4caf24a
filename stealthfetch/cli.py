"""CLI for stealthfetch.

Usage:
    python -m stealthfetch.cli fetch https://example.com
    python -m stealthfetch.cli fetch https://api.example.com/items --expect json --no-cache
    python -m stealthfetch.cli -o json fetch https://example.com --max-retries 5
    python -m stealthfetch.cli relay https://example.com
"""

import argparse
import asyncio
import json
import sys

from stealthfetch.config import settings
from stealthfetch.core.exceptions import FetchError
from stealthfetch.core.logging_config import configure_logging


def _setup_logging(verbose: bool = False):
    level = "DEBUG" if verbose else settings.LOG_LEVEL
    configure_logging(settings.LOG_FORMAT, level, stream=sys.stderr)


def _print_error(exc: FetchError):
    print(f"error [{exc.kind}]: {exc}", file=sys.stderr)


async def _cmd_fetch(args) -> int:
    """Fetch a URL through the cache and the fallback chain."""
    from stealthfetch.client import FetchOptions, StealthFetcher

    options = FetchOptions(
        timeout=args.timeout,
        max_retries=args.max_retries,
        use_cache=not args.no_cache,
        expect=args.expect,
    )
    async with StealthFetcher() as fetcher:
        try:
            result = await fetcher.fetch(args.url, options)
        except FetchError as e:
            _print_error(e)
            return 1

    if args.output == "json":
        summary = {
            "url": result.url,
            "strategy": result.strategy,
            "status_code": result.status_code,
            "content_type": result.content_type,
            "attempts": result.attempts,
            "from_cache": result.from_cache,
            "length": len(result.content),
            "content": result.content,
        }
        print(json.dumps(summary, indent=2, ensure_ascii=False))
    else:
        print(result.content)
    return 0


async def _cmd_relay(args) -> int:
    """Run only the relay navigator, bypassing cache and HTTP fallbacks."""
    from stealthfetch.client import StealthFetcher

    async with StealthFetcher() as fetcher:
        try:
            result = await fetcher.navigator.run(
                args.url, max_attempts=args.max_retries, timeout=args.timeout
            )
        except FetchError as e:
            _print_error(e)
            return 1

    if args.output == "json":
        print(
            json.dumps(
                {
                    "url": result.url,
                    "attempts": result.attempts,
                    "browser_id": result.browser_id,
                    "length": len(result.content),
                    "content": result.content,
                },
                indent=2,
                ensure_ascii=False,
            )
        )
    else:
        print(result.content)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stealthfetch",
        description="Fetch HTML from sites that block automated clients",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG instead of LOG_LEVEL")
    parser.add_argument(
        "-o", "--output", default="body",
        choices=["body", "json"],
        help="Print the raw body or a JSON summary (default: body)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- fetch ---
    fetch_parser = subparsers.add_parser("fetch", help="Fetch a URL (cache, relay, direct, mirrors)")
    fetch_parser.add_argument("url", help="URL to fetch")
    fetch_parser.add_argument("--timeout", type=float, default=None, help="Overall timeout in seconds")
    fetch_parser.add_argument("--max-retries", type=int, default=None, help="Relay attempts")
    fetch_parser.add_argument("--no-cache", action="store_true", help="Bypass the scrape cache")
    fetch_parser.add_argument(
        "--expect", default="html", choices=["html", "json", "any"],
        help="Expected content kind (default: html)",
    )

    # --- relay ---
    relay_parser = subparsers.add_parser("relay", help="Fetch a URL through the relay only")
    relay_parser.add_argument("url", help="URL to fetch")
    relay_parser.add_argument("--timeout", type=float, default=None, help="Overall timeout in seconds")
    relay_parser.add_argument("--max-retries", type=int, default=None, help="Relay attempts")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _setup_logging(args.verbose)

    if args.command == "fetch":
        return asyncio.run(_cmd_fetch(args))
    if args.command == "relay":
        return asyncio.run(_cmd_relay(args))
    return 1


if __name__ == "__main__":
    sys.exit(main())
