import argparse
import logging
import sys
from dataclasses import fields
from typing import List, Optional, Sequence, Union

from .errors import ConfigError, MirrorError
from .mirror import run_mirror
from .settings import Settings, flatten_config, load_config_file, parse_headers


def split_csv(value: Union[str, Sequence[str], None]) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in value.split(",") if v.strip()]


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="offline-mirror",
        description="Crawl a website and save HTML, assets and API responses for offline use.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("--start-url", default=None, help="http(s) URL to start from")
    p.add_argument("--out-dir", default=None, help="output directory")
    p.add_argument(
        "--allowed-hosts",
        default=None,
        help="comma-separated hosts to crawl (default: host of --start-url)",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    p.add_argument("--headful", action="store_true", help="show the browser window")

    # crawl
    p.add_argument("--max-pages", type=int, default=5000, help="max HTML pages")
    p.add_argument("--ignore-max", action="store_true", help="no page limit")
    p.add_argument("--concurrency", type=int, default=3, help="browser pages in parallel")
    p.add_argument(
        "--delay",
        "--delay-ms",
        dest="delay_ms",
        type=int,
        default=200,
        help="delay after each page (ms)",
    )
    p.add_argument(
        "--ajax-wait",
        "--ajax-wait-ms",
        dest="ajax_wait_ms",
        type=int,
        default=0,
        help="max wait for chained API calls after network idle (ms, 0 = 15000)",
    )
    p.add_argument(
        "--quiet-ms", type=int, default=1200, help="API silence needed before saving (ms)"
    )
    p.add_argument(
        "--important-apis",
        default=None,
        help="comma-separated URL substrings to wait for after navigation",
    )
    p.add_argument(
        "--nav-timeout", type=int, default=120_000, help="navigation timeout (ms)"
    )

    # capture
    p.add_argument(
        "--asset-prefixes",
        default=None,
        help="comma-separated path prefixes always treated as assets",
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument(
        "--timeout", type=float, default=30.0, help="asset download timeout seconds"
    )
    p.add_argument(
        "--no-fallback-fetch",
        action="store_true",
        help="do not retry failed asset downloads over plain HTTP",
    )
    p.add_argument(
        "--store-api",
        action="append",
        default=[],
        help="[type:]method:url[|headers]|localPath, repeatable",
    )

    # output
    p.add_argument("--force", action="store_true", help="delete output dir without asking")
    p.add_argument(
        "--replace",
        action="append",
        default=[],
        help="literal 'from::to' replacement over the output, repeatable",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        parser.set_defaults(**flatten_config(load_config_file(preliminary.config)))
    args = parser.parse_args(argv)
    if not args.start_url or not args.out_dir:
        parser.error("--start-url and --out-dir are required")
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    headers = {}
    for h in args.header or []:
        headers.update(parse_headers(h))
    kwargs = dict(
        start_url=args.start_url,
        out_dir=args.out_dir,
        allowed_hosts=set(split_csv(args.allowed_hosts)),
        max_pages=args.max_pages,
        ignore_max=args.ignore_max,
        concurrency=args.concurrency,
        delay_ms=args.delay_ms,
        nav_timeout_ms=args.nav_timeout,
        ajax_wait_ms=args.ajax_wait_ms,
        quiet_ms=args.quiet_ms,
        important_apis=split_csv(args.important_apis),
        asset_prefixes=split_csv(args.asset_prefixes),
        extra_headers=headers,
        fetch_timeout=args.timeout,
        fallback_fetch=not args.no_fallback_fetch,
        store_api=list(args.store_api or []),
        force=args.force,
        replace=list(args.replace or []),
        headless=not args.headful and bool(getattr(args, "headless", True)),
    )
    # Options only reachable through a config file.
    for f in fields(Settings):
        if not f.init or f.name in kwargs or not hasattr(args, f.name):
            continue
        value = getattr(args, f.name)
        if isinstance(f.default, tuple):
            value = tuple(split_csv(value))
        kwargs[f.name] = value
    return Settings(**kwargs).validate()


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
        settings = settings_from_args(args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    print("Reminder: only mirror content you own or have permission to copy.")
    try:
        run_mirror(settings)
    except ConfigError as e:
        logging.error("%s", e)
        sys.exit(2)
    except MirrorError as e:
        logging.error("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.error("interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
