import argparse
import logging
import sys
from typing import List, Optional

from .crawler import SiteMirror
from .errors import InvalidUrl
from .policy import RESOURCE_FILTER_NAMES, parse_resource_filter
from .settings import Settings, flatten_config, load_config_file

FULL_MIRROR_CONCURRENCY = 100


def resource_list(value: str) -> List[str]:
    try:
        names = parse_resource_filter([value])
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    return sorted(names or [])


def positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sitemirror",
        description="Mirror a website into a browsable local directory.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL to mirror")
    p.add_argument(
        "-o", "--output", type=str, default="mirror", help="output directory"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # crawl
    p.add_argument(
        "-d", "--max-depth", type=int, default=3, help="max link depth (0 = unlimited)"
    )
    p.add_argument(
        "-c",
        "--max-concurrent",
        dest="max_concurrency",
        type=positive_int,
        default=10,
        help="concurrent resource downloads",
    )
    p.add_argument(
        "-r", "--ignore-robots", action="store_true", help="ignore robots.txt"
    )
    p.add_argument(
        "--full-mirror",
        action="store_true",
        help="unlimited depth, 100 workers, ignore robots.txt",
    )

    # fetch
    p.add_argument("--user-agent", type=str, default=Settings.user_agent)
    p.add_argument(
        "--timeout", type=float, default=Settings.timeout, help="request timeout seconds"
    )
    p.add_argument(
        "--only-resources",
        type=resource_list,
        default=None,
        help="comma separated subset of: %s" % ", ".join(sorted(RESOURCE_FILTER_NAMES)),
    )

    # output
    p.add_argument(
        "--convert-to-webp", action="store_true", help="re-encode JPEG/PNG as WebP"
    )
    p.add_argument(
        "--webp-quality", type=int, default=Settings.webp_quality, help="WebP quality 0..100"
    )
    p.add_argument(
        "--clear-ledger", action="store_true", help="forget previous downloads"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = flatten_config(cfg)
            if "only_resources" in flat:
                raw = flat["only_resources"]
                try:
                    names = parse_resource_filter(
                        raw if isinstance(raw, list) else [str(raw)]
                    )
                except ValueError as e:
                    parser.error(str(e))
                flat["only_resources"] = sorted(names) if names else None
            parser.set_defaults(**flat)
    args = parser.parse_args(argv)
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings(
        max_depth=max(0, args.max_depth),
        max_concurrency=max(1, args.max_concurrency),
        ignore_robots=args.ignore_robots,
        user_agent=args.user_agent,
        timeout=args.timeout,
        only_resources=parse_resource_filter(args.only_resources),
        convert_to_webp=args.convert_to_webp,
        webp_quality=max(0, min(100, args.webp_quality)),
        clear_ledger=args.clear_ledger,
    )
    if args.full_mirror:
        settings.max_depth = 0
        settings.max_concurrency = FULL_MIRROR_CONCURRENCY
        settings.ignore_robots = True
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)

    try:
        mirror = SiteMirror(args.url, args.output, settings)
    except InvalidUrl as e:
        print(f"Invalid URL: {e}. Use http:// or https://")
        return 1

    stats = mirror.run()
    print("Mirroring complete")
    print(f"Pages processed: {stats.pages_done}")
    print(f"Root: {mirror.output_root}")
    if stats.seed_failed:
        print(f"Could not fetch {mirror.base_url}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
