#!/usr/bin/env python3
"""Command-line interface for artrelay.

Browse the collection API through the resilience layer from the terminal:
fetch resources, look up objects, manage favorites and inspect the cache.

Commands:
- fetch / object / random / departments / search: read from the collection
- favorites: manage the durable favorites store
- cache: inspect, clear or purge the tiered cache
- probe: check relay endpoint health
- validate: validate configuration
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, List

from artrelay.core.config import Config
from artrelay.core.context import ServiceContext
from artrelay.core.errors import FetchError, StorageError
from artrelay.core.logging_setup import configure_from_config
from artrelay.storage.tiered_cache import Partition


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="artrelay collection client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  artrelay object 435809
  artrelay search sunflowers --public-domain
  artrelay favorites add 435809
  artrelay --offline random
  artrelay cache info
  artrelay validate --strict
        """,
    )
    parser.add_argument("--config", help="Path to a YAML or TOML config file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: from config, INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Use JSON structured logging format",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Start offline: serve only from cache and favorites",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch an API resource")
    fetch_parser.add_argument("resource", help="Path relative to the API base, or a URL")
    fetch_parser.add_argument("--timeout", type=float, help="Per-attempt timeout in seconds")

    object_parser = subparsers.add_parser("object", help="Show one collection object")
    object_parser.add_argument("object_id", type=int)

    random_parser = subparsers.add_parser("random", help="Show a random artwork with an image")
    random_parser.add_argument("--department", type=int, help="Department ID")

    subparsers.add_parser("departments", help="List departments")

    search_parser = subparsers.add_parser("search", help="Search the collection")
    search_parser.add_argument("query", nargs="?", default=None)
    search_parser.add_argument("--department", type=int, dest="department_id")
    search_parser.add_argument("--date-begin", type=int)
    search_parser.add_argument("--date-end", type=int)
    search_parser.add_argument("--medium")
    search_parser.add_argument("--geo", dest="geo_location")
    search_parser.add_argument("--title", action="store_true", help="Search titles only")
    search_parser.add_argument("--highlight", action="store_true", dest="is_highlight")
    search_parser.add_argument(
        "--public-domain", action="store_true", default=None, dest="is_public_domain"
    )
    search_parser.add_argument("--limit", "-n", type=int, default=20)

    fav_parser = subparsers.add_parser("favorites", help="Manage favorites")
    fav_subparsers = fav_parser.add_subparsers(dest="favorites_action", required=True)
    fav_subparsers.add_parser("list", help="List favorites, newest first")
    for action in ("add", "remove", "toggle"):
        action_parser = fav_subparsers.add_parser(action, help=f"{action.capitalize()} a favorite")
        action_parser.add_argument("object_id", type=int)
    fav_subparsers.add_parser("count", help="Count favorites")
    fav_subparsers.add_parser("clear", help="Remove every favorite")

    cache_parser = subparsers.add_parser("cache", help="Manage the cache")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_action", required=True)
    cache_subparsers.add_parser("info", help="Show cache statistics")
    clear_parser = cache_subparsers.add_parser("clear", help="Clear cache entries")
    clear_parser.add_argument(
        "--partition", choices=[partition.value for partition in Partition]
    )
    cache_subparsers.add_parser("purge", help="Delete partitions from other cache versions")

    probe_parser = subparsers.add_parser("probe", help="Check relay endpoint health")
    probe_parser.add_argument("--force", action="store_true", help="Ignore recent results")

    validate_parser = subparsers.add_parser("validate", help="Validate configuration")
    validate_parser.add_argument(
        "--strict", action="store_true", help="Exit with error if validation fails"
    )
    validate_parser.add_argument(
        "--show", metavar="SECTION", help="Also print one loaded config section as JSON"
    )

    return parser.parse_args(argv)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def main_async(args: argparse.Namespace) -> int:
    """Main async entry point.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    config = Config(config_file=args.config)

    performance_logger = configure_from_config(
        config, level_name=args.log_level, use_json=True if args.json_logs else None
    )
    logger = logging.getLogger(__name__)
    logger.debug("artrelay CLI started with command: %s", args.command)

    if args.command == "validate":
        return handle_validate(args, config)

    async with ServiceContext(
        config, online=not args.offline, performance_logger=performance_logger
    ) as ctx:
        try:
            if args.command == "favorites":
                return await handle_favorites(args, ctx)
            if args.command == "cache":
                return await handle_cache(args, ctx)
            if args.command == "probe":
                _print_json(await ctx.engine.probe_proxies(force=args.force))
                return 0
            return await handle_collection(args, ctx)
        except FetchError as e:
            print(f"Fetch failed: {e}", file=sys.stderr)
            return 1
        except StorageError as e:
            print(f"Storage error: {e}", file=sys.stderr)
            return 1


async def handle_collection(args: argparse.Namespace, ctx: ServiceContext) -> int:
    """Handle the read-only collection commands."""
    if args.command == "fetch":
        payload = await ctx.engine.fetch(args.resource, timeout=args.timeout)
        source = "cache" if payload.from_cache else f"network via {payload.proxy}"
        print(f"# {payload.url} ({source}, {payload.retries} retries)", file=sys.stderr)
        _print_json(payload.data)
        return 0

    if args.command == "object":
        artwork = await ctx.collection.get_object(args.object_id)
        if artwork is None:
            print(f"Object {args.object_id} is not available", file=sys.stderr)
            return 1
        _print_json(artwork.to_dict())
        return 0

    if args.command == "random":
        artwork = await ctx.collection.get_random_artwork(args.department)
        if artwork is None:
            print("No artwork available", file=sys.stderr)
            return 1
        _print_json(artwork.to_dict())
        return 0

    if args.command == "departments":
        for department in await ctx.collection.get_departments():
            print(f"{department.get('departmentId'):>4}  {department.get('displayName')}")
        return 0

    if args.command == "search":
        ids = await ctx.collection.search(
            args.query,
            department_id=args.department_id,
            date_begin=args.date_begin,
            date_end=args.date_end,
            medium=args.medium,
            geo_location=args.geo_location,
            title=args.title,
            is_highlight=args.is_highlight,
            is_public_domain=args.is_public_domain,
        )
        print(f"{len(ids)} matching objects", file=sys.stderr)
        for object_id in ids[: args.limit]:
            print(object_id)
        return 0

    print(f"Unknown command: {args.command}", file=sys.stderr)
    return 2


async def handle_favorites(args: argparse.Namespace, ctx: ServiceContext) -> int:
    """Handle the favorites command."""
    store = ctx.favorites
    action = args.favorites_action

    if action == "list":
        favorites = await store.list_all()
        if not favorites:
            print("No favorites saved.")
        for favorite in favorites:
            artwork = favorite.artwork
            thumb = "thumb" if favorite.thumbnail else "     "
            print(
                f"{artwork.object_id:>8} | {favorite.date_added:%Y-%m-%d %H:%M} | {thumb} | "
                f"{artwork.title[:40]:<40} | {artwork.artist_display_name}"
            )
    elif action == "count":
        print(f"{await store.count()} / {store.max_favorites}")
    elif action == "clear":
        print(f"Removed {await store.clear()} favorites.")
    elif action == "remove":
        removed = await store.remove(args.object_id)
        print(f"Removed {args.object_id}." if removed else f"{args.object_id} is not a favorite.")
    else:
        artwork = await ctx.collection.get_object(args.object_id)
        if artwork is None:
            print(f"Object {args.object_id} is not available", file=sys.stderr)
            return 1
        if action == "add":
            await store.upsert(artwork)
            print(f"Saved {artwork.object_id}: {artwork.title}")
        else:
            favorited = await store.toggle(artwork)
            state = "added to" if favorited else "removed from"
            print(f"{artwork.object_id} {state} favorites")
    return 0


async def handle_cache(args: argparse.Namespace, ctx: ServiceContext) -> int:
    """Handle the cache command."""
    if args.cache_action == "info":
        info = await ctx.bridge.get_cache_info()
        info["stats"] = ctx.cache.stats
        _print_json(info)
    elif args.cache_action == "clear":
        partition = Partition(args.partition) if args.partition else None
        cleared = await ctx.cache.clear(partition)
        print(f"Cleared {cleared} cache entries.")
    elif args.cache_action == "purge":
        purged = ctx.purged_partitions
        if purged:
            print("Deleted stale partitions: " + ", ".join(purged))
        else:
            print("No stale partitions.")
    return 0


def handle_validate(args: argparse.Namespace, config: Config) -> int:
    """Handle the validate command."""
    if getattr(args, "show", None):
        _print_json(config.get_section(args.show))

    if args.strict:
        try:
            config.validate_and_raise()
        except ValueError as e:
            print(e)
            return 1
        print("Configuration is valid.")
        return 0

    print(config.validate())
    return 0


def main() -> None:
    args = parse_args(sys.argv[1:])
    try:
        exit_code = asyncio.run(main_async(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nAborted by user")
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
