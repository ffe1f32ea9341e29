import argparse
import copy
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from listing_schema import ScanRunStats
from pipelines.aggregate import rank_shared_properties, run_scan
from pipelines.normalizer import load_listings
from pipelines.owner_classifier import classify_listing
from pipelines.similarity import MatchThresholds
from pipelines.store import InMemoryPropertyStore, ParquetPropertyStore
from tools.geo_locator import (
    CachedGeocoder,
    FixedDelay,
    MinIntervalRateLimiter,
    NoDelay,
    NominatimGeocoder,
    backfill_missing_coordinates,
    format_report,
)


DEFAULT_CONFIG = {
    "scan": {
        "listings": None,
        "top": 10,
    },
    "matching": {
        "address_threshold": 0.75,
        "price_tolerance_small": 0.05,
        "price_tolerance_large": 0.10,
        "price_band_low": 150_000,
        "price_band_high": 1_000_000,
        "size_tolerance_m2": 10,
        "size_strict_m2": 5,
        "image_hamming_threshold": 5,
    },
    "geocoding": {
        "user_agent": "shared-property-pipeline/0.1 (geocoding backfill)",
        "accept_language": "it",
        "country": "Italia",
        "country_codes": "it",
        "fallback_city": "Milano",
        "timeout": 20,
        "retries": 3,
        "backoff": 2.0,
        "rate_limit": "fixed",
        "delay_seconds": 1.1,
        "progress_every": 10,
        "max_errors": 100,
        "limit": None,
        "cache": "data/geocode_cache.json",
        "cache_flush_every": 20,
    },
    "store": {
        "path": "data/shared_properties.parquet",
    },
}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str]) -> Dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not path:
        return config
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")
    return merge_config(config, data)


def open_store(store_cfg: Dict[str, Any]) -> InMemoryPropertyStore:
    path = store_cfg.get("path")
    if not path:
        logging.info("No store path configured; using an in-memory store.")
        return InMemoryPropertyStore()
    return ParquetPropertyStore(Path(path))


def format_scan_report(stats: ScanRunStats) -> str:
    return (
        f"Listings: {stats.total_listings}  | Clusters: {stats.clusters_found}  | Multi-agency: {stats.multiagency_count}"
        f"  | Exclusive: {stats.exclusive_count}\n"
        f"Created: {stats.properties_created}  | Updated: {stats.properties_updated}"
        f"  | Unchanged: {stats.properties_unchanged}  | Skipped clusters: {stats.clusters_skipped}\n"
        f"Rule merges: {stats.rule_merges}  | Duration: {stats.duration_seconds:.2f}s"
    )


def command_scan(config: Dict[str, Any]) -> None:
    scan_cfg = config["scan"]
    if not scan_cfg.get("listings"):
        raise ValueError("A listings file is required for a scan (--listings).")
    listings = load_listings(scan_cfg["listings"])
    store = open_store(config["store"])
    thresholds = MatchThresholds.from_config(config["matching"])
    stats = run_scan(listings, store, thresholds)
    print(format_scan_report(stats))

    top = int(scan_cfg.get("top") or 0)
    if top > 0:
        for record in rank_shared_properties(store.all())[:top]:
            agencies = ", ".join(record.agency_names) or "-"
            flag = "MULTI" if record.is_multiagency else "single"
            print(f"  [{record.id}] {record.address}, {record.city or '-'}  {flag}  agencies: {agencies}")


def build_rate_limit(geo_cfg: Dict[str, Any]):
    """Pick the delay policy named by ``geocoding.rate_limit``."""
    policy = (geo_cfg.get("rate_limit") or "fixed").strip().lower()
    seconds = float(geo_cfg["delay_seconds"])
    if policy == "fixed":
        return FixedDelay(seconds)
    if policy == "min_interval":
        return MinIntervalRateLimiter(seconds)
    if policy == "none":
        return NoDelay()
    raise ValueError(f"Unknown geocoding rate_limit policy: {policy!r}")


def command_backfill(config: Dict[str, Any]) -> None:
    geo_cfg = config["geocoding"]
    store = open_store(config["store"])
    geocoder = NominatimGeocoder(
        user_agent=geo_cfg["user_agent"],
        accept_language=geo_cfg["accept_language"],
        country_codes=geo_cfg.get("country_codes"),
        timeout=float(geo_cfg["timeout"]),
        retries=int(geo_cfg["retries"]),
        backoff=float(geo_cfg["backoff"]),
    )
    if geo_cfg.get("cache"):
        geocoder = CachedGeocoder(geocoder, geo_cfg["cache"], flush_every=int(geo_cfg.get("cache_flush_every") or 20))
    rate_limit = build_rate_limit(geo_cfg)

    def report_progress(stats) -> None:
        logging.info(
            "Geocoding progress: %s/%s processed (%s ok, %s failed, %s skipped).",
            stats.processed,
            stats.total,
            stats.successful,
            stats.failed,
            stats.skipped,
        )

    try:
        stats = backfill_missing_coordinates(
            store,
            geocoder,
            limit=geo_cfg.get("limit"),
            on_progress=report_progress,
            rate_limit=rate_limit,
            fallback_city=geo_cfg["fallback_city"],
            country=geo_cfg["country"],
            progress_every=int(geo_cfg["progress_every"]),
            max_errors=int(geo_cfg["max_errors"]),
            show_progress=True,
        )
    finally:
        if isinstance(geocoder, CachedGeocoder):
            geocoder.flush()
    print(format_report(stats))


def command_classify(config: Dict[str, Any]) -> None:
    listings = load_listings(config["scan"]["listings"])
    for listing in listings:
        result = classify_listing(listing)
        agency = f"  agency: {result.agency_name}" if result.agency_name else ""
        print(f"{listing.ref}\t{result.owner_type}\t{result.confidence}\t{result.reasoning}{agency}")


def load_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Shared property dedup, owner classification and geocoding backfill.")
    parser.add_argument("--config", help="JSON file overriding the default configuration.")
    parser.add_argument("--store", help="Override the Parquet property store path.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Cluster listings and upsert canonical properties.")
    scan.add_argument("--listings", help="Listings file (CSV, JSON, JSONL or Parquet).")
    scan.add_argument("--top", type=int, help="Print this many ranked properties after the scan.")
    scan.add_argument("--address-threshold", type=float, help="Override the address similarity gate.")

    backfill = sub.add_parser("backfill", help="Geocode properties missing coordinates.")
    backfill.add_argument("--limit", type=int, help="Maximum number of properties to geocode.")
    backfill.add_argument("--user-agent", help="Override the Nominatim User-Agent.")
    backfill.add_argument("--delay", type=float, help="Override the delay after each geocoding call.")
    backfill.add_argument(
        "--rate-limit",
        choices=["fixed", "min_interval", "none"],
        help="Delay policy: fixed sleep after each call, minimum interval between calls, or none.",
    )
    backfill.add_argument("--cache", help="Override the geocoding cache path.")
    backfill.add_argument("--no-cache", action="store_true", help="Disable the geocoding cache.")

    classify = sub.add_parser("classify", help="Classify listing owners without clustering.")
    classify.add_argument("--listings", required=True, help="Listings file (CSV, JSON, JSONL or Parquet).")
    return parser.parse_args(argv)


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    config = copy.deepcopy(config)
    if args.store:
        config["store"]["path"] = args.store
    if getattr(args, "listings", None):
        config["scan"]["listings"] = args.listings
    if getattr(args, "top", None) is not None:
        config["scan"]["top"] = args.top
    if getattr(args, "address_threshold", None) is not None:
        config["matching"]["address_threshold"] = args.address_threshold
    if getattr(args, "limit", None) is not None:
        config["geocoding"]["limit"] = args.limit
    if getattr(args, "user_agent", None):
        config["geocoding"]["user_agent"] = args.user_agent
    if getattr(args, "delay", None) is not None:
        config["geocoding"]["delay_seconds"] = args.delay
    if getattr(args, "rate_limit", None):
        config["geocoding"]["rate_limit"] = args.rate_limit
    if getattr(args, "cache", None):
        config["geocoding"]["cache"] = args.cache
    if getattr(args, "no_cache", False):
        config["geocoding"]["cache"] = None
    return config


COMMANDS = {
    "scan": command_scan,
    "backfill": command_backfill,
    "classify": command_classify,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = load_arguments(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    config = apply_overrides(load_config(args.config), args)
    COMMANDS[args.command](config)
    logging.info("Runner completed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
