#!/usr/bin/env python3
"""Find the nearest amenity of a category for every origin in a JSON file."""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from school_proximity.config import get_config, setup_logging
from school_proximity.models import (
    AmenityCandidate,
    OriginEntity,
    Progress,
    RunState,
    TravelMode,
    destination_category,
)
from school_proximity.pipeline import Pipeline
from school_proximity.services.orchestrator import CancellationToken
from school_proximity.services.persistence import save_results
from school_proximity.services.session_manager import SessionManager

logger = logging.getLogger("school_proximity.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find the nearest amenity for each origin.")
    parser.add_argument('origins', help='JSON file: a list of origin records, {"origins": [...]} or a GeoJSON FeatureCollection')
    parser.add_argument('--category', default='market', help='Amenity category key (default: market)')
    parser.add_argument('--destinations', metavar='FILE',
                        help='Route every origin to the records in this JSON file instead of searching nearby')
    parser.add_argument('--mode', default=TravelMode.WALKING.value, choices=[m.value for m in TravelMode],
                        help='Travel mode')
    parser.add_argument('--output', help='Write result documents to this JSON file')
    parser.add_argument('--save', action='store_true', help='Bulk-save results to RESULTS_STORE_URL')
    parser.add_argument('--log-level', help='Override LOG_LEVEL')
    return parser


def _load_records(path: str, key: str) -> List[dict]:
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get(key, data.get('features', []))
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of records")
    return [r for r in data if isinstance(r, dict)]


def load_origins(path: str) -> List[OriginEntity]:
    return [OriginEntity.from_record(r) for r in _load_records(path, 'origins')]


def load_destinations(path: str, category_key: str) -> List[AmenityCandidate]:
    """Destination records, as a list, {"destinations": [...]} or a FeatureCollection."""
    destinations = [AmenityCandidate.from_record(r, category_key) for r in _load_records(path, 'destinations')]
    if not any(d.location is not None for d in destinations):
        raise ValueError(f"{path}: no destination has usable coordinates")
    return destinations


def _print_progress(progress: Progress) -> None:
    print(f"Processed {progress.processed}/{progress.total}", flush=True)


async def find_nearest(args) -> int:
    config = get_config()
    category = config.get_category(args.category)
    if category is None and args.destinations:
        category = destination_category(args.category)
    if category is None:
        print(f"Unknown category '{args.category}'. Known: {', '.join(sorted(config.categories))}",
              file=sys.stderr)
        return 2

    try:
        origins = load_origins(args.origins)
        destinations = load_destinations(args.destinations, category.key) if args.destinations else None
    except (OSError, ValueError) as e:
        # json.JSONDecodeError is a ValueError
        print(f"Cannot read input: {e}", file=sys.stderr)
        return 2

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        handles_sigint = True
    except NotImplementedError:
        logger.debug("SIGINT handler unavailable on this platform")
        handles_sigint = False

    try:
        report = await _run(args, config, origins, token, category, destinations)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    print(json.dumps(report.summary(), indent=2))
    return 1 if report.state is RunState.FAILED else 0


async def _run(args, config, origins, token, category, destinations=None):
    async with SessionManager(config) as session:
        pipeline = Pipeline(session, config)
        orchestrator = pipeline.new_orchestrator()
        target = f"{len(destinations)} destinations" if destinations is not None else category.key
        print(f"Finding nearest {target} ({args.mode}) for {len(origins)} origins")
        report = await orchestrator.run(origins, category, args.mode, token=token,
                                        on_progress=_print_progress, destinations=destinations)

        for origin in report.invalid:
            print(f"  invalid: {origin.id} {origin.display_name}")
        for origin in report.no_results:
            print(f"  no result: {origin.id} {origin.display_name}")

        if args.output:
            documents = [r.to_document() for r in report.results]
            Path(args.output).write_text(json.dumps(documents, ensure_ascii=False, indent=2), encoding='utf-8')
            print(f"Wrote {len(documents)} results to {args.output}")

        if args.save:
            store = pipeline.result_store()
            if store is None:
                print("--save given but RESULTS_STORE_URL is not set", file=sys.stderr)
            else:
                saved = await save_results(store, report.results, config.persistence_config.chunk_size)
                print(f"Saved {saved.saved} results ({saved.failed} failed)")
    return report


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.log_level:
        config.logging_config.level = args.log_level.upper()
    setup_logging(config)
    return asyncio.run(find_nearest(args))


if __name__ == '__main__':
    sys.exit(main())
