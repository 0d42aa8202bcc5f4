"""CLI job to run the lead audit pipeline and print the JSON result."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from leadscout.core.config import Settings, get_settings
from leadscout.core.errors import ConfigError, ValidationError
from leadscout.core.pipeline import EnrichmentOrchestrator
from leadscout.vendors.google_places import PlacesDiscovery
from leadscout.vendors.openai_planner import OpenAIPlanner, PlannerError
from leadscout.vendors.serpapi_maps import SerpApiDiscovery

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Optional[Settings] = None) -> EnrichmentOrchestrator:
    """Wire the configured collaborators into an orchestrator."""
    settings = settings or get_settings()
    if settings.discovery_provider == "serpapi":
        discovery = SerpApiDiscovery(settings)
    else:
        discovery = PlacesDiscovery(settings)

    planner = None
    if settings.openai_api_key:
        try:
            planner = OpenAIPlanner(settings)
        except PlannerError as exc:
            logger.warning("Planner unavailable; using default plans: %s", exc)

    return EnrichmentOrchestrator(
        settings,
        planner=planner,
        discovery=discovery,
        synthesizer=planner,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover, audit and score leads for a query")
    parser.add_argument("query", nargs="?", help="Free-text query, e.g. 'dentists in Columbia, SC without online booking'")
    parser.add_argument("--query-file", dest="query_file", help="Path to a JSON file holding a structured query")
    parser.add_argument("--no-synthesis", dest="synthesis", action="store_false", help="Skip the synthesis stage")
    parser.add_argument("--indent", type=int, default=2, help="JSON indent for the printed result")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.query and not args.query_file:
        parser.error("a query or --query-file is required")

    structured = None
    if args.query_file:
        with open(args.query_file, encoding="utf-8") as fh:
            structured = json.load(fh)

    try:
        orchestrator = build_orchestrator()
        result = orchestrator.run(query_text=args.query, query=structured, synthesize=args.synthesis)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except ValidationError as exc:
        logger.error("%s", exc)
        print(json.dumps({"valid": False, "errors": exc.errors}, indent=args.indent))
        return 2

    print(json.dumps(result.to_dict(), indent=args.indent, default=str))
    return 0 if result.pipeline_success else 1


if __name__ == "__main__":
    sys.exit(main())
