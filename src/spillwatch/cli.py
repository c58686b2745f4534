from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from loguru import logger

from spillwatch.client import SpillWatchClient
from spillwatch.export import EXPORT_FORMATS


class InterceptHandler(logging.Handler):
    """Forward standard-library log records to loguru sinks."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(*, verbose: bool = False, log_file: str | None = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "WARNING",
        format="<green>{time:HH:mm:ss}</green> | <level>{level:<7}</level> | {message}",
    )
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            rotation="5 MB",
            retention="3 days",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {name} | {message}",
        )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def _build_filters(args: argparse.Namespace) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    if args.status:
        filters["status"] = args.status
    if args.severity:
        filters["severity"] = args.severity
    if args.response_status:
        filters["response_status"] = args.response_status
    if args.validation_status:
        filters["validation_status"] = args.validation_status
    if args.date_from or args.date_to:
        if not (args.date_from and args.date_to):
            raise ValueError("date-from and date-to must be given together.")
        filters["date_range"] = {"start": args.date_from, "end": args.date_to}
    if args.radius_km is not None:
        if args.lat is None or args.lng is None:
            raise ValueError("lat and lng are required with radius-km.")
        filters["location"] = {"lat": args.lat, "lng": args.lng, "radius_km": args.radius_km}
    if args.search:
        filters["search_text"] = args.search
    if args.tag:
        filters["tags"] = args.tag
    return filters


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--status", default=None, help="'Oil spill', 'Non Oil spill' or 'all'")
    parser.add_argument("--severity", action="append", default=[])
    parser.add_argument("--response-status", action="append", default=[])
    parser.add_argument("--validation-status", action="append", default=[])
    parser.add_argument("--date-from", default=None)
    parser.add_argument("--date-to", default=None)
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lng", type=float, default=None)
    parser.add_argument("--radius-km", type=float, default=None)
    parser.add_argument("--search", default=None)
    parser.add_argument("--tag", action="append", default=[])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SpillWatch CLI")

    parser.add_argument("--mode", choices=["direct", "service"], default="direct")
    parser.add_argument("--service-url", default="http://127.0.0.1:8000")
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--log-file", default=None)

    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List detections matching the filters.")
    _add_filter_arguments(list_parser)

    stats_parser = commands.add_parser("stats", help="Aggregate counts over the filtered detections.")
    _add_filter_arguments(stats_parser)

    imagery_parser = commands.add_parser("imagery", help="Satellite imagery around one detection.")
    imagery_parser.add_argument("detection_id")
    imagery_parser.add_argument("--days-before", type=int, default=3)
    imagery_parser.add_argument("--days-after", type=int, default=3)

    export_parser = commands.add_parser("export", help="Render the filtered detections.")
    export_parser.add_argument("format", choices=sorted(EXPORT_FORMATS))
    _add_filter_arguments(export_parser)

    return parser


def run(args: argparse.Namespace) -> int:
    with SpillWatchClient(
        mode=args.mode,
        service_url=args.service_url,
        api_key=args.api_key,
    ) as client:
        if args.command == "list":
            detections = client.list_detections(_build_filters(args))
            logger.debug("listed {} detections", len(detections))
            print(json.dumps([item.model_dump(mode="json") for item in detections]))
        elif args.command == "stats":
            print(client.statistics(_build_filters(args)).model_dump_json())
        elif args.command == "imagery":
            bundle = client.find_imagery(
                args.detection_id,
                days_before=args.days_before,
                days_after=args.days_after,
            )
            if bundle.partial:
                logger.warning("Imagery lookup was partial: {}", "; ".join(bundle.errors))
            print(bundle.model_dump_json())
        elif args.command == "export":
            sys.stdout.write(client.export(args.format, _build_filters(args)))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=args.log_file)
    try:
        code = run(args)
    except Exception as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
