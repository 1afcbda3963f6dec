"""delivery_monitor/cli.py — Start monitors from the command line.

    python -m delivery_monitor.cli start [delivery_id] [origin] [destination] [email]
    python -m delivery_monitor.cli seed

Threshold and notify delta come from DELAY_THRESHOLD_MINUTES and
NOTIFY_DELTA_MINUTES.  A worker must be running to execute the cycles:

    celery -A delivery_monitor.workers.celery_app worker -Q deliveries
"""
import argparse
import logging
import sys
import uuid
from typing import List, Optional, Sequence

from pydantic import ValidationError

from delivery_monitor.config import configure_logging, settings
from delivery_monitor.errors import MonitorError
from delivery_monitor.models.schemas import MonitorConfig
from delivery_monitor.workers.control import StartResult, start_monitor

logger = logging.getLogger(__name__)

SEED_DELIVERIES = [
    ("seed-sf-oak", "San Francisco, CA", "Oakland, CA", "customer1@example.com"),
    ("seed-la-sd", "Los Angeles, CA", "San Diego, CA", "customer2@example.com"),
    ("seed-nyc-ewr", "New York, NY", "Newark, NJ", "customer3@example.com"),
]


def _config(delivery_id: str, origin: str, destination: str, email: str) -> MonitorConfig:
    return MonitorConfig(
        delivery_id=delivery_id,
        origin=origin,
        destination=destination,
        recipient_email=email,
        threshold_minutes=settings.DELAY_THRESHOLD_MINUTES,
        notify_delta_minutes=settings.NOTIFY_DELTA_MINUTES,
    )


def _start(config: MonitorConfig) -> StartResult:
    result = start_monitor(config)
    print(f"Started workflow workflow_id={result.workflow_id} run_id={result.run_id}")
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="delivery-monitor",
        description="Start delivery delay monitors.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start monitoring one delivery.")
    start.add_argument("delivery_id", nargs="?", default=None)
    start.add_argument("origin", nargs="?", default="San Francisco, CA")
    start.add_argument("destination", nargs="?", default="Oakland, CA")
    start.add_argument("recipient_email", nargs="?", default="customer@example.com")

    sub.add_parser("seed", help="Start three demo deliveries.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        if args.command == "start":
            configs: List[MonitorConfig] = [
                _config(
                    args.delivery_id or str(uuid.uuid4()),
                    args.origin,
                    args.destination,
                    args.recipient_email,
                )
            ]
        else:
            configs = [_config(*row) for row in SEED_DELIVERIES]

        for config in configs:
            _start(config)
    except ValidationError as exc:
        print(f"Invalid monitor configuration: {exc}", file=sys.stderr)
        return 2
    except MonitorError as exc:
        logger.error("Start failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
