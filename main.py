"""Entry point for running the speed-test service."""

from __future__ import annotations

import argparse
import json
import sys

from wifiprobe import bootstrap
from wifiprobe.measurements.errors import MeasurementError
from wifiprobe.measurements.models import Subject


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wi-Fi speed-test service")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    parser.add_argument("--host", default=None, help="Override web server host")
    parser.add_argument("--port", type=int, default=None, help="Override web server port")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    parser.add_argument(
        "--run-once",
        metavar="SUBJECT_ID",
        default=None,
        help="Run a single speed test for SUBJECT_ID, print the result and exit",
    )
    parser.add_argument("--region", default=None, help="Region tag used with --run-once")
    return parser.parse_args()


def run_once(context, subject_id: str, region) -> int:
    try:
        result = context.measurements.run(Subject(subject_id=subject_id, region=region))
    except MeasurementError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def main() -> None:
    args = parse_args()
    context = bootstrap(args.config)
    context.start()

    if args.run_once:
        try:
            sys.exit(run_once(context, args.run_once, args.region))
        finally:
            context.shutdown()

    host = args.host or context.config.web.host
    port = args.port or context.config.web.port
    try:
        context.web_app.run(host=host, port=port, debug=args.debug, threaded=True)
    finally:
        context.shutdown()


if __name__ == "__main__":
    main()
