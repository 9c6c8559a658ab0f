#!/usr/bin/env python3
"""CLI: Run the ingestion job workers outside the API process."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from gitwhisper import config
from gitwhisper.services import Services


def main() -> None:
    parser = argparse.ArgumentParser(description="Process queued ingestion jobs")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every job that is due now, then exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        services = Services.from_config()
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.once:
        services.jobs.recover()
        n = services.jobs.run_pending()
        print(f"Processed {n} job(s)")
        return

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    services.start_workers()
    print(f"Workers running ({config.WORKER_THREADS} threads). Ctrl-C to stop.")
    stop.wait()
    print("Stopping workers...")
    services.stop_workers()


if __name__ == "__main__":
    main()
