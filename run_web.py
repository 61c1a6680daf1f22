#!/usr/bin/env python3
"""Entry point for the ClickHouse Workbench web interface."""

import argparse
import logging

from ch_workbench.logging_config import setup_logging
from ch_workbench.web.app import start

if __name__ in {"__main__", "__mp_main__"}:
    parser = argparse.ArgumentParser(description="ClickHouse Workbench Web UI")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging (all queries visible)")
    parser.add_argument("--port", type=int, default=8080, help="HTTP port (default: 8080)")
    args = parser.parse_args()
    setup_logging(logging.DEBUG if args.debug else None)
    start(port=args.port)
