#!/usr/bin/env python3
"""
Cron entry point: one detection pass, health checks and strategy tuning.

Usage:
    python scripts/faultline_cron.py [--no-tune]

Configuration comes from the environment / .env (see faultline.config).
"""

import argparse
import sys

from faultline.config import setup_logging
from faultline.cron import run_cron


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one scheduled faultline pass")
    parser.add_argument("--no-tune", action="store_true", help="Skip recovery strategy tuning")
    args = parser.parse_args()

    setup_logging()
    return run_cron(tune=not args.no_tune)


if __name__ == "__main__":
    sys.exit(main())
