"""Entry point for the whale tracker loop.

Usage:
    python -m scripts.run_tracker
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from polysignal.config import load_config
from polysignal.shared.log_setup import setup_logging
from polysignal.tracking.service import TrackerService


def main():
    config = load_config()
    setup_logging(config.log_level, config.log_dir)
    service = TrackerService(config)
    try:
        asyncio.run(service.run())
    finally:
        service.conn.close()


if __name__ == "__main__":
    main()
