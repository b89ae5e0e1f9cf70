#!/usr/bin/env python3
"""Payload Import Script

Loads WhatsApp Business webhook payload documents (*.json) into the
database and ingests every payload that has not been processed yet.

Usage:
    python scripts/import_payloads.py [--dir payloads] [--load-only | --process-only]
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from wachat.config import get_settings
from wachat.ingestor import WebhookIngestor
from wachat.logging_utils import setup_logging
from wachat.storage import SessionLocal, init_db

logger = logging.getLogger("wachat.import_payloads")


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Import WhatsApp webhook payload files")
    parser.add_argument("--dir", default=settings.PAYLOADS_DIR, help="Directory holding *.json payloads")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--load-only", action="store_true", help="Store payload files without ingesting them")
    mode.add_argument("--process-only", action="store_true", help="Ingest already stored payloads only")
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    init_db()
    ingestor = WebhookIngestor(SessionLocal, settings.BUSINESS_PHONE_NUMBER)

    if not args.process_only:
        loaded = ingestor.load_payload_files(args.dir)
        logger.info("Loading summary", extra={"ingest": loaded})

    if not args.load_only:
        processed = ingestor.process_pending()
        logger.info("Processing summary", extra={"ingest": processed})
        if processed["failed"]:
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
