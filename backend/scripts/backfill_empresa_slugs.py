#!/usr/bin/env python3
"""Fill missing carrier slugs from their legal names."""

from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import List, Optional

# Ensure `ultimamilla` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ultimamilla.core.config import get_settings
from ultimamilla.core.logging import configure_logging, logger
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.state_store import StateStore


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Backfill carrier slugs")
    parser.add_argument(
        "--db-path",
        type=str,
        default="",
        help="SQLite database file (defaults to DB_PATH setting)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Regenerate the slug of every carrier, not only the missing ones",
    )
    parser.add_argument("--actor", type=str, default="backfill", help="Actor recorded in the audit timeline")
    args = parser.parse_args(argv)

    configure_logging(get_settings().log_level)
    state = StateStore(db_path=args.db_path or None)
    changed = CarrierStore(state).backfill_slugs(actor=args.actor.strip() or "backfill", force=args.force)
    for carrier in changed:
        print(f"  {carrier.razon_social} -> {carrier.slug}")
    logger.info("Carrier slug backfill complete", updated=len(changed), force=args.force)


if __name__ == "__main__":
    main()
