#!/usr/bin/env python3
"""Seed the carrier company catalog (empresas de reparto)."""

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
from ultimamilla.core.validators import clean_rut
from ultimamilla.models.empresas import CarrierCompany, CarrierCreateRequest
from ultimamilla.services.carrier_store import CarrierStore
from ultimamilla.services.state_store import StateStore


CARRIERS = [
    {"rut": "96.756.430-3", "razon_social": "Chilexpress S.A.", "contacto": "600 600 6000"},
    {"rut": "76.049.280-9", "razon_social": "PDQ Courrier Express Ltda.", "contacto": "800 200 600"},
    {"rut": "78.281.000-6", "razon_social": "Starken S.A.", "contacto": "600 200 0102"},
    {"rut": "61.979.440-0", "razon_social": "Correos de Chile", "contacto": "600 950 2020"},
    {"rut": "76.123.456-0", "razon_social": "Blue Express S.A.", "contacto": "600 600 2000"},
    {"rut": "77.234.567-4", "razon_social": "Urbano Express SpA", "contacto": "800 123 456"},
    {"rut": "76.987.654-5", "razon_social": "Vivipra Transportes Ltda.", "contacto": "+56 2 2345 6789"},
]


def seed(state: StateStore, actor: str = "seed", reset: bool = False) -> List[CarrierCompany]:
    """Insert every catalog carrier whose RUT is not registered yet."""
    if reset:
        state.reset_operational_data()
    store = CarrierStore(state)
    existing = {clean_rut(carrier.rut) for carrier in store.list()}
    created: List[CarrierCompany] = []
    for entry in CARRIERS:
        if clean_rut(entry["rut"]) in existing:
            continue
        created.append(store.create(CarrierCreateRequest(**entry), actor=actor))
    return created


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed carrier companies")
    parser.add_argument(
        "--db-path",
        type=str,
        default="",
        help="SQLite database file (defaults to DB_PATH setting)",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Wipe dispatches, routes and carriers before seeding",
    )
    parser.add_argument("--actor", type=str, default="seed", help="Actor recorded in the audit timeline")
    args = parser.parse_args(argv)

    configure_logging(get_settings().log_level)
    state = StateStore(db_path=args.db_path or None)
    created = seed(state, actor=args.actor.strip() or "seed", reset=args.reset)
    for index, carrier in enumerate(created, start=1):
        print(f"  {index}. {carrier.razon_social} (RUT: {carrier.rut}, slug: {carrier.slug})")
    logger.info("Carrier seed complete", created=len(created), db_path=str(state.db_path))


if __name__ == "__main__":
    main()
