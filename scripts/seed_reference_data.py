#!/usr/bin/env python3
"""Load warehouses, operators, trade parties and auto-send recipients."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from fims_web.auto_send import DuplicateRecipientError, create_auto_send_repository
from fims_web.config import get_settings
from fims_web.entries import Operator, TradeParty, Warehouse, create_entry_repository

DEMO_REFERENCE_DATA: dict[str, list[dict[str, Any]]] = {
    "warehouses": [
        {"warehouse_id": "wh-sarajevo", "name": "Sarajevo depot", "code": "SA-01", "location": "Rajlovac"},
        {"warehouse_id": "wh-mostar", "name": "Mostar depot", "code": "MO-01", "location": "Rodoc"},
    ],
    "operators": [
        {"operator_id": "op-demo", "name": "Demo Operator", "email": "operator@fims.example"},
    ],
    "suppliers": [
        {"party_id": "sup-adriatic", "name": "Adriatic Oil d.o.o.", "code": "ADR"},
    ],
    "transporters": [
        {"party_id": "trn-balkan", "name": "Balkan Haulage", "code": "BLK"},
    ],
    "recipients": [
        {"email": "reports@fims.example", "name": "Reporting desk"},
    ],
}


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Seed reference data used by fuel entries and automatic reports. "
            "Writes through the configured ENTRY_STORE_BACKEND and AUTO_SEND_STORE_BACKEND."
        )
    )
    parser.add_argument(
        "--data-file",
        type=Path,
        default=None,
        help="JSON file with warehouses/operators/suppliers/transporters/recipients lists. Defaults to demo data.",
    )
    parser.add_argument("--apply", action="store_true", help="Write the data; without it only a summary is printed.")
    return parser.parse_args()


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    args = parse_args()
    data = DEMO_REFERENCE_DATA
    if args.data_file is not None:
        data = json.loads(args.data_file.read_text(encoding="utf-8"))

    summary = {key: len(data.get(key, [])) for key in DEMO_REFERENCE_DATA}
    if not args.apply:
        print(json.dumps({"applied": False, **summary}, indent=2))
        return 0

    settings = get_settings()
    if settings.entry_store_backend.strip().lower() != "postgres":
        print("warning: ENTRY_STORE_BACKEND is not postgres; seeded data lives only in this process", file=sys.stderr)

    entries = create_entry_repository(backend=settings.entry_store_backend, database_url=settings.database_url)
    auto_send = create_auto_send_repository(
        backend=settings.auto_send_store_backend, database_url=settings.database_url
    )

    for row in data.get("warehouses", []):
        entries.save_warehouse(Warehouse(**row))
    for row in data.get("operators", []):
        entries.save_operator(Operator(**row))
    for row in data.get("suppliers", []):
        entries.save_supplier(TradeParty(**row))
    for row in data.get("transporters", []):
        entries.save_transporter(TradeParty(**row))

    skipped_recipients = 0
    for row in data.get("recipients", []):
        try:
            auto_send.add_recipient(email=row["email"], name=row.get("name"))
        except DuplicateRecipientError:
            skipped_recipients += 1

    print(json.dumps({"applied": True, **summary, "skipped_recipients": skipped_recipients}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
