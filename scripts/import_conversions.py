"""
CSV Import Script for Conversion Events

Usage:
    python scripts/import_conversions.py <path-to-csv>

CSV Format (header row required, only event_name is mandatory):
    event_name,event_id,brand_id,campaign_id,event_time,event_value,currency,
    transaction_id,user_email,user_phone,user_first_name,user_last_name,
    source,custom_params_json

PII columns are hashed before anything is written.
"""

import asyncio
import csv
import json
import sys
from pathlib import Path

# Add parent directory to path to import app modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError
import structlog

from app.core.database import AsyncSessionLocal, async_engine
from app.schemas.conversion import ConversionEventCreate
from app.services.conversion_store import ConversionEventStore
from app.services.hashing import generate_event_id

logger = structlog.get_logger()

REQUIRED_HEADERS = {"event_name"}
OPTIONAL_FIELDS = (
    "event_id", "brand_id", "campaign_id", "event_time", "event_value", "currency",
    "transaction_id", "user_email", "user_phone", "user_first_name", "user_last_name",
    "user_ip", "user_agent", "source",
)


def row_to_payload(row: dict[str, str]) -> ConversionEventCreate:
    """Build a producer payload from a CSV row; blank cells are treated as missing"""
    data = {"event_name": row["event_name"].strip()}
    for name in OPTIONAL_FIELDS:
        value = (row.get(name) or "").strip()
        if value:
            data[name] = value

    params = (row.get("custom_params_json") or "").strip()
    if params:
        data["custom_params"] = json.loads(params)

    payload = ConversionEventCreate.model_validate(data)
    if not payload.event_id:
        payload = payload.model_copy(update={"event_id": generate_event_id(payload.event_name.value)})
    return payload


async def import_csv(file_path: str, batch_size: int = 500) -> dict[str, int]:
    """
    Import conversion events from CSV file

    Args:
        file_path: Path to CSV file
        batch_size: Number of events to insert per transaction
    """
    path = Path(file_path)
    if not path.exists():
        print(f"Error: File not found: {path}")
        sys.exit(1)

    print(f"Starting import from: {path}")

    totals = {"processed": 0, "inserted": 0, "duplicates": 0, "invalid": 0}

    async with AsyncSessionLocal() as session:
        store = ConversionEventStore(session)

        async def flush(batch: list[ConversionEventCreate]) -> None:
            result = await store.insert_many(batch)
            totals["processed"] += len(batch)
            totals["inserted"] += result["inserted"]
            totals["duplicates"] += result["duplicates"]
            print(f"Processed {totals['processed']} events | "
                  f"Inserted: {totals['inserted']} | "
                  f"Duplicates: {totals['duplicates']}")

        with open(path, "r", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            if not REQUIRED_HEADERS.issubset(reader.fieldnames or []):
                print(f"Error: CSV must have headers: {REQUIRED_HEADERS}")
                print(f"Found headers: {reader.fieldnames}")
                sys.exit(1)

            batch: list[ConversionEventCreate] = []
            for i, row in enumerate(reader, 1):
                try:
                    batch.append(row_to_payload(row))
                except (ValidationError, ValueError) as e:
                    totals["invalid"] += 1
                    # Row content may hold raw PII, so only the line number and error type are reported
                    logger.warning("conversion_import_row_invalid", row=i, error_type=type(e).__name__)
                    print(f"Error on row {i}: invalid conversion data")
                    continue

                if len(batch) >= batch_size:
                    await flush(batch)
                    batch = []

            if batch:
                await flush(batch)

    await async_engine.dispose()

    print("\n" + "=" * 50)
    print("Import completed!")
    print(f"Total processed: {totals['processed']}")
    print(f"Total inserted: {totals['inserted']}")
    print(f"Total duplicates: {totals['duplicates']}")
    print(f"Invalid rows: {totals['invalid']}")
    print("=" * 50)
    return totals


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/import_conversions.py <path-to-csv>")
        sys.exit(1)

    asyncio.run(import_csv(sys.argv[1]))


if __name__ == "__main__":
    main()
