"""Import a rent-roll CSV as a new snapshot for a property.

This script runs the snapshot pipeline end to end:
1. Read rows from a CSV export of the property management system
2. Normalize them via the Pydantic row models
3. Ingest as one RentRoll snapshot (units, leases, tenancies, residents)
4. Run lease continuity, inheritance and discrepancy detection

Usage:
    uv run python scripts/import_rent_roll.py --property-name "Maple Court" --file rentroll.csv --date 2025-01-31
    uv run python scripts/import_rent_roll.py --property-id <uuid> --file rentroll.csv --date 2025-02-28
    uv run python scripts/import_rent_roll.py --property-id <uuid> --status
"""

import argparse
import csv
import logging
import sys
from datetime import date
from pathlib import Path
from uuid import UUID

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.orm import Session

from compliance.database import engine, init_db
from compliance.errors import ComplianceError
from compliance.ingest import ingest_rent_roll
from compliance.models import Property
from compliance.repository import ComplianceRepository
from compliance.transformations import RawRentRollRow, RentRollUpload
from compliance.verification import property_verification_status


# =============================================================================
# Configuration
# =============================================================================

# Header spellings seen in property management exports -> RawRentRollRow field
COLUMN_ALIASES = {
    "unit": "unit",
    "unit number": "unit",
    "unit #": "unit",
    "apt": "unit",
    "resident": "resident_name",
    "resident name": "resident_name",
    "tenant": "resident_name",
    "tenant name": "resident_name",
    "name": "resident_name",
    "income": "declared_income",
    "annual income": "declared_income",
    "household income": "declared_income",
    "declared income": "declared_income",
    "lease start": "lease_start",
    "lease start date": "lease_start",
    "move in": "lease_start",
    "lease end": "lease_end",
    "lease end date": "lease_end",
    "rent": "rent",
    "lease rent": "rent",
    "market rent": "rent",
    "status": "lease_kind",
    "lease type": "lease_kind",
    "type": "lease_kind",
}


# =============================================================================
# CSV Reading
# =============================================================================


def read_rows(path: Path) -> list[RawRentRollRow]:
    """Map CSV columns onto raw rows. Unknown columns are ignored."""
    rows = []
    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        mapping = {
            header: COLUMN_ALIASES[header.strip().lower()]
            for header in reader.fieldnames or []
            if header and header.strip().lower() in COLUMN_ALIASES
        }
        missing = {"unit", "resident_name"} - set(mapping.values())
        if missing:
            raise SystemExit(f"CSV is missing required columns: {', '.join(sorted(missing))}")

        for record in reader:
            values = {field: (record.get(header) or "").strip() or None for header, field in mapping.items()}
            rows.append(RawRentRollRow(**values))
    return rows


def resolve_property(session: Session, property_id: str | None, property_name: str | None) -> Property:
    if property_id:
        prop = session.get(Property, UUID(property_id))
        if prop is None:
            raise SystemExit(f"Property {property_id} not found")
        return prop

    prop = session.execute(select(Property).where(Property.name == property_name)).scalar_one_or_none()
    if prop is None:
        prop = Property(name=property_name)
        session.add(prop)
        session.commit()
        print(f"Created property {prop.name} ({prop.id})")
    return prop


# =============================================================================
# Reporting
# =============================================================================


def print_status(repo: ComplianceRepository, prop: Property) -> None:
    report = property_verification_status(repo, prop.id)
    print(f"\n=== Verification status: {prop.name} ===")
    for row in report.units:
        print(
            f"  {row.unit_number:>6}  {row.status.value:<34} "
            f"declared ${row.declared_income_total:>10,.2f}  verified ${row.verified_income_total:>10,.2f}"
        )
    summary = report.summary
    print(
        f"\nVerified: {summary.verified}  Needs investigation: {summary.needs_investigation}  "
        f"Out of date: {summary.out_of_date}  Vacant: {summary.vacant}  "
        f"In progress: {summary.in_progress}  Waiting for admin: {summary.waiting_for_admin_review}"
    )


# =============================================================================
# Main
# =============================================================================


def main():
    parser = argparse.ArgumentParser(description="Import a rent-roll snapshot from CSV")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--property-id", help="Existing property UUID")
    target.add_argument("--property-name", help="Property name, created if missing")
    parser.add_argument("--file", type=Path, help="Rent-roll CSV to import")
    parser.add_argument("--date", type=date.fromisoformat, default=None,
                        help="Snapshot date (YYYY-MM-DD), defaults to today")
    parser.add_argument("--status", action="store_true", help="Show verification status")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if not (args.file or args.status):
        parser.print_help()
        return

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    # Create tables if they don't exist
    print("Creating tables if needed...")
    init_db()

    with Session(engine) as session:
        prop = resolve_property(session, args.property_id, args.property_name)
        repo = ComplianceRepository(session)

        if args.file:
            if not args.file.exists():
                raise SystemExit(f"{args.file} not found")
            upload = RentRollUpload(
                snapshot_date=args.date or date.today(),
                filename=args.file.name,
                rows=read_rows(args.file),
            )
            print(f"\n=== Importing {args.file.name} ({len(upload.rows)} rows) ===")
            try:
                result = ingest_rent_roll(repo, prop.id, upload)
            except ComplianceError as exc:
                raise SystemExit(f"Import failed, nothing was saved: {exc}") from exc

            stats = result.stats
            print(f"Processed: {stats.rows_processed}")
            print(f"Valid: {stats.rows_valid}")
            print(f"Skipped: {stats.rows_skipped}")
            print(f"Units created: {stats.units_created}")
            print(f"Leases: {stats.current_leases} current, {stats.future_leases} future")
            print(f"Auto-inherited: {stats.auto_inherited}")
            print(f"Awaiting decision: {stats.awaiting_decision}")
            print(f"Discrepancies flagged: {stats.discrepancies_flagged}")
            if stats.validation_errors:
                print(f"Notes ({len(stats.validation_errors)}):")
                for err in stats.validation_errors[:10]:
                    print(f"  - {err}")
            for pending in result.pending_reconciliations:
                print(
                    f"  Unit {pending.unit_number}: {pending.scenario.value} "
                    f"(decide target={pending.target.value} on lease {pending.lease_id})"
                )

        if args.status:
            print_status(repo, prop)


if __name__ == "__main__":
    main()
