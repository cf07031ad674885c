"""Rent-roll snapshot ingestion.

Builds RentRoll, Unit, Lease, Tenancy and Resident records from a normalized
upload, records lease continuity, runs the inheritance decision engine per
unit and flags discrepancies. The whole snapshot commits or nothing does.
"""

import logging
from uuid import UUID

from pydantic import ValidationError

from . import discrepancy
from .continuity import record_continuity
from .errors import IntegrityViolation
from .inheritance import analyze_unit, execute_unit
from .models import IncomeVerification, Lease, Property, RentRoll, Resident, Tenancy, Unit
from .repository import ComplianceRepository
from .schemas import InheritanceScenario, LeaseKind
from .transformations import (
    IngestionResult,
    IngestionStats,
    LeaseDraft,
    RentRollRow,
    RentRollUpload,
    group_leases,
)

logger = logging.getLogger(__name__)


def _normalize(upload: RentRollUpload, stats: IngestionStats) -> list[RentRollRow]:
    rows = []
    for index, raw in enumerate(upload.rows, start=1):
        stats.rows_processed += 1
        try:
            row = RentRollRow.from_raw(raw)
        except (ValueError, ValidationError) as exc:
            stats.rows_skipped += 1
            stats.validation_errors.append(f"row {index}: {exc}")
            continue
        if row is None:
            stats.rows_skipped += 1
            stats.validation_errors.append(f"row {index}: missing unit number")
            continue
        stats.rows_valid += 1
        if row.validation_notes:
            stats.validation_errors.append(f"row {index} (unit {row.unit_number}): {row.validation_notes}")
        rows.append(row)
    return rows


def _create_lease(repo: ComplianceRepository, unit: Unit, draft: LeaseDraft, rent_roll: RentRoll) -> Lease:
    lease = Lease(
        unit=unit,
        kind=draft.kind,
        name=", ".join(name for name, _ in draft.residents),
        lease_start_date=draft.lease_start_date,
        lease_end_date=draft.lease_end_date,
        lease_rent=draft.lease_rent,
    )
    for name, declared in draft.residents:
        lease.residents.append(Resident(
            name=name,
            declared_income=declared,
            original_declared_income=declared,
        ))
    lease.verifications.append(IncomeVerification())
    if draft.kind == LeaseKind.CURRENT:
        lease.tenancy = Tenancy(rent_roll=rent_roll)
    repo.add(lease)
    return lease


def ingest_rent_roll(repo: ComplianceRepository, property_id: UUID, upload: RentRollUpload) -> IngestionResult:
    with repo.transaction():
        prop = repo.require(Property, property_id)
        stats = IngestionStats(source=upload.filename or "upload")
        drafts, unit_numbers = group_leases(_normalize(upload, stats))

        prior_roll = repo.latest_rent_roll(prop.id)
        if prior_roll is not None and upload.snapshot_date < prior_roll.snapshot_date:
            raise IntegrityViolation(
                f"Snapshot {upload.snapshot_date} is older than the latest snapshot {prior_roll.snapshot_date}"
            )

        rent_roll = repo.add(RentRoll(property=prop, snapshot_date=upload.snapshot_date, filename=upload.filename))

        units: dict[str, Unit] = {}
        prior_future: dict[str, Lease | None] = {}
        for number in sorted(unit_numbers):
            unit = repo.unit_by_number(prop.id, number)
            if unit is None:
                unit = repo.add(Unit(property=prop, unit_number=number))
                stats.units_created += 1
            units[number] = unit
            futures = repo.future_leases(unit) if unit.id else []
            prior_future[number] = futures[-1] if futures else None
        repo.flush()

        new_current: dict[str, Lease] = {}
        new_leases: list[Lease] = []
        for draft in drafts:
            if draft.kind == LeaseKind.CURRENT and draft.unit_number in new_current:
                raise IntegrityViolation(f"Unit {draft.unit_number} has more than one current lease in this snapshot")
            lease = _create_lease(repo, units[draft.unit_number], draft, rent_roll)
            new_leases.append(lease)
            stats.residents_created += len(draft.residents)
            if draft.kind == LeaseKind.CURRENT:
                new_current[draft.unit_number] = lease
                stats.current_leases += 1
            else:
                stats.future_leases += 1
        repo.flush()

        for lease in new_leases:
            record_continuity(repo, lease, rent_roll)

        result = IngestionResult(rent_roll_id=rent_roll.id, stats=stats)
        for number, unit in units.items():
            analysis = analyze_unit(
                unit,
                new_current.get(number),
                repo.current_lease(unit, prior_roll),
                prior_future[number],
            )
            result.scenarios[number] = analysis.scenario
            pending = execute_unit(repo, analysis)
            result.pending_reconciliations.extend(pending)
            if analysis.scenario in (
                InheritanceScenario.AUTO_INHERIT_CURRENT,
                InheritanceScenario.AUTO_INHERIT_CURRENT_ASK_FUTURE,
            ):
                stats.auto_inherited += 1
            stats.awaiting_decision += len(pending)

        for lease in new_current.values():
            stats.discrepancies_flagged += len(discrepancy.flag_lease(repo, lease))

        logger.info(
            f"Ingested snapshot {upload.snapshot_date} for {prop.name}: "
            f"{stats.rows_valid}/{stats.rows_processed} rows, {len(units)} units, "
            f"{stats.current_leases} current / {stats.future_leases} future leases"
        )
        logger.info(
            f"Inheritance: {stats.auto_inherited} auto-inherited, {stats.awaiting_decision} awaiting decision"
        )
        return result
