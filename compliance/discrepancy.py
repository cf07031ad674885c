"""Verified vs declared income comparison.

Two scopes:
- WITHIN_LEASE: a finalized resident's calculated income against the
  declared income on the same lease
- CROSS_LEASE: an unfinalized resident on a current lease against the
  verified income of the same-named resident on the most recent other
  current lease of the unit. FUTURE leases never take part.

A difference is flagged only when it exceeds the tolerance (exclusive).
"""

import csv
import io
import logging
from datetime import date
from decimal import Decimal
from uuid import UUID

from . import config
from .continuity import normalize_name
from .errors import IntegrityViolation
from .models import Lease, Property, Resident, Unit
from .overrides import create_auto_override
from .repository import ComplianceRepository
from .schemas import (
    DiscrepancyResolution,
    DiscrepancyResolutionRequest,
    DiscrepancyRow,
    DiscrepancyScope,
    IncomeDiscrepancyContext,
    quantize_money,
)

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "Property Name",
    "Property Address",
    "Unit Number",
    "Resident Name",
    "Current Income in PMS",
    "Verified Income",
    "Difference Amount",
    "Difference Percentage",
    "Lease Start",
    "Lease End",
    "Generated Date",
]


def is_discrepancy(verified: Decimal, declared: Decimal) -> bool:
    return abs(verified - declared) > config.DISCREPANCY_TOLERANCE


def discrepancy_percentage(difference: Decimal, declared: Decimal) -> Decimal | None:
    if declared <= 0:
        return None
    return quantize_money(difference / declared * 100)


def _row(
    scope: DiscrepancyScope,
    unit: Unit,
    lease: Lease,
    resident: Resident,
    verified: Decimal,
    declared: Decimal,
    source: Resident | None = None,
) -> DiscrepancyRow:
    difference = quantize_money(verified - declared)
    return DiscrepancyRow(
        scope=scope,
        unit_id=unit.id,
        unit_number=unit.unit_number,
        lease_id=lease.id,
        resident_id=resident.id,
        resident_name=resident.name,
        source_resident_id=source.id if source else None,
        verified_income=verified,
        declared_income=declared,
        discrepancy=difference,
        discrepancy_percentage=discrepancy_percentage(difference, declared),
        lease_start_date=lease.lease_start_date,
        lease_end_date=lease.lease_end_date,
    )


def within_lease_rows(repo: ComplianceRepository, lease: Lease) -> list[DiscrepancyRow]:
    unit = repo.unit_of_lease(lease)
    rows = []
    for resident in lease.residents:
        if not resident.income_finalized or resident.calculated_income is None:
            continue
        if is_discrepancy(resident.calculated_income, resident.declared_income):
            rows.append(_row(
                DiscrepancyScope.WITHIN_LEASE, unit, lease, resident,
                resident.calculated_income, resident.declared_income,
            ))
    return rows


def _prior_verified_lease(repo: ComplianceRepository, lease: Lease) -> Lease | None:
    """Most recent other Tenancy-backed lease of the unit with finalized income."""
    for candidate in repo.current_leases_for_unit(lease.unit_id):
        if candidate.id == lease.id:
            continue
        if any(r.income_finalized for r in candidate.residents):
            return candidate
    return None


def cross_lease_rows(repo: ComplianceRepository, lease: Lease) -> list[DiscrepancyRow]:
    if lease.tenancy is None:
        return []
    pending = [r for r in lease.residents if not r.income_finalized and not r.has_no_income]
    if not pending:
        return []
    prior = _prior_verified_lease(repo, lease)
    if prior is None:
        return []

    unit = repo.unit_of_lease(lease)
    verified_by_name = {
        normalize_name(r.name): r
        for r in prior.residents
        if r.income_finalized and r.calculated_income is not None
    }
    rows = []
    for resident in pending:
        source = verified_by_name.get(normalize_name(resident.name))
        if source is None:
            continue
        if is_discrepancy(source.calculated_income, resident.declared_income):
            rows.append(_row(
                DiscrepancyScope.CROSS_LEASE, unit, lease, resident,
                source.calculated_income, resident.declared_income, source,
            ))
    return rows


def detect_for_lease(repo: ComplianceRepository, lease: Lease) -> list[DiscrepancyRow]:
    return within_lease_rows(repo, lease) + cross_lease_rows(repo, lease)


def flag_lease(repo: ComplianceRepository, lease: Lease) -> list[DiscrepancyRow]:
    """Detect discrepancies and raise an INCOME_DISCREPANCY request for each."""
    rows = detect_for_lease(repo, lease)
    verification = lease.active_verification
    for row in rows:
        context = IncomeDiscrepancyContext(
            unit_id=row.unit_id,
            resident_id=row.resident_id,
            verification_id=verification.id if verification else None,
        )
        create_auto_override(
            repo,
            context,
            f"{row.scope.value}: verified income {row.verified_income} differs from "
            f"declared {row.declared_income} by {row.discrepancy}",
        )
    if rows:
        logger.info(f"Flagged {len(rows)} income discrepancies on lease {lease.id}")
    return rows


def property_discrepancies(repo: ComplianceRepository, property_id: UUID) -> list[DiscrepancyRow]:
    """Discrepancy rows over every current lease in the latest snapshot."""
    repo.require(Property, property_id)
    rent_roll = repo.latest_rent_roll(property_id)
    rows = []
    for unit in repo.units_for_property(property_id):
        lease = repo.current_lease(unit, rent_roll)
        if lease is not None:
            rows.extend(detect_for_lease(repo, lease))
    return rows


def export_discrepancies_csv(repo: ComplianceRepository, property_id: UUID) -> str:
    """Flat tabular export of property_discrepancies."""
    prop = repo.require(Property, property_id)
    rows = property_discrepancies(repo, property_id)
    generated = date.today().isoformat()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for row in rows:
        writer.writerow([
            prop.name,
            prop.address or "",
            row.unit_number,
            row.resident_name,
            f"{row.declared_income:.2f}",
            f"{row.verified_income:.2f}",
            f"{row.discrepancy:.2f}",
            "" if row.discrepancy_percentage is None else f"{row.discrepancy_percentage:.2f}%",
            row.lease_start_date.isoformat() if row.lease_start_date else "",
            row.lease_end_date.isoformat() if row.lease_end_date else "",
            generated,
        ])
    return buffer.getvalue()


# =============================================================================
# Resolution
# =============================================================================


def accept_verified_income(
    repo: ComplianceRepository,
    resident: Resident,
    verified: Decimal,
    changed_by: str,
    reason: str,
) -> None:
    """Overwrite declared income with the verified figure, audit-logged."""
    old = resident.declared_income
    resident.declared_income = verified
    repo.log_change(
        "residents", resident.id, "reconcile", changed_by,
        field_name="declared_income", old_value=old, new_value=verified, reason=reason,
    )
    logger.info(f"Resident {resident.id} declared income {old} -> {verified} ({reason})")


def verified_figure_for(repo: ComplianceRepository, resident: Resident, source: Resident | None) -> Decimal:
    """The verified income a discrepancy on ``resident`` was measured against."""
    if source is not None:
        if not source.income_finalized or source.calculated_income is None:
            raise IntegrityViolation(f"Resident {source.id} has no verified income to accept")
        return source.calculated_income
    if not resident.income_finalized or resident.calculated_income is None:
        raise IntegrityViolation(f"Resident {resident.id} has no verified income to accept")
    return resident.calculated_income


def resolve_discrepancy(repo: ComplianceRepository, request: DiscrepancyResolutionRequest) -> Resident:
    """Apply accept-verified or accept-rentroll to one resident."""
    from .verification import reopen_resident

    with repo.transaction():
        resident = repo.require(Resident, request.resident_id)
        source = repo.require(Resident, request.source_resident_id) if request.source_resident_id else None
        changed_by = f"user:{request.decided_by}"

        match request.resolution:
            case DiscrepancyResolution.ACCEPT_VERIFIED:
                verified = verified_figure_for(repo, resident, source)
                accept_verified_income(repo, resident, verified, changed_by, "accept-verified")
            case DiscrepancyResolution.ACCEPT_RENT_ROLL:
                reopened = source or resident
                reopen_resident(repo, reopened, changed_by, "accept-rentroll")
        return resident
