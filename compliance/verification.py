"""Resident, lease and unit verification lifecycle.

Lease verifications move IN_PROGRESS <-> FINALIZED only through TRANSITIONS.
Resident income fields change only here (on document changes and explicit
finalization) or through an accepted reconciliation decision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from . import discrepancy
from .errors import InvalidTransition
from .income import IncomeCalculation, calculate_resident_income, lease_verified_total
from .models import IncomeDocument, IncomeVerification, Lease, Property, RentRoll, Resident, Unit
from .overrides import create_auto_override
from .repository import ComplianceRepository
from .schemas import (
    ZERO,
    DocumentReviewContext,
    DocumentStatus,
    ExtractedDocument,
    OverrideRequestType,
    PropertyVerificationReport,
    UnitVerificationData,
    UnitVerificationStatus,
    VerificationEvent,
    VerificationStatus,
    VerificationSummary,
)

logger = logging.getLogger(__name__)


# =============================================================================
# State machine
# =============================================================================

TRANSITIONS: dict[tuple[VerificationStatus, VerificationEvent], VerificationStatus] = {
    (VerificationStatus.IN_PROGRESS, VerificationEvent.FINALIZE): VerificationStatus.FINALIZED,
    (VerificationStatus.FINALIZED, VerificationEvent.UNFINALIZE): VerificationStatus.IN_PROGRESS,
    (VerificationStatus.FINALIZED, VerificationEvent.RESIDENT_REOPENED): VerificationStatus.IN_PROGRESS,
    (VerificationStatus.FINALIZED, VerificationEvent.REFRESH): VerificationStatus.FINALIZED,
}


def next_status(status: VerificationStatus, event: VerificationEvent) -> VerificationStatus:
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransition(status, event) from None


def lease_ready(lease: Lease) -> bool:
    """Every resident is finalized or attested no income."""
    return bool(lease.residents) and all(
        r.income_finalized or r.has_no_income for r in lease.residents
    )


def apply_event(
    repo: ComplianceRepository,
    verification: IncomeVerification,
    event: VerificationEvent,
) -> IncomeVerification:
    lease = repo.lease_of_verification(verification)
    status = next_status(verification.status, event)

    if event in (VerificationEvent.FINALIZE, VerificationEvent.REFRESH):
        if not lease_ready(lease):
            pending = [r.name for r in lease.residents if not (r.income_finalized or r.has_no_income)]
            raise InvalidTransition(
                verification.status, event,
                f"residents not finalized: {', '.join(pending) or 'no residents'}",
            )
        verification.verified_income_total = lease_verified_total(lease.residents)
        if event == VerificationEvent.FINALIZE:
            verification.finalized_at = datetime.utcnow()
    else:
        verification.finalized_at = None
        verification.verified_income_total = ZERO
        if event == VerificationEvent.UNFINALIZE:
            for resident in lease.residents:
                resident.income_finalized = False
                resident.finalized_at = None

    verification.status = status
    logger.debug(f"Verification {verification.id}: {event.value} -> {status.value}")
    return verification


def sync_lease(repo: ComplianceRepository, lease: Lease) -> IncomeVerification:
    """Bring the lease verification in line with its residents.

    Auto-finalizes a ready lease, refreshes the total of a finalized one and
    reopens a finalized lease whose residents are no longer all done.
    """
    verification = repo.verification_of_lease(lease)
    ready = lease_ready(lease)

    if verification.status == VerificationStatus.IN_PROGRESS and ready:
        apply_event(repo, verification, VerificationEvent.FINALIZE)
        logger.info(f"Lease {lease.id} auto-finalized at {verification.verified_income_total}")
        discrepancy.flag_lease(repo, lease)
    elif verification.status == VerificationStatus.FINALIZED and ready:
        apply_event(repo, verification, VerificationEvent.REFRESH)
    elif verification.status == VerificationStatus.FINALIZED:
        apply_event(repo, verification, VerificationEvent.RESIDENT_REOPENED)
        logger.info(f"Lease {lease.id} reopened, a resident lost finalization")
    return verification


# =============================================================================
# Residents and documents
# =============================================================================


def recompute_resident(repo: ComplianceRepository, resident: Resident) -> IncomeCalculation:
    """Recompute calculated income from the resident's current documents.

    A finalized resident stays finalized only if at least one COMPLETED
    document remains and none is NEEDS_REVIEW. A resident attesting no
    income stays at zero.
    """
    calc = calculate_resident_income(resident.documents)
    if resident.has_no_income:
        resident.calculated_income = ZERO
        logger.debug(f"Resident {resident.id} attested no income, kept at 0")
        return calc
    resident.calculated_income = calc.total

    completed = sum(1 for d in resident.documents if d.status == DocumentStatus.COMPLETED)
    needs_review = sum(1 for d in resident.documents if d.status == DocumentStatus.NEEDS_REVIEW)
    if resident.income_finalized and (completed == 0 or needs_review):
        resident.income_finalized = False
        resident.finalized_at = None
        logger.info(
            f"Resident {resident.id} unfinalized ({completed} completed, {needs_review} needs review)"
        )
    logger.debug(f"Resident {resident.id} recomputed to {calc.total}")
    return calc


def finalize_resident_income(repo: ComplianceRepository, resident: Resident) -> IncomeCalculation:
    calc = calculate_resident_income(resident.documents)
    resident.calculated_income = calc.total
    resident.income_finalized = True
    resident.finalized_at = datetime.utcnow()
    return calc


def reopen_resident(repo: ComplianceRepository, resident: Resident, changed_by: str, reason: str) -> None:
    """Drop a resident's verified income and reopen their lease."""
    old = resident.calculated_income
    resident.income_finalized = False
    resident.finalized_at = None
    resident.calculated_income = None
    repo.log_change(
        "residents", resident.id, "reconcile", changed_by,
        field_name="calculated_income", old_value=old, new_value=None, reason=reason,
    )
    sync_lease(repo, repo.lease_of_resident(resident))


def finalize_resident(repo: ComplianceRepository, resident_id: UUID) -> Resident:
    with repo.transaction():
        resident = repo.require(Resident, resident_id)
        lease = repo.lease_of_resident(resident)

        if any(d.status == DocumentStatus.NEEDS_REVIEW for d in resident.documents):
            raise InvalidTransition(
                "unfinalized", "FINALIZE_RESIDENT", "documents still need review"
            )
        if not any(d.status == DocumentStatus.COMPLETED for d in resident.documents):
            raise InvalidTransition(
                "unfinalized", "FINALIZE_RESIDENT",
                "no completed documents, attest no income instead",
            )

        calc = finalize_resident_income(repo, resident)
        logger.info(f"Resident {resident.id} finalized at {calc.total}")
        sync_lease(repo, lease)
        return resident


def mark_no_income(repo: ComplianceRepository, resident_id: UUID) -> Resident:
    with repo.transaction():
        resident = repo.require(Resident, resident_id)
        lease = repo.lease_of_resident(resident)
        if any(d.status == DocumentStatus.COMPLETED for d in resident.documents):
            raise InvalidTransition(
                "unfinalized", "ATTEST_NO_INCOME", "resident has completed income documents"
            )
        if any(d.status == DocumentStatus.NEEDS_REVIEW for d in resident.documents):
            raise InvalidTransition(
                "unfinalized", "ATTEST_NO_INCOME", "documents still need review"
            )
        resident.has_no_income = True
        resident.calculated_income = ZERO
        resident.income_finalized = True
        resident.finalized_at = datetime.utcnow()
        logger.info(f"Resident {resident.id} attested no income")
        sync_lease(repo, lease)
        return resident


def add_document(repo: ComplianceRepository, resident_id: UUID, extracted: ExtractedDocument) -> IncomeDocument:
    """Attach extracted document fields to a resident.

    A NEEDS_REVIEW document raises a DOCUMENT_REVIEW request. A document on
    a no-income resident withdraws the attestation.
    """
    with repo.transaction():
        resident = repo.require(Resident, resident_id)
        lease = repo.lease_of_resident(resident)
        unit = repo.unit_of_lease(lease)
        verification = repo.verification_of_lease(lease)

        document = IncomeDocument(
            verification_id=verification.id,
            upload_date=datetime.utcnow(),
            **extracted.model_dump(),
        )
        resident.documents.append(document)
        repo.flush()

        if resident.has_no_income:
            resident.has_no_income = False
            resident.income_finalized = False
            resident.finalized_at = None

        if document.status == DocumentStatus.NEEDS_REVIEW:
            create_auto_override(
                repo,
                DocumentReviewContext(unit_id=unit.id, resident_id=resident.id, document_id=document.id),
                f"{document.document_type.value} document needs review",
            )

        recompute_resident(repo, resident)
        sync_lease(repo, lease)
        return document


def delete_document(repo: ComplianceRepository, document_id: UUID) -> Resident:
    """Delete a document and recompute its resident in the same transaction."""
    with repo.transaction():
        document = repo.require(IncomeDocument, document_id)
        resident = repo.resident_of_document(document)

        for request in repo.overrides_for_document(document.id):
            repo.delete(request)
        resident.documents.remove(document)
        repo.flush()

        recompute_resident(repo, resident)
        sync_lease(repo, repo.lease_of_resident(resident))
        return resident


# =============================================================================
# Lease verification
# =============================================================================


def finalize_verification(repo: ComplianceRepository, verification_id: UUID) -> IncomeVerification:
    with repo.transaction():
        verification = repo.require(IncomeVerification, verification_id)
        lease = repo.lease_of_verification(verification)
        apply_event(repo, verification, VerificationEvent.FINALIZE)
        discrepancy.flag_lease(repo, lease)
        logger.info(f"Lease {lease.id} finalized at {verification.verified_income_total}")
        return verification


def unfinalize_verification(repo: ComplianceRepository, verification_id: UUID) -> IncomeVerification:
    with repo.transaction():
        verification = repo.require(IncomeVerification, verification_id)
        apply_event(repo, verification, VerificationEvent.UNFINALIZE)
        logger.info(f"Verification {verification.id} reopened")
        return verification


# =============================================================================
# Displayed unit status
# =============================================================================


@dataclass(frozen=True)
class UnitFacts:
    """Everything the displayed status depends on."""

    has_current_lease: bool
    verification_status: VerificationStatus | None = None
    needs_review_document_ids: frozenset = field(default_factory=frozenset)
    pending_review_document_ids: frozenset = field(default_factory=frozenset)
    pending_validation_exception: bool = False
    has_discrepancy: bool = False


def derive_unit_status(facts: UnitFacts) -> UnitVerificationStatus:
    if not facts.has_current_lease:
        return UnitVerificationStatus.VACANT

    if facts.verification_status == VerificationStatus.FINALIZED:
        if facts.has_discrepancy:
            return UnitVerificationStatus.NEEDS_INVESTIGATION
        return UnitVerificationStatus.VERIFIED

    if facts.needs_review_document_ids:
        if facts.needs_review_document_ids <= facts.pending_review_document_ids:
            return UnitVerificationStatus.WAITING_FOR_ADMIN
        return UnitVerificationStatus.OUT_OF_DATE

    if facts.pending_validation_exception:
        return UnitVerificationStatus.WAITING_FOR_ADMIN
    return UnitVerificationStatus.IN_PROGRESS


def unit_facts(repo: ComplianceRepository, unit: Unit, rent_roll: RentRoll | None) -> tuple[UnitFacts, Lease | None]:
    lease = repo.current_lease(unit, rent_roll)
    if lease is None:
        return UnitFacts(has_current_lease=False), None

    verification = repo.verification_of_lease(lease)
    needs_review = [
        d for r in lease.residents for d in r.documents if d.status == DocumentStatus.NEEDS_REVIEW
    ]
    pending = repo.pending_overrides_for_unit(unit.id)
    # a carried-forward copy is covered by the request on its origin
    requested = {p.document_id for p in pending if p.type == OverrideRequestType.DOCUMENT_REVIEW}
    facts = UnitFacts(
        has_current_lease=True,
        verification_status=verification.status,
        needs_review_document_ids=frozenset(d.id for d in needs_review),
        pending_review_document_ids=frozenset(
            d.id for d in needs_review if d.id in requested or d.source_document_id in requested
        ),
        pending_validation_exception=any(
            p.type == OverrideRequestType.VALIDATION_EXCEPTION and p.verification_id == verification.id
            for p in pending
        ),
        has_discrepancy=bool(discrepancy.within_lease_rows(repo, lease)),
    )
    return facts, lease


def unit_status(repo: ComplianceRepository, unit: Unit, rent_roll: RentRoll | None) -> UnitVerificationData:
    facts, lease = unit_facts(repo, unit, rent_roll)
    status = derive_unit_status(facts)
    if lease is None:
        return UnitVerificationData(
            unit_id=unit.id,
            unit_number=unit.unit_number,
            status=status,
            declared_income_total=ZERO,
            verified_income_total=ZERO,
            document_count=0,
        )

    verification = repo.verification_of_lease(lease)
    documents = [d for r in lease.residents for d in r.documents]
    updates = [verification.updated_at] + [d.upload_date for d in documents]
    return UnitVerificationData(
        unit_id=unit.id,
        unit_number=unit.unit_number,
        status=status,
        declared_income_total=sum((r.declared_income for r in lease.residents), ZERO),
        verified_income_total=verification.verified_income_total,
        document_count=len(documents),
        last_update=max((u for u in updates if u is not None), default=None),
        lease_id=lease.id,
        lease_start_date=lease.lease_start_date,
        lease_end_date=lease.lease_end_date,
    )


def property_verification_status(repo: ComplianceRepository, property_id: UUID) -> PropertyVerificationReport:
    """Per-unit displayed status for the latest snapshot plus counts."""
    repo.require(Property, property_id)
    rent_roll = repo.latest_rent_roll(property_id)
    summary = VerificationSummary()
    rows = []
    for unit in repo.units_for_property(property_id):
        row = unit_status(repo, unit, rent_roll)
        summary.count(row.status)
        rows.append(row)
    return PropertyVerificationReport(
        property_id=property_id,
        rent_roll_id=rent_roll.id if rent_roll else None,
        units=rows,
        summary=summary,
    )
