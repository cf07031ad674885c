"""Carry verification state forward across rent-roll snapshots.

Per unit, the prior CURRENT lease and prior FUTURE lease are compared with
the new snapshot's lease and the unit is classified into one scenario:

    prior current unchanged, no prior future  -> AUTO_INHERIT_CURRENT
    prior current unchanged, prior future     -> AUTO_INHERIT_CURRENT_ASK_FUTURE
    prior current changed,   prior future     -> ASK_FUTURE_TO_CURRENT
    otherwise                                 -> NEW_UNIT

Automatic branches copy state here; the ASK branches come back through
apply_reconciliation_decision once a human has answered.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from . import discrepancy
from .continuity import (
    LeaseMatch,
    claim_master,
    continuity_of_lease,
    full_signature,
    match_leases,
    match_rosters,
    record_continuity,
    replace_master,
)
from .errors import IntegrityViolation, NotFound
from .income import calculate_resident_income
from .models import IncomeDocument, IncomeVerification, Lease, VerificationContinuity
from .repository import ComplianceRepository
from .schemas import (
    InheritanceScenario,
    MatchType,
    PendingReconciliation,
    ReconciliationAction,
    ReconciliationDecision,
    ReconciliationTarget,
    VerificationEvent,
    VerificationStatus,
)
from .verification import apply_event, lease_ready

logger = logging.getLogger(__name__)

# Copied onto a document reference. The file itself is never duplicated.
DOCUMENT_FIELDS = (
    "document_type", "status", "document_date", "upload_date", "file_path",
    "gross_pay_amount", "pay_frequency",
    "box1_wages", "box3_ss_wages", "box5_med_wages", "tax_year",
    "calculated_annualized_income", "employee_name", "employer_name",
)


@dataclass
class UnitAnalysis:
    """Classification of one unit in a new snapshot."""

    unit_id: object
    unit_number: str
    scenario: InheritanceScenario
    new_current: Lease | None = None
    prior_current: Lease | None = None
    prior_future: Lease | None = None
    current_match: LeaseMatch | None = None
    income_changed: bool = False


def classify(current_match: LeaseMatch | None, has_prior_future: bool) -> InheritanceScenario:
    unchanged = current_match is not None and current_match.match_type == MatchType.EXACT
    if unchanged and not has_prior_future:
        return InheritanceScenario.AUTO_INHERIT_CURRENT
    if unchanged:
        return InheritanceScenario.AUTO_INHERIT_CURRENT_ASK_FUTURE
    if has_prior_future:
        return InheritanceScenario.ASK_FUTURE_TO_CURRENT
    return InheritanceScenario.NEW_UNIT


def analyze_unit(
    unit,
    new_current: Lease | None,
    prior_current: Lease | None,
    prior_future: Lease | None,
) -> UnitAnalysis:
    if new_current is None:
        return UnitAnalysis(unit.id, unit.unit_number, InheritanceScenario.NEW_UNIT, prior_future=prior_future)

    current_match = match_leases(prior_current, new_current) if prior_current else None
    scenario = classify(current_match, prior_future is not None)
    income_changed = bool(
        current_match
        and current_match.match_type == MatchType.EXACT
        and full_signature(prior_current) != full_signature(new_current)
    )
    return UnitAnalysis(
        unit_id=unit.id,
        unit_number=unit.unit_number,
        scenario=scenario,
        new_current=new_current,
        prior_current=prior_current,
        prior_future=prior_future,
        current_match=current_match,
        income_changed=income_changed,
    )


# =============================================================================
# Copying state
# =============================================================================


def _reference(document: IncomeDocument, verification: IncomeVerification) -> IncomeDocument:
    copy = IncomeDocument(
        verification_id=verification.id,
        source_document_id=document.source_document_id or document.id,
    )
    for name in DOCUMENT_FIELDS:
        setattr(copy, name, getattr(document, name))
    return copy


def inherit_lease_state(
    repo: ComplianceRepository,
    source: Lease,
    target: Lease,
    changed_by: str,
) -> IncomeVerification:
    """Copy documents, resident finalization and lease status from source to target.

    Residents are paired by name. Finalized residents are recomputed from
    the copied documents, which reproduces the source figure exactly.
    Unpaired target residents stay unfinalized, which keeps the target
    verification IN_PROGRESS.
    """
    source_verification = repo.verification_of_lease(source)
    target_verification = repo.verification_of_lease(target)
    previous_total = target_verification.verified_income_total

    by_name = {r.name: r for r in source.residents}
    roster = match_rosters([r.name for r in source.residents], [r.name for r in target.residents])
    pairs = {new_name: by_name[old_name] for old_name, new_name in roster.continuing}

    for resident in target.residents:
        origin = pairs.get(resident.name)
        if origin is None:
            continue
        for document in origin.documents:
            resident.documents.append(_reference(document, target_verification))
        resident.has_no_income = origin.has_no_income
        resident.income_finalized = origin.income_finalized
        resident.finalized_at = origin.finalized_at
        if origin.income_finalized and not origin.has_no_income:
            resident.calculated_income = calculate_resident_income(resident.documents).total
        else:
            resident.calculated_income = origin.calculated_income
    repo.flush()

    if target_verification.status == VerificationStatus.FINALIZED:
        apply_event(repo, target_verification, VerificationEvent.RESIDENT_REOPENED)
    if source_verification.status == VerificationStatus.FINALIZED and lease_ready(target):
        apply_event(repo, target_verification, VerificationEvent.FINALIZE)
        target_verification.finalized_at = source_verification.finalized_at

    repo.log_change(
        "income_verifications", target_verification.id, "inherit", changed_by,
        field_name="verified_income_total", old_value=previous_total,
        new_value=target_verification.verified_income_total,
        reason=f"inherited from lease {source.id}",
    )
    logger.info(
        f"Lease {target.id} inherited {len(pairs)}/{len(target.residents)} residents from "
        f"{source.id}, {target_verification.status.value} at {target_verification.verified_income_total}"
    )
    return target_verification


def _auto_inherit(repo: ComplianceRepository, analysis: UnitAnalysis) -> IncomeVerification:
    lease = analysis.new_current
    source = analysis.prior_current
    continuity = continuity_of_lease(repo, lease)

    verification = inherit_lease_state(repo, source, lease, "system:inheritance")
    source_verification = repo.verification_of_lease(source)
    if continuity is not None and source_verification.status == VerificationStatus.FINALIZED:
        claim_master(continuity, source_verification)
    if analysis.income_changed:
        logger.info(f"Unit {analysis.unit_number}: roster unchanged, declared income changed")
    return verification


def execute_unit(repo: ComplianceRepository, analysis: UnitAnalysis) -> list[PendingReconciliation]:
    """Apply the automatic part of a scenario and return questions for a human."""
    match analysis.scenario:
        case InheritanceScenario.AUTO_INHERIT_CURRENT:
            _auto_inherit(repo, analysis)
            return []

        case InheritanceScenario.AUTO_INHERIT_CURRENT_ASK_FUTURE:
            _auto_inherit(repo, analysis)
            future = analysis.prior_future
            continuity = continuity_of_lease(repo, future)
            return [PendingReconciliation(
                unit_id=analysis.unit_id,
                unit_number=analysis.unit_number,
                scenario=analysis.scenario,
                target=ReconciliationTarget.FUTURE,
                lease_id=future.id,
                continuity_id=continuity.id if continuity else None,
                match_type=MatchType.NONE,
            )]

        case InheritanceScenario.ASK_FUTURE_TO_CURRENT:
            future = analysis.prior_future
            continuity = continuity_of_lease(repo, future)
            return [PendingReconciliation(
                unit_id=analysis.unit_id,
                unit_number=analysis.unit_number,
                scenario=analysis.scenario,
                target=ReconciliationTarget.CURRENT,
                lease_id=analysis.new_current.id,
                continuity_id=continuity.id if continuity else None,
                match_type=match_leases(future, analysis.new_current).match_type,
            )]

        case InheritanceScenario.NEW_UNIT:
            return []


# =============================================================================
# Human decisions
# =============================================================================


def _continuity_source(repo: ComplianceRepository, continuity: VerificationContinuity, target: Lease) -> Lease:
    """Lease whose state a continuity stands for, other than ``target``.

    A future lease promoted unchanged shares its continuity with the new
    current lease, so the target's own snapshots are skipped.
    """
    master = continuity.master_verification
    if master is not None and master.lease_id != target.id:
        return repo.lease_of_verification(master)
    candidates = [s for s in continuity.snapshots if s.lease is not None and s.lease_id != target.id]
    if candidates:
        return max(candidates, key=lambda s: s.created_at).lease
    raise IntegrityViolation(f"Continuity {continuity.id} has no lease to inherit from")


def _retire_lease(
    repo: ComplianceRepository,
    lease: Lease,
    successor: IncomeVerification | None,
    changed_by: str,
    reason: str,
) -> None:
    """Delete a superseded FUTURE lease, repointing continuities that mastered it."""
    for verification in lease.verifications:
        for continuity in repo.continuities_mastered_by(verification.id):
            if successor is None:
                repo.log_change(
                    "verification_continuities", continuity.id, "reconcile", changed_by,
                    field_name="master_verification_id", old_value=verification.id,
                    new_value=None, reason=reason,
                )
                continuity.master_verification = None
            else:
                replace_master(repo, continuity, successor, changed_by, reason)
    repo.log_change("leases", lease.id, "delete", changed_by, reason=reason)
    repo.delete(lease)
    repo.flush()


def _accept_as_current(repo, lease, decision, changed_by) -> IncomeVerification:
    continuity = repo.require(VerificationContinuity, decision.continuity_id)
    source = _continuity_source(repo, continuity, lease)
    verification = inherit_lease_state(repo, source, lease, changed_by)
    own = continuity_of_lease(repo, lease)
    if own is not None:
        replace_master(repo, own, verification, changed_by, "future lease accepted as current")
    discrepancy.flag_lease(repo, lease)

    if source.tenancy is None:
        _retire_lease(repo, source, verification, changed_by, f"promoted to current lease {lease.id}")
    return verification


def _accept_future(repo, lease, decision, changed_by) -> IncomeVerification:
    """Keep the prior future lease as the unit's future lease in the latest snapshot."""
    unit = repo.unit_of_lease(lease)
    rent_roll = repo.latest_rent_roll(unit.property_id)
    if rent_roll is None:
        raise IntegrityViolation(f"Property {unit.property_id} has no snapshot")

    newer = [
        f for f in repo.future_leases(unit)
        if f.id != lease.id and any(s.rent_roll_id == rent_roll.id for s in f.verification_snapshots)
    ]
    if not newer:
        continuity = record_continuity(repo, lease, rent_roll)
        verification = repo.verification_of_lease(lease)
        if verification.status == VerificationStatus.FINALIZED:
            claim_master(continuity, verification)
        discrepancy.flag_lease(repo, lease)
        return verification

    successor = newer[-1]
    verification = inherit_lease_state(repo, lease, successor, changed_by)
    own = continuity_of_lease(repo, successor)
    if own is not None:
        replace_master(repo, own, verification, changed_by, "future lease carried forward")
    discrepancy.flag_lease(repo, successor)
    _retire_lease(repo, lease, verification, changed_by, f"carried forward into lease {successor.id}")
    return verification


def apply_reconciliation_decision(
    repo: ComplianceRepository,
    decision: ReconciliationDecision,
    property_id: UUID | None = None,
) -> Lease | None:
    """Apply one accept/reject answer.

    With ``property_id`` the lease must belong to that property. Returns the
    lease that now holds the state, or None when the decision dropped a
    future lease.
    """
    with repo.transaction():
        lease = repo.require(Lease, decision.lease_id)
        if property_id is not None and repo.unit_of_lease(lease).property_id != property_id:
            raise NotFound("Lease", lease.id)
        changed_by = f"user:{decision.decided_by}"
        repo.log_change(
            "leases", lease.id, "reconcile", changed_by,
            field_name="reconciliation",
            new_value=f"{decision.action.value}:{decision.target.value}",
            reason=f"continuity {decision.continuity_id}" if decision.continuity_id else None,
        )

        match (decision.target, decision.action):
            case (ReconciliationTarget.CURRENT, ReconciliationAction.ACCEPT):
                if lease.tenancy is None:
                    raise IntegrityViolation(f"Lease {lease.id} is not a current lease")
                _accept_as_current(repo, lease, decision, changed_by)
                result = lease
            case (ReconciliationTarget.CURRENT, ReconciliationAction.REJECT):
                logger.info(f"Lease {lease.id} kept fresh")
                result = lease
            case (ReconciliationTarget.FUTURE, ReconciliationAction.ACCEPT):
                if lease.tenancy is not None:
                    raise IntegrityViolation(f"Lease {lease.id} is not a future lease")
                verification = _accept_future(repo, lease, decision, changed_by)
                result = repo.lease_of_verification(verification)
            case (ReconciliationTarget.FUTURE, ReconciliationAction.REJECT):
                if lease.tenancy is not None:
                    raise IntegrityViolation(f"Lease {lease.id} is not a future lease")
                _retire_lease(repo, lease, None, changed_by, "future lease rejected")
                result = None

        logger.info(f"Reconciliation {decision.action.value}/{decision.target.value} on lease {decision.lease_id}")
        return result
