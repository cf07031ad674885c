"""Recognize the same real-world lease across snapshots.

A lease's structural signature hashes (unit, start, end, rent, roster) and
leaves income out, so a renewed upload of an unchanged lease
maps to the same VerificationContinuity even though every record is new.
The full signature adds declared incomes and tells "unchanged" apart from
"unchanged except income".
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field

from . import config
from .models import IncomeVerification, Lease, RentRoll, VerificationContinuity, VerificationSnapshot
from .repository import ComplianceRepository
from .schemas import MatchType

logger = logging.getLogger(__name__)


# =============================================================================
# Names
# =============================================================================


def normalize_name(name: str) -> str:
    """Case-insensitive, trimmed, single-spaced."""
    return " ".join(name.split()).lower()


def name_similarity(a: str, b: str) -> float:
    """Jaccard index over the character sets of two names, spaces ignored."""
    left = set(normalize_name(a).replace(" ", ""))
    right = set(normalize_name(b).replace(" ", ""))
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


def names_match(a: str, b: str, threshold: float | None = None) -> bool:
    if normalize_name(a) == normalize_name(b):
        return True
    if threshold is None:
        threshold = config.NAME_SIMILARITY_THRESHOLD
    return name_similarity(a, b) >= threshold


# =============================================================================
# Signatures
# =============================================================================


def _digest(payload: dict) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def _structure(lease: Lease) -> dict:
    return {
        "unit": str(lease.unit_id),
        "start": lease.lease_start_date.isoformat() if lease.lease_start_date else None,
        "end": lease.lease_end_date.isoformat() if lease.lease_end_date else None,
        "rent": f"{lease.lease_rent:.2f}" if lease.lease_rent is not None else None,
        "residents": sorted(normalize_name(r.name) for r in lease.residents),
    }


def structural_signature(lease: Lease) -> str:
    return _digest(_structure(lease))


def full_signature(lease: Lease) -> str:
    payload = _structure(lease)
    payload["incomes"] = sorted(
        [normalize_name(r.name), f"{r.declared_income:.2f}"] for r in lease.residents
    )
    return _digest(payload)


# =============================================================================
# Matching
# =============================================================================


@dataclass
class RosterMatch:
    continuing: list[tuple[str, str]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)

    @property
    def overlap(self) -> float:
        size = max(len(self.continuing) + len(self.removed), len(self.continuing) + len(self.added))
        return len(self.continuing) / size if size else 0.0


def match_rosters(prior_names: list[str], new_names: list[str]) -> RosterMatch:
    """Pair residents across two rosters.

    Exact normalized matches are paired first, then the remaining names by
    best character similarity above the configured threshold.
    """
    result = RosterMatch()
    unmatched_new = list(new_names)
    leftover_prior = []

    for prior in prior_names:
        exact = next((n for n in unmatched_new if normalize_name(n) == normalize_name(prior)), None)
        if exact is None:
            leftover_prior.append(prior)
        else:
            result.continuing.append((prior, exact))
            unmatched_new.remove(exact)

    for prior in leftover_prior:
        scored = [(name_similarity(prior, n), n) for n in unmatched_new]
        scored = [(score, n) for score, n in scored if score >= config.NAME_SIMILARITY_THRESHOLD]
        if scored:
            _, best = max(scored, key=lambda pair: pair[0])
            result.continuing.append((prior, best))
            unmatched_new.remove(best)
        else:
            result.removed.append(prior)

    result.added = unmatched_new
    return result


@dataclass
class LeaseMatch:
    match_type: MatchType
    roster: RosterMatch
    same_dates: bool


def match_leases(prior: Lease, new: Lease, overlap_threshold: float | None = None) -> LeaseMatch:
    """Compare two leases on the same unit.

    EXACT needs identical dates and an identical normalized roster.
    PARTIAL_RESIDENTS needs identical dates and a continuing share of the
    roster at or above the overlap threshold.
    """
    if overlap_threshold is None:
        overlap_threshold = config.ROSTER_OVERLAP_THRESHOLD

    same_dates = (
        prior.lease_start_date == new.lease_start_date
        and prior.lease_end_date == new.lease_end_date
    )
    roster = match_rosters([r.name for r in prior.residents], [r.name for r in new.residents])
    if not same_dates:
        return LeaseMatch(MatchType.NONE, roster, same_dates)

    prior_set = sorted(normalize_name(r.name) for r in prior.residents)
    new_set = sorted(normalize_name(r.name) for r in new.residents)
    if prior_set == new_set:
        return LeaseMatch(MatchType.EXACT, roster, same_dates)
    if roster.continuing and roster.overlap >= overlap_threshold:
        return LeaseMatch(MatchType.PARTIAL_RESIDENTS, roster, same_dates)
    return LeaseMatch(MatchType.NONE, roster, same_dates)


# =============================================================================
# Continuity records
# =============================================================================


def record_continuity(repo: ComplianceRepository, lease: Lease, rent_roll: RentRoll) -> VerificationContinuity:
    """Find or create the lease's continuity and note its use in this snapshot."""
    unit = repo.unit_of_lease(lease)
    signature = structural_signature(lease)
    continuity = repo.find_continuity(unit.property_id, unit.id, signature)
    if continuity is None:
        continuity = repo.add(VerificationContinuity(
            property_id=unit.property_id,
            unit_id=unit.id,
            lease_signature=signature,
        ))
        logger.debug(f"New continuity {signature[:8]} for unit {unit.unit_number}")
    else:
        logger.debug(f"Reusing continuity {signature[:8]} for unit {unit.unit_number}")

    continuity.snapshots.append(VerificationSnapshot(rent_roll_id=rent_roll.id, lease=lease))
    repo.flush()
    return continuity


def continuity_of_lease(repo: ComplianceRepository, lease: Lease) -> VerificationContinuity | None:
    """Most recently recorded continuity for a lease."""
    if lease.verification_snapshots:
        latest = max(lease.verification_snapshots, key=lambda s: s.created_at)
        return latest.continuity
    unit = repo.unit_of_lease(lease)
    return repo.find_continuity(unit.property_id, unit.id, structural_signature(lease))


def claim_master(continuity: VerificationContinuity, verification: IncomeVerification) -> bool:
    """Set the master verification if none is set yet."""
    if continuity.master_verification_id is not None or continuity.master_verification is not None:
        return False
    continuity.master_verification = verification
    return True


def replace_master(
    repo: ComplianceRepository,
    continuity: VerificationContinuity,
    verification: IncomeVerification,
    changed_by: str,
    reason: str,
) -> None:
    """Point the continuity at a new master. Only reconciliation decisions call this."""
    old = continuity.master_verification_id
    continuity.master_verification = verification
    repo.flush()
    repo.log_change(
        "verification_continuities", continuity.id, "reconcile", changed_by,
        field_name="master_verification_id", old_value=old, new_value=verification.id,
        reason=reason,
    )
