"""Persistence access for the compliance engine.

Every engine component receives a ComplianceRepository instead of reaching
for a global session. Lookups that traverse relationships are validated and
raise IntegrityViolation when the chain is broken.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import IntegrityViolation, NotFound
from .models import (
    ChangeLog,
    IncomeDocument,
    IncomeVerification,
    Lease,
    OverrideRequest,
    Property,
    RentRoll,
    Resident,
    Tenancy,
    Unit,
    VerificationContinuity,
)
from .schemas import LeaseKind, OverrideRequestStatus, OverrideRequestType

logger = logging.getLogger(__name__)


class ComplianceRepository:
    """Narrow read/write surface over one SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session
        self._depth = 0

    @contextmanager
    def transaction(self):
        """Run the enclosed block atomically.

        Nested calls join the outermost transaction. The outermost block
        commits on success and rolls everything back on any exception.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth = 0

    # -------------------------------------------------------------------------
    # Generic
    # -------------------------------------------------------------------------

    def add(self, obj):
        self.session.add(obj)
        return obj

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    def require(self, model, entity_id: UUID):
        """Fetch by primary key or raise NotFound."""
        obj = self.session.get(model, entity_id)
        if obj is None:
            raise NotFound(model.__name__, entity_id)
        return obj

    # -------------------------------------------------------------------------
    # Validated traversal
    # -------------------------------------------------------------------------

    def lease_of_resident(self, resident: Resident) -> Lease:
        if resident.lease is None:
            raise IntegrityViolation(f"Resident {resident.id} references missing lease {resident.lease_id}")
        return resident.lease

    def resident_of_document(self, document: IncomeDocument) -> Resident:
        if document.resident is None:
            raise IntegrityViolation(
                f"Document {document.id} references missing resident {document.resident_id}"
            )
        return document.resident

    def unit_of_lease(self, lease: Lease) -> Unit:
        if lease.unit is None:
            raise IntegrityViolation(f"Lease {lease.id} references missing unit {lease.unit_id}")
        return lease.unit

    def property_of_unit(self, unit: Unit) -> Property:
        if unit.property is None:
            raise IntegrityViolation(f"Unit {unit.id} references missing property {unit.property_id}")
        return unit.property

    def lease_of_verification(self, verification: IncomeVerification) -> Lease:
        if verification.lease is None:
            raise IntegrityViolation(
                f"Verification {verification.id} references missing lease {verification.lease_id}"
            )
        return verification.lease

    def verification_of_lease(self, lease: Lease) -> IncomeVerification:
        """Active verification for a lease, created IN_PROGRESS when absent."""
        verification = lease.active_verification
        if verification is None:
            verification = IncomeVerification(lease=lease)
            self.add(verification)
            self.flush()
            logger.debug(f"Opened verification for lease {lease.id}")
        return verification

    # -------------------------------------------------------------------------
    # Snapshots and leases
    # -------------------------------------------------------------------------

    def latest_rent_roll(self, property_id: UUID) -> RentRoll | None:
        stmt = (
            select(RentRoll)
            .where(RentRoll.property_id == property_id)
            .order_by(RentRoll.snapshot_date.desc(), RentRoll.uploaded_at.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def unit_by_number(self, property_id: UUID, unit_number: str) -> Unit | None:
        stmt = select(Unit).where(Unit.property_id == property_id, Unit.unit_number == unit_number)
        return self.session.scalars(stmt).first()

    def units_for_property(self, property_id: UUID) -> list[Unit]:
        stmt = select(Unit).where(Unit.property_id == property_id).order_by(Unit.unit_number)
        return list(self.session.scalars(stmt))

    def current_lease(self, unit: Unit, rent_roll: RentRoll | None) -> Lease | None:
        """The lease backed by a Tenancy to the given snapshot, if any."""
        if rent_roll is None:
            return None
        stmt = (
            select(Lease)
            .join(Tenancy, Tenancy.lease_id == Lease.id)
            .where(Lease.unit_id == unit.id, Tenancy.rent_roll_id == rent_roll.id)
        )
        leases = list(self.session.scalars(stmt))
        if len(leases) > 1:
            raise IntegrityViolation(
                f"Unit {unit.unit_number} has {len(leases)} current leases in snapshot {rent_roll.id}"
            )
        return leases[0] if leases else None

    def current_leases_for_unit(self, unit_id: UUID) -> list[Lease]:
        """Every Tenancy-backed lease of a unit, newest snapshot first."""
        stmt = (
            select(Lease)
            .join(Tenancy, Tenancy.lease_id == Lease.id)
            .join(RentRoll, RentRoll.id == Tenancy.rent_roll_id)
            .where(Lease.unit_id == unit_id)
            .order_by(RentRoll.snapshot_date.desc(), RentRoll.uploaded_at.desc())
        )
        return list(self.session.scalars(stmt))

    def future_leases(self, unit: Unit) -> list[Lease]:
        """FUTURE leases of a unit, oldest first."""
        stmt = (
            select(Lease)
            .outerjoin(Tenancy, Tenancy.lease_id == Lease.id)
            .where(Lease.unit_id == unit.id, Lease.kind == LeaseKind.FUTURE, Tenancy.id.is_(None))
            .order_by(Lease.created_at)
        )
        return list(self.session.scalars(stmt))

    # -------------------------------------------------------------------------
    # Continuity
    # -------------------------------------------------------------------------

    def find_continuity(self, property_id: UUID, unit_id: UUID, signature: str) -> VerificationContinuity | None:
        stmt = select(VerificationContinuity).where(
            VerificationContinuity.property_id == property_id,
            VerificationContinuity.unit_id == unit_id,
            VerificationContinuity.lease_signature == signature,
        )
        return self.session.scalars(stmt).first()

    def continuities_mastered_by(self, verification_id: UUID) -> list[VerificationContinuity]:
        stmt = select(VerificationContinuity).where(
            VerificationContinuity.master_verification_id == verification_id
        )
        return list(self.session.scalars(stmt))

    # -------------------------------------------------------------------------
    # Override requests
    # -------------------------------------------------------------------------

    def pending_override(
        self,
        request_type: OverrideRequestType,
        *,
        property_id: UUID | None = None,
        unit_id: UUID | None = None,
        resident_id: UUID | None = None,
        verification_id: UUID | None = None,
        document_id: UUID | None = None,
    ) -> OverrideRequest | None:
        """PENDING request matching the full reference tuple exactly."""
        stmt = select(OverrideRequest).where(
            OverrideRequest.type == request_type,
            OverrideRequest.status == OverrideRequestStatus.PENDING,
        )
        for column, value in (
            (OverrideRequest.property_id, property_id),
            (OverrideRequest.unit_id, unit_id),
            (OverrideRequest.resident_id, resident_id),
            (OverrideRequest.verification_id, verification_id),
            (OverrideRequest.document_id, document_id),
        ):
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        return self.session.scalars(stmt).first()

    def pending_overrides_for_unit(self, unit_id: UUID) -> list[OverrideRequest]:
        stmt = select(OverrideRequest).where(
            OverrideRequest.unit_id == unit_id,
            OverrideRequest.status == OverrideRequestStatus.PENDING,
        )
        return list(self.session.scalars(stmt))

    def overrides_for_document(self, document_id: UUID) -> list[OverrideRequest]:
        stmt = select(OverrideRequest).where(OverrideRequest.document_id == document_id)
        return list(self.session.scalars(stmt))

    def document_references(self, document_id: UUID) -> list[IncomeDocument]:
        """The originating document and every carried-forward copy of it."""
        document = self.session.get(IncomeDocument, document_id)
        origin = document_id
        if document is not None and document.source_document_id is not None:
            origin = document.source_document_id
        stmt = select(IncomeDocument).where(
            (IncomeDocument.id == origin) | (IncomeDocument.source_document_id == origin)
        )
        return list(self.session.scalars(stmt))

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def log_change(
        self,
        table_name: str,
        record_id: UUID,
        change_type: str,
        changed_by: str,
        field_name: str | None = None,
        old_value=None,
        new_value=None,
        reason: str | None = None,
    ) -> ChangeLog:
        entry = ChangeLog(
            table_name=table_name,
            record_id=record_id,
            change_type=change_type,
            field_name=field_name,
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
            changed_by=changed_by,
            change_reason=reason,
            changed_at=datetime.utcnow(),
        )
        return self.add(entry)
