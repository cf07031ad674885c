"""SQLAlchemy models for income-eligibility compliance tracking.

Data Architecture Overview:
- Property owns Units; Units are stable identities across every snapshot
- RentRoll is one dated snapshot upload; Tenancy joins a Lease to a RentRoll
- A Lease with a Tenancy is CURRENT for that snapshot, a Lease without one is FUTURE
- Residents carry three income figures that are never conflated:
  declared (snapshot-supplied), calculated (engine-computed) and the
  finalization flag that makes the calculated figure authoritative
- All reconciliation decisions are tracked via ChangeLog audit trail

Key Concepts:
- IncomeVerification: lease-level lifecycle, IN_PROGRESS <-> FINALIZED
- VerificationContinuity: (property, unit, structural signature) -> master
  verification, the mechanism that survives lease-record churn across snapshots
- VerificationSnapshot: which lease used which continuity in which snapshot
- OverrideRequest: human-adjudication ticket

References:
- See compliance/schemas.py for enum value sets and contract models
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    DocumentStatus,
    DocumentType,
    LeaseKind,
    OverrideRequestStatus,
    OverrideRequestType,
    VerificationStatus,
)

MONEY = Numeric(12, 2)


class Property(Base):
    """An affordable-housing property under compliance monitoring."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    owner_id: Mapped[str | None] = mapped_column(String(100), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    units: Mapped[list["Unit"]] = relationship(
        "Unit", back_populates="property", cascade="all, delete-orphan"
    )
    rent_rolls: Mapped[list["RentRoll"]] = relationship(
        "RentRoll", back_populates="property", cascade="all, delete-orphan",
        order_by="RentRoll.snapshot_date"
    )
    continuities: Mapped[list["VerificationContinuity"]] = relationship(
        "VerificationContinuity", back_populates="property", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Property {self.name}>"


class Unit(Base):
    """A rentable unit. Outlives any individual lease or snapshot."""

    __tablename__ = "units"
    __table_args__ = (
        UniqueConstraint("property_id", "unit_number", name="uq_units_property_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    unit_number: Mapped[str] = mapped_column(
        String(20), nullable=False,
        doc="Unit number as normalized during rent-roll ingestion"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    property: Mapped["Property"] = relationship("Property", back_populates="units")
    leases: Mapped[list["Lease"]] = relationship(
        "Lease", back_populates="unit", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Unit {self.unit_number}>"


class RentRoll(Base):
    """A dated snapshot of every unit's tenancy and declared income."""

    __tablename__ = "rent_rolls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    filename: Mapped[str | None] = mapped_column(Text)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    property: Mapped["Property"] = relationship("Property", back_populates="rent_rolls")
    tenancies: Mapped[list["Tenancy"]] = relationship(
        "Tenancy", back_populates="rent_roll", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<RentRoll {self.snapshot_date}>"


class Lease(Base):
    """A lease on a unit with its resident roster.

    kind mirrors the Tenancy join: CURRENT leases are backed by a Tenancy to
    the snapshot they came from, FUTURE leases (not yet effective) have none.
    """

    __tablename__ = "leases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(200))
    kind: Mapped[LeaseKind] = mapped_column(
        SQLEnum(LeaseKind), default=LeaseKind.CURRENT, nullable=False
    )
    lease_start_date: Mapped[date | None] = mapped_column(Date)
    lease_end_date: Mapped[date | None] = mapped_column(Date)
    lease_rent: Mapped[Decimal | None] = mapped_column(MONEY)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    unit: Mapped["Unit"] = relationship("Unit", back_populates="leases")
    tenancy: Mapped["Tenancy | None"] = relationship(
        "Tenancy", back_populates="lease", uselist=False, cascade="all, delete-orphan"
    )
    residents: Mapped[list["Resident"]] = relationship(
        "Resident", back_populates="lease", cascade="all, delete-orphan",
        order_by="Resident.name"
    )
    verifications: Mapped[list["IncomeVerification"]] = relationship(
        "IncomeVerification", back_populates="lease", cascade="all, delete-orphan",
        order_by="IncomeVerification.created_at"
    )
    verification_snapshots: Mapped[list["VerificationSnapshot"]] = relationship(
        "VerificationSnapshot", back_populates="lease", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Lease {self.kind.value} {self.lease_start_date}..{self.lease_end_date}>"

    @property
    def active_verification(self) -> "IncomeVerification | None":
        """Most recently created verification, the only one the engine acts on."""
        return self.verifications[-1] if self.verifications else None


class Tenancy(Base):
    """Marks a Lease as the one active for a specific snapshot."""

    __tablename__ = "tenancies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, unique=True
    )
    rent_roll_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rent_rolls.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="tenancy")
    rent_roll: Mapped["RentRoll"] = relationship("RentRoll", back_populates="tenancies")


class Resident(Base):
    """A person on a lease roster."""

    __tablename__ = "residents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    declared_income: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00"), nullable=False,
        doc="Annual income from the property's own records. Only changed by an "
            "accepted reconciliation decision."
    )
    original_declared_income: Mapped[Decimal | None] = mapped_column(
        MONEY,
        doc="Declared income exactly as the snapshot supplied it"
    )
    calculated_income: Mapped[Decimal | None] = mapped_column(
        MONEY,
        doc="Engine-computed annualized income from COMPLETED documents"
    )
    income_finalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime)
    has_no_income: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        doc="Explicit zero-income attestation, bypasses document requirements"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="residents")
    documents: Mapped[list["IncomeDocument"]] = relationship(
        "IncomeDocument", back_populates="resident", cascade="all, delete-orphan",
        order_by="IncomeDocument.upload_date"
    )

    def __repr__(self) -> str:
        return f"<Resident {self.name}>"


class IncomeDocument(Base):
    """An income-supporting document with fields from the extraction boundary."""

    __tablename__ = "income_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    resident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("residents.id"), nullable=False, index=True
    )
    verification_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("income_verifications.id"), index=True
    )
    document_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        SQLEnum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False
    )
    document_date: Mapped[date | None] = mapped_column(Date)
    upload_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    file_path: Mapped[str | None] = mapped_column(
        Text,
        doc="Storage location. Inherited documents share the original's path."
    )
    source_document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        doc="Document this row references when it was carried forward"
    )

    # Paystub fields
    gross_pay_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    pay_frequency: Mapped[str | None] = mapped_column(String(20))

    # W2 fields
    box1_wages: Mapped[Decimal | None] = mapped_column(MONEY)
    box3_ss_wages: Mapped[Decimal | None] = mapped_column(MONEY)
    box5_med_wages: Mapped[Decimal | None] = mapped_column(MONEY)
    tax_year: Mapped[int | None] = mapped_column(Integer)

    # SOCIAL_SECURITY / SSA_1099 / OTHER
    calculated_annualized_income: Mapped[Decimal | None] = mapped_column(MONEY)

    employee_name: Mapped[str | None] = mapped_column(String(200))
    employer_name: Mapped[str | None] = mapped_column(String(200))

    # Relationships
    resident: Mapped["Resident"] = relationship("Resident", back_populates="documents")
    verification: Mapped["IncomeVerification | None"] = relationship(
        "IncomeVerification", back_populates="documents"
    )

    def __repr__(self) -> str:
        return f"<IncomeDocument {self.document_type.value} {self.status.value}>"


class IncomeVerification(Base):
    """Lease-level verification lifecycle."""

    __tablename__ = "income_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, index=True
    )
    status: Mapped[VerificationStatus] = mapped_column(
        SQLEnum(VerificationStatus), default=VerificationStatus.IN_PROGRESS, nullable=False
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime)
    verified_income_total: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="verifications")
    documents: Mapped[list["IncomeDocument"]] = relationship(
        "IncomeDocument", back_populates="verification"
    )

    def __repr__(self) -> str:
        return f"<IncomeVerification {self.status.value} {self.verified_income_total}>"


class VerificationContinuity(Base):
    """Structural identity of a lease across snapshots.

    Keyed by (property, unit, lease signature). master_verification_id is
    only ever replaced through an explicit reconciliation decision.
    """

    __tablename__ = "verification_continuities"
    __table_args__ = (
        Index("ix_continuity_lookup", "property_id", "unit_id", "lease_signature"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False
    )
    lease_signature: Mapped[str] = mapped_column(String(64), nullable=False)
    master_verification_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("income_verifications.id")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    property: Mapped["Property"] = relationship("Property", back_populates="continuities")
    master_verification: Mapped["IncomeVerification | None"] = relationship(
        "IncomeVerification", foreign_keys=[master_verification_id]
    )
    snapshots: Mapped[list["VerificationSnapshot"]] = relationship(
        "VerificationSnapshot", back_populates="continuity", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<VerificationContinuity {self.lease_signature[:8]}>"


class VerificationSnapshot(Base):
    """Records that a lease in a snapshot resolved to a continuity."""

    __tablename__ = "verification_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    continuity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("verification_continuities.id"), nullable=False, index=True
    )
    rent_roll_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rent_rolls.id"), nullable=False
    )
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    continuity: Mapped["VerificationContinuity"] = relationship(
        "VerificationContinuity", back_populates="snapshots"
    )
    lease: Mapped["Lease"] = relationship("Lease", back_populates="verification_snapshots")


class OverrideRequest(Base):
    """A human-adjudication ticket.

    Which reference columns are populated depends on the request type, see
    OverrideContext in compliance/schemas.py.
    """

    __tablename__ = "override_requests"
    __table_args__ = (
        Index("ix_override_requests_status_type", "status", "type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[OverrideRequestType] = mapped_column(SQLEnum(OverrideRequestType), nullable=False)
    status: Mapped[OverrideRequestStatus] = mapped_column(
        SQLEnum(OverrideRequestStatus), default=OverrideRequestStatus.PENDING, nullable=False
    )
    user_explanation: Mapped[str] = mapped_column(Text, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text)

    property_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    unit_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    resident_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    verification_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    document_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    requester_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reviewer_id: Mapped[str | None] = mapped_column(String(100))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<OverrideRequest {self.type.value} {self.status.value}>"


class ChangeLog(Base):
    """Audit trail for reconciliation decisions and admin resolutions.

    Tracks what changed (table, record, field, values), who made the change
    (system or user) and why. Written in the same transaction as the change.
    """

    __tablename__ = "change_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # What changed
    table_name: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        doc="Table that was modified"
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, index=True,
        doc="ID of the modified record"
    )
    change_type: Mapped[str] = mapped_column(
        String(30), nullable=False,
        doc="Type of change: update, delete, resolve, reconcile"
    )
    field_name: Mapped[str | None] = mapped_column(String(50))
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)

    # Who/why
    changed_by: Mapped[str] = mapped_column(
        String(100), nullable=False,
        doc="Who made the change: 'system:inheritance', 'user:<id>', etc."
    )
    change_reason: Mapped[str | None] = mapped_column(Text)

    # When
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_change_log_table_record", "table_name", "record_id"),
    )

    def __repr__(self) -> str:
        return f"<ChangeLog {self.change_type} {self.table_name}.{self.field_name}>"
