"""Pydantic models for raw rent-roll rows -> normalized snapshot rows.

These models encode the validation and normalization rules applied to a
rent-roll upload before it touches the database. The Field descriptions
document the expected transformation.

Schema Engineering Philosophy:
- Intelligence lives in type hints and validators, not in the ingest loop
- Field(description=...) documents the expected transformation
- Validators auto-fix common issues and record what they fixed
"""

import re
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .errors import RecoverableDataError
from .schemas import ZERO, InheritanceScenario, LeaseKind, PendingReconciliation, coerce_money


# =============================================================================
# Field Normalization
# =============================================================================

UNIT_PREFIX = re.compile(r"^(UNIT|APT|APARTMENT|STE|SUITE|#)\.?\s*", re.IGNORECASE)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y")


def normalize_unit_number(raw: str | None) -> str | None:
    """'Unit 0101' -> '101', ' #4b ' -> '4B'."""
    if raw is None:
        return None
    text = UNIT_PREFIX.sub("", str(raw).strip()).strip().upper()
    if text.isdigit():
        text = text.lstrip("0") or "0"
    return text or None


def normalize_person_name(raw: str | None) -> str | None:
    """Collapse internal whitespace. Case is preserved for display."""
    if raw is None:
        return None
    text = " ".join(str(raw).split())
    return text or None


def parse_date(raw) -> date | None:
    if raw is None or isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognized date: {raw!r}")


def parse_lease_kind(raw: str | None) -> LeaseKind:
    if raw is None or not str(raw).strip():
        return LeaseKind.CURRENT
    text = str(raw).strip().upper()
    if text in ("FUTURE", "PENDING", "UPCOMING", "APPLICANT"):
        return LeaseKind.FUTURE
    return LeaseKind.CURRENT


# =============================================================================
# Raw -> Normalized: Rent-Roll Row
# =============================================================================


class RawRentRollRow(BaseModel):
    """One row of a rent-roll upload exactly as the tabular reader produced it."""

    unit: str | int | None = None
    resident_name: str | None = None
    declared_income: str | int | float | Decimal | None = None
    lease_start: str | date | None = None
    lease_end: str | date | None = None
    rent: str | int | float | Decimal | None = None
    lease_kind: str | None = None


class RentRollRow(BaseModel):
    """Validated snapshot row.

    A row with no resident_name describes a unit with no one on the lease
    (a vacant unit that still belongs to the property).
    """

    unit_number: str = Field(
        min_length=1,
        description="Unit number with prefixes and leading zeros stripped"
    )
    resident_name: str | None = Field(
        default=None,
        description="Whitespace-collapsed resident name"
    )
    declared_income: Decimal = Field(
        default=ZERO,
        description="Annual income per the property's records. Blank -> 0"
    )
    lease_start_date: date | None = None
    lease_end_date: date | None = None
    lease_rent: Decimal | None = None
    lease_kind: LeaseKind = Field(
        default=LeaseKind.CURRENT,
        description="FUTURE rows create leases with no Tenancy"
    )
    validation_notes: str | None = Field(
        default=None,
        description="Notes about data quality issues or transformations applied"
    )

    @field_validator("unit_number", mode="before")
    @classmethod
    def normalize_unit(cls, v):
        return normalize_unit_number(v)

    @field_validator("resident_name", mode="before")
    @classmethod
    def normalize_name(cls, v):
        return normalize_person_name(v)

    @classmethod
    def from_raw(cls, raw: RawRentRollRow) -> "RentRollRow | None":
        """Normalize a raw row.

        Returns None if the row has no usable unit number.
        """
        if normalize_unit_number(None if raw.unit is None else str(raw.unit)) is None:
            return None

        notes = []

        declared = ZERO
        try:
            declared = coerce_money(raw.declared_income, "declared_income")
        except RecoverableDataError:
            if raw.declared_income not in (None, ""):
                notes.append(f"Unparseable declared income {raw.declared_income!r} set to 0")
            else:
                notes.append("Blank declared income set to 0")

        rent = None
        if raw.rent not in (None, ""):
            try:
                rent = coerce_money(raw.rent, "rent")
            except RecoverableDataError:
                notes.append(f"Unparseable rent {raw.rent!r} dropped")

        start = parse_date(raw.lease_start)
        end = parse_date(raw.lease_end)
        if start and end and end < start:
            notes.append("Lease end precedes lease start")

        return cls(
            unit_number=str(raw.unit),
            resident_name=raw.resident_name,
            declared_income=declared,
            lease_start_date=start,
            lease_end_date=end,
            lease_rent=rent,
            lease_kind=parse_lease_kind(raw.lease_kind),
            validation_notes="; ".join(notes) if notes else None,
        )

    @property
    def lease_key(self) -> tuple:
        """Rows sharing this key belong to one lease."""
        return (self.unit_number, self.lease_kind, self.lease_start_date,
                self.lease_end_date, self.lease_rent)


class LeaseDraft(BaseModel):
    """Rows of one snapshot grouped into a single lease."""

    unit_number: str
    kind: LeaseKind
    lease_start_date: date | None = None
    lease_end_date: date | None = None
    lease_rent: Decimal | None = None
    residents: list[tuple[str, Decimal]] = Field(
        default_factory=list,
        description="(name, declared income) pairs"
    )


def group_leases(rows: list[RentRollRow]) -> tuple[list[LeaseDraft], set[str]]:
    """Group normalized rows into lease drafts.

    Returns the drafts and the set of every unit number seen, including
    units whose rows carry no resident.
    """
    drafts: dict[tuple, LeaseDraft] = {}
    units: set[str] = set()
    for row in rows:
        units.add(row.unit_number)
        if row.resident_name is None:
            continue
        draft = drafts.get(row.lease_key)
        if draft is None:
            draft = LeaseDraft(
                unit_number=row.unit_number,
                kind=row.lease_kind,
                lease_start_date=row.lease_start_date,
                lease_end_date=row.lease_end_date,
                lease_rent=row.lease_rent,
            )
            drafts[row.lease_key] = draft
        draft.residents.append((row.resident_name, row.declared_income))
    return list(drafts.values()), units


# =============================================================================
# Ingestion Statistics
# =============================================================================


class IngestionStats(BaseModel):
    """Statistics from one rent-roll ingestion run."""

    source: str = Field(default="upload", description="File name or 'upload'")
    rows_processed: int = 0
    rows_valid: int = 0
    rows_skipped: int = 0
    units_created: int = 0
    current_leases: int = 0
    future_leases: int = 0
    residents_created: int = 0
    auto_inherited: int = 0
    awaiting_decision: int = 0
    discrepancies_flagged: int = 0
    validation_errors: list[str] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.rows_processed == 0:
            return 0.0
        return self.rows_valid / self.rows_processed


class RentRollUpload(BaseModel):
    """A snapshot as delivered by the tabular reader."""

    snapshot_date: date = Field(description="Date the rent roll describes")
    filename: str | None = Field(default=None, description="Original upload name, for provenance")
    rows: list[RawRentRollRow] = Field(default_factory=list)


class IngestionResult(BaseModel):
    rent_roll_id: UUID
    stats: IngestionStats
    scenarios: dict[str, InheritanceScenario] = Field(
        default_factory=dict,
        description="Inheritance scenario per unit number"
    )
    pending_reconciliations: list[PendingReconciliation] = Field(default_factory=list)
