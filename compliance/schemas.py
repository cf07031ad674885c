"""Pydantic validation schemas and value sets for the compliance engine.

Schema Engineering Philosophy:
- Enums are the canonical value sets shared by the ORM models and the API
- Field descriptions document the contract with the external collaborators
  (document extraction, rent-roll upload, the admin reconciliation surface)
- Validators coerce boundary data; they never invent income

References:
- compliance/models.py for persistence
- compliance/transformations.py for raw rent-roll rows
"""

import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import RecoverableDataError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class DocumentType(str, Enum):
    """Kinds of income-supporting documents the extraction step can produce."""

    PAYSTUB = "PAYSTUB"
    """Gross pay for one pay period plus the pay frequency."""

    W2 = "W2"
    """Annual wage statement. Box 1, 3 and 5 wages."""

    SOCIAL_SECURITY = "SOCIAL_SECURITY"
    """Benefit letter. Extraction supplies the annualized amount."""

    SSA_1099 = "SSA_1099"
    """Social Security benefit statement. Extraction supplies the annualized amount."""

    OTHER = "OTHER"
    """Any other income proof with an annualized amount."""

    BANK_STATEMENT = "BANK_STATEMENT"
    """Informational only. Never contributes to income."""

    OFFER_LETTER = "OFFER_LETTER"
    """Informational only. Never contributes to income."""


class DocumentStatus(str, Enum):
    """Processing state of a document as reported by extraction or review."""

    PENDING = "PENDING"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    """Extraction could not be trusted. Blocks finalization until reviewed."""
    COMPLETED = "COMPLETED"
    """Fields are trusted and participate in income calculation."""


class PayFrequency(str, Enum):
    """Paystub pay frequencies and their annualization multipliers."""

    WEEKLY = "WEEKLY"
    BI_WEEKLY = "BI-WEEKLY"
    SEMI_MONTHLY = "SEMI-MONTHLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @property
    def multiplier(self) -> int:
        return {
            PayFrequency.WEEKLY: 52,
            PayFrequency.BI_WEEKLY: 26,
            PayFrequency.SEMI_MONTHLY: 24,
            PayFrequency.MONTHLY: 12,
            PayFrequency.YEARLY: 1,
        }[self]

    @classmethod
    def parse(cls, raw: str | None) -> "PayFrequency | None":
        """Lenient parse: 'biweekly', 'Bi Weekly' and 'BI_WEEKLY' all map to BI-WEEKLY."""
        if not raw:
            return None
        key = "".join(ch for ch in str(raw).upper() if ch.isalpha())
        for member in cls:
            if key == member.value.replace("-", ""):
                return member
        return None


class LeaseKind(str, Enum):
    """CURRENT leases have a Tenancy to a snapshot, FUTURE leases do not."""

    CURRENT = "CURRENT"
    FUTURE = "FUTURE"


class VerificationStatus(str, Enum):
    """Lease-level verification lifecycle."""

    IN_PROGRESS = "IN_PROGRESS"
    FINALIZED = "FINALIZED"


class VerificationEvent(str, Enum):
    """Events accepted by the verification state machine."""

    FINALIZE = "FINALIZE"
    """Every resident is finalized or attested no income."""

    UNFINALIZE = "UNFINALIZE"
    """Explicit reopen. Cascades to every resident on the lease."""

    RESIDENT_REOPENED = "RESIDENT_REOPENED"
    """A resident lost finalization as a side effect. Does not cascade."""

    REFRESH = "REFRESH"
    """A finalized resident's income changed. Re-sum the lease total."""


class UnitVerificationStatus(str, Enum):
    """Displayed per-unit status. Derived, never stored."""

    VERIFIED = "Verified"
    NEEDS_INVESTIGATION = "Needs Investigation"
    OUT_OF_DATE = "Out of Date Income Documents"
    VACANT = "Vacant"
    IN_PROGRESS = "In Progress - Finalize to Process"
    WAITING_FOR_ADMIN = "Waiting for Admin Review"


class OverrideRequestType(str, Enum):
    """Escalation kinds. Each maps to one OverrideContext variant."""

    VALIDATION_EXCEPTION = "VALIDATION_EXCEPTION"
    INCOME_DISCREPANCY = "INCOME_DISCREPANCY"
    DOCUMENT_REVIEW = "DOCUMENT_REVIEW"
    PROPERTY_DELETION = "PROPERTY_DELETION"


class OverrideRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class OverrideDecision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


class MatchType(str, Enum):
    """Outcome of comparing two leases on the same unit."""

    EXACT = "EXACT"
    """Identical dates and identical normalized roster."""

    PARTIAL_RESIDENTS = "PARTIAL_RESIDENTS"
    """Identical dates, enough of the roster continues."""

    NONE = "NONE"


class InheritanceScenario(str, Enum):
    """Per-unit classification produced on snapshot ingestion."""

    AUTO_INHERIT_CURRENT = "AUTO_INHERIT_CURRENT"
    """Prior current lease unchanged, no prior future lease."""

    AUTO_INHERIT_CURRENT_ASK_FUTURE = "AUTO_INHERIT_CURRENT_ASK_FUTURE"
    """Prior current lease unchanged, a prior future lease awaits a decision."""

    ASK_FUTURE_TO_CURRENT = "ASK_FUTURE_TO_CURRENT"
    """Current lease changed, the prior future lease may have become current."""

    NEW_UNIT = "NEW_UNIT"
    """Nothing to carry forward."""


class ReconciliationAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class ReconciliationTarget(str, Enum):
    """Which slot a human reconciliation decision lands on."""

    CURRENT = "current"
    """Is the new current lease the same tenancy as the prior future lease?"""

    FUTURE = "future"
    """Should the prior future lease stay the unit's future lease?"""


class DiscrepancyScope(str, Enum):
    WITHIN_LEASE = "WITHIN_LEASE"
    CROSS_LEASE = "CROSS_LEASE"


class DiscrepancyResolution(str, Enum):
    ACCEPT_VERIFIED = "accept-verified"
    """Overwrite declared income with the verified figure."""

    ACCEPT_RENT_ROLL = "accept-rentroll"
    """Trust the property's records. Reopens the verified resident."""


# =============================================================================
# MONEY HELPERS
# =============================================================================


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def coerce_money(value, field: str) -> Decimal:
    """Convert a boundary value to Decimal cents.

    Accepts Decimals, ints, numeric strings and currency strings such as
    "$1,234.50". Raises RecoverableDataError for anything else, including
    None and blanks.
    """
    if value is None or isinstance(value, bool):
        raise RecoverableDataError(field, value)
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        text = str(value).strip().replace("$", "").replace(",", "")
        if text.startswith("(") and text.endswith(")"):
            text = f"-{text[1:-1]}"
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise RecoverableDataError(field, value) from None
    if not amount.is_finite():
        raise RecoverableDataError(field, value)
    return quantize_money(amount)


def optional_money(value, field: str) -> Decimal | None:
    """Like coerce_money but maps unusable values to None with a warning."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return coerce_money(value, field)
    except RecoverableDataError as exc:
        logger.warning(f"Dropping unusable boundary value: {exc}")
        return None


# =============================================================================
# BOUNDARY INPUT MODELS
# =============================================================================


class ExtractedDocument(BaseModel):
    """Typed fields returned by the document-extraction collaborator.

    The engine trusts these fields as input. Unparseable amounts are kept as
    missing so the income calculator treats them as a zero contribution.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    document_type: DocumentType = Field(description="Kind of document")
    status: DocumentStatus = Field(
        default=DocumentStatus.PENDING,
        description="Provisional status reported by extraction"
    )
    document_date: date | None = Field(default=None, description="Pay date or issue date")
    file_path: str | None = Field(default=None, description="Storage location of the upload")

    gross_pay_amount: Decimal | None = Field(
        default=None,
        description="PAYSTUB: gross pay for the period"
    )
    pay_frequency: str | None = Field(
        default=None,
        description="PAYSTUB: WEEKLY, BI-WEEKLY, SEMI-MONTHLY, MONTHLY or YEARLY",
        examples=["BI-WEEKLY"]
    )
    box1_wages: Decimal | None = Field(default=None, description="W2: wages, tips, other compensation")
    box3_ss_wages: Decimal | None = Field(default=None, description="W2: social security wages")
    box5_med_wages: Decimal | None = Field(default=None, description="W2: medicare wages and tips")
    tax_year: int | None = Field(default=None, ge=1900, le=2100)
    calculated_annualized_income: Decimal | None = Field(
        default=None,
        description="SOCIAL_SECURITY / SSA_1099 / OTHER: annualized amount precomputed by extraction"
    )
    employee_name: str | None = Field(default=None, max_length=200)
    employer_name: str | None = Field(default=None, max_length=200)

    @field_validator(
        "gross_pay_amount", "box1_wages", "box3_ss_wages", "box5_med_wages",
        "calculated_annualized_income",
        mode="before",
    )
    @classmethod
    def parse_amount(cls, v, info):
        return optional_money(v, info.field_name)

    @field_validator("pay_frequency")
    @classmethod
    def normalize_frequency(cls, v: str | None) -> str | None:
        """Store the canonical spelling when recognizable, the raw text otherwise."""
        if v is None:
            return None
        parsed = PayFrequency.parse(v)
        return parsed.value if parsed else v.upper()


class PropertyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    address: str | None = None
    owner_id: str | None = Field(default=None, max_length=100)


class ReconciliationDecision(BaseModel):
    """A discrete human decision from the admin-facing surface."""

    lease_id: UUID = Field(description="Lease the decision lands on")
    continuity_id: UUID | None = Field(
        default=None,
        description="Continuity whose verification would be inherited"
    )
    action: ReconciliationAction
    target: ReconciliationTarget
    decided_by: str = Field(default="admin", max_length=100)

    @model_validator(mode="after")
    def validate_action_requirements(self) -> "ReconciliationDecision":
        if self.action == ReconciliationAction.ACCEPT and self.target == ReconciliationTarget.CURRENT \
                and not self.continuity_id:
            raise ValueError("continuity_id is required when accepting a future lease as current")
        return self


class DiscrepancyResolutionRequest(BaseModel):
    resident_id: UUID = Field(description="Resident on the lease under review")
    resolution: DiscrepancyResolution
    source_resident_id: UUID | None = Field(
        default=None,
        description="Prior-lease resident for cross-lease discrepancies"
    )
    decided_by: str = Field(default="admin", max_length=100)


# =============================================================================
# OVERRIDE CONTEXTS: one variant per request type
# =============================================================================


class IncomeDiscrepancyContext(BaseModel):
    type: Literal["INCOME_DISCREPANCY"] = "INCOME_DISCREPANCY"
    unit_id: UUID
    resident_id: UUID
    verification_id: UUID | None = None


class DocumentReviewContext(BaseModel):
    type: Literal["DOCUMENT_REVIEW"] = "DOCUMENT_REVIEW"
    unit_id: UUID
    resident_id: UUID
    document_id: UUID


class ValidationExceptionContext(BaseModel):
    type: Literal["VALIDATION_EXCEPTION"] = "VALIDATION_EXCEPTION"
    unit_id: UUID
    verification_id: UUID


class PropertyDeletionContext(BaseModel):
    type: Literal["PROPERTY_DELETION"] = "PROPERTY_DELETION"
    property_id: UUID


OverrideContext = Annotated[
    Union[
        IncomeDiscrepancyContext,
        DocumentReviewContext,
        ValidationExceptionContext,
        PropertyDeletionContext,
    ],
    Field(discriminator="type"),
]


class OverrideRequestCreate(BaseModel):
    """A user asking for an exception."""

    model_config = ConfigDict(str_strip_whitespace=True)

    context: OverrideContext
    user_explanation: str = Field(
        description="Why the exception is needed. Checked against MIN_OVERRIDE_EXPLANATION on submit"
    )
    requester_id: str = Field(min_length=1, max_length=100)


class OverrideResolution(BaseModel):
    """Admin decision on a PENDING request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    decision: OverrideDecision
    admin_notes: str | None = Field(
        default=None,
        description="Required for both approve and deny"
    )
    reviewer_id: str = Field(min_length=1, max_length=100)


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class OverrideRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: OverrideRequestType
    status: OverrideRequestStatus
    user_explanation: str
    admin_notes: str | None = None
    property_id: UUID | None = None
    unit_id: UUID | None = None
    resident_id: UUID | None = None
    verification_id: UUID | None = None
    document_id: UUID | None = None
    requester_id: str
    reviewer_id: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    resident_id: UUID
    document_type: DocumentType
    status: DocumentStatus
    file_path: str | None = None
    upload_date: datetime


class ResidentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lease_id: UUID
    name: str
    declared_income: Decimal
    calculated_income: Decimal | None = None
    income_finalized: bool
    finalized_at: datetime | None = None
    has_no_income: bool


class VerificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lease_id: UUID
    status: VerificationStatus
    finalized_at: datetime | None = None
    verified_income_total: Decimal


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    address: str | None = None
    created_at: datetime


class UnitVerificationData(BaseModel):
    """Per-unit row of the verification-status query."""

    unit_id: UUID
    unit_number: str
    status: UnitVerificationStatus
    declared_income_total: Decimal = Field(description="Sum of declared income on the current lease")
    verified_income_total: Decimal = Field(description="Lease verification total, 0 until finalized")
    document_count: int
    last_update: datetime | None = None
    lease_id: UUID | None = None
    lease_start_date: date | None = None
    lease_end_date: date | None = None


class VerificationSummary(BaseModel):
    """Property-wide counts by displayed status."""

    verified: int = 0
    needs_investigation: int = 0
    out_of_date: int = 0
    vacant: int = 0
    in_progress: int = 0
    waiting_for_admin_review: int = 0

    def count(self, status: UnitVerificationStatus) -> None:
        attribute = {
            UnitVerificationStatus.VERIFIED: "verified",
            UnitVerificationStatus.NEEDS_INVESTIGATION: "needs_investigation",
            UnitVerificationStatus.OUT_OF_DATE: "out_of_date",
            UnitVerificationStatus.VACANT: "vacant",
            UnitVerificationStatus.IN_PROGRESS: "in_progress",
            UnitVerificationStatus.WAITING_FOR_ADMIN: "waiting_for_admin_review",
        }[status]
        setattr(self, attribute, getattr(self, attribute) + 1)


class PropertyVerificationReport(BaseModel):
    property_id: UUID
    rent_roll_id: UUID | None = None
    units: list[UnitVerificationData]
    summary: VerificationSummary


class DiscrepancyRow(BaseModel):
    """One flagged resident."""

    scope: DiscrepancyScope
    unit_id: UUID
    unit_number: str
    lease_id: UUID
    resident_id: UUID
    resident_name: str
    source_resident_id: UUID | None = Field(
        default=None,
        description="Prior-lease resident whose verified income was compared (cross-lease only)"
    )
    verified_income: Decimal
    declared_income: Decimal
    discrepancy: Decimal = Field(description="verified - declared")
    discrepancy_percentage: Decimal | None = Field(
        default=None,
        description="discrepancy / declared * 100, None when declared is 0"
    )
    lease_start_date: date | None = None
    lease_end_date: date | None = None


class PendingReconciliation(BaseModel):
    """A unit waiting on a human reconciliation decision."""

    unit_id: UUID
    unit_number: str
    scenario: InheritanceScenario
    target: ReconciliationTarget
    lease_id: UUID = Field(description="Lease the decision should be posted against")
    continuity_id: UUID | None = None
    match_type: MatchType = Field(description="How the two leases compared structurally")
