"""Override request queue.

Requests are created automatically by discrepancy detection and document
review, or manually by a user. Only an admin resolution moves a request out
of PENDING, and approval feeds back into the engine per request type.
"""

import logging
from datetime import datetime
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select

from . import config
from .errors import IntegrityViolation, NotFound, OverrideError
from .models import IncomeDocument, IncomeVerification, OverrideRequest, Property, Resident, Unit
from .repository import ComplianceRepository
from .schemas import (
    DocumentReviewContext,
    DocumentStatus,
    IncomeDiscrepancyContext,
    OverrideContext,
    OverrideDecision,
    OverrideRequestCreate,
    OverrideRequestStatus,
    OverrideRequestType,
    OverrideResolution,
    PropertyDeletionContext,
    ValidationExceptionContext,
)

logger = logging.getLogger(__name__)


def context_of(request: OverrideRequest) -> OverrideContext:
    """Rebuild the typed context from a stored request."""
    try:
        match request.type:
            case OverrideRequestType.INCOME_DISCREPANCY:
                return IncomeDiscrepancyContext(
                    unit_id=request.unit_id,
                    resident_id=request.resident_id,
                    verification_id=request.verification_id,
                )
            case OverrideRequestType.DOCUMENT_REVIEW:
                return DocumentReviewContext(
                    unit_id=request.unit_id,
                    resident_id=request.resident_id,
                    document_id=request.document_id,
                )
            case OverrideRequestType.VALIDATION_EXCEPTION:
                return ValidationExceptionContext(
                    unit_id=request.unit_id,
                    verification_id=request.verification_id,
                )
            case OverrideRequestType.PROPERTY_DELETION:
                return PropertyDeletionContext(property_id=request.property_id)
    except ValidationError as exc:
        raise IntegrityViolation(f"Override request {request.id} is missing references: {exc}") from exc
    raise IntegrityViolation(f"Override request {request.id} has unknown type {request.type}")


def _new_request(context, explanation: str, requester_id: str) -> OverrideRequest:
    return OverrideRequest(
        type=OverrideRequestType(context.type),
        status=OverrideRequestStatus.PENDING,
        user_explanation=explanation,
        requester_id=requester_id,
        **context.model_dump(exclude={"type"}),
    )


def _pending_duplicate(repo: ComplianceRepository, context) -> OverrideRequest | None:
    return repo.pending_override(OverrideRequestType(context.type), **context.model_dump(exclude={"type"}))


def create_auto_override(repo: ComplianceRepository, context, explanation: str) -> OverrideRequest:
    """Raise a system request unless an identical one is already PENDING."""
    existing = _pending_duplicate(repo, context)
    if existing is not None:
        logger.warning(f"Skipping duplicate {context.type} override, {existing.id} still pending")
        return existing

    request = repo.add(_new_request(context, explanation, config.SYSTEM_USER_ID))
    repo.flush()
    logger.info(f"Created {context.type} override {request.id}")
    return request


def _check_references(repo: ComplianceRepository, context) -> None:
    match context:
        case IncomeDiscrepancyContext():
            repo.require(Unit, context.unit_id)
            repo.require(Resident, context.resident_id)
            if context.verification_id:
                repo.require(IncomeVerification, context.verification_id)
        case DocumentReviewContext():
            repo.require(Unit, context.unit_id)
            repo.require(Resident, context.resident_id)
            repo.require(IncomeDocument, context.document_id)
        case ValidationExceptionContext():
            repo.require(Unit, context.unit_id)
            repo.require(IncomeVerification, context.verification_id)
        case PropertyDeletionContext():
            repo.require(Property, context.property_id)


def create_override(repo: ComplianceRepository, payload: OverrideRequestCreate) -> OverrideRequest:
    """A user-submitted request.

    DOCUMENT_REVIEW marks the document NEEDS_REVIEW, which can cost its
    resident their finalization.
    """
    from .verification import recompute_resident, sync_lease

    explanation = payload.user_explanation.strip()
    if len(explanation) < config.MIN_OVERRIDE_EXPLANATION:
        raise OverrideError(
            f"Explanation must be at least {config.MIN_OVERRIDE_EXPLANATION} characters"
        )

    with repo.transaction():
        context = payload.context
        _check_references(repo, context)
        if _pending_duplicate(repo, context) is not None:
            raise OverrideError(f"A {context.type} request for these records is already pending")

        request = repo.add(_new_request(context, explanation, payload.requester_id))

        if isinstance(context, DocumentReviewContext):
            document = repo.require(IncomeDocument, context.document_id)
            document.status = DocumentStatus.NEEDS_REVIEW
            resident = repo.resident_of_document(document)
            recompute_resident(repo, resident)
            sync_lease(repo, repo.lease_of_resident(resident))

        repo.flush()
        logger.info(f"User {payload.requester_id} requested {context.type} override {request.id}")
        return request


def list_overrides(
    repo: ComplianceRepository,
    status: OverrideRequestStatus | None = OverrideRequestStatus.PENDING,
    property_id: UUID | None = None,
) -> list[OverrideRequest]:
    stmt = select(OverrideRequest).order_by(OverrideRequest.created_at)
    if status is not None:
        stmt = stmt.where(OverrideRequest.status == status)
    if property_id is not None:
        unit_ids = select(Unit.id).where(Unit.property_id == property_id)
        stmt = stmt.where(
            (OverrideRequest.property_id == property_id) | OverrideRequest.unit_id.in_(unit_ids)
        )
    return list(repo.session.scalars(stmt))


# =============================================================================
# Resolution
# =============================================================================


def _approve(repo: ComplianceRepository, request: OverrideRequest, changed_by: str) -> None:
    from .discrepancy import accept_verified_income, detect_for_lease
    from .verification import finalize_resident_income, recompute_resident, sync_lease

    match context_of(request):
        case DocumentReviewContext(document_id=document_id):
            references = repo.document_references(document_id)
            if not references:
                raise NotFound("IncomeDocument", document_id)
            for document in references:
                if document.status != DocumentStatus.NEEDS_REVIEW:
                    continue
                document.status = DocumentStatus.COMPLETED
                resident = repo.resident_of_document(document)
                recompute_resident(repo, resident)
                sync_lease(repo, repo.lease_of_resident(resident))

        case IncomeDiscrepancyContext(resident_id=resident_id):
            resident = repo.require(Resident, resident_id)
            lease = repo.lease_of_resident(resident)
            rows = [row for row in detect_for_lease(repo, lease) if row.resident_id == resident.id]
            if rows:
                accept_verified_income(
                    repo, resident, rows[0].verified_income, changed_by,
                    f"approved override {request.id}",
                )
            else:
                logger.info(f"Override {request.id}: discrepancy already resolved")

        case ValidationExceptionContext(verification_id=verification_id):
            verification = repo.require(IncomeVerification, verification_id)
            lease = repo.lease_of_verification(verification)
            for resident in lease.residents:
                if not resident.income_finalized and not resident.has_no_income:
                    finalize_resident_income(repo, resident)
            sync_lease(repo, lease)

        case PropertyDeletionContext(property_id=property_id):
            prop = repo.require(Property, property_id)
            repo.log_change(
                "properties", prop.id, "delete", changed_by,
                old_value=prop.name, reason=f"approved override {request.id}",
            )
            repo.delete(prop)
            logger.info(f"Deleted property {prop.name} ({prop.id})")


def resolve_override(
    repo: ComplianceRepository,
    request_id: UUID,
    resolution: OverrideResolution,
) -> OverrideRequest:
    """Approve or deny a PENDING request."""
    if not resolution.admin_notes or not resolution.admin_notes.strip():
        raise OverrideError("Admin notes are required")

    with repo.transaction():
        request = repo.require(OverrideRequest, request_id)
        if request.status != OverrideRequestStatus.PENDING:
            raise OverrideError(f"Override request {request.id} is already {request.status.value}")

        changed_by = f"user:{resolution.reviewer_id}"
        new_status = (
            OverrideRequestStatus.APPROVED
            if resolution.decision == OverrideDecision.APPROVE
            else OverrideRequestStatus.DENIED
        )
        request.status = new_status
        request.admin_notes = resolution.admin_notes.strip()
        request.reviewer_id = resolution.reviewer_id
        request.reviewed_at = datetime.utcnow()

        if new_status == OverrideRequestStatus.APPROVED:
            _approve(repo, request, changed_by)

        repo.log_change(
            "override_requests", request.id, "resolve", changed_by,
            field_name="status", old_value=OverrideRequestStatus.PENDING.value,
            new_value=new_status.value, reason=request.admin_notes,
        )
        repo.flush()
        logger.info(f"Override {request.id} ({request.type.value}) {new_status.value} by {resolution.reviewer_id}")
        return request
