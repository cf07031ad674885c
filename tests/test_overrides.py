"""
Tests for the override request queue.

Tests cover:
- Manual request validation and duplicate handling
- Idempotent automatic requests
- Admin resolution and its effect per request type
"""
import uuid
import pytest
from decimal import Decimal

from compliance import overrides, verification
from compliance.errors import NotFound, OverrideError
from compliance.models import ChangeLog, IncomeDocument, OverrideRequest, Property
from compliance.schemas import (
    DocumentReviewContext,
    DocumentStatus,
    IncomeDiscrepancyContext,
    OverrideDecision,
    OverrideRequestCreate,
    OverrideRequestStatus,
    OverrideRequestType,
    OverrideResolution,
    PropertyDeletionContext,
    ValidationExceptionContext,
    VerificationStatus,
)

EXPLANATION = "Employer letter confirms hours were cut in March."


@pytest.fixture
def household(build):
    prop = build.property()
    unit = build.unit(prop, "101")
    return build.lease(unit, [("Maria Lopez", "20000.00")], rent_roll=build.rent_roll(prop))


def approve(notes="Reviewed against employer letter"):
    return OverrideResolution(decision=OverrideDecision.APPROVE, admin_notes=notes, reviewer_id="admin-1")


def deny(notes="Insufficient evidence"):
    return OverrideResolution(decision=OverrideDecision.DENY, admin_notes=notes, reviewer_id="admin-1")


class TestCreate:
    """Tests for user-submitted requests."""

    def test_short_explanation_rejected(self, repo, household):
        payload = OverrideRequestCreate(
            context=ValidationExceptionContext(
                unit_id=household.unit_id, verification_id=household.active_verification.id,
            ),
            user_explanation="too short",
            requester_id="user-1",
        )

        with pytest.raises(OverrideError, match="at least 20"):
            overrides.create_override(repo, payload)

    def test_duplicate_pending_rejected(self, repo, household):
        payload = OverrideRequestCreate(
            context=ValidationExceptionContext(
                unit_id=household.unit_id, verification_id=household.active_verification.id,
            ),
            user_explanation=EXPLANATION,
            requester_id="user-1",
        )
        overrides.create_override(repo, payload)

        with pytest.raises(OverrideError, match="already pending"):
            overrides.create_override(repo, payload)
        assert repo.session.query(OverrideRequest).count() == 1

    def test_unknown_reference_rejected(self, repo, household):
        payload = OverrideRequestCreate(
            context=ValidationExceptionContext(unit_id=household.unit_id, verification_id=uuid.uuid4()),
            user_explanation=EXPLANATION,
            requester_id="user-1",
        )

        with pytest.raises(NotFound):
            overrides.create_override(repo, payload)

    def test_context_parsed_from_type(self):
        """Should pick the context variant from its type tag."""
        payload = OverrideRequestCreate.model_validate({
            "context": {"type": "PROPERTY_DELETION", "property_id": str(uuid.uuid4())},
            "user_explanation": EXPLANATION,
            "requester_id": "user-1",
        })

        assert isinstance(payload.context, PropertyDeletionContext)

    def test_document_review_unfinalizes_resident(self, repo, household, documents):
        """Should mark the document NEEDS_REVIEW and reopen the lease."""
        resident = household.residents[0]
        document = verification.add_document(repo, resident.id, documents.paystub())
        verification.finalize_resident(repo, resident.id)

        overrides.create_override(repo, OverrideRequestCreate(
            context=DocumentReviewContext(
                unit_id=household.unit_id, resident_id=resident.id, document_id=document.id,
            ),
            user_explanation="Gross pay on this stub looks like a year-to-date figure.",
            requester_id="user-1",
        ))

        assert document.status == DocumentStatus.NEEDS_REVIEW
        assert resident.income_finalized is False
        assert household.active_verification.status == VerificationStatus.IN_PROGRESS


class TestAutomatic:
    def test_auto_request_is_idempotent(self, repo, household):
        context = IncomeDiscrepancyContext(unit_id=household.unit_id, resident_id=household.residents[0].id)

        first = overrides.create_auto_override(repo, context, "verified differs")
        second = overrides.create_auto_override(repo, context, "verified differs")

        assert first.id == second.id
        assert repo.session.query(OverrideRequest).count() == 1

    def test_resolved_request_does_not_block_new_one(self, repo, household):
        context = IncomeDiscrepancyContext(unit_id=household.unit_id, resident_id=household.residents[0].id)
        first = overrides.create_auto_override(repo, context, "verified differs")
        repo.session.commit()
        overrides.resolve_override(repo, first.id, deny())

        second = overrides.create_auto_override(repo, context, "verified differs again")

        assert second.id != first.id


class TestResolve:
    """Tests for admin resolution."""

    def test_notes_required(self, repo, household):
        context = IncomeDiscrepancyContext(unit_id=household.unit_id, resident_id=household.residents[0].id)
        request = overrides.create_auto_override(repo, context, "verified differs")
        repo.session.commit()

        with pytest.raises(OverrideError, match="notes"):
            overrides.resolve_override(repo, request.id, approve(notes="   "))
        assert request.status == OverrideRequestStatus.PENDING

    def test_cannot_resolve_twice(self, repo, household):
        context = IncomeDiscrepancyContext(unit_id=household.unit_id, resident_id=household.residents[0].id)
        request = overrides.create_auto_override(repo, context, "verified differs")
        repo.session.commit()
        overrides.resolve_override(repo, request.id, deny())

        with pytest.raises(OverrideError, match="already DENIED"):
            overrides.resolve_override(repo, request.id, approve())

    def test_approve_document_review_completes_document(self, repo, household, documents):
        resident = household.residents[0]
        document = verification.add_document(
            repo, resident.id, documents.paystub(status=DocumentStatus.NEEDS_REVIEW)
        )
        request = repo.session.query(OverrideRequest).one()

        resolved = overrides.resolve_override(repo, request.id, approve())

        assert resolved.status == OverrideRequestStatus.APPROVED
        assert resolved.reviewer_id == "admin-1"
        assert resolved.reviewed_at is not None
        assert document.status == DocumentStatus.COMPLETED
        assert resident.calculated_income == Decimal("28600.00")
        entry = repo.session.query(ChangeLog).filter_by(record_id=request.id).one()
        assert entry.new_value == "APPROVED"

    def test_deny_leaves_document_for_review(self, repo, household, documents):
        resident = household.residents[0]
        document = verification.add_document(
            repo, resident.id, documents.paystub(status=DocumentStatus.NEEDS_REVIEW)
        )
        request = repo.session.query(OverrideRequest).one()

        overrides.resolve_override(repo, request.id, deny())

        assert document.status == DocumentStatus.NEEDS_REVIEW
        assert request.status == OverrideRequestStatus.DENIED

    def test_approve_validation_exception_finalizes_lease(self, repo, household):
        """Should finalize every open resident and the lease."""
        request = overrides.create_override(repo, OverrideRequestCreate(
            context=ValidationExceptionContext(
                unit_id=household.unit_id, verification_id=household.active_verification.id,
            ),
            user_explanation=EXPLANATION,
            requester_id="user-1",
        ))

        overrides.resolve_override(repo, request.id, approve())

        assert household.residents[0].income_finalized is True
        assert household.active_verification.status == VerificationStatus.FINALIZED

    def test_approve_income_discrepancy_accepts_verified(self, repo, household, documents):
        resident = household.residents[0]
        verification.add_document(repo, resident.id, documents.paystub())
        verification.finalize_resident(repo, resident.id)
        request = repo.session.query(OverrideRequest).filter_by(
            type=OverrideRequestType.INCOME_DISCREPANCY
        ).one()

        overrides.resolve_override(repo, request.id, approve())

        assert resident.declared_income == Decimal("28600.00")
        assert resident.original_declared_income == Decimal("20000.00")

    def test_approve_property_deletion(self, repo, household):
        prop_id = household.unit.property_id
        request = overrides.create_override(repo, OverrideRequestCreate(
            context=PropertyDeletionContext(property_id=prop_id),
            user_explanation="Property was sold and leaves the compliance program.",
            requester_id="owner-1",
        ))

        overrides.resolve_override(repo, request.id, approve())

        assert repo.session.get(Property, prop_id) is None
        assert repo.session.query(IncomeDocument).count() == 0


class TestList:
    def test_filters_by_status_and_property(self, repo, build, household):
        other = build.property(name="Birch Row")
        context = IncomeDiscrepancyContext(unit_id=household.unit_id, resident_id=household.residents[0].id)
        request = overrides.create_auto_override(repo, context, "verified differs")
        overrides.create_auto_override(repo, PropertyDeletionContext(property_id=other.id), "sold")
        repo.session.commit()

        mine = overrides.list_overrides(repo, property_id=household.unit.property_id)

        assert [r.id for r in mine] == [request.id]
        assert len(overrides.list_overrides(repo)) == 2
        assert overrides.list_overrides(repo, status=OverrideRequestStatus.APPROVED) == []
