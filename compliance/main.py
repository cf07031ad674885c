"""FastAPI application for income verification compliance."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from uuid import UUID

import logfire
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.requests import Request

from . import discrepancy, inheritance, overrides, verification
from .database import get_db, init_db
from .errors import (
    ComplianceError,
    IntegrityViolation,
    InvalidTransition,
    NotFound,
    OverrideError,
)
from .ingest import ingest_rent_roll
from .models import Property
from .repository import ComplianceRepository
from .schemas import (
    DiscrepancyResolutionRequest,
    DiscrepancyRow,
    DocumentRead,
    ExtractedDocument,
    OverrideRequestCreate,
    OverrideRequestRead,
    OverrideRequestStatus,
    OverrideResolution,
    PropertyCreate,
    PropertyRead,
    PropertyVerificationReport,
    ReconciliationDecision,
    ResidentRead,
    VerificationRead,
)
from .transformations import IngestionResult, RentRollUpload

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Compliance API",
    description="Income verification and lease continuity reconciliation for affordable housing",
    version="0.1.0",
    lifespan=lifespan,
)

# Logfire itself is configured alongside the engine in database.py
if os.getenv("LOGFIRE_TOKEN"):
    logfire.instrument_fastapi(app)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_repository(db: Session = Depends(get_db)) -> ComplianceRepository:
    return ComplianceRepository(db)


# =============================================================================
# Error mapping
# =============================================================================


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(OverrideError)
async def override_error_handler(request: Request, exc: OverrideError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(IntegrityViolation)
async def integrity_handler(request: Request, exc: IntegrityViolation):
    logger.error(f"Integrity violation on {request.url.path}: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ComplianceError)
async def compliance_error_handler(request: Request, exc: ComplianceError):
    logger.exception(f"Unhandled compliance error on {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# =============================================================================
# Endpoints
# =============================================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Compliance API"}


@app.post("/api/properties", response_model=PropertyRead, status_code=201)
def create_property(payload: PropertyCreate, repo: ComplianceRepository = Depends(get_repository)):
    with repo.transaction():
        prop = repo.add(Property(**payload.model_dump()))
        repo.flush()
        return PropertyRead.model_validate(prop)


@app.post("/api/properties/{property_id}/rent-rolls", response_model=IngestionResult, status_code=201)
def upload_rent_roll(
    property_id: UUID,
    upload: RentRollUpload,
    repo: ComplianceRepository = Depends(get_repository),
):
    """Ingest a snapshot and run inheritance and discrepancy detection."""
    return ingest_rent_roll(repo, property_id, upload)


@app.get("/api/properties/{property_id}/verification-status", response_model=PropertyVerificationReport)
def get_verification_status(property_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    return verification.property_verification_status(repo, property_id)


@app.get("/api/properties/{property_id}/income-discrepancies", response_model=list[DiscrepancyRow])
def get_income_discrepancies(property_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    return discrepancy.property_discrepancies(repo, property_id)


@app.get("/api/properties/{property_id}/income-discrepancies/export")
def export_income_discrepancies(property_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    body = discrepancy.export_discrepancies_csv(repo, property_id)
    filename = f"income-discrepancies-{property_id}-{date.today().isoformat()}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/properties/{property_id}/future-lease-reconciliation")
def reconcile_future_lease(
    property_id: UUID,
    decision: ReconciliationDecision,
    repo: ComplianceRepository = Depends(get_repository),
):
    """Apply a human accept/reject decision for a unit awaiting reconciliation."""
    repo.require(Property, property_id)
    lease = inheritance.apply_reconciliation_decision(repo, decision, property_id)
    return {
        "success": True,
        "action": decision.action.value,
        "target": decision.target.value,
        "lease_id": str(lease.id) if lease else None,
    }


@app.post("/api/income-discrepancies/resolve", response_model=ResidentRead)
def resolve_income_discrepancy(
    request: DiscrepancyResolutionRequest,
    repo: ComplianceRepository = Depends(get_repository),
):
    resident = discrepancy.resolve_discrepancy(repo, request)
    return ResidentRead.model_validate(resident)


@app.post("/api/residents/{resident_id}/documents", response_model=DocumentRead, status_code=201)
def add_resident_document(
    resident_id: UUID,
    extracted: ExtractedDocument,
    repo: ComplianceRepository = Depends(get_repository),
):
    document = verification.add_document(repo, resident_id, extracted)
    return DocumentRead.model_validate(document)


@app.delete("/api/documents/{document_id}", response_model=ResidentRead)
def delete_resident_document(document_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    """Delete a document and return its recomputed resident."""
    resident = verification.delete_document(repo, document_id)
    return ResidentRead.model_validate(resident)


@app.post("/api/residents/{resident_id}/finalize", response_model=ResidentRead)
def finalize_resident(resident_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    resident = verification.finalize_resident(repo, resident_id)
    return ResidentRead.model_validate(resident)


@app.post("/api/residents/{resident_id}/no-income", response_model=ResidentRead)
def mark_no_income(resident_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    resident = verification.mark_no_income(repo, resident_id)
    return ResidentRead.model_validate(resident)


@app.post("/api/verifications/{verification_id}/finalize", response_model=VerificationRead)
def finalize_verification(verification_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    result = verification.finalize_verification(repo, verification_id)
    return VerificationRead.model_validate(result)


@app.post("/api/verifications/{verification_id}/unfinalize", response_model=VerificationRead)
def unfinalize_verification(verification_id: UUID, repo: ComplianceRepository = Depends(get_repository)):
    result = verification.unfinalize_verification(repo, verification_id)
    return VerificationRead.model_validate(result)


@app.post("/api/override-requests", response_model=OverrideRequestRead, status_code=201)
def create_override_request(
    payload: OverrideRequestCreate,
    repo: ComplianceRepository = Depends(get_repository),
):
    request = overrides.create_override(repo, payload)
    return OverrideRequestRead.model_validate(request)


@app.get("/api/admin/override-requests", response_model=list[OverrideRequestRead])
def list_override_requests(
    status: OverrideRequestStatus | None = OverrideRequestStatus.PENDING,
    property_id: UUID | None = None,
    repo: ComplianceRepository = Depends(get_repository),
):
    return [
        OverrideRequestRead.model_validate(r)
        for r in overrides.list_overrides(repo, status=status, property_id=property_id)
    ]


@app.patch("/api/admin/override-requests/{request_id}", response_model=OverrideRequestRead)
def resolve_override_request(
    request_id: UUID,
    resolution: OverrideResolution,
    repo: ComplianceRepository = Depends(get_repository),
):
    request = overrides.resolve_override(repo, request_id, resolution)
    return OverrideRequestRead.model_validate(request)
