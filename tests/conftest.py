"""
Shared fixtures for the compliance engine tests.

Every test gets a fresh in-memory SQLite database. StaticPool keeps the
single connection alive across sessions so the API's threadpool sessions
and the test's own session see the same tables.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("LOGFIRE_TOKEN", None)

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from compliance.database import Base
from compliance.models import (
    IncomeVerification,
    Lease,
    Property,
    RentRoll,
    Resident,
    Tenancy,
    Unit,
)
from compliance.repository import ComplianceRepository
from compliance.schemas import DocumentStatus, DocumentType, ExtractedDocument, LeaseKind

LEASE_START = date(2024, 7, 1)
LEASE_END = date(2025, 6, 30)


@pytest.fixture
def engine():
    """In-memory SQLite engine with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def repo(session):
    return ComplianceRepository(session)


class Builder:
    """Creates committed records without going through ingestion."""

    def __init__(self, repo: ComplianceRepository):
        self.repo = repo
        self.session = repo.session

    def property(self, name="Maple Court", address="12 Elm St, Burlington VT"):
        prop = Property(name=name, address=address)
        self.session.add(prop)
        self.session.commit()
        return prop

    def unit(self, prop, number="101"):
        unit = Unit(property=prop, unit_number=number)
        self.session.add(unit)
        self.session.commit()
        return unit

    def rent_roll(self, prop, snapshot_date=date(2025, 1, 31)):
        rent_roll = RentRoll(property=prop, snapshot_date=snapshot_date, filename="rentroll.csv")
        self.session.add(rent_roll)
        self.session.commit()
        return rent_roll

    def lease(
        self,
        unit,
        residents,
        rent_roll=None,
        start=LEASE_START,
        end=LEASE_END,
        rent=Decimal("1200.00"),
    ):
        """A lease with (name, declared income) residents.

        Passing a rent roll makes it CURRENT for that snapshot, otherwise
        it is a FUTURE lease.
        """
        lease = Lease(
            unit=unit,
            kind=LeaseKind.CURRENT if rent_roll else LeaseKind.FUTURE,
            name=", ".join(name for name, _ in residents),
            lease_start_date=start,
            lease_end_date=end,
            lease_rent=rent,
        )
        for name, declared in residents:
            lease.residents.append(Resident(
                name=name,
                declared_income=Decimal(declared),
                original_declared_income=Decimal(declared),
            ))
        lease.verifications.append(IncomeVerification())
        if rent_roll is not None:
            lease.tenancy = Tenancy(rent_roll=rent_roll)
        self.session.add(lease)
        self.session.commit()
        return lease


@pytest.fixture
def build(repo):
    return Builder(repo)


def paystub(gross="1100.00", frequency="BI-WEEKLY", status=DocumentStatus.COMPLETED, **extra):
    return ExtractedDocument(
        document_type=DocumentType.PAYSTUB,
        status=status,
        gross_pay_amount=gross,
        pay_frequency=frequency,
        **extra,
    )


def w2(box1="40000.00", box3="41200.00", box5="41000.00", status=DocumentStatus.COMPLETED):
    return ExtractedDocument(
        document_type=DocumentType.W2,
        status=status,
        box1_wages=box1,
        box3_ss_wages=box3,
        box5_med_wages=box5,
        tax_year=2024,
    )


@pytest.fixture
def documents():
    """Factories for extracted document payloads."""
    return SimpleNamespace(paystub=paystub, w2=w2)
