"""Shared fixtures: in-memory database, record factory and API client."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models.models  # noqa: F401
from database import Base, enable_sqlite_savepoints, get_db
from models.models import (
    Asset, Customer, Estimate, EstimateLine, Invoice, Job, JobAsset, Product,
    ServiceAgreement, ServiceAgreementAsset,
)
from workflow.engine import WorkflowEngine

FIXED_NOW = datetime(2025, 3, 1, 10, 0)


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(engine):
    # Committed objects stay readable without opening a new transaction
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


class Factory:
    """Creates committed records with sensible defaults."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def customer(self, name="Sharma"):
        return self._save(Customer(name=name))

    def product(self, labor=1, parts=10, compressor=10):
        return self._save(Product(
            name="Condenser", labor_warranty_years=labor,
            parts_warranty_years=parts, compressor_warranty_years=compressor,
        ))

    def asset(self, customer=None, **fields):
        fields.setdefault("name", f"Unit {self._next()}")
        return self._save(Asset(customer_id=customer.id if customer else None, **fields))

    def estimate(self, customer=None, lines=(), status="sent", **fields):
        n = self._next()
        estimate = Estimate(
            estimate_number=f"EST-T{n:03d}",
            title=fields.pop("title", f"Estimate {n}"),
            status=status,
            customer_id=customer.id if customer else None,
            lines=[
                EstimateLine(description=desc, line_type="Material", unit="ea",
                             quantity=Decimal(str(qty)), unit_price=Decimal(str(price)), sort_order=i)
                for i, (desc, qty, price) in enumerate(lines)
            ],
            **fields,
        )
        return self._save(estimate)

    def job(self, customer=None, assets=(), status="in_progress", **fields):
        n = self._next()
        job = Job(
            job_number=f"JOB-T{n:03d}",
            title=fields.pop("title", f"Job {n}"),
            status=status,
            customer_id=customer.id if customer else None,
            asset_links=[JobAsset(asset_id=a.id, role=role) for a, role in assets],
            **fields,
        )
        return self._save(job)

    def invoice(self, customer=None, total="100.00", status="sent", **fields):
        n = self._next()
        total = Decimal(total)
        fields.setdefault("balance_due", total)
        invoice = Invoice(
            invoice_number=f"INV-T{n:03d}",
            status=status,
            customer_id=customer.id if customer else None,
            subtotal=total,
            total=total,
            **fields,
        )
        return self._save(invoice)

    def agreement(self, start=date(2024, 1, 1), end=date(2025, 1, 1), visits=4, used=0,
                  status="active", auto_renew=False, assets=(), customer=None, **fields):
        n = self._next()
        agreement = ServiceAgreement(
            agreement_number=fields.pop("agreement_number", f"SA-T{n:03d}"),
            title=fields.pop("title", "Annual maintenance"),
            status=status,
            start_date=start,
            end_date=end,
            visits_included=visits,
            visits_used=used,
            auto_renew=auto_renew,
            customer_id=customer.id if customer else None,
            asset_links=[ServiceAgreementAsset(asset_id=a.id) for a in assets],
            **fields,
        )
        return self._save(agreement)


@pytest.fixture
def factory(db_session):
    return Factory(db_session)


@pytest.fixture
def workflow_engine():
    return WorkflowEngine(clock=lambda: FIXED_NOW)


@pytest.fixture
def client(session_factory):
    """API client whose requests use the test database and a fixed clock."""
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    original_engine = app.state.engine
    app.state.engine = WorkflowEngine(clock=lambda: FIXED_NOW)
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.engine = original_engine
