"""ORM models for the field service back office."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, Text, Numeric, ForeignKey,
    Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship, validates

from database import Base
from workflow.errors import InvalidInputError


class EstimateStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class JobStatus(str, enum.Enum):
    LEAD = "lead"
    QUOTED = "quoted"
    APPROVED = "approved"
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# Statuses for which Job.completed_date must be set
JOB_DONE_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CLOSED})


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    INVOICED = "invoiced"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CHECK = "check"
    CARD = "card"
    ACH = "ach"
    ZELLE = "zelle"
    OTHER = "other"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


class AgreementStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    RENEWED = "renewed"


class ServiceHistoryType(str, enum.Enum):
    WARRANTY_CLAIM = "warranty_claim"
    NON_WARRANTY_REPAIR = "non_warranty_repair"
    PREVENTIVE_MAINTENANCE = "preventive_maintenance"


class ServiceHistoryStatus(str, enum.Enum):
    OPEN = "open"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    DENIED = "denied"
    RESOLVED = "resolved"


class AssetRole(str, enum.Enum):
    """What happened to an asset on a job."""
    SERVICED = "serviced"
    INSTALLED = "installed"
    REPLACED = "replaced"
    INSPECTED = "inspected"
    DIAGNOSED = "diagnosed"
    DECOMMISSIONED = "decommissioned"


def _money():
    return Numeric(12, 2)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    # Derived from invoices; only the balance reconciler writes it
    balance_owed = Column(_money(), nullable=False, default=Decimal("0.00"))
    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Customer {self.id}: {self.name}>"


class Product(Base):
    """Catalog product supplying default warranty terms to assets."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    labor_warranty_years = Column(Integer, nullable=False, default=1)
    parts_warranty_years = Column(Integer, nullable=False, default=10)
    compressor_warranty_years = Column(Integer, nullable=False, default=10)
    is_archived = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Product {self.id}: {self.name}>"


class Asset(Base):
    """Installed equipment at a customer site."""

    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    serial_number = Column(String, nullable=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    site_id = Column(Integer, nullable=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)

    install_date = Column(Date, nullable=True)
    warranty_start_date = Column(Date, nullable=True)
    labor_warranty_term_years = Column(Integer, nullable=False, default=0)
    parts_warranty_term_years = Column(Integer, nullable=False, default=0)
    compressor_warranty_term_years = Column(Integer, nullable=False, default=0)
    labor_warranty_expiry = Column(Date, nullable=True)
    parts_warranty_expiry = Column(Date, nullable=True)
    compressor_warranty_expiry = Column(Date, nullable=True)
    warranty_expiry = Column(Date, nullable=True)
    last_service_date = Column(Date, nullable=True)
    next_service_due = Column(Date, nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Asset {self.id}: {self.name}>"


class Estimate(Base):
    __tablename__ = "estimates"

    id = Column(Integer, primary_key=True, index=True)
    estimate_number = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default=EstimateStatus.DRAFT.value)
    priority = Column(String, nullable=False, default="standard")
    trade_type = Column(String, nullable=True)
    system_type = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    site_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True)

    subtotal = Column(_money(), nullable=False, default=Decimal("0.00"))
    markup_percent = Column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    tax_percent = Column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    contingency_percent = Column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    total = Column(_money(), nullable=False, default=Decimal("0.00"))

    # Written only by the estimate -> job builder
    job_id = Column(Integer, ForeignKey("jobs.id", use_alter=True, name="fk_estimates_job_id"), nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines = relationship(
        "EstimateLine", back_populates="estimate",
        order_by="EstimateLine.sort_order", cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Estimate {self.estimate_number}: {self.status}>"


class EstimateLine(Base):
    __tablename__ = "estimate_lines"

    id = Column(Integer, primary_key=True, index=True)
    estimate_id = Column(Integer, ForeignKey("estimates.id"), nullable=False, index=True)
    description = Column(String, nullable=False, default="")
    line_type = Column(String, nullable=True)  # Labor, Material, Equipment, ...
    unit = Column(String, nullable=True)
    quantity = Column(Numeric(12, 3), nullable=False, default=Decimal("1"))
    unit_price = Column(_money(), nullable=False, default=Decimal("0.00"))
    line_total = Column(_money(), nullable=False, default=Decimal("0.00"))
    sort_order = Column(Integer, nullable=False, default=0)

    estimate = relationship("Estimate", back_populates="lines")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        # At most one live job per estimate
        Index(
            "uq_jobs_live_estimate", "estimate_id", unique=True,
            sqlite_where=text("is_archived = 0 AND estimate_id IS NOT NULL"),
            postgresql_where=text("is_archived = false AND estimate_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_number = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=JobStatus.LEAD.value)
    priority = Column(String, nullable=False, default="standard")
    trade_type = Column(String, nullable=True)
    system_type = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    site_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True)
    assigned_employee_id = Column(Integer, nullable=True)

    estimate_id = Column(Integer, ForeignKey("estimates.id"), nullable=True, index=True)
    # Written only by the job -> invoice builder and the void handler
    invoice_id = Column(Integer, ForeignKey("invoices.id", use_alter=True, name="fk_jobs_invoice_id"), nullable=True)
    agreement_id = Column(Integer, ForeignKey("service_agreements.id"), nullable=True, index=True)

    scheduled_date = Column(Date, nullable=True)
    completed_date = Column(DateTime, nullable=True)
    # Set once the job has been counted against its agreement's visits
    visit_counted = Column(Boolean, nullable=False, default=False)
    estimated_total = Column(_money(), nullable=True)
    actual_total = Column(_money(), nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    asset_links = relationship("JobAsset", back_populates="job", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Job {self.job_number}: {self.status}>"


class JobAsset(Base):
    """Link between a job and an asset it touched, tagged with a role."""

    __tablename__ = "job_assets"
    __table_args__ = (UniqueConstraint("job_id", "asset_id", name="uq_job_assets_job_asset"),)

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    role = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    job = relationship("Job", back_populates="asset_links")
    asset = relationship("Asset")

    @validates("role")
    def _validate_role(self, key, value):
        # Free-text roles are rejected where the link is created
        if value is None:
            return None
        try:
            return AssetRole(str(value).strip().lower()).value
        except ValueError:
            raise InvalidInputError(f"Unknown asset role '{value}'") from None


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        # At most one live (non-archived, non-void) invoice per job
        Index(
            "uq_invoices_live_job", "job_id", unique=True,
            sqlite_where=text("is_archived = 0 AND status != 'void' AND job_id IS NOT NULL"),
            postgresql_where=text("is_archived = false AND status <> 'void' AND job_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=InvoiceStatus.DRAFT.value)
    invoice_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    payment_terms = Column(String, nullable=True)

    subtotal = Column(_money(), nullable=False, default=Decimal("0.00"))
    markup_amount = Column(_money(), nullable=False, default=Decimal("0.00"))
    tax_amount = Column(_money(), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(_money(), nullable=False, default=Decimal("0.00"))
    total = Column(_money(), nullable=False, default=Decimal("0.00"))
    amount_paid = Column(_money(), nullable=False, default=Decimal("0.00"))
    balance_due = Column(_money(), nullable=False, default=Decimal("0.00"))

    notes = Column(Text, nullable=True)
    created_from = Column(String, nullable=True)  # manual, job, mobile

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    site_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines = relationship(
        "InvoiceLine", back_populates="invoice",
        order_by="InvoiceLine.sort_order", cascade="all, delete-orphan",
    )
    payments = relationship("Payment", back_populates="invoice", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Invoice {self.invoice_number}: ${self.total}>"


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    description = Column(String, nullable=False, default="")
    line_type = Column(String, nullable=True)
    unit = Column(String, nullable=True)
    quantity = Column(Numeric(12, 3), nullable=False, default=Decimal("1"))
    unit_price = Column(_money(), nullable=False, default=Decimal("0.00"))
    line_total = Column(_money(), nullable=False, default=Decimal("0.00"))
    sort_order = Column(Integer, nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="lines")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(_money(), nullable=False)
    method = Column(String, nullable=False, default=PaymentMethod.CASH.value)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    reference = Column(String, nullable=True)
    payment_date = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.id}: ${self.amount} ({self.status})>"


class ServiceHistoryRecord(Base):
    __tablename__ = "service_history_records"
    __table_args__ = (UniqueConstraint("job_id", "asset_id", name="uq_service_history_job_asset"),)

    id = Column(Integer, primary_key=True, index=True)
    record_number = Column(String, nullable=False, unique=True)
    type = Column(String, nullable=False, default=ServiceHistoryType.NON_WARRANTY_REPAIR.value)
    status = Column(String, nullable=False, default=ServiceHistoryStatus.OPEN.value)
    service_date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    cost = Column(_money(), nullable=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    site_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    tech_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ServiceHistory {self.record_number}: {self.type}>"


class ServiceAgreement(Base):
    """Maintenance contract covering a number of visits over a term."""

    __tablename__ = "service_agreements"

    id = Column(Integer, primary_key=True, index=True)
    agreement_number = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=True)
    status = Column(String, nullable=False, default=AgreementStatus.ACTIVE.value)
    trade_type = Column(String, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    visits_included = Column(Integer, nullable=False, default=0)
    visits_used = Column(Integer, nullable=False, default=0)
    fee = Column(_money(), nullable=False, default=Decimal("0.00"))
    auto_renew = Column(Boolean, nullable=False, default=False)
    renewal_date = Column(Date, nullable=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    site_id = Column(Integer, nullable=True)
    company_id = Column(Integer, nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    asset_links = relationship("ServiceAgreementAsset", back_populates="agreement", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ServiceAgreement {self.agreement_number}: {self.status}>"


class ServiceAgreementAsset(Base):
    __tablename__ = "service_agreement_assets"
    __table_args__ = (UniqueConstraint("agreement_id", "asset_id", name="uq_agreement_assets"),)

    id = Column(Integer, primary_key=True, index=True)
    agreement_id = Column(Integer, ForeignKey("service_agreements.id"), nullable=False, index=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False)

    agreement = relationship("ServiceAgreement", back_populates="asset_links")
    asset = relationship("Asset")


class NumberSequence(Base):
    """Store-side counter behind JOB-00001 style numbers."""

    __tablename__ = "number_sequences"

    name = Column(String, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class SchedulerRun(Base):
    """Monotonic watermark of the last completed scheduler run."""

    __tablename__ = "scheduler_runs"

    name = Column(String, primary_key=True)
    last_run_at = Column(DateTime, nullable=False)
