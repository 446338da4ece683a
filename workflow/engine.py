"""WorkflowEngine: the single entry point the application talks to.

Wraps the dispatcher, scheduler, calculators and guards behind one object
that owns the clock and the product warranty-terms cache.
"""

import logging
from datetime import date, datetime
from typing import Callable

from sqlalchemy.orm import Session

from database import unit_of_work
from models.models import Asset, Customer, Estimate, Invoice, Job, Payment
from schemas.workflow import PaymentCreate, SchedulerReport, TransitionResult
from services import guards
from services.balances import recompute_customer_balance
from services.money import compute_totals
from services.warranty import ProductTermsCache, compute_warranty_expiries
from workflow import dispatcher, scheduler
from workflow.errors import EntityNotFoundError

logger = logging.getLogger(__name__)


def _load_for_update(db: Session, model, entity_id: int):
    """Load a row and lock it for the rest of the transaction where the store supports it.

    A missing row rolls the session back, matching a failed unit of work.
    """
    try:
        row = db.query(model).filter(model.id == entity_id).with_for_update().one_or_none()
        if row is None:
            raise EntityNotFoundError(model.__name__, entity_id)
    except Exception:
        # The locking read opened a transaction
        db.rollback()
        logger.error(f"Loading {model.__name__} {entity_id} failed, transaction rolled back")
        raise
    return row


class WorkflowEngine:
    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or datetime.utcnow
        self.product_terms = ProductTermsCache()

    def today(self) -> date:
        return self.clock().date()

    # --- Status transitions ---

    def on_estimate_status_changed(self, db: Session, estimate: Estimate, previous_status, new_status) -> TransitionResult:
        return dispatcher.on_estimate_status_changed(db, estimate, previous_status, new_status)

    def on_job_status_changed(self, db: Session, job: Job, previous_status, new_status) -> TransitionResult:
        return dispatcher.on_job_status_changed(db, job, previous_status, new_status, now=self.clock())

    def on_invoice_status_changed(self, db: Session, invoice: Invoice, previous_status, new_status) -> TransitionResult:
        return dispatcher.on_invoice_status_changed(db, invoice, previous_status, new_status)

    def on_payment_recorded(self, db: Session, payment: Payment) -> TransitionResult:
        return dispatcher.on_payment_recorded(db, payment)

    def change_estimate_status(self, db: Session, estimate_id: int, status) -> TransitionResult:
        estimate = _load_for_update(db, Estimate, estimate_id)
        return self.on_estimate_status_changed(db, estimate, estimate.status, status)

    def change_job_status(self, db: Session, job_id: int, status) -> TransitionResult:
        job = _load_for_update(db, Job, job_id)
        return self.on_job_status_changed(db, job, job.status, status)

    def change_invoice_status(self, db: Session, invoice_id: int, status) -> TransitionResult:
        invoice = _load_for_update(db, Invoice, invoice_id)
        return self.on_invoice_status_changed(db, invoice, invoice.status, status)

    def record_payment(self, db: Session, invoice_id: int, payload: PaymentCreate) -> TransitionResult:
        invoice = _load_for_update(db, Invoice, invoice_id)
        payment = Payment(
            invoice_id=invoice.id,
            amount=payload.amount,
            method=payload.method.value,
            status=payload.status.value,
            reference=payload.reference,
            payment_date=self.clock(),
        )
        db.add(payment)
        return self.on_payment_recorded(db, payment)

    # --- Agreement scheduler ---

    def run_agreement_status_aging(self, db: Session) -> int:
        return scheduler.run_status_aging(db, self.today()).touched

    def run_agreement_visit_generation(self, db: Session) -> int:
        return scheduler.run_visit_generation(db, self.today()).touched

    def run_agreement_auto_renewal(self, db: Session) -> int:
        return scheduler.run_auto_renewal(db, self.today()).touched

    def run_agreement_passes(self, db: Session, force: bool = False) -> SchedulerReport:
        return scheduler.run_all_passes(db, now=self.clock(), force=force)

    # --- Calculators ---

    compute_totals = staticmethod(compute_totals)

    def compute_warranty_expiries(self, asset: Asset, product=None) -> Asset:
        return compute_warranty_expiries(asset, product)

    def recompute_asset_warranty(self, db: Session, asset_id: int) -> Asset:
        """Recompute and persist an asset's warranty dates from its linked product's terms."""
        with unit_of_work(db):
            asset = db.get(Asset, asset_id)
            if asset is None:
                raise EntityNotFoundError("Asset", asset_id)
            compute_warranty_expiries(asset, self.product_terms.get(db, asset.product_id))
        db.refresh(asset)
        return asset

    def on_product_updated(self, product_id: int | None = None) -> None:
        self.product_terms.invalidate(product_id)
        logger.info(f"Product terms cache invalidated ({product_id or 'all'})")

    # --- Guards and balances ---

    def exists(self, db: Session, source, source_id: int, derivative, **kwargs) -> bool:
        return guards.derivative_exists(db, source, source_id, derivative, **kwargs)

    def customer_balance(self, db: Session, customer_id: int):
        with unit_of_work(db):
            if db.get(Customer, customer_id) is None:
                raise EntityNotFoundError("Customer", customer_id)
            return recompute_customer_balance(db, customer_id)
