"""Status transition dispatcher.

Receives an entity with its previous and new status, writes the new status
and runs the side effects of the trigger table, all in one unit of work:

    Estimate  * -> Approved   job from estimate
    Job       * -> Completed  service history, asset service dates, invoice
              * -> Closed     the same, when the job never passed Completed
    Invoice   * -> Void       clear the job's invoice pointer
    Payment   recorded        invoice balance, Paid flip

Customer balances are reconciled after every invoice or payment change.
Setting a status to its current value, or any transition outside the
table, runs nothing.
"""

import enum
import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from builders import (
    build_invoice_from_job, build_job_from_estimate, build_service_history, update_asset_service_dates,
)
from database import unit_of_work
from models.models import (
    Estimate, EstimateStatus, Invoice, InvoiceStatus, Job, JobStatus, JOB_DONE_STATUSES,
    Payment, ServiceAgreement,
)
from schemas.workflow import StepResult, TransitionResult
from services.balances import recompute_customer_balance, recompute_invoice_balance
from workflow.errors import ConsistencyError, EntityNotFoundError, InvalidInputError

logger = logging.getLogger(__name__)


def coerce_status(enum_cls: type[enum.Enum], value, entity: str):
    """Parse a status value, rejecting anything outside the entity's state machine."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(f"Unknown {entity} status '{value}'") from None


@contextmanager
def _transition(db: Session, result: TransitionResult, label: str | None = None):
    """Run a transition as one unit; a tripped uniqueness backstop becomes ConsistencyError."""
    logger.info(label or (
        f"{result.entity.capitalize()} {result.entity_id}: "
        f"{result.previous_status} -> {result.new_status}"
    ))
    try:
        with unit_of_work(db):
            yield result
    except IntegrityError as e:
        logger.warning(f"{result.entity} {result.entity_id}: concurrent writer won, transition rolled back")
        raise ConsistencyError(
            f"{result.entity} {result.entity_id}: derivative already written by a concurrent transaction"
        ) from e

    result.summary = " | ".join(s.message for s in result.steps if s.message) or "No side effects"
    for step in result.steps:
        marker = "-" if step.skipped else "+"
        logger.info(f"  {marker} {step.step}: {step.message}")


def _reconcile_step(db: Session, customer_id: int | None) -> StepResult:
    balance = recompute_customer_balance(db, customer_id)
    if balance is None:
        return StepResult(step="reconcile_customer_balance", skipped=True, message="")
    return StepResult(
        step="reconcile_customer_balance",
        message=f"Customer {customer_id} owes ${balance}",
        data={"customer_id": customer_id, "balance_owed": str(balance)},
    )


# --- Estimate ---

def on_estimate_status_changed(db: Session, estimate: Estimate, previous_status, new_status) -> TransitionResult:
    previous = coerce_status(EstimateStatus, previous_status, "estimate")
    new = coerce_status(EstimateStatus, new_status, "estimate")
    result = TransitionResult(
        entity="estimate", entity_id=estimate.id,
        previous_status=previous.value if previous else None, new_status=new.value,
    )

    with _transition(db, result):
        estimate.status = new.value
        if new == EstimateStatus.APPROVED and previous != EstimateStatus.APPROVED:
            result.fired = True
            result.steps.append(build_job_from_estimate(estimate, db))

    return result


# --- Job ---

def _count_agreement_visit(job: Job, db: Session) -> StepResult:
    """A job uses up at most one agreement visit, however often it is reopened and completed."""
    agreement = db.get(ServiceAgreement, job.agreement_id)
    if agreement is None:
        raise EntityNotFoundError("ServiceAgreement", job.agreement_id)
    if job.visit_counted:
        return StepResult(
            step="count_agreement_visit", skipped=True,
            message=f"Job {job.job_number} already counted against {agreement.agreement_number}",
        )
    if agreement.visits_used >= agreement.visits_included:
        return StepResult(
            step="count_agreement_visit", skipped=True,
            message=f"Agreement {agreement.agreement_number} has no visits left to count",
        )
    agreement.visits_used += 1
    job.visit_counted = True
    return StepResult(
        step="count_agreement_visit",
        message=f"Agreement {agreement.agreement_number}: {agreement.visits_used}/{agreement.visits_included} visits used",
        data={"agreement_id": agreement.id, "visits_used": agreement.visits_used},
    )


def on_job_status_changed(
    db: Session, job: Job, previous_status, new_status, now: datetime | None = None,
) -> TransitionResult:
    """
    Completion fires on entry to a done status (Completed or Closed) when
    the job was not already done: the previous status is not a done status
    and completed_date was unset. Service history, asset dates and the
    invoice then run in that order.
    """
    previous = coerce_status(JobStatus, previous_status, "job")
    new = coerce_status(JobStatus, new_status, "job")
    now = now or datetime.utcnow()
    result = TransitionResult(
        entity="job", entity_id=job.id,
        previous_status=previous.value if previous else None, new_status=new.value,
    )

    with _transition(db, result):
        was_completed = job.completed_date is not None
        job.status = new.value
        # completed_date is set iff the job is in a done status
        if new in JOB_DONE_STATUSES:
            if job.completed_date is None:
                job.completed_date = now
        else:
            job.completed_date = None

        if new in JOB_DONE_STATUSES and previous not in JOB_DONE_STATUSES and not was_completed:
            result.fired = True
            service_date = job.completed_date.date()
            result.steps.append(build_service_history(job, db, service_date))
            result.steps.append(update_asset_service_dates(job, db, service_date))
            result.steps.append(build_invoice_from_job(job, db, service_date))
            if job.agreement_id is not None:
                result.steps.append(_count_agreement_visit(job, db))
            result.steps.append(_reconcile_step(db, job.customer_id))

    return result


# --- Invoice ---

def on_invoice_status_changed(db: Session, invoice: Invoice, previous_status, new_status) -> TransitionResult:
    previous = coerce_status(InvoiceStatus, previous_status, "invoice")
    new = coerce_status(InvoiceStatus, new_status, "invoice")
    result = TransitionResult(
        entity="invoice", entity_id=invoice.id,
        previous_status=previous.value if previous else None, new_status=new.value,
    )

    with _transition(db, result):
        invoice.status = new.value
        if new == previous:
            return result

        if new == InvoiceStatus.VOID:
            result.fired = True
            job = db.get(Job, invoice.job_id) if invoice.job_id else None
            if job is not None and job.invoice_id == invoice.id:
                job.invoice_id = None
                result.steps.append(StepResult(
                    step="clear_job_invoice",
                    message=f"Job {job.job_number} released from voided invoice {invoice.invoice_number}",
                    data={"job_id": job.id},
                ))
            else:
                result.steps.append(StepResult(
                    step="clear_job_invoice", skipped=True,
                    message=f"No job points at invoice {invoice.invoice_number}",
                ))

        result.steps.append(_reconcile_step(db, invoice.customer_id))

    return result


# --- Payment ---

def on_payment_recorded(db: Session, payment: Payment) -> TransitionResult:
    result = TransitionResult(entity="payment", fired=True)

    with _transition(db, result, label=f"Payment of ${payment.amount} on invoice {payment.invoice_id}"):
        invoice = db.get(Invoice, payment.invoice_id) if payment.invoice_id else None
        if invoice is None:
            raise EntityNotFoundError("Invoice", payment.invoice_id)
        db.flush()
        result.entity_id = payment.id
        result.previous_status = invoice.status

        balance = recompute_invoice_balance(db, invoice)
        result.new_status = invoice.status
        result.steps.append(StepResult(
            step="apply_payment",
            message=f"Invoice {invoice.invoice_number} balance ${balance} ({invoice.status})",
            data={
                "invoice_id": invoice.id,
                "amount_paid": str(invoice.amount_paid),
                "balance_due": str(balance),
                "status": invoice.status,
            },
        ))
        result.steps.append(_reconcile_step(db, invoice.customer_id))

    return result
