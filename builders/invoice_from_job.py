"""Builder: generate a draft invoice for a completed job."""

import logging
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from config import settings
from models.models import Estimate, Invoice, InvoiceLine, InvoiceStatus, Job
from schemas.workflow import StepResult
from services import numbering
from services.guards import live_invoice_for_job
from services.money import compute_totals, line_total, round_money

logger = logging.getLogger(__name__)

STEP = "create_invoice_from_job"


def _fallback_amount(job: Job) -> Decimal:
    # Null-coalescing only: an explicit actual total of 0 invoices for 0
    if job.actual_total is not None:
        return round_money(job.actual_total)
    if job.estimated_total is not None:
        return round_money(job.estimated_total)
    return Decimal("0.00")


def _invoice_lines(job: Job, db: Session) -> list[InvoiceLine]:
    """Copy the linked estimate's lines, or fall back to one line for the job total."""
    estimate = db.get(Estimate, job.estimate_id) if job.estimate_id else None
    if estimate is not None and estimate.lines:
        return [
            InvoiceLine(
                description=line.description,
                line_type=line.line_type,
                unit=line.unit,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line_total(line.quantity, line.unit_price),
                sort_order=i,
            )
            for i, line in enumerate(estimate.lines)
        ]

    amount = _fallback_amount(job)
    return [
        InvoiceLine(
            description=job.title or f"Services for {job.job_number}",
            line_type="Labor",
            unit="job",
            quantity=Decimal("1"),
            unit_price=amount,
            line_total=amount,
            sort_order=0,
        )
    ]


def build_invoice_from_job(job: Job, db: Session, today: date) -> StepResult:
    """
    Create the job's invoice and write its id back onto the job.

    Skips when the job already has a live (non-archived, non-void) invoice.
    This builder is the only writer that sets Job.invoice_id.
    """
    db.flush()
    existing = live_invoice_for_job(db, job.id)
    if existing is not None:
        if job.invoice_id != existing.id:
            job.invoice_id = existing.id
        logger.info(f"Job {job.job_number} already has invoice {existing.invoice_number}, skipping")
        return StepResult(
            step=STEP,
            skipped=True,
            message=f"Invoice {existing.invoice_number} already exists for this job",
            data={"invoice_id": existing.id},
        )

    logger.info(f"Generating invoice for job {job.job_number}...")
    lines = _invoice_lines(job, db)
    totals = compute_totals(lines)

    invoice = Invoice(
        invoice_number=numbering.next_number(db, numbering.INVOICE),
        status=InvoiceStatus.DRAFT.value,
        invoice_date=today,
        due_date=today + timedelta(days=settings.INVOICE_DUE_DAYS),
        payment_terms=settings.INVOICE_PAYMENT_TERMS,
        subtotal=totals.subtotal,
        total=totals.total,
        amount_paid=Decimal("0.00"),
        balance_due=totals.total,
        created_from="job",
        customer_id=job.customer_id,
        site_id=job.site_id,
        company_id=job.company_id,
        job_id=job.id,
        lines=lines,
    )
    db.add(invoice)
    db.flush()

    job.invoice_id = invoice.id
    db.flush()

    logger.info(f"Invoice {invoice.invoice_number} generated: ${invoice.total} ({len(lines)} lines)")
    return StepResult(
        step=STEP,
        message=f"Invoice {invoice.invoice_number} generated: ${invoice.total}",
        data={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "line_count": len(lines),
            "total": str(invoice.total),
        },
    )
