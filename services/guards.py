"""Idempotency guards: does a derivative record already exist for this source?

Each pairing is an existence query on the derivative's natural key. Every
builder runs its guard inside the same unit of work as the insert it
protects; the unique indexes on the tables are the backstop if two
transactions pass the guard at once.
"""

import enum
import logging
from datetime import date, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from models.models import Invoice, InvoiceStatus, Job, JobStatus, JOB_DONE_STATUSES, ServiceHistoryRecord

logger = logging.getLogger(__name__)


class SourceKind(str, enum.Enum):
    ESTIMATE = "estimate"
    JOB = "job"
    AGREEMENT = "agreement"


class DerivativeKind(str, enum.Enum):
    JOB = "job"
    INVOICE = "invoice"
    SERVICE_HISTORY = "service_history"


def live_job_for_estimate(db: Session, estimate_id: int) -> Job | None:
    """The non-archived job generated from an estimate, if any."""
    return db.query(Job).filter(
        Job.estimate_id == estimate_id,
        Job.is_archived.is_(False),
    ).first()


def live_invoice_for_job(db: Session, job_id: int) -> Invoice | None:
    """The job's non-archived, non-void invoice, if any."""
    return db.query(Invoice).filter(
        Invoice.job_id == job_id,
        Invoice.is_archived.is_(False),
        Invoice.status != InvoiceStatus.VOID.value,
    ).first()


def service_record_for(db: Session, job_id: int, asset_id: int) -> ServiceHistoryRecord | None:
    return db.query(ServiceHistoryRecord).filter(
        ServiceHistoryRecord.job_id == job_id,
        ServiceHistoryRecord.asset_id == asset_id,
    ).first()


def agreement_visit_near(db: Session, agreement_id: int, due_date: date, window_days: int) -> Job | None:
    """
    A live job for this agreement that already covers the visit due on
    due_date: one still open (not done, not cancelled), or one scheduled
    within +/- window_days of the due date.

    Agreements legitimately produce one job per visit, so this is not a
    one-shot guard. An open job counts whatever its date, since the
    agreement's next visit only advances once that job is completed.
    """
    window = timedelta(days=window_days)
    closed = [s.value for s in JOB_DONE_STATUSES] + [JobStatus.CANCELLED.value]
    return db.query(Job).filter(
        Job.agreement_id == agreement_id,
        Job.is_archived.is_(False),
        or_(
            Job.status.notin_(closed),
            and_(
                Job.scheduled_date >= due_date - window,
                Job.scheduled_date <= due_date + window,
            ),
        ),
    ).order_by(Job.id).first()


def derivative_exists(
    db: Session,
    source: SourceKind,
    source_id: int,
    derivative: DerivativeKind,
    *,
    asset_id: int | None = None,
    due_date: date | None = None,
    window_days: int = 0,
) -> bool:
    """
    Generic form of the guards above.

    Supported pairings: estimate -> job, job -> invoice,
    job -> service_history (needs asset_id), agreement -> job (needs due_date).
    """
    source, derivative = SourceKind(source), DerivativeKind(derivative)
    db.flush()

    if source == SourceKind.ESTIMATE and derivative == DerivativeKind.JOB:
        found = live_job_for_estimate(db, source_id)
    elif source == SourceKind.JOB and derivative == DerivativeKind.INVOICE:
        found = live_invoice_for_job(db, source_id)
    elif source == SourceKind.JOB and derivative == DerivativeKind.SERVICE_HISTORY:
        if asset_id is None:
            raise ValueError("asset_id is required for job -> service_history")
        found = service_record_for(db, source_id, asset_id)
    elif source == SourceKind.AGREEMENT and derivative == DerivativeKind.JOB:
        if due_date is None:
            raise ValueError("due_date is required for agreement -> job")
        found = agreement_visit_near(db, source_id, due_date, window_days)
    else:
        raise ValueError(f"No guard for {source.value} -> {derivative.value}")

    if found is not None:
        logger.info(f"Guard: {source.value} {source_id} already has {derivative.value} {found.id}")
    return found is not None
