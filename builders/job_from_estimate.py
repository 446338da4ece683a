"""Builder: create a Job from an approved Estimate."""

import logging

from sqlalchemy.orm import Session

from models.models import Estimate, Job, JobStatus
from schemas.workflow import StepResult
from services import numbering
from services.guards import live_job_for_estimate
from services.money import recompute_estimate_totals

logger = logging.getLogger(__name__)

STEP = "create_job_from_estimate"


def build_job_from_estimate(estimate: Estimate, db: Session) -> StepResult:
    """
    Create the estimate's job and link both sides.

    Skips when a live job already references the estimate. This builder is
    the only writer of Estimate.job_id.
    """
    db.flush()
    existing = live_job_for_estimate(db, estimate.id)
    if existing is not None:
        if estimate.job_id != existing.id:
            estimate.job_id = existing.id
        logger.info(f"Estimate {estimate.estimate_number} already has job {existing.job_number}, skipping")
        return StepResult(
            step=STEP,
            skipped=True,
            message=f"Job {existing.job_number} already exists for this estimate",
            data={"job_id": existing.id},
        )

    if estimate.lines:
        recompute_estimate_totals(estimate)

    logger.info(f"Creating job from estimate {estimate.estimate_number}...")
    job = Job(
        job_number=numbering.next_number(db, numbering.JOB),
        title=estimate.title or "",
        description=f"Auto-created from Estimate {estimate.estimate_number}",
        status=JobStatus.APPROVED.value,
        priority=estimate.priority,
        trade_type=estimate.trade_type,
        system_type=estimate.system_type,
        notes=estimate.notes,
        estimated_total=estimate.total,
        customer_id=estimate.customer_id,
        site_id=estimate.site_id,
        company_id=estimate.company_id,
        estimate_id=estimate.id,
    )
    db.add(job)
    db.flush()  # Get the ID without committing

    estimate.job_id = job.id
    db.flush()

    logger.info(f"Job {job.job_number} created from estimate {estimate.estimate_number}")
    return StepResult(
        step=STEP,
        message=f"Job {job.job_number} created",
        data={"job_id": job.id, "job_number": job.job_number, "estimated_total": str(job.estimated_total)},
    )
