"""Builder: schedule a maintenance visit job for a service agreement."""

import logging
from datetime import date

from sqlalchemy.orm import Session

from models.models import AssetRole, Job, JobAsset, JobStatus, ServiceAgreement
from schemas.workflow import StepResult
from services import numbering
from services.guards import agreement_visit_near

logger = logging.getLogger(__name__)

STEP = "create_agreement_visit_job"


def build_agreement_job(agreement: ServiceAgreement, due_date: date, db: Session, window_days: int) -> StepResult:
    """
    Create a Scheduled job for the agreement's next visit, with every
    covered asset linked as Serviced.

    Skips when a live job for this agreement is still open, or is already
    scheduled within window_days of the due date.
    """
    db.flush()
    existing = agreement_visit_near(db, agreement.id, due_date, window_days)
    if existing is not None:
        logger.info(
            f"Agreement {agreement.agreement_number}: visit due {due_date} already covered "
            f"by {existing.job_number}, skipping"
        )
        return StepResult(
            step=STEP,
            skipped=True,
            message=f"Visit already scheduled as {existing.job_number}",
            data={"job_id": existing.id},
        )

    visit_no = agreement.visits_used + 1
    job = Job(
        job_number=numbering.next_number(db, numbering.JOB),
        title=f"{agreement.title or agreement.agreement_number} - visit {visit_no} of {agreement.visits_included}",
        description=(
            f"Auto-generated maintenance visit for Service Agreement "
            f"{agreement.agreement_number} (agreement #{agreement.id})"
        ),
        status=JobStatus.SCHEDULED.value,
        trade_type=agreement.trade_type,
        customer_id=agreement.customer_id,
        site_id=agreement.site_id,
        company_id=agreement.company_id,
        agreement_id=agreement.id,
        scheduled_date=due_date,
        asset_links=[
            JobAsset(asset_id=link.asset_id, role=AssetRole.SERVICED.value)
            for link in agreement.asset_links
        ],
    )
    db.add(job)
    db.flush()

    logger.info(f"Job {job.job_number} scheduled {due_date} for agreement {agreement.agreement_number}")
    return StepResult(
        step=STEP,
        message=f"Job {job.job_number} scheduled for {due_date.isoformat()}",
        data={"job_id": job.id, "job_number": job.job_number, "scheduled_date": due_date.isoformat()},
    )
