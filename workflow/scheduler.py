"""Agreement scheduler: status aging, auto-renewal and visit generation.

Each pass walks its agreements one at a time inside a savepoint, so a
failing agreement is rolled back and counted while the rest of the batch
still commits. Every pass is safe to re-run: aging and renewal move an
agreement out of the state that selected it, and visit generation is
guarded by the agreement's open-job and time-window check.
"""

import logging
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from builders import build_agreement_job
from config import settings
from models.models import AgreementStatus, SchedulerRun, ServiceAgreement
from schemas.workflow import SchedulerPassResult, SchedulerReport

logger = logging.getLogger(__name__)

STATUS_AGING = "status_aging"
AUTO_RENEWAL = "auto_renewal"
VISIT_GENERATION = "visit_generation"

WATERMARK = "agreements"


def _run_pass(db: Session, name: str, agreements: list[ServiceAgreement], handler) -> SchedulerPassResult:
    """Apply handler to each agreement in its own savepoint; handler returns True when it changed something."""
    result = SchedulerPassResult(name=name)

    for agreement in agreements:
        number = agreement.agreement_number
        try:
            with db.begin_nested():
                touched = handler(agreement)
        except Exception as e:
            result.failed += 1
            logger.error(f"{name}: agreement {number} failed: {e}")
            continue
        if touched:
            result.touched += 1
        else:
            result.skipped += 1

    db.commit()
    logger.info(f"{name}: {result.touched} touched, {result.skipped} skipped, {result.failed} failed")
    return result


# --- Status aging ---

def age_agreement(agreement: ServiceAgreement, today: date, expiring_days: int | None = None) -> bool:
    """Active -> Expiring -> Expired by end date. Never moves an agreement back to Active."""
    if expiring_days is None:
        expiring_days = settings.AGREEMENT_EXPIRING_DAYS

    if agreement.end_date < today:
        if agreement.status != AgreementStatus.EXPIRED.value:
            agreement.status = AgreementStatus.EXPIRED.value
            logger.info(f"Agreement {agreement.agreement_number} expired on {agreement.end_date}")
            return True
        return False

    if (
        agreement.status == AgreementStatus.ACTIVE.value
        and agreement.end_date <= today + timedelta(days=expiring_days)
    ):
        agreement.status = AgreementStatus.EXPIRING.value
        logger.info(f"Agreement {agreement.agreement_number} expiring on {agreement.end_date}")
        return True
    return False


def run_status_aging(db: Session, today: date | None = None) -> SchedulerPassResult:
    today = today or date.today()
    agreements = db.query(ServiceAgreement).filter(
        ServiceAgreement.status.in_([AgreementStatus.ACTIVE.value, AgreementStatus.EXPIRING.value]),
        ServiceAgreement.is_archived.is_(False),
    ).order_by(ServiceAgreement.id).all()
    return _run_pass(db, STATUS_AGING, agreements, lambda a: age_agreement(a, today))


# --- Auto-renewal ---

def renewed_end_date(agreement: ServiceAgreement) -> date:
    """Old end date plus the same calendar term; degenerate terms fall back to the default length."""
    if agreement.end_date <= agreement.start_date:
        return agreement.end_date + timedelta(days=settings.AGREEMENT_DEFAULT_TERM_DAYS)
    return agreement.end_date + relativedelta(agreement.end_date, agreement.start_date)


def renew_agreement(agreement: ServiceAgreement, today: date) -> bool:
    new_end = renewed_end_date(agreement)
    agreement.start_date, agreement.end_date = agreement.end_date, new_end
    agreement.visits_used = 0
    agreement.renewal_date = today
    agreement.status = AgreementStatus.ACTIVE.value
    logger.info(
        f"Agreement {agreement.agreement_number} renewed: "
        f"{agreement.start_date} to {agreement.end_date}"
    )
    return True


def run_auto_renewal(db: Session, today: date | None = None) -> SchedulerPassResult:
    today = today or date.today()
    agreements = db.query(ServiceAgreement).filter(
        ServiceAgreement.auto_renew.is_(True),
        ServiceAgreement.status == AgreementStatus.EXPIRED.value,
        ServiceAgreement.end_date < today,
        ServiceAgreement.is_archived.is_(False),
    ).order_by(ServiceAgreement.id).all()
    return _run_pass(db, AUTO_RENEWAL, agreements, lambda a: renew_agreement(a, today))


# --- Visit generation ---

def next_visit_date(agreement: ServiceAgreement) -> date | None:
    """
    Visits are spread evenly over the term:

        interval = (end - start) days / visits_included
        next     = start + interval * visits_used

    Returns None for a term that is empty or inverted, or an agreement
    with no visits.
    """
    if agreement.end_date <= agreement.start_date or not agreement.visits_included:
        return None
    interval_days = (agreement.end_date - agreement.start_date).days / agreement.visits_included
    return agreement.start_date + timedelta(days=interval_days * agreement.visits_used)


def schedule_visit(db: Session, agreement: ServiceAgreement, today: date,
                   lookahead_days: int | None = None, window_days: int | None = None) -> bool:
    if lookahead_days is None:
        lookahead_days = settings.AGREEMENT_LOOKAHEAD_DAYS
    if window_days is None:
        window_days = settings.AGREEMENT_VISIT_WINDOW_DAYS

    visit_date = next_visit_date(agreement)
    if visit_date is None:
        logger.warning(
            f"Agreement {agreement.agreement_number}: term {agreement.start_date} to "
            f"{agreement.end_date} with {agreement.visits_included} visits has no interval, skipping"
        )
        return False
    if visit_date > today + timedelta(days=lookahead_days):
        return False

    due_date = max(visit_date, today)
    step = build_agreement_job(agreement, due_date, db, window_days)
    return not step.skipped


def run_visit_generation(db: Session, today: date | None = None) -> SchedulerPassResult:
    today = today or date.today()
    agreements = db.query(ServiceAgreement).filter(
        ServiceAgreement.status == AgreementStatus.ACTIVE.value,
        ServiceAgreement.visits_used < ServiceAgreement.visits_included,
        ServiceAgreement.end_date >= today,
        ServiceAgreement.is_archived.is_(False),
    ).order_by(ServiceAgreement.id).all()
    return _run_pass(db, VISIT_GENERATION, agreements, lambda a: schedule_visit(db, a, today))


# --- Full run ---

def run_all_passes(db: Session, now: datetime | None = None, force: bool = False) -> SchedulerReport:
    """
    Aging, then renewal, then visit generation, against one captured "now".

    A run inside the configured interval of the last completed run is
    skipped unless forced. The watermark only moves forward.
    """
    now = now or datetime.utcnow()
    today = now.date()
    mark = db.get(SchedulerRun, WATERMARK)
    interval = timedelta(minutes=settings.AGREEMENT_SCHEDULER_INTERVAL_MINUTES)

    if not force and mark is not None and now < mark.last_run_at + interval:
        logger.info(f"Scheduler ran at {mark.last_run_at}, next run not due yet")
        return SchedulerReport(run_at=now, skipped=True)

    logger.info(f"{'=' * 60}")
    logger.info(f"AGREEMENT SCHEDULER RUN for {today}")
    logger.info(f"{'=' * 60}")

    report = SchedulerReport(run_at=now)
    report.passes.append(run_status_aging(db, today))
    report.passes.append(run_auto_renewal(db, today))
    report.passes.append(run_visit_generation(db, today))

    mark = db.get(SchedulerRun, WATERMARK)
    if mark is None:
        db.add(SchedulerRun(name=WATERMARK, last_run_at=now))
    elif mark.last_run_at < now:
        mark.last_run_at = now
    db.commit()

    return report
