"""Builder: service history records and asset service dates for a completed job."""

import logging
from datetime import date

from sqlalchemy.orm import Session

from models.models import (
    AssetRole, Job, ServiceHistoryRecord, ServiceHistoryStatus, ServiceHistoryType,
)
from schemas.workflow import StepResult
from services import numbering
from services.guards import service_record_for

logger = logging.getLogger(__name__)

# Exhaustive over AssetRole
SERVICE_TYPE_BY_ROLE = {
    AssetRole.INSTALLED: ServiceHistoryType.NON_WARRANTY_REPAIR,
    AssetRole.REPLACED: ServiceHistoryType.NON_WARRANTY_REPAIR,
    AssetRole.INSPECTED: ServiceHistoryType.PREVENTIVE_MAINTENANCE,
    AssetRole.SERVICED: ServiceHistoryType.PREVENTIVE_MAINTENANCE,
    AssetRole.DIAGNOSED: ServiceHistoryType.NON_WARRANTY_REPAIR,
    AssetRole.DECOMMISSIONED: ServiceHistoryType.NON_WARRANTY_REPAIR,
}


def service_type_for_role(role: str | AssetRole | None) -> ServiceHistoryType:
    """Map a job-asset role to a service history type; untagged links are repairs."""
    if role is None:
        return ServiceHistoryType.NON_WARRANTY_REPAIR
    return SERVICE_TYPE_BY_ROLE[AssetRole(role)]


def build_service_history(job: Job, db: Session, service_date: date) -> StepResult:
    """
    Create one resolved service history record per linked asset.

    Assets that already have a record for this job are skipped, so the
    builder can run any number of times for the same completion.
    """
    created, skipped = [], []
    db.flush()

    for link in job.asset_links:
        if service_record_for(db, job.id, link.asset_id) is not None:
            skipped.append(link.asset_id)
            continue

        record = ServiceHistoryRecord(
            record_number=numbering.next_number(db, numbering.SERVICE_HISTORY),
            type=service_type_for_role(link.role).value,
            status=ServiceHistoryStatus.RESOLVED.value,
            service_date=service_date,
            description=f"Job {job.job_number}" + (f": {job.title}" if job.title else ""),
            cost=job.actual_total,
            customer_id=job.customer_id,
            site_id=job.site_id,
            company_id=job.company_id,
            asset_id=link.asset_id,
            job_id=job.id,
            tech_id=job.assigned_employee_id,
        )
        db.add(record)
        db.flush()
        created.append(record.id)
        logger.info(f"Service record {record.record_number} ({record.type}) for asset {link.asset_id}")

    if skipped:
        logger.info(f"Job {job.job_number}: assets {skipped} already have service records")

    return StepResult(
        step="create_service_history",
        skipped=not created and bool(skipped),
        message=f"{len(created)} service records created, {len(skipped)} already present",
        data={"record_ids": created, "skipped_asset_ids": skipped},
    )


def update_asset_service_dates(job: Job, db: Session, service_date: date) -> StepResult:
    """Stamp last_service_date on every asset the job touched."""
    updated = []
    for link in job.asset_links:
        asset = link.asset
        if asset is None:
            continue
        if asset.last_service_date is None or asset.last_service_date < service_date:
            asset.last_service_date = service_date
            updated.append(asset.id)
    db.flush()

    return StepResult(
        step="update_asset_service_dates",
        message=f"Last service date set on {len(updated)} assets",
        data={"asset_ids": updated, "service_date": service_date.isoformat()},
    )
