from builders.job_from_estimate import build_job_from_estimate
from builders.service_history import build_service_history, update_asset_service_dates
from builders.invoice_from_job import build_invoice_from_job
from builders.agreement_job import build_agreement_job

__all__ = [
    "build_job_from_estimate", "build_service_history", "update_asset_service_dates",
    "build_invoice_from_job", "build_agreement_job",
]
