"""Workflow routes: status changes, payments, scheduler runs and calculators."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from database import get_db
from schemas.workflow import (
    CustomerBalance, PaymentCreate, SchedulerPassResult, SchedulerReport, StatusChange,
    Totals, TotalsRequest, TransitionResult, WarrantyProjection,
)
from workflow import scheduler
from workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["workflow"])

PASSES = {
    "aging": scheduler.run_status_aging,
    "renewals": scheduler.run_auto_renewal,
    "visits": scheduler.run_visit_generation,
}


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


# --- Status transitions ---

@router.post("/estimates/{estimate_id}/status", response_model=TransitionResult)
def change_estimate_status(
    estimate_id: int, body: StatusChange,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    return engine.change_estimate_status(db, estimate_id, body.status)


@router.post("/jobs/{job_id}/status", response_model=TransitionResult)
def change_job_status(
    job_id: int, body: StatusChange,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    return engine.change_job_status(db, job_id, body.status)


@router.post("/invoices/{invoice_id}/status", response_model=TransitionResult)
def change_invoice_status(
    invoice_id: int, body: StatusChange,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    return engine.change_invoice_status(db, invoice_id, body.status)


@router.post("/invoices/{invoice_id}/payments", response_model=TransitionResult, status_code=201)
def record_payment(
    invoice_id: int, body: PaymentCreate,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    return engine.record_payment(db, invoice_id, body)


# --- Agreement scheduler ---

@router.post("/agreements/run/{pass_name}")
def run_agreement_pass(
    pass_name: str, force: bool = False,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
) -> SchedulerPassResult | SchedulerReport:
    """Run one scheduler pass (aging, renewals, visits) or all of them."""
    if pass_name == "all":
        return engine.run_agreement_passes(db, force=force)
    run = PASSES.get(pass_name)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Unknown scheduler pass '{pass_name}'")
    logger.info(f"Manual scheduler pass: {pass_name}")
    return run(db, engine.today())


# --- Calculators and aggregates ---

@router.post("/calculations/totals", response_model=Totals)
def calculate_totals(body: TotalsRequest, engine: WorkflowEngine = Depends(get_engine)):
    return engine.compute_totals(
        body.lines,
        markup_percent=body.markup_percent,
        tax_percent=body.tax_percent,
        contingency_percent=body.contingency_percent,
        discount=body.discount,
        tax_included=body.tax_included,
        mode=body.mode,
        markup_amount=body.markup_amount,
    )


@router.post("/assets/{asset_id}/warranty", response_model=WarrantyProjection)
def recompute_warranty(
    asset_id: int,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    return engine.recompute_asset_warranty(db, asset_id)


@router.get("/customers/{customer_id}/balance", response_model=CustomerBalance)
def get_customer_balance(
    customer_id: int,
    db: Session = Depends(get_db), engine: WorkflowEngine = Depends(get_engine),
):
    balance = engine.customer_balance(db, customer_id)
    return CustomerBalance(customer_id=customer_id, balance_owed=balance)
