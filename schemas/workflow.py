"""Pydantic schemas for workflow inputs, results and API payloads."""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from models.models import PaymentMethod, PaymentStatus


# --- Money roll-up ---

class RollupMode(str, enum.Enum):
    """How percentage modifiers combine with the subtotal."""
    FLAT_ADDITIVE = "flat_additive"  # invoices, estimates with lines
    CHAINED = "chained"              # material lists: markup -> tax -> contingency


class DiscountKind(str, enum.Enum):
    AMOUNT = "amount"
    PERCENT = "percent"


class LineAmount(BaseModel):
    """Quantity and unit price of one line."""
    quantity: Decimal
    unit_price: Decimal


class Discount(BaseModel):
    kind: DiscountKind = DiscountKind.AMOUNT
    value: Decimal = Decimal("0")


class TotalsRequest(BaseModel):
    lines: list[LineAmount] = Field(default_factory=list)
    markup_percent: Decimal = Decimal("0")
    markup_amount: Decimal | None = Field(default=None, description="Flat markup; overrides markup_percent")
    tax_percent: Decimal = Decimal("0")
    contingency_percent: Decimal = Decimal("0")
    discount: Discount | None = None
    tax_included: bool = False
    mode: RollupMode = RollupMode.FLAT_ADDITIVE


class Totals(BaseModel):
    """Roll-up result; every field rounded to cents."""
    mode: RollupMode
    subtotal: Decimal
    markup_amount: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    contingency_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    total: Decimal
    # Running totals, chained mode only
    after_markup: Decimal | None = None
    after_tax: Decimal | None = None


# --- Workflow execution ---

class StepResult(BaseModel):
    """Outcome of a single side effect."""
    step: str
    success: bool = True
    skipped: bool = False
    message: str = ""
    data: dict | None = None


class TransitionResult(BaseModel):
    """Everything one status change (or payment) triggered."""
    entity: str
    entity_id: int | None = None
    previous_status: str | None = None
    new_status: str | None = None
    fired: bool = False
    steps: list[StepResult] = Field(default_factory=list)
    summary: str = ""


class SchedulerPassResult(BaseModel):
    name: str
    touched: int = 0
    failed: int = 0
    skipped: int = 0


class SchedulerReport(BaseModel):
    run_at: datetime
    skipped: bool = False
    passes: list[SchedulerPassResult] = Field(default_factory=list)

    def count(self, name: str) -> int:
        for p in self.passes:
            if p.name == name:
                return p.touched
        return 0


# --- API payloads ---

class StatusChange(BaseModel):
    status: str = Field(min_length=1)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    method: PaymentMethod = PaymentMethod.CASH
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference: str | None = None


class WarrantyProjection(BaseModel):
    id: int
    install_date: date | None
    warranty_start_date: date | None
    labor_warranty_expiry: date | None
    parts_warranty_expiry: date | None
    compressor_warranty_expiry: date | None
    warranty_expiry: date | None
    next_service_due: date | None

    model_config = ConfigDict(from_attributes=True)


class CustomerBalance(BaseModel):
    customer_id: int
    balance_owed: Decimal
