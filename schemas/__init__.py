from schemas.workflow import (
    RollupMode, DiscountKind, LineAmount, Discount, TotalsRequest, Totals,
    StepResult, TransitionResult, SchedulerPassResult, SchedulerReport,
    StatusChange, PaymentCreate, WarrantyProjection, CustomerBalance,
)

__all__ = [
    "RollupMode", "DiscountKind", "LineAmount", "Discount", "TotalsRequest", "Totals",
    "StepResult", "TransitionResult", "SchedulerPassResult", "SchedulerReport",
    "StatusChange", "PaymentCreate", "WarrantyProjection", "CustomerBalance",
]
