"""Invoice balance and customer balance reconciliation."""

import logging
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.models import Customer, Invoice, InvoiceStatus, Payment, PaymentStatus
from services.money import ZERO, round_money
from workflow.errors import EntityNotFoundError

logger = logging.getLogger(__name__)


def recompute_invoice_balance(db: Session, invoice: Invoice) -> Decimal:
    """
    Apply completed payments to an invoice.

    balance_due = max(0, total - sum(completed payments)). The invoice flips
    to Paid when the balance reaches zero, and back to Sent if a refund or
    failed payment reopens a balance on a Paid invoice. Void invoices keep
    their status.
    """
    db.flush()
    paid = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.invoice_id == invoice.id,
        Payment.status == PaymentStatus.COMPLETED.value,
    ).scalar()
    paid = round_money(paid)
    balance = max(ZERO, round_money(invoice.total) - paid)

    invoice.amount_paid = paid
    invoice.balance_due = balance

    if invoice.status != InvoiceStatus.VOID.value:
        if balance == ZERO and paid > ZERO and invoice.status != InvoiceStatus.PAID.value:
            invoice.status = InvoiceStatus.PAID.value
            logger.info(f"Invoice {invoice.invoice_number} paid in full")
        elif balance > ZERO and invoice.status == InvoiceStatus.PAID.value:
            invoice.status = InvoiceStatus.SENT.value
            logger.warning(f"Invoice {invoice.invoice_number} reopened with balance {balance}")

    logger.info(f"Invoice {invoice.invoice_number}: paid {paid}, balance {balance}")
    return balance


def recompute_customer_balance(db: Session, customer_id: int | None) -> Decimal | None:
    """
    Set Customer.balance_owed to the sum of balance_due over the customer's
    non-archived, non-void invoices. Returns the new balance, or None when
    there is no customer to reconcile.
    """
    if customer_id is None:
        return None
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise EntityNotFoundError("Customer", customer_id)

    db.flush()
    owed = db.query(func.coalesce(func.sum(Invoice.balance_due), 0)).filter(
        Invoice.customer_id == customer_id,
        Invoice.is_archived.is_(False),
        Invoice.status != InvoiceStatus.VOID.value,
    ).scalar()

    customer.balance_owed = round_money(owed)
    logger.info(f"Customer {customer_id} balance owed: {customer.balance_owed}")
    return customer.balance_owed
