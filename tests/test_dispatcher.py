"""Tests for the status transition dispatcher — triggers, idempotency and balances."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func

import builders.job_from_estimate
from models.models import (
    Customer, Estimate, Invoice, Job, Payment, ServiceHistoryRecord,
)
from schemas.workflow import PaymentCreate
from workflow.dispatcher import (
    on_estimate_status_changed, on_invoice_status_changed, on_job_status_changed, on_payment_recorded,
)
from workflow.errors import ConsistencyError, EntityNotFoundError, InvalidInputError

COMPLETED_AT = datetime(2025, 3, 1, 16, 30)


def live_balance_sum(db, customer_id) -> Decimal:
    total = db.query(func.coalesce(func.sum(Invoice.balance_due), 0)).filter(
        Invoice.customer_id == customer_id,
        Invoice.is_archived.is_(False),
        Invoice.status != "void",
    ).scalar()
    return Decimal(str(total)).quantize(Decimal("0.01"))


@pytest.fixture
def customer(factory):
    return factory.customer()


@pytest.fixture
def approved_estimate_lines():
    return [("Condenser coil", 2, "100.00"), ("Labor", 1, "50.00")]


class TestEstimateApproval:
    """Estimate -> Approved creates exactly one linked job."""

    def test_approval_creates_linked_job(self, db_session, factory, customer, approved_estimate_lines):
        estimate = factory.estimate(customer, lines=approved_estimate_lines, trade_type="HVAC", priority="urgent")

        result = on_estimate_status_changed(db_session, estimate, "sent", "approved")

        assert result.fired is True
        job = db_session.query(Job).filter(Job.estimate_id == estimate.id).one()
        assert estimate.job_id == job.id
        assert estimate.status == "approved"
        assert job.status == "approved"
        assert job.job_number == "JOB-00001"
        assert job.description == f"Auto-created from Estimate {estimate.estimate_number}"
        assert job.customer_id == customer.id
        assert job.trade_type == "HVAC"
        assert job.priority == "urgent"
        assert job.estimated_total == Decimal("250.00")

    def test_approving_twice_yields_one_job(self, db_session, factory, customer, approved_estimate_lines):
        estimate = factory.estimate(customer, lines=approved_estimate_lines)

        on_estimate_status_changed(db_session, estimate, "sent", "approved")
        second = on_estimate_status_changed(db_session, estimate, "sent", "approved")

        assert second.steps[0].skipped is True
        assert db_session.query(Job).filter(Job.estimate_id == estimate.id).count() == 1

    def test_same_status_is_noop(self, db_session, factory, customer):
        estimate = factory.estimate(customer, status="approved")
        result = on_estimate_status_changed(db_session, estimate, "approved", "approved")
        assert result.fired is False
        assert result.steps == []
        assert db_session.query(Job).count() == 0

    def test_non_trigger_transition(self, db_session, factory, customer):
        estimate = factory.estimate(customer, status="draft")
        result = on_estimate_status_changed(db_session, estimate, "draft", "sent")
        assert result.fired is False
        assert estimate.status == "sent"
        assert db_session.query(Job).count() == 0

    def test_unknown_status_rejected(self, db_session, factory, customer):
        estimate = factory.estimate(customer)
        with pytest.raises(InvalidInputError):
            on_estimate_status_changed(db_session, estimate, "sent", "signed")

    def test_lost_race_rolls_back_whole_transition(self, db_session, factory, customer, monkeypatch):
        estimate = factory.estimate(customer)
        # A concurrent writer already created the job; this caller's guard read missed it
        factory.job(customer, status="approved", estimate_id=estimate.id)
        monkeypatch.setattr(builders.job_from_estimate, "live_job_for_estimate", lambda db, estimate_id: None)

        with pytest.raises(ConsistencyError):
            on_estimate_status_changed(db_session, estimate, "sent", "approved")

        db_session.expire_all()
        assert db_session.get(Estimate, estimate.id).status == "sent"
        assert db_session.query(Job).filter(Job.estimate_id == estimate.id).count() == 1


class TestJobCompletion:
    """Job -> Completed creates service history, asset dates and the invoice."""

    def test_completion_builds_all_derivatives(self, db_session, factory, customer):
        furnace = factory.asset(customer)
        heat_pump = factory.asset(customer)
        job = factory.job(
            customer, assets=[(furnace, "installed"), (heat_pump, "inspected")],
            actual_total=Decimal("480.00"), assigned_employee_id=7,
        )

        result = on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)

        assert result.fired is True
        assert [s.step for s in result.steps] == [
            "create_service_history",
            "update_asset_service_dates",
            "create_invoice_from_job",
            "reconcile_customer_balance",
        ]
        assert job.completed_date == COMPLETED_AT

        records = {r.asset_id: r for r in db_session.query(ServiceHistoryRecord).all()}
        assert records[furnace.id].type == "non_warranty_repair"
        assert records[heat_pump.id].type == "preventive_maintenance"
        assert records[furnace.id].status == "resolved"
        assert records[furnace.id].cost == Decimal("480.00")
        assert records[furnace.id].tech_id == 7
        assert records[furnace.id].record_number.startswith("SH-")

        assert furnace.last_service_date == date(2025, 3, 1)
        assert heat_pump.last_service_date == date(2025, 3, 1)

        invoice = db_session.query(Invoice).filter(Invoice.job_id == job.id).one()
        assert job.invoice_id == invoice.id
        assert invoice.status == "draft"
        assert invoice.total == Decimal("480.00")
        assert invoice.balance_due == Decimal("480.00")
        assert invoice.invoice_date == date(2025, 3, 1)
        assert invoice.due_date == date(2025, 3, 31)
        assert invoice.payment_terms == "Net 30"
        assert invoice.created_from == "job"
        assert len(invoice.lines) == 1

        assert db_session.get(Customer, customer.id).balance_owed == Decimal("480.00")

    def test_completing_twice_yields_one_set_of_derivatives(self, db_session, factory, customer):
        assets = [factory.asset(customer), factory.asset(customer)]
        job = factory.job(customer, assets=[(a, "serviced") for a in assets], actual_total=Decimal("150.00"))

        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        second = on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)

        assert second.fired is False
        assert db_session.query(ServiceHistoryRecord).filter_by(job_id=job.id).count() == 2
        assert db_session.query(Invoice).filter_by(job_id=job.id).count() == 1

    def test_invoice_copies_estimate_lines(self, db_session, factory, customer, approved_estimate_lines):
        estimate = factory.estimate(customer, lines=approved_estimate_lines)
        on_estimate_status_changed(db_session, estimate, "sent", "approved")
        job = db_session.get(Job, estimate.job_id)

        on_job_status_changed(db_session, job, "approved", "completed", now=COMPLETED_AT)

        invoice = db_session.get(Invoice, job.invoice_id)
        assert [line.description for line in invoice.lines] == ["Condenser coil", "Labor"]
        assert [line.line_total for line in invoice.lines] == [Decimal("200.00"), Decimal("50.00")]
        assert invoice.subtotal == Decimal("250.00")
        assert invoice.total == Decimal("250.00")

    def test_fallback_line_uses_estimated_total(self, db_session, factory, customer):
        job = factory.job(customer, estimated_total=Decimal("99.95"))
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        invoice = db_session.get(Invoice, job.invoice_id)
        assert invoice.total == Decimal("99.95")

    def test_last_service_date_never_moves_back(self, db_session, factory, customer):
        asset = factory.asset(customer, last_service_date=date(2025, 6, 1))
        job = factory.job(customer, assets=[(asset, "serviced")])
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        assert asset.last_service_date == date(2025, 6, 1)

    def test_leaving_done_status_clears_completed_date(self, db_session, factory, customer):
        job = factory.job(customer)
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        on_job_status_changed(db_session, job, "completed", "closed", now=COMPLETED_AT)
        assert job.completed_date == COMPLETED_AT

        on_job_status_changed(db_session, job, "closed", "in_progress", now=COMPLETED_AT)
        assert job.completed_date is None

    def test_agreement_visit_counted(self, db_session, factory, customer):
        agreement = factory.agreement(customer=customer, visits=2, used=0)
        job = factory.job(customer, status="scheduled", agreement_id=agreement.id)

        on_job_status_changed(db_session, job, "scheduled", "completed", now=COMPLETED_AT)

        assert agreement.visits_used == 1

    def test_agreement_visit_counted_once_across_reinvoicing(self, db_session, factory, customer):
        agreement = factory.agreement(customer=customer, visits=4, used=0)
        job = factory.job(customer, status="scheduled", agreement_id=agreement.id, actual_total=Decimal("80.00"))

        on_job_status_changed(db_session, job, "scheduled", "completed", now=COMPLETED_AT)
        first = db_session.get(Invoice, job.invoice_id)
        on_invoice_status_changed(db_session, first, first.status, "void")
        on_job_status_changed(db_session, job, "completed", "in_progress", now=COMPLETED_AT)
        again = on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)

        assert again.fired is True
        assert job.invoice_id != first.id
        count_step = next(s for s in again.steps if s.step == "count_agreement_visit")
        assert count_step.skipped is True
        assert agreement.visits_used == 1
        assert job.visit_counted is True

    def test_closing_without_completing_fires(self, db_session, factory, customer):
        asset = factory.asset(customer)
        job = factory.job(customer, assets=[(asset, "serviced")], actual_total=Decimal("60.00"))

        result = on_job_status_changed(db_session, job, "in_progress", "closed", now=COMPLETED_AT)

        assert result.fired is True
        assert job.completed_date == COMPLETED_AT
        assert db_session.query(ServiceHistoryRecord).filter_by(job_id=job.id).count() == 1
        assert db_session.query(Invoice).filter_by(job_id=job.id).count() == 1

        after = on_job_status_changed(db_session, job, "closed", "completed", now=COMPLETED_AT)
        assert after.fired is False
        assert db_session.query(Invoice).filter_by(job_id=job.id).count() == 1

    def test_unknown_role_rejected(self, factory, customer):
        asset = factory.asset(customer)
        with pytest.raises(InvalidInputError):
            factory.job(customer, assets=[(asset, "polished")])


class TestInvoiceVoid:
    """Invoice -> Void releases the job and reconciles the customer."""

    def test_void_clears_job_link_and_allows_fresh_invoice(self, db_session, factory, customer):
        job = factory.job(customer, actual_total=Decimal("300.00"))
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        first = db_session.get(Invoice, job.invoice_id)

        result = on_invoice_status_changed(db_session, first, first.status, "void")

        assert result.fired is True
        assert job.invoice_id is None
        assert db_session.get(Customer, customer.id).balance_owed == Decimal("0.00")

        on_job_status_changed(db_session, job, "completed", "in_progress", now=COMPLETED_AT)
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)

        assert job.invoice_id is not None
        assert job.invoice_id != first.id
        live = db_session.query(Invoice).filter(Invoice.job_id == job.id, Invoice.status != "void").all()
        assert [i.id for i in live] == [job.invoice_id]

    def test_void_leaves_foreign_pointer_alone(self, db_session, factory, customer):
        job = factory.job(customer)
        on_job_status_changed(db_session, job, "in_progress", "completed", now=COMPLETED_AT)
        stray = factory.invoice(customer, job_id=job.id, status="void")

        on_invoice_status_changed(db_session, stray, "draft", "void")

        assert job.invoice_id is not None
        assert job.invoice_id != stray.id


class TestPayments:
    """Payments recompute invoice and customer balances."""

    def test_full_payment_marks_paid(self, db_session, factory, customer, workflow_engine):
        invoice = factory.invoice(customer, total="200.00")

        result = workflow_engine.record_payment(db_session, invoice.id, PaymentCreate(amount=Decimal("200.00")))

        assert result.previous_status == "sent"
        assert result.new_status == "paid"
        assert invoice.amount_paid == Decimal("200.00")
        assert invoice.balance_due == Decimal("0.00")
        assert db_session.get(Customer, customer.id).balance_owed == Decimal("0.00")

    def test_pending_payment_not_applied(self, db_session, factory, customer):
        invoice = factory.invoice(customer, total="200.00")
        payment = Payment(invoice_id=invoice.id, amount=Decimal("200.00"), status="pending")
        db_session.add(payment)

        on_payment_recorded(db_session, payment)

        assert invoice.status == "sent"
        assert invoice.balance_due == Decimal("200.00")

    def test_refund_reopens_paid_invoice(self, db_session, factory, customer, workflow_engine):
        invoice = factory.invoice(customer, total="120.00")
        workflow_engine.record_payment(db_session, invoice.id, PaymentCreate(amount=Decimal("120.00")))
        payment = db_session.query(Payment).filter_by(invoice_id=invoice.id).one()

        payment.status = "refunded"
        on_payment_recorded(db_session, payment)

        assert invoice.status == "sent"
        assert invoice.balance_due == Decimal("120.00")

    def test_payment_for_missing_invoice(self, db_session):
        with pytest.raises(EntityNotFoundError):
            on_payment_recorded(db_session, Payment(invoice_id=999, amount=Decimal("1.00")))

    def test_missing_invoice_rolls_back_pending_payment(self, db_session):
        payment = Payment(invoice_id=999, amount=Decimal("1.00"))
        db_session.add(payment)

        with pytest.raises(EntityNotFoundError):
            on_payment_recorded(db_session, payment)

        assert not db_session.new
        assert db_session.query(Payment).count() == 0

    def test_engine_missing_row_rolls_back(self, db_session, factory, customer, workflow_engine):
        invoice = factory.invoice(customer)
        invoice.notes = "unsaved edit"

        with pytest.raises(EntityNotFoundError):
            workflow_engine.change_job_status(db_session, 999, "completed")

        assert not db_session.dirty
        assert invoice.notes is None

    def test_balance_matches_live_invoices_after_any_sequence(self, db_session, factory, customer, workflow_engine):
        big = factory.invoice(customer, total="200.00")
        small = factory.invoice(customer, total="100.00")
        factory.invoice(customer, total="75.00", is_archived=True)
        owed = lambda: db_session.get(Customer, customer.id).balance_owed  # noqa: E731

        workflow_engine.record_payment(db_session, big.id, PaymentCreate(amount=Decimal("50.00")))
        assert owed() == live_balance_sum(db_session, customer.id) == Decimal("250.00")

        on_invoice_status_changed(db_session, small, "sent", "void")
        assert owed() == live_balance_sum(db_session, customer.id) == Decimal("150.00")

        workflow_engine.record_payment(db_session, big.id, PaymentCreate(amount=Decimal("150.00")))
        assert owed() == live_balance_sum(db_session, customer.id) == Decimal("0.00")
        assert big.status == "paid"

        on_invoice_status_changed(db_session, big, "paid", "overdue")
        assert owed() == live_balance_sum(db_session, customer.id) == Decimal("0.00")
