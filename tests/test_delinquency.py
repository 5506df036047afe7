"""
Test suite for the delinquency monitor

Tests late payment detection, schedule status updates, activation on the
first payment, escalation to derogatory review, automatic derogatory marking, late
fees and the per-loan invoice listing.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from lending_core.currency import Money
from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.borrowers import BorrowerManager
from lending_core.errors import NotFoundError
from lending_core.delinquency import DelinquencyMonitor
from lending_core.funding import FundingOrchestrator
from lending_core.loans import DerogatoryType, LoanManager, LoanStatus, SigningEvent
from lending_core.payment_processor import InMemoryPaymentProcessor, InvoiceStatus
from lending_core.schedule import ScheduleEntryStatus
from lending_core.termination import TerminationReconciler


SIGNING_SEQUENCE = [
    SigningEvent.APPLICATION_SENT,
    SigningEvent.APPLICATION_COMPLETED,
    SigningEvent.IPAY_SIGNED,
    SigningEvent.DEALER_SIGNED,
    SigningEvent.BORROWER_SIGNED,
]


def utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


class TestDelinquencyMonitor:
    """Test late payment sweeps and derogatory reviews"""

    def setup_method(self):
        """Set up a 16 week loan funded on 2024-01-01"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail)
        self.borrower_manager = BorrowerManager(self.storage, self.audit_trail)
        self.processor = InMemoryPaymentProcessor()
        funding = FundingOrchestrator(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail,
            convenience_fee=Money(Decimal('3.00')),
            today=lambda: date(2024, 1, 1)
        )
        reconciler = TerminationReconciler(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail
        )
        self.monitor = DelinquencyMonitor(
            self.loan_manager, self.processor, reconciler, self.audit_trail,
            review_after_days=30,
            review_window_days=7
        )

        borrower = self.borrower_manager.create_borrower(
            first_name="Ana", last_name="Silva", email="ana.silva@example.com"
        )
        loan = self.loan_manager.create_loan(
            borrower_id=borrower.id,
            principal_amount=Money(Decimal('2968.00')),
            term_weeks=16
        )
        for event in SIGNING_SEQUENCE:
            self.loan_manager.apply_signing_event(loan.id, event)
        self.loan = funding.fund_loan(loan.id).loan

    def invoice(self, number):
        for invoice in self.processor.invoices_for_loan(self.loan.id):
            if invoice.metadata.get('payment_number') == str(number):
                return invoice
        raise KeyError(number)

    def test_loan_moves_to_review(self):
        """Test a loan 33 days overdue moves to pending_derogatory_review"""
        report = self.monitor.check_late_payments(now=utc(2024, 2, 10))

        assert report.checked == 1
        assert report.late == 1
        assert report.moved_to_review == 1

        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.PENDING_DEROGATORY_REVIEW
        assert loan.is_late
        assert loan.days_overdue == 33
        assert loan.last_payment_check == utc(2024, 2, 10)
        assert loan.remaining_balance == Money(Decimal('2968.00'))

        schedule = self.loan_manager.get_payment_schedule(self.loan.id)
        assert schedule[0].status == ScheduleEntryStatus.OVERDUE
        assert schedule[1].status == ScheduleEntryStatus.PENDING

        late_events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_LATE_STATUS_CHANGED)
        assert late_events[0].metadata["days_overdue"] == 33
        assert late_events[0].user_id == "system"

    def test_late_below_threshold(self):
        """Test a loan a few days late stays funded"""
        report = self.monitor.check_late_payments(now=utc(2024, 1, 20))

        assert report.late == 1
        assert report.moved_to_review == 0
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.FUNDED
        assert loan.is_late
        assert loan.days_overdue == 12

    def test_first_payment_activates_loan(self):
        """Test a paid first invoice moves the loan to active"""
        self.processor.mark_invoice_paid(self.invoice(1).id)

        report = self.monitor.check_late_payments(now=utc(2024, 1, 10))

        assert report.activated == 1
        assert report.on_time == 1
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert not loan.is_late
        assert loan.remaining_balance == Money(Decimal('2782.50'))
        assert self.loan_manager.get_payment_schedule(self.loan.id)[0].status == ScheduleEntryStatus.PAID

    def test_review_cured_by_payment(self):
        """Test a loan in review returns to active once it catches up"""
        self.monitor.check_late_payments(now=utc(2024, 2, 10))
        self.processor.mark_invoice_paid(self.invoice(1).id)

        report = self.monitor.check_late_payments(now=utc(2024, 2, 11))

        assert report.cured == 1
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert not loan.is_late
        assert loan.days_overdue == 0

        late_events = self.audit_trail.get_events_by_type(AuditEventType.LOAN_LATE_STATUS_CHANGED)
        assert [e.metadata["is_late"] for e in late_events] == [True, False]

    def test_review_marks_derogatory_after_window(self):
        """Test a loan still late after the review window is marked derogatory"""
        self.monitor.check_late_payments(now=utc(2024, 2, 10))

        # Review windows run from when the loan entered review
        entered = self.loan_manager.get_loan(self.loan.id).status_changed_at
        waiting = self.monitor.process_derogatory_reviews(now=entered + timedelta(days=2))
        assert waiting.waiting == 1
        assert waiting.marked_derogatory == 0

        report = self.monitor.process_derogatory_reviews(now=entered + timedelta(days=8))

        assert report.marked_derogatory == 1
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.DEROGATORY
        assert loan.derogatory_status
        assert loan.derogatory_type == DerogatoryType.AUTOMATIC
        assert loan.derogatory_reason == "missed_payments"
        assert loan.derogatory_marked_by == "system"
        assert loan.remaining_balance == Money(Decimal('2968.00'))
        assert loan.final_invoice_id is not None

    def test_derogatory_loans_are_skipped(self):
        """Test derogatory loans are not checked again"""
        self.monitor.check_late_payments(now=utc(2024, 2, 10))
        entered = self.loan_manager.get_loan(self.loan.id).status_changed_at
        self.monitor.process_derogatory_reviews(now=entered + timedelta(days=8))

        report = self.monitor.check_late_payments(now=utc(2024, 2, 20))
        assert report.checked == 0

    def test_claimed_loan_is_skipped(self):
        """Test a loan held by another operation is left alone"""
        self.loan_manager.claim(self.loan, "closure")

        report = self.monitor.check_late_payments(now=utc(2024, 2, 10))

        assert report.checked == 0
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.FUNDED

    def test_processor_failure_is_reported(self):
        """Test a failing loan is recorded and the sweep completes"""
        self.processor.fail_on("list_invoices")

        report = self.monitor.check_late_payments(now=utc(2024, 2, 10))

        assert report.checked == 1
        assert len(report.errors) == 1
        assert report.errors[0]['loan_id'] == self.loan.id
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.FUNDED

    def payment_invoices(self, number):
        return [inv for inv in self.processor.invoices_for_loan(self.loan.id)
                if inv.metadata.get('payment_number') == str(number)]

    def test_late_fee_added_after_grace_period(self):
        """Test an invoice open past the grace period is revised with the late fee"""
        original = self.invoice(1)

        report = self.monitor.apply_late_fees(now=utc(2024, 1, 14))

        assert report.checked == 1
        assert report.applied == 1
        assert original.status == InvoiceStatus.VOID

        revision = [inv for inv in self.payment_invoices(1) if inv.id != original.id][0]
        assert revision.status == InvoiceStatus.OPEN
        assert revision.from_invoice_id == original.id
        assert revision.due_date == original.due_date
        assert revision.amount_due == original.amount_due + 1500
        assert revision.metadata['late_fee_applied'] == "true"
        assert revision.metadata['late_fee_original_invoice_id'] == original.id
        assert revision.metadata['loan_id'] == self.loan.id
        assert revision.lines[-1].description == "Late Fee - Payment 1"

        event = self.audit_trail.get_events_by_type(AuditEventType.LATE_FEE_APPLIED)[0]
        assert event.metadata["invoice_id"] == revision.id
        assert event.metadata["late_fee"] == "15.00"

    def test_late_fee_applied_once(self):
        """Test rerunning the late fee pass adds nothing"""
        self.monitor.apply_late_fees(now=utc(2024, 1, 14))

        report = self.monitor.apply_late_fees(now=utc(2024, 1, 20))

        assert report.applied == 0
        assert report.already_applied == 1
        assert self.processor.call_count("revise_invoice") == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LATE_FEE_APPLIED)) == 1

    def test_no_late_fee_within_grace_period(self):
        """Test an invoice is not charged until the grace period has fully passed"""
        report = self.monitor.apply_late_fees(now=utc(2024, 1, 13))

        assert report.applied == 0
        assert self.processor.call_count("revise_invoice") == 0
        assert self.invoice(1).status == InvoiceStatus.OPEN

    def test_leftover_revision_is_replaced(self):
        """Test a draft revision left by a failed pass is deleted before retrying"""
        self.processor.fail_on("finalize_invoice")

        report = self.monitor.apply_late_fees(now=utc(2024, 1, 14))

        assert report.applied == 0
        assert len(report.errors) == 1
        leftover = [inv for inv in self.payment_invoices(1) if inv.status == InvoiceStatus.DRAFT][0]

        report = self.monitor.apply_late_fees(now=utc(2024, 1, 14))

        assert report.applied == 1
        assert leftover.status == InvoiceStatus.DELETED
        statuses = sorted(inv.status.value for inv in self.payment_invoices(1))
        assert statuses == ["open", "void"]

    def test_revised_invoice_still_counts_as_overdue(self):
        """Test the late payment sweep reads the revision in place of the voided original"""
        self.monitor.apply_late_fees(now=utc(2024, 1, 14))

        report = self.monitor.check_late_payments(now=utc(2024, 1, 14))

        assert report.late == 1
        loan = self.loan_manager.get_loan(self.loan.id)
        assert loan.days_overdue == 6
        assert self.loan_manager.get_payment_schedule(self.loan.id)[0].status == ScheduleEntryStatus.OVERDUE

    def test_loan_invoices_summary(self):
        """Test the invoice listing splits late fees and totals payments"""
        self.monitor.apply_late_fees(now=utc(2024, 1, 14))
        revision = [inv for inv in self.payment_invoices(1) if inv.status == InvoiceStatus.OPEN][0]
        self.processor.mark_invoice_paid(revision.id)

        summary = self.monitor.loan_invoices(self.loan.id)

        assert summary.total_invoices == 17
        assert summary.paid_invoices == 1
        assert summary.open_invoices == 0
        assert summary.total_paid == Money(Decimal('203.50'))

        newest = summary.invoices[0]
        assert newest.invoice.id == revision.id
        assert newest.payment_number == 1
        assert newest.has_late_fee
        assert newest.late_fee == Money(Decimal('15.00'))
        assert newest.base_amount == Money(Decimal('188.50'))
        assert not any(entry.has_late_fee for entry in summary.invoices[1:])

    def test_loan_invoices_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.monitor.loan_invoices("missing")
