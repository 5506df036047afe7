"""
Test suite for loan closure, settlement and derogatory marking

Tests cancelling scheduled invoices, billing the remaining balance on a
final invoice and the failure behaviour around the processor.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.currency import Money
from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.borrowers import BorrowerManager
from lending_core.errors import ConflictError, InvalidTransitionError, TerminationError, ValidationError
from lending_core.funding import FundingOrchestrator
from lending_core.loans import DerogatoryType, LoanManager, LoanStatus, SigningEvent
from lending_core.payment_processor import InMemoryPaymentProcessor, InvoiceStatus
from lending_core.termination import TerminationReconciler


SIGNING_SEQUENCE = [
    SigningEvent.APPLICATION_SENT,
    SigningEvent.APPLICATION_COMPLETED,
    SigningEvent.IPAY_SIGNED,
    SigningEvent.DEALER_SIGNED,
    SigningEvent.BORROWER_SIGNED,
]


class TestTerminationReconciler:
    """Test closing loans and marking them derogatory"""

    def setup_method(self):
        """Set up a funded 16 week loan with 4 payments made and payment 5 open"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail)
        self.borrower_manager = BorrowerManager(self.storage, self.audit_trail)
        self.processor = InMemoryPaymentProcessor()
        self.funding = FundingOrchestrator(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail,
            convenience_fee=Money(Decimal('3.00')),
            today=lambda: date(2024, 1, 1)
        )
        self.reconciler = TerminationReconciler(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail,
            days_until_due=30
        )

        borrower = self.borrower_manager.create_borrower(
            first_name="James", last_name="Carter", email="james.carter@example.com"
        )
        self.loan = self.create_funded_loan(borrower.id)

        invoices = self.invoices_by_number(self.loan.id)
        for number in range(1, 5):
            self.processor.mark_invoice_paid(invoices[number].id)
        self.processor.finalize_invoice(invoices[5].id)

    def create_funded_loan(self, borrower_id):
        loan = self.loan_manager.create_loan(
            borrower_id=borrower_id,
            principal_amount=Money(Decimal('2968.00')),
            term_weeks=16
        )
        for event in SIGNING_SEQUENCE:
            self.loan_manager.apply_signing_event(loan.id, event)
        return self.funding.fund_loan(loan.id).loan

    def invoices_by_number(self, loan_id):
        return {
            int(inv.metadata['payment_number']): inv
            for inv in self.processor.invoices_for_loan(loan_id)
            if 'payment_number' in inv.metadata
        }

    def final_invoices(self, loan_id):
        return [inv for inv in self.processor.invoices_for_loan(loan_id)
                if inv.metadata.get('invoice_type', '').endswith('final_balance')]

    def test_close_loan_bills_remaining_balance(self):
        """Test closing voids open, deletes draft and bills 12 remaining payments"""
        result = self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        assert result.loan.status == LoanStatus.CLOSED
        assert result.loan.closure_reason == "early_payoff"
        assert result.loan.closed_by == "admin"
        assert result.loan.operation_lock is None
        assert result.remaining_balance == Money(Decimal('2226.00'))
        assert result.loan.remaining_balance == Money(Decimal('2226.00'))
        assert result.payments_made == 4
        assert result.payments_remaining == 12
        assert result.invoices_voided == 1
        assert result.invoices_deleted == 11

        finals = self.final_invoices(self.loan.id)
        assert len(finals) == 1
        final = finals[0]
        assert final.id == result.loan.final_invoice_id
        assert final.status == InvoiceStatus.OPEN
        assert final.amount_due == 222600
        assert final.metadata['is_closure_final_balance'] == "true"
        assert final.metadata['payments_remaining'] == "12"
        assert final.description.endswith("(Closed)")

        invoices = self.invoices_by_number(self.loan.id)
        assert invoices[5].status == InvoiceStatus.VOID
        assert all(invoices[n].status == InvoiceStatus.PAID for n in range(1, 5))
        assert 6 not in invoices

        event = self.audit_trail.get_events_by_type(AuditEventType.LOAN_CLOSED)[0]
        assert event.metadata["remaining_balance"] == "2226.00"
        assert event.user_id == "admin"

    def test_close_with_waived_balance(self):
        """Test a waived balance records zero and creates no final invoice"""
        result = self.reconciler.close_loan(self.loan.id, "dealer_agreement", actor_id="admin",
                                            waive_balance=True)

        assert result.loan.status == LoanStatus.CLOSED
        assert result.remaining_balance.is_zero()
        assert result.final_invoice_id is None
        assert self.final_invoices(self.loan.id) == []
        assert self.processor.call_count("create_invoice") == 16

    def test_close_with_custom_reason(self):
        """Test the custom text is stored for reason other"""
        result = self.reconciler.close_loan(self.loan.id, "other", actor_id="admin",
                                            custom_reason="  Borrower relocated  ")
        assert result.loan.closure_reason == "Borrower relocated"

    def test_mark_derogatory(self):
        """Test derogatory marking bills the balance with the reason label"""
        result = self.reconciler.mark_derogatory(self.loan.id, "repossession", actor_id="admin")

        loan = result.loan
        assert loan.status == LoanStatus.DEROGATORY
        assert loan.derogatory_status
        assert loan.derogatory_reason == "repossession"
        assert loan.derogatory_type == DerogatoryType.MANUAL
        assert loan.derogatory_marked_by == "admin"
        assert result.remaining_balance.is_positive()

        final = self.final_invoices(self.loan.id)[0]
        assert "Repossession" in final.description
        assert final.metadata['is_derogatory_final_balance'] == "true"
        assert final.metadata['derogatory_reason'] == "repossession"

    def test_settle_stops_scheduled_billing(self):
        """Test settling cancels scheduled invoices and records the unbilled balance"""
        result = self.reconciler.settle_loan(self.loan.id, actor_id="admin", reason="  paid in full  ")

        loan = result.loan
        assert loan.status == LoanStatus.SETTLED
        assert loan.closure_reason == "paid in full"
        assert loan.closed_by == "admin"
        assert loan.operation_lock is None
        assert loan.remaining_balance == Money(Decimal('2226.00'))
        assert result.invoices_voided == 1
        assert result.invoices_deleted == 11
        assert result.final_invoice_id is None
        assert self.final_invoices(self.loan.id) == []

        statuses = [inv.status for inv in self.processor.invoices_for_loan(self.loan.id)]
        assert InvoiceStatus.DRAFT not in statuses
        assert statuses.count(InvoiceStatus.PAID) == 4

        event = self.audit_trail.get_events_by_type(AuditEventType.LOAN_SETTLED)[0]
        assert event.user_id == "admin"
        assert event.metadata["remaining_balance"] == "2226.00"
        assert event.metadata["balance_waived"] is False

    def test_settle_without_reason(self):
        """Test a blank settlement reason is stored as none"""
        result = self.reconciler.settle_loan(self.loan.id, actor_id="admin", reason="   ")
        assert result.loan.status == LoanStatus.SETTLED
        assert result.loan.closure_reason is None

    def test_derogatory_with_nothing_owed(self):
        """Test a fully paid loan gets no final invoice"""
        for invoice in self.invoices_by_number(self.loan.id).values():
            self.processor.set_invoice_status(invoice.id, InvoiceStatus.PAID)

        result = self.reconciler.mark_derogatory(self.loan.id, "accident", actor_id="admin")

        assert result.remaining_balance.is_zero()
        assert result.final_invoice_id is None
        assert self.final_invoices(self.loan.id) == []

    @pytest.mark.parametrize("terminal", ["closed", "settled", "derogatory"])
    def test_terminal_loan_conflict(self, terminal):
        """Test a closed, settled or derogatory loan is refused before any processor call"""
        if terminal == "closed":
            self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")
        elif terminal == "settled":
            self.reconciler.settle_loan(self.loan.id, actor_id="admin")
        else:
            self.reconciler.mark_derogatory(self.loan.id, "repossession", actor_id="admin")
        calls = self.processor.call_count()

        with pytest.raises(ConflictError, match="already closed" if terminal == "closed" else "Cannot close"):
            self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")
        assert self.processor.call_count() == calls

        with pytest.raises(ConflictError, match="already marked" if terminal == "derogatory" else "Cannot mark"):
            self.reconciler.mark_derogatory(self.loan.id, "repossession", actor_id="admin")
        assert self.processor.call_count() == calls

        with pytest.raises(ConflictError, match="already settled" if terminal == "settled" else "Cannot settle"):
            self.reconciler.settle_loan(self.loan.id, actor_id="admin")
        assert self.processor.call_count() == calls
        assert self.loan_manager.get_loan(self.loan.id).operation_lock is None

    def test_unfunded_loan(self):
        """Test a loan that was never funded cannot be closed"""
        loan = self.loan_manager.create_loan(
            borrower_id=self.loan.borrower_id,
            principal_amount=Money(Decimal('1000.00')),
            term_weeks=8
        )
        with pytest.raises(InvalidTransitionError, match="not been funded"):
            self.reconciler.close_loan(loan.id, "early_payoff", actor_id="admin")

    def test_reason_validation(self):
        """Test missing, unknown and empty custom reasons are rejected before any call"""
        calls = self.processor.call_count()

        with pytest.raises(ValidationError, match="Reason is required"):
            self.reconciler.close_loan(self.loan.id, "", actor_id="admin")
        with pytest.raises(ValidationError, match="Unknown reason"):
            self.reconciler.close_loan(self.loan.id, "repossession", actor_id="admin")
        with pytest.raises(ValidationError, match="Custom reason is required"):
            self.reconciler.mark_derogatory(self.loan.id, "other", actor_id="admin", custom_reason="  ")
        with pytest.raises(ValidationError, match="acting user"):
            self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="")

        assert self.processor.call_count() == calls

    def test_failed_cancellation_is_skipped(self):
        """Test an invoice that cannot be voided is reported and closure continues"""
        open_invoice = self.invoices_by_number(self.loan.id)[5]
        self.processor.fail_on("void_invoice")

        result = self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        assert result.loan.status == LoanStatus.CLOSED
        assert result.failed_invoice_ids == [open_invoice.id]
        assert result.invoices_voided == 0
        assert result.invoices_deleted == 11

    def test_final_invoice_failure_leaves_status(self):
        """Test a failing final invoice aborts, and a rerun replaces the leftover draft"""
        self.processor.fail_on("finalize_invoice")

        with pytest.raises(TerminationError) as exc_info:
            self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        assert exc_info.value.step == "final_invoice"
        stored = self.loan_manager.get_loan(self.loan.id)
        assert stored.status == LoanStatus.FUNDED
        assert stored.operation_lock is None
        leftover = self.final_invoices(self.loan.id)
        assert [inv.status for inv in leftover] == [InvoiceStatus.DRAFT]

        result = self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        assert result.loan.status == LoanStatus.CLOSED
        assert result.remaining_balance == Money(Decimal('2226.00'))
        finals = self.final_invoices(self.loan.id)
        assert len(finals) == 1
        assert finals[0].id != leftover[0].id
        assert finals[0].status == InvoiceStatus.OPEN

    def test_open_final_invoice_is_reused(self):
        """Test an open final invoice from an earlier attempt is not billed twice"""
        self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")
        final = self.final_invoices(self.loan.id)[0]

        # Simulate an attempt that billed the balance but never recorded the status
        self.storage.compare_and_set(
            "loans", self.loan.id, {'status': 'closed'}, {'status': 'funded', 'final_invoice_id': None}
        )

        result = self.reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        assert result.final_invoice_id == final.id
        assert len(self.final_invoices(self.loan.id)) == 1

    def test_close_cancels_invoices_beyond_first_page(self):
        """Test closing finds the loan's invoices when the payer has more than 100"""
        for _ in range(6):
            loan = self.create_funded_loan(self.loan.borrower_id)
        payer_invoices = [inv for inv in self.processor.invoices.values()
                          if inv.customer_id == loan.payer_id]
        assert len(payer_invoices) > 100

        result = self.reconciler.close_loan(loan.id, "dealer_agreement", actor_id="admin", waive_balance=True)

        assert result.invoices_voided == 1
        assert result.invoices_deleted == 15
        assert [inv for inv in self.processor.invoices_for_loan(loan.id)
                if inv.status == InvoiceStatus.DRAFT] == []

    def test_zero_days_until_due_is_kept(self):
        """Test an explicit zero is not replaced by the configured default"""
        reconciler = TerminationReconciler(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail,
            days_until_due=0
        )
        assert reconciler.days_until_due == 0

        reconciler.close_loan(self.loan.id, "early_payoff", actor_id="admin")

        create_calls = [kwargs for name, kwargs in self.processor.calls if name == "create_invoice"]
        assert create_calls[-1]["days_until_due"] == 0
