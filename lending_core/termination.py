"""
Termination Reconciler Module

Closes, settles or marks a loan derogatory: cancels the loan's outstanding
scheduled invoices, computes what is still owed and bills it on a single
final invoice, then records the terminal status.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerManager
from .config import get_config
from .currency import Money
from .errors import NotFoundError, PaymentProcessorError, TerminationError, ValidationError
from .loans import DerogatoryType, Loan, LoanManager, LoanStateMachine, LoanStatus
from .payment_processor import (
    FinalBalanceMetadata, Invoice, InvoiceKind, InvoiceStatus, PaymentProcessor,
    ScheduledPaymentMetadata, list_loan_invoices, parse_invoice_metadata
)
from .reasons import (
    CLOSURE_REASONS, DEROGATORY_REASONS,
    get_closure_reason_label, get_derogatory_reason_label, resolve_reason
)

logger = logging.getLogger("lending_core.termination")

OPERATION_NAMES = {
    LoanStatus.CLOSED: "closure",
    LoanStatus.DEROGATORY: "derogatory",
    LoanStatus.SETTLED: "settlement",
}


@dataclass
class TerminationResult:
    """Outcome of closing, settling or marking a loan derogatory"""
    loan: Loan
    remaining_balance: Money
    payments_made: int
    payments_remaining: int
    invoices_voided: int = 0
    invoices_deleted: int = 0
    failed_invoice_ids: List[str] = field(default_factory=list)
    final_invoice_id: Optional[str] = None
    final_invoice_url: Optional[str] = None


@dataclass
class _Reconciliation:
    invoices_voided: int = 0
    invoices_deleted: int = 0
    failed_invoice_ids: List[str] = field(default_factory=list)
    payments_made: int = 0
    payments_remaining: int = 0
    balance_cents: int = 0
    final_invoice: Optional[Invoice] = None


class TerminationReconciler:
    """
    Shared closure, settlement and derogatory algorithm.

    All validation happens before the first processor call. Failing to
    cancel an individual invoice is logged and skipped; failing to bill the
    final balance aborts with the loan status unchanged. Re-running after a
    failure is safe: an open or paid final invoice for the loan is reused
    and a leftover draft one is replaced.
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        borrower_manager: BorrowerManager,
        processor: PaymentProcessor,
        audit_trail: AuditTrail,
        days_until_due: Optional[int] = None
    ):
        self.loan_manager = loan_manager
        self.borrower_manager = borrower_manager
        self.processor = processor
        self.audit_trail = audit_trail
        self.days_until_due = (
            days_until_due if days_until_due is not None else get_config().final_invoice_days_until_due
        )

    def close_loan(
        self,
        loan_id: str,
        reason: str,
        actor_id: str,
        custom_reason: Optional[str] = None,
        waive_balance: bool = False
    ) -> TerminationResult:
        """
        Close a funded loan

        Args:
            loan_id: Loan to close
            reason: Closure reason code (see CLOSURE_REASONS)
            actor_id: User closing the loan
            custom_reason: Required when reason is "other"
            waive_balance: Skip billing the remaining balance and record 0

        Returns:
            TerminationResult

        Raises:
            ValidationError: Missing or unknown reason, or no actor
            NotFoundError: Unknown loan, borrower or payer identity
            ConflictError: Loan already closed, settled or derogatory
            InvalidTransitionError: Loan not funded yet
            TerminationError: Listing invoices or billing the final balance failed
        """
        reason_text = resolve_reason(CLOSURE_REASONS, reason, custom_reason)
        return self._terminate(
            loan_id=loan_id,
            target=LoanStatus.CLOSED,
            reason_text=reason_text,
            reason_label=custom_reason.strip() if reason == "other" else get_closure_reason_label(reason),
            actor_id=actor_id,
            bill_balance=not waive_balance,
            derogatory_type=None
        )

    def mark_derogatory(
        self,
        loan_id: str,
        reason: str,
        actor_id: str,
        custom_reason: Optional[str] = None,
        derogatory_type: DerogatoryType = DerogatoryType.MANUAL
    ) -> TerminationResult:
        """
        Mark a funded loan derogatory; the remaining balance is always billed

        Args:
            loan_id: Loan to mark
            reason: Derogatory reason code (see DEROGATORY_REASONS)
            actor_id: User (or "system") marking the loan
            custom_reason: Required when reason is "other"
            derogatory_type: MANUAL for admin actions, AUTOMATIC from delinquency review

        Returns:
            TerminationResult
        """
        reason_text = resolve_reason(DEROGATORY_REASONS, reason, custom_reason)
        return self._terminate(
            loan_id=loan_id,
            target=LoanStatus.DEROGATORY,
            reason_text=reason_text,
            reason_label=custom_reason.strip() if reason == "other" else get_derogatory_reason_label(reason),
            actor_id=actor_id,
            bill_balance=True,
            derogatory_type=derogatory_type
        )

    def settle_loan(self, loan_id: str, actor_id: str, reason: Optional[str] = None) -> TerminationResult:
        """
        Settle a funded loan

        Scheduled invoices are cancelled like on closure. The unpaid balance
        is recorded on the loan but not billed.

        Raises:
            ConflictError: Loan already closed, settled or derogatory
            InvalidTransitionError: Loan not funded yet
            TerminationError: Listing invoices failed
        """
        reason_text = reason.strip() if reason and reason.strip() else None
        return self._terminate(
            loan_id=loan_id,
            target=LoanStatus.SETTLED,
            reason_text=reason_text,
            reason_label=reason_text or "",
            actor_id=actor_id,
            bill_balance=False,
            derogatory_type=None,
            keep_unbilled_balance=True
        )

    def _terminate(
        self,
        loan_id: str,
        target: LoanStatus,
        reason_text: Optional[str],
        reason_label: str,
        actor_id: str,
        bill_balance: bool,
        derogatory_type: Optional[DerogatoryType],
        keep_unbilled_balance: bool = False
    ) -> TerminationResult:
        if not actor_id:
            raise ValidationError("An acting user is required")

        loan = self.loan_manager.require_loan(loan_id)
        LoanStateMachine.validate_termination(loan, target)
        borrower = self.borrower_manager.require_borrower(loan.borrower_id)
        payer_id = loan.payer_id or borrower.payer_id
        if not payer_id:
            raise NotFoundError(f"Borrower {borrower.id} has no payment processor customer")

        operation = OPERATION_NAMES[target]
        token = self.loan_manager.claim(loan, operation)
        logger.info(f"Starting {operation} of loan {loan.id}: {reason_text}", extra={'loan_id': loan.id})

        step = "list_invoices"
        try:
            invoices = list_loan_invoices(self.processor, payer_id, loan.id)
            outcome = self._cancel_scheduled_invoices(loan, invoices)

            if bill_balance and outcome.balance_cents > 0:
                step = "final_invoice"
                kind = (InvoiceKind.CLOSURE_FINAL_BALANCE if target == LoanStatus.CLOSED
                        else InvoiceKind.DEROGATORY_FINAL_BALANCE)
                outcome.final_invoice = self._bill_final_balance(
                    loan, payer_id, invoices, outcome, kind, reason_text, reason_label
                )
            elif not bill_balance and not keep_unbilled_balance:
                outcome.balance_cents = 0
        except PaymentProcessorError as e:
            self.loan_manager.release_claim(loan.id, token)
            logger.error(f"{operation} of loan {loan.id} failed at {step}: {e}",
                         extra={'loan_id': loan.id, 'step': step})
            raise TerminationError(f"Loan {operation} failed at {step}: {e}",
                                   loan_id=loan.id, step=step, body=e.body) from e
        except Exception:
            self.loan_manager.release_claim(loan.id, token)
            raise

        remaining = Money.from_minor_units(outcome.balance_cents, loan.currency)
        final_invoice_id = outcome.final_invoice.id if outcome.final_invoice else None
        now = datetime.now(timezone.utc)

        if target == LoanStatus.CLOSED:
            updates = {
                'status': LoanStatus.CLOSED,
                'closure_reason': reason_text,
                'closure_date': now,
                'closed_by': actor_id,
                'remaining_balance': remaining,
                'final_invoice_id': final_invoice_id,
            }
            event_type = AuditEventType.LOAN_CLOSED
        elif target == LoanStatus.SETTLED:
            updates = {
                'status': LoanStatus.SETTLED,
                'closure_reason': reason_text,
                'closure_date': now,
                'closed_by': actor_id,
                'remaining_balance': remaining,
            }
            event_type = AuditEventType.LOAN_SETTLED
        else:
            updates = {
                'status': LoanStatus.DEROGATORY,
                'derogatory_status': True,
                'derogatory_reason': reason_text,
                'derogatory_date': now,
                'derogatory_marked_by': actor_id,
                'derogatory_type': derogatory_type,
                'remaining_balance': remaining,
                'final_invoice_id': final_invoice_id,
            }
            event_type = AuditEventType.LOAN_MARKED_DEROGATORY

        updated = self.loan_manager.complete_claim(loan.id, token, updates)

        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor_id,
            metadata={
                "from_status": loan.status.value,
                "reason": reason_text,
                "derogatory_type": derogatory_type,
                "remaining_balance": remaining.amount,
                "payments_made": outcome.payments_made,
                "payments_remaining": outcome.payments_remaining,
                "invoices_voided": outcome.invoices_voided,
                "invoices_deleted": outcome.invoices_deleted,
                "failed_invoice_ids": outcome.failed_invoice_ids,
                "final_invoice_id": final_invoice_id,
                "balance_waived": not bill_balance and not keep_unbilled_balance
            }
        )
        logger.info(
            f"Loan {loan.id} {target.value}: voided {outcome.invoices_voided}, "
            f"deleted {outcome.invoices_deleted}, balance {remaining.to_string()}",
            extra={'loan_id': loan.id}
        )

        return TerminationResult(
            loan=updated,
            remaining_balance=remaining,
            payments_made=outcome.payments_made,
            payments_remaining=outcome.payments_remaining,
            invoices_voided=outcome.invoices_voided,
            invoices_deleted=outcome.invoices_deleted,
            failed_invoice_ids=outcome.failed_invoice_ids,
            final_invoice_id=final_invoice_id,
            final_invoice_url=outcome.final_invoice.hosted_invoice_url if outcome.final_invoice else None
        )

    def _cancel_scheduled_invoices(self, loan: Loan, invoices: List[Invoice]) -> _Reconciliation:
        """Void open and delete draft payment invoices, then count what was paid"""
        outcome = _Reconciliation()

        scheduled = [inv for inv in invoices
                     if isinstance(parse_invoice_metadata(inv.metadata), ScheduledPaymentMetadata)]

        for invoice in scheduled:
            try:
                if invoice.status == InvoiceStatus.OPEN:
                    self.processor.void_invoice(invoice.id)
                    outcome.invoices_voided += 1
                elif invoice.status == InvoiceStatus.DRAFT:
                    self.processor.delete_invoice(invoice.id)
                    outcome.invoices_deleted += 1
            except PaymentProcessorError as e:
                logger.warning(f"Could not cancel invoice {invoice.id} for loan {loan.id}: {e}",
                               extra={'loan_id': loan.id})
                outcome.failed_invoice_ids.append(invoice.id)

        outcome.payments_made = sum(1 for inv in scheduled if inv.status == InvoiceStatus.PAID)
        outcome.payments_remaining = max(0, loan.term_weeks - outcome.payments_made)
        outcome.balance_cents = outcome.payments_remaining * loan.weekly_payment.to_minor_units()
        return outcome

    def _bill_final_balance(
        self,
        loan: Loan,
        payer_id: str,
        invoices: List[Invoice],
        outcome: _Reconciliation,
        kind: InvoiceKind,
        reason_text: str,
        reason_label: str
    ) -> Invoice:
        """Create, fill and finalize the final balance invoice, reusing one from an earlier attempt"""
        for invoice in invoices:
            if not isinstance(parse_invoice_metadata(invoice.metadata), FinalBalanceMetadata):
                continue
            if invoice.status in (InvoiceStatus.OPEN, InvoiceStatus.PAID):
                logger.info(f"Reusing final balance invoice {invoice.id} for loan {loan.id}")
                return invoice
            if invoice.status == InvoiceStatus.DRAFT:
                self.processor.delete_invoice(invoice.id)

        metadata = FinalBalanceMetadata(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            borrower_id=loan.borrower_id,
            kind=kind,
            reason=reason_text,
            original_term_weeks=loan.term_weeks,
            payments_made=outcome.payments_made,
            payments_remaining=outcome.payments_remaining
        )
        if kind == InvoiceKind.CLOSURE_FINAL_BALANCE:
            description = f"Final Balance Due - Loan {loan.loan_number} (Closed)"
        else:
            description = f"Final Balance Due - Loan {loan.loan_number} (Derogatory - {reason_label})"

        invoice = self.processor.create_invoice(
            customer_id=payer_id,
            collection_method="send_invoice",
            days_until_due=self.days_until_due,
            auto_advance=True,
            description=description,
            metadata=metadata.to_dict()
        )
        self.processor.add_invoice_line(
            invoice_id=invoice.id,
            customer_id=payer_id,
            amount=outcome.balance_cents,
            description=(
                f"Remaining Balance - {outcome.payments_remaining} payments "
                f"@ {loan.weekly_payment.to_string()}/week"
            ),
            currency=loan.currency.code.lower(),
            metadata={'loan_id': loan.id, 'type': kind.value}
        )
        return self.processor.finalize_invoice(invoice.id)
