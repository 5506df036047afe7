"""
Delinquency Monitor Module

Periodic sweep over serviced loans. Reads each loan's scheduled payment
invoices from the processor, records whether the loan is late, keeps the
stored schedule and remaining balance in step with what has been paid, and
escalates seriously late loans to derogatory review and then to derogatory.
A separate pass adds the late fee to payments left open past the grace
period.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .currency import Money, decimal_from_string
from .errors import ConflictError, PaymentProcessorError
from .loans import DerogatoryType, Loan, LoanManager, LoanStatus
from .payment_processor import (
    LATE_FEE_APPLIED, LATE_FEE_APPLIED_DATE, LATE_FEE_LINE_TYPE, LATE_FEE_ORIGINAL_INVOICE,
    FinalBalanceMetadata, Invoice, InvoiceStatus, PaymentProcessor, ScheduledPaymentMetadata,
    has_late_fee_applied, late_fee_cents, list_loan_invoices, parse_invoice_metadata
)
from .schedule import ScheduleEntryStatus
from .termination import TerminationReconciler

logger = logging.getLogger("lending_core.delinquency")

SYSTEM_ACTOR = "system"

MONITORED_STATUSES = (LoanStatus.FUNDED, LoanStatus.ACTIVE, LoanStatus.PENDING_DEROGATORY_REVIEW)


@dataclass
class DelinquencyReport:
    """Summary of one late-payment sweep"""
    checked: int = 0
    late: int = 0
    on_time: int = 0
    moved_to_review: int = 0
    activated: int = 0
    cured: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DerogatoryReviewReport:
    """Summary of one derogatory review pass"""
    reviewed: int = 0
    marked_derogatory: int = 0
    waiting: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LateFeeReport:
    """Summary of one late fee pass"""
    checked: int = 0
    applied: int = 0
    already_applied: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LoanInvoice:
    """A loan's processor invoice with its late fee split from the base amount"""
    invoice: Invoice
    base_amount: Money
    late_fee: Money
    payment_number: Optional[int] = None
    is_final_balance: bool = False

    @property
    def has_late_fee(self) -> bool:
        return self.late_fee.is_positive()


@dataclass
class LoanInvoiceSummary:
    loan_id: str
    invoices: List[LoanInvoice]
    total_invoices: int
    paid_invoices: int
    open_invoices: int
    total_paid: Money


@dataclass
class _PaymentPosition:
    paid: List[int]
    overdue: List[int]
    days_overdue: int


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DelinquencyMonitor:
    """
    Late payment tracking and automatic derogatory escalation
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        processor: PaymentProcessor,
        termination_reconciler: TerminationReconciler,
        audit_trail: AuditTrail,
        review_after_days: Optional[int] = None,
        review_window_days: Optional[int] = None,
        late_fee: Optional[Money] = None,
        late_fee_grace_days: Optional[int] = None
    ):
        self.loan_manager = loan_manager
        self.processor = processor
        self.termination_reconciler = termination_reconciler
        self.audit_trail = audit_trail
        config = get_config()
        self.review_after_days = (
            review_after_days if review_after_days is not None else config.derogatory_review_after_days
        )
        self.review_window_days = (
            review_window_days if review_window_days is not None else config.derogatory_review_window_days
        )
        self.late_fee = late_fee if late_fee is not None else Money(decimal_from_string(config.late_fee_amount))
        self.late_fee_grace_days = (
            late_fee_grace_days if late_fee_grace_days is not None else config.late_fee_grace_days
        )

    def check_late_payments(self, now: Optional[datetime] = None) -> DelinquencyReport:
        """
        Sweep serviced loans and update their late payment state

        Loans without a payer identity, loans already derogatory, and loans
        held by an in-flight funding or termination are skipped. A failure on
        one loan is logged and recorded in the report; the sweep continues.

        Args:
            now: Sweep time, defaults to the current time

        Returns:
            DelinquencyReport
        """
        now = _as_aware(now or datetime.now(timezone.utc))
        report = DelinquencyReport()

        for loan in self.loan_manager.list_loans(MONITORED_STATUSES):
            if not loan.payer_id or loan.derogatory_status or loan.operation_lock:
                continue
            report.checked += 1
            try:
                self._check_loan(loan, now, report)
            except Exception as e:
                logger.error(f"Late payment check failed for loan {loan.id}: {e}", extra={'loan_id': loan.id})
                report.errors.append({'loan_id': loan.id, 'error': str(e)})

        logger.info(
            f"Late payment sweep: {report.checked} checked, {report.late} late, "
            f"{report.moved_to_review} moved to review, {len(report.errors)} errors"
        )
        return report

    def _check_loan(self, loan: Loan, now: datetime, report: DelinquencyReport) -> None:
        invoices = list_loan_invoices(self.processor, loan.payer_id, loan.id)
        position = self._payment_position(invoices, now)
        is_late = bool(position.overdue)

        if is_late:
            report.late += 1
        else:
            report.on_time += 1

        statuses: Dict[int, ScheduleEntryStatus] = {}
        for number in range(1, loan.term_weeks + 1):
            if number in position.paid:
                statuses[number] = ScheduleEntryStatus.PAID
            elif number in position.overdue:
                statuses[number] = ScheduleEntryStatus.OVERDUE
            else:
                statuses[number] = ScheduleEntryStatus.PENDING
        self.loan_manager.update_schedule_statuses(loan.id, statuses)

        payments_remaining = max(loan.term_weeks - len(position.paid), 0)
        fields = {
            'is_late': is_late,
            'days_overdue': position.days_overdue,
            'last_payment_check': now,
            'remaining_balance': loan.weekly_payment * payments_remaining,
        }

        target = None
        if loan.status in (LoanStatus.FUNDED, LoanStatus.ACTIVE) and position.days_overdue >= self.review_after_days:
            target = LoanStatus.PENDING_DEROGATORY_REVIEW
            report.moved_to_review += 1
        elif loan.status == LoanStatus.PENDING_DEROGATORY_REVIEW and not is_late:
            target = LoanStatus.ACTIVE
            report.cured += 1
        elif loan.status == LoanStatus.FUNDED and position.paid:
            target = LoanStatus.ACTIVE
            report.activated += 1

        if target is not None:
            self.loan_manager.transition(
                loan.id, target, actor_id=SYSTEM_ACTOR, updates=fields,
                reason=f"{position.days_overdue} days overdue" if is_late else "payments current"
            )
        elif not self.loan_manager.update_servicing_fields(loan, fields):
            raise ConflictError(f"Loan {loan.id} changed during the late payment check")

        if is_late != loan.is_late:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_LATE_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=SYSTEM_ACTOR,
                metadata={
                    "is_late": is_late,
                    "days_overdue": position.days_overdue,
                    "overdue_payments": position.overdue
                }
            )
            if is_late:
                logger.warning(f"Loan {loan.id} is {position.days_overdue} days overdue", extra={'loan_id': loan.id})

    @staticmethod
    def _payment_position(invoices: List[Invoice], now: datetime) -> _PaymentPosition:
        """Paid and overdue scheduled payment numbers, and days since the oldest overdue due date"""
        paid: List[int] = []
        overdue: List[int] = []
        oldest_due: Optional[datetime] = None

        for invoice in invoices:
            metadata = parse_invoice_metadata(invoice.metadata)
            if not isinstance(metadata, ScheduledPaymentMetadata):
                continue
            if invoice.status == InvoiceStatus.PAID:
                paid.append(metadata.payment_number)
            elif invoice.status == InvoiceStatus.OPEN and invoice.due_date and _as_aware(invoice.due_date) < now:
                overdue.append(metadata.payment_number)
                due = _as_aware(invoice.due_date)
                if oldest_due is None or due < oldest_due:
                    oldest_due = due

        days_overdue = (now - oldest_due).days if oldest_due else 0
        return _PaymentPosition(paid=sorted(paid), overdue=sorted(overdue), days_overdue=days_overdue)

    def process_derogatory_reviews(self, now: Optional[datetime] = None) -> DerogatoryReviewReport:
        """
        Mark loans derogatory once their review window has passed

        A loan in pending_derogatory_review for at least the review window
        that is still late is marked derogatory with reason missed_payments,
        type automatic, by the system actor. Loans that caught up are left
        for the next late-payment sweep to cure.

        Args:
            now: Review time, defaults to the current time

        Returns:
            DerogatoryReviewReport
        """
        now = _as_aware(now or datetime.now(timezone.utc))
        report = DerogatoryReviewReport()
        window = timedelta(days=self.review_window_days)

        for loan in self.loan_manager.list_loans([LoanStatus.PENDING_DEROGATORY_REVIEW]):
            report.reviewed += 1
            entered_review = _as_aware(loan.status_changed_at or loan.updated_at)
            if now - entered_review < window or not loan.is_late:
                report.waiting += 1
                continue

            try:
                self.termination_reconciler.mark_derogatory(
                    loan.id,
                    reason="missed_payments",
                    actor_id=SYSTEM_ACTOR,
                    derogatory_type=DerogatoryType.AUTOMATIC
                )
                report.marked_derogatory += 1
            except Exception as e:
                logger.error(f"Automatic derogatory marking failed for loan {loan.id}: {e}",
                             extra={'loan_id': loan.id})
                report.errors.append({'loan_id': loan.id, 'error': str(e)})

        logger.info(f"Derogatory review: {report.marked_derogatory} of {report.reviewed} marked derogatory")
        return report

    def apply_late_fees(self, now: Optional[datetime] = None) -> LateFeeReport:
        """
        Add the late fee to scheduled payments still open past the grace period

        The fee goes on a revision of the overdue invoice: the revision keeps
        the original due date and metadata, gets a late fee line and the
        late_fee_applied flag, and finalizing it voids the original. Invoices
        already carrying the flag are left alone, so reruns add nothing. A
        draft revision left behind by an earlier failed attempt is deleted
        before trying again.

        Args:
            now: Run time, defaults to the current time

        Returns:
            LateFeeReport
        """
        now = _as_aware(now or datetime.now(timezone.utc))
        report = LateFeeReport()
        if not self.late_fee.is_positive():
            logger.info("Late fee is zero, nothing to apply")
            return report

        cutoff = now - timedelta(days=self.late_fee_grace_days)
        for loan in self.loan_manager.list_loans(MONITORED_STATUSES):
            if not loan.payer_id or loan.derogatory_status or loan.operation_lock:
                continue
            report.checked += 1
            try:
                invoices = list_loan_invoices(self.processor, loan.payer_id, loan.id)
            except PaymentProcessorError as e:
                logger.error(f"Listing invoices failed for loan {loan.id}: {e}", extra={'loan_id': loan.id})
                report.errors.append({'loan_id': loan.id, 'error': str(e)})
                continue

            leftovers: Dict[str, List[Invoice]] = {}
            for invoice in invoices:
                if invoice.status == InvoiceStatus.DRAFT and invoice.from_invoice_id:
                    leftovers.setdefault(invoice.from_invoice_id, []).append(invoice)

            for invoice in invoices:
                metadata = parse_invoice_metadata(invoice.metadata)
                if not isinstance(metadata, ScheduledPaymentMetadata) or invoice.status != InvoiceStatus.OPEN:
                    continue
                if invoice.due_date is None or _as_aware(invoice.due_date) >= cutoff:
                    continue
                if has_late_fee_applied(invoice):
                    report.already_applied += 1
                    continue
                try:
                    self._add_late_fee(loan, invoice, metadata, leftovers.get(invoice.id, []), now)
                    report.applied += 1
                except PaymentProcessorError as e:
                    logger.error(f"Late fee failed for invoice {invoice.id} of loan {loan.id}: {e}",
                                 extra={'loan_id': loan.id})
                    report.errors.append({'loan_id': loan.id, 'invoice_id': invoice.id, 'error': str(e)})

        logger.info(
            f"Late fees: {report.applied} applied, {report.already_applied} already applied, "
            f"{len(report.errors)} errors across {report.checked} loans"
        )
        return report

    def _add_late_fee(self, loan: Loan, invoice: Invoice, metadata: ScheduledPaymentMetadata,
                      leftovers: List[Invoice], now: datetime) -> Invoice:
        for draft in leftovers:
            self.processor.delete_invoice(draft.id)

        revision = self.processor.revise_invoice(invoice.id)
        self.processor.update_invoice(
            revision.id,
            due_date=invoice.due_date,
            metadata={
                **invoice.metadata,
                LATE_FEE_APPLIED: 'true',
                LATE_FEE_APPLIED_DATE: now.isoformat(),
                LATE_FEE_ORIGINAL_INVOICE: invoice.id,
            }
        )
        self.processor.add_invoice_line(
            invoice_id=revision.id,
            customer_id=loan.payer_id,
            amount=self.late_fee.to_minor_units(),
            description=f"Late Fee - Payment {metadata.payment_number}",
            currency=loan.currency.code.lower(),
            metadata={'loan_id': loan.id, 'type': LATE_FEE_LINE_TYPE}
        )
        finalized = self.processor.finalize_invoice(revision.id)

        self.audit_trail.log_event(
            event_type=AuditEventType.LATE_FEE_APPLIED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=SYSTEM_ACTOR,
            metadata={
                "invoice_id": finalized.id,
                "original_invoice_id": invoice.id,
                "payment_number": metadata.payment_number,
                "late_fee": self.late_fee.amount
            }
        )
        logger.info(f"Late fee of {self.late_fee.to_string()} added to payment {metadata.payment_number} "
                    f"of loan {loan.id}", extra={'loan_id': loan.id})
        return finalized

    def loan_invoices(self, loan_id: str) -> LoanInvoiceSummary:
        """
        A loan's processor invoices, newest first, with late fees split out

        Raises:
            NotFoundError: If the loan does not exist
        """
        loan = self.loan_manager.require_loan(loan_id)
        invoices = list_loan_invoices(self.processor, loan.payer_id, loan.id) if loan.payer_id else []
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        invoices.sort(key=lambda inv: (_as_aware(inv.created_at) if inv.created_at else oldest, inv.id),
                      reverse=True)

        entries = []
        for invoice in invoices:
            metadata = parse_invoice_metadata(invoice.metadata)
            late_fee = Money.from_minor_units(late_fee_cents(invoice), loan.currency)
            entries.append(LoanInvoice(
                invoice=invoice,
                base_amount=Money.from_minor_units(invoice.amount_due, loan.currency) - late_fee,
                late_fee=late_fee,
                payment_number=metadata.payment_number if isinstance(metadata, ScheduledPaymentMetadata) else None,
                is_final_balance=isinstance(metadata, FinalBalanceMetadata)
            ))

        return LoanInvoiceSummary(
            loan_id=loan.id,
            invoices=entries,
            total_invoices=len(entries),
            paid_invoices=sum(1 for inv in invoices if inv.status == InvoiceStatus.PAID),
            open_invoices=sum(1 for inv in invoices if inv.status == InvoiceStatus.OPEN),
            total_paid=Money.from_minor_units(sum(inv.amount_paid for inv in invoices), loan.currency)
        )
