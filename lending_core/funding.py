"""
Funding Orchestrator Module

Funds a fully signed loan: resolves the borrower's payer identity, creates
the weekly product and price, provisions one invoice per scheduled payment
and moves the loan to funded.
"""

from datetime import date, datetime, time, timedelta, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .borrowers import Borrower, BorrowerManager
from .config import get_config
from .currency import Money
from .errors import FundingError, PaymentProcessorError
from .loans import Loan, LoanManager, LoanStateMachine, LoanStatus
from .payment_processor import PaymentProcessor, ScheduledPaymentMetadata, InvoiceKind
from .schedule import PaymentScheduleEntry

logger = logging.getLogger("lending_core.funding")


@dataclass
class FundingResult:
    """Outcome of a successful funding"""
    loan: Loan
    payer_id: str
    product_id: str
    price_id: str
    invoice_ids: List[str] = field(default_factory=list)
    schedule: List[PaymentScheduleEntry] = field(default_factory=list)


def _at_midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)


class FundingOrchestrator:
    """
    Provisions billing for a loan and marks it funded.

    Funding is not transactional across the processor: if a step fails the
    loan stays fully_signed and invoices created so far are left in place.
    The FundingError lists them so an operator can clean up.
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        borrower_manager: BorrowerManager,
        processor: PaymentProcessor,
        audit_trail: AuditTrail,
        convenience_fee: Optional[Money] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.loan_manager = loan_manager
        self.borrower_manager = borrower_manager
        self.processor = processor
        self.audit_trail = audit_trail
        self.convenience_fee = convenience_fee or Money(Decimal(get_config().convenience_fee))
        self.today = today or (lambda: datetime.now(timezone.utc).date())

    def fund_loan(self, loan_id: str, actor_id: Optional[str] = None) -> FundingResult:
        """
        Fund a fully signed loan

        Args:
            loan_id: Loan to fund
            actor_id: User triggering the funding

        Returns:
            FundingResult with the funded loan and created processor objects

        Raises:
            NotFoundError: Unknown loan or borrower
            ConflictError: Loan already funded or claimed by another operation
            InvalidTransitionError: Loan is not fully signed yet
            FundingError: A processor step failed; loan left fully_signed
        """
        loan = self.loan_manager.require_loan(loan_id)
        LoanStateMachine.validate_funding(loan.status)
        borrower = self.borrower_manager.require_borrower(loan.borrower_id)

        token = self.loan_manager.claim(loan, "funding")
        logger.info(f"Funding loan {loan.id} ({loan.loan_number})")

        origin = self.today()
        step = "resolve_payer"
        invoice_ids: List[str] = []
        try:
            payer_id = self._resolve_payer(borrower, loan)

            step = "create_product"
            product = self.processor.create_product(
                name=f"Loan {loan.loan_number} - Weekly Payment",
                metadata={'loan_id': loan.id, 'loan_number': loan.loan_number}
            )

            step = "create_price"
            price = self.processor.create_recurring_price(
                product_id=product.id,
                unit_amount=loan.weekly_payment.to_minor_units(),
                currency=loan.currency.code.lower(),
                interval="week",
                metadata={'loan_id': loan.id}
            )

            step = "create_invoices"
            schedule = self.loan_manager.build_schedule(loan, origin)
            for entry in schedule:
                invoice_ids.append(self._create_payment_invoice(loan, payer_id, entry, origin))

        except PaymentProcessorError as e:
            self.loan_manager.release_claim(loan.id, token)
            logger.error(
                f"Funding loan {loan.id} failed at {step} after {len(invoice_ids)} invoices: {e}",
                extra={'loan_id': loan.id, 'step': step}
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_FUNDING_FAILED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=actor_id,
                metadata={"step": step, "created_invoice_ids": invoice_ids, "error": str(e)}
            )
            raise FundingError(
                f"Funding failed at {step}: {e}",
                loan_id=loan.id,
                step=step,
                created_invoice_ids=invoice_ids,
                body=e.body
            ) from e
        except Exception:
            self.loan_manager.release_claim(loan.id, token)
            raise

        self.loan_manager.store_schedule(loan.id, schedule)
        funded = self.loan_manager.complete_claim(loan.id, token, {
            'status': LoanStatus.FUNDED,
            'funding_date': origin,
            'payer_id': payer_id,
            'product_id': product.id,
            'price_id': price.id,
            'remaining_balance': loan.weekly_payment * loan.term_weeks,
        })

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_FUNDED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor_id,
            metadata={
                "payer_id": payer_id,
                "product_id": product.id,
                "price_id": price.id,
                "invoices": len(invoice_ids),
                "funding_date": origin,
                "remaining_balance": funded.remaining_balance.amount
            }
        )
        logger.info(f"Loan {loan.id} funded with {len(invoice_ids)} invoices", extra={'loan_id': loan.id})

        return FundingResult(
            loan=funded,
            payer_id=payer_id,
            product_id=product.id,
            price_id=price.id,
            invoice_ids=invoice_ids,
            schedule=schedule
        )

    def _resolve_payer(self, borrower: Borrower, loan: Loan) -> str:
        """Reuse the borrower's payer identity or create one"""
        if borrower.payer_id:
            existing = self.processor.retrieve_customer(borrower.payer_id)
            if existing is not None:
                return existing.id
            logger.warning(f"Payer {borrower.payer_id} for borrower {borrower.id} no longer exists; creating a new one")

        address = None
        if borrower.address:
            address = {
                'line1': borrower.address.line1,
                'line2': borrower.address.line2,
                'city': borrower.address.city,
                'state': borrower.address.state,
                'postal_code': borrower.address.postal_code,
                'country': borrower.address.country,
            }

        customer = self.processor.create_customer(
            email=borrower.email,
            name=borrower.full_name,
            phone=borrower.phone,
            address=address,
            metadata={
                'borrower_id': borrower.id,
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
            }
        )
        self.borrower_manager.set_payer_id(borrower.id, customer.id)
        return customer.id

    def _create_payment_invoice(self, loan: Loan, payer_id: str, entry: PaymentScheduleEntry, origin: date) -> str:
        """
        Create the invoice for one scheduled payment

        Payment 1 is finalized now and due a week after funding. Payment k
        finalizes automatically at origin + 7(k-1) days and is due at
        origin + 7k days.
        """
        number = entry.payment_number
        metadata = ScheduledPaymentMetadata(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            borrower_id=loan.borrower_id,
            payment_number=number,
            total_payments=loan.term_weeks
        )

        invoice = self.processor.create_invoice(
            customer_id=payer_id,
            collection_method="send_invoice",
            due_date=_at_midnight_utc(origin + timedelta(days=7 * number)),
            auto_advance=True,
            automatically_finalizes_at=(
                None if number == 1 else _at_midnight_utc(origin + timedelta(days=7 * (number - 1)))
            ),
            description=f"Loan {loan.loan_number} - Payment {number} of {loan.term_weeks}",
            metadata=metadata.to_dict()
        )

        line_metadata = {'loan_id': loan.id, 'payment_number': str(number)}
        self.processor.add_invoice_line(
            invoice_id=invoice.id,
            customer_id=payer_id,
            amount=loan.weekly_payment.to_minor_units(),
            description=f"Weekly Payment {number} of {loan.term_weeks}",
            currency=loan.currency.code.lower(),
            metadata={**line_metadata, 'type': InvoiceKind.SCHEDULED_PAYMENT.value}
        )
        if self.convenience_fee.is_positive():
            self.processor.add_invoice_line(
                invoice_id=invoice.id,
                customer_id=payer_id,
                amount=self.convenience_fee.to_minor_units(),
                description="Convenience Fee",
                currency=loan.currency.code.lower(),
                metadata={**line_metadata, 'type': 'convenience_fee'}
            )

        if number == 1:
            self.processor.finalize_invoice(invoice.id)

        return invoice.id
