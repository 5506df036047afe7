"""
Loan Module

Loan records, the status state machine, and the loan manager that persists
loans, applies status transitions with conditional updates, and stores each
loan's payment schedule.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .schedule import (
    EffectiveRateFn, PaymentScheduleEntry, ScheduleEntryStatus,
    calculate_weekly_payment, generate_payment_schedule, validate_term_weeks
)

logger = logging.getLogger("lending_core.loans")


class LoanStatus(Enum):
    """Loan lifecycle statuses"""
    DRAFT = "draft"
    APPLICATION_SENT = "application_sent"            # Application emailed to borrower
    APPLICATION_COMPLETED = "application_completed"  # Borrower submitted; review state
    IPAY_APPROVED = "ipay_approved"                  # Lender signed
    DEALER_APPROVED = "dealer_approved"              # Dealer signed
    FULLY_SIGNED = "fully_signed"                    # Borrower signed; ready to fund
    FUNDED = "funded"                                # Invoices provisioned
    ACTIVE = "active"                                # Collecting payments
    PENDING_DEROGATORY_REVIEW = "pending_derogatory_review"
    CLOSED = "closed"
    SETTLED = "settled"
    DEROGATORY = "derogatory"


class SigningEvent(Enum):
    """Application and e-signature events that move a loan along the signing track"""
    APPLICATION_SENT = "application_sent"
    APPLICATION_COMPLETED = "application_completed"
    IPAY_SIGNED = "ipay_signed"
    DEALER_SIGNED = "dealer_signed"
    BORROWER_SIGNED = "borrower_signed"
    DECLINED = "declined"
    VOIDED = "voided"


class DerogatoryType(Enum):
    """How a loan came to be marked derogatory"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


TERMINAL_STATUSES = frozenset({LoanStatus.CLOSED, LoanStatus.SETTLED, LoanStatus.DEROGATORY})

SERVICING_STATUSES = frozenset({
    LoanStatus.FUNDED, LoanStatus.ACTIVE, LoanStatus.PENDING_DEROGATORY_REVIEW
})

SIGNING_STATUSES = frozenset({
    LoanStatus.APPLICATION_COMPLETED, LoanStatus.IPAY_APPROVED,
    LoanStatus.DEALER_APPROVED, LoanStatus.FULLY_SIGNED
})

ALLOWED_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.DRAFT: frozenset({LoanStatus.APPLICATION_SENT}),
    LoanStatus.APPLICATION_SENT: frozenset({LoanStatus.APPLICATION_COMPLETED}),
    LoanStatus.APPLICATION_COMPLETED: frozenset({LoanStatus.IPAY_APPROVED}),
    LoanStatus.IPAY_APPROVED: frozenset({LoanStatus.DEALER_APPROVED}),
    LoanStatus.DEALER_APPROVED: frozenset({LoanStatus.FULLY_SIGNED}),
    LoanStatus.FULLY_SIGNED: frozenset({LoanStatus.FUNDED}),
    LoanStatus.FUNDED: frozenset({
        LoanStatus.ACTIVE, LoanStatus.PENDING_DEROGATORY_REVIEW,
        LoanStatus.CLOSED, LoanStatus.SETTLED, LoanStatus.DEROGATORY
    }),
    LoanStatus.ACTIVE: frozenset({
        LoanStatus.PENDING_DEROGATORY_REVIEW,
        LoanStatus.CLOSED, LoanStatus.SETTLED, LoanStatus.DEROGATORY
    }),
    LoanStatus.PENDING_DEROGATORY_REVIEW: frozenset({
        LoanStatus.ACTIVE, LoanStatus.CLOSED, LoanStatus.SETTLED, LoanStatus.DEROGATORY
    }),
    LoanStatus.CLOSED: frozenset(),
    LoanStatus.SETTLED: frozenset(),
    LoanStatus.DEROGATORY: frozenset(),
}

# Forward signing events and the status each one requires
SIGNING_EVENT_TRANSITIONS: Dict[SigningEvent, tuple] = {
    SigningEvent.APPLICATION_SENT: (LoanStatus.DRAFT, LoanStatus.APPLICATION_SENT),
    SigningEvent.APPLICATION_COMPLETED: (LoanStatus.APPLICATION_SENT, LoanStatus.APPLICATION_COMPLETED),
    SigningEvent.IPAY_SIGNED: (LoanStatus.APPLICATION_COMPLETED, LoanStatus.IPAY_APPROVED),
    SigningEvent.DEALER_SIGNED: (LoanStatus.IPAY_APPROVED, LoanStatus.DEALER_APPROVED),
    SigningEvent.BORROWER_SIGNED: (LoanStatus.DEALER_APPROVED, LoanStatus.FULLY_SIGNED),
}

REVERSAL_EVENTS = frozenset({SigningEvent.DECLINED, SigningEvent.VOIDED})


class LoanStateMachine:
    """
    Pure validation of loan status changes.

    Transitions are one-directional along ALLOWED_TRANSITIONS. The only
    backward moves are declined or voided signing envelopes, which return a
    loan on the signing track to application_completed for review.
    """

    @staticmethod
    def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    @classmethod
    def validate_transition(cls, current: LoanStatus, target: LoanStatus) -> None:
        """
        Raise unless current -> target is an allowed forward transition

        Raises:
            ConflictError: current is terminal
            InvalidTransitionError: target not reachable from current
        """
        if current in TERMINAL_STATUSES:
            raise ConflictError(f"Loan is already {current.value}")
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

    @staticmethod
    def validate_funding(current: LoanStatus) -> None:
        """Funding requires exactly fully_signed; double funding is a conflict"""
        if current == LoanStatus.FULLY_SIGNED:
            return
        if current in SERVICING_STATUSES or current in TERMINAL_STATUSES:
            raise ConflictError(f"Loan is already {current.value}")
        raise InvalidTransitionError(
            current.value, LoanStatus.FUNDED.value,
            f"Loan must be fully signed before funding (current status: {current.value})"
        )

    @staticmethod
    def validate_termination(loan: 'Loan', target: LoanStatus) -> None:
        """
        Validate closure, settlement or derogatory marking (target CLOSED, SETTLED or DEROGATORY)

        Raises:
            ConflictError: Loan already closed, settled or derogatory
            InvalidTransitionError: Loan has not been funded yet
        """
        if target == LoanStatus.DEROGATORY:
            if loan.status == LoanStatus.DEROGATORY or loan.derogatory_status:
                raise ConflictError("Loan is already marked as derogatory")
            if loan.status in (LoanStatus.CLOSED, LoanStatus.SETTLED):
                raise ConflictError("Cannot mark closed or settled loans as derogatory")
        elif target == LoanStatus.CLOSED:
            if loan.status == LoanStatus.CLOSED:
                raise ConflictError("Loan is already closed")
            if loan.status in (LoanStatus.DEROGATORY, LoanStatus.SETTLED) or loan.derogatory_status:
                raise ConflictError("Cannot close derogatory or settled loans")
        elif target == LoanStatus.SETTLED:
            if loan.status == LoanStatus.SETTLED:
                raise ConflictError("Loan is already settled")
            if loan.status in (LoanStatus.CLOSED, LoanStatus.DEROGATORY) or loan.derogatory_status:
                raise ConflictError("Cannot settle closed or derogatory loans")
        else:
            raise ValueError(f"Not a termination status: {target.value}")

        if loan.status not in SERVICING_STATUSES:
            raise InvalidTransitionError(
                loan.status.value, target.value,
                f"Loan has not been funded (current status: {loan.status.value})"
            )

    @staticmethod
    def resolve_signing_event(current: LoanStatus, event: SigningEvent) -> LoanStatus:
        """Target status for a signing event, validated against the current status"""
        if event in REVERSAL_EVENTS:
            if current not in SIGNING_STATUSES:
                raise InvalidTransitionError(
                    current.value, LoanStatus.APPLICATION_COMPLETED.value,
                    f"Cannot apply {event.value} to a loan in {current.value}"
                )
            return LoanStatus.APPLICATION_COMPLETED

        required, target = SIGNING_EVENT_TRANSITIONS[event]
        if current != required:
            raise InvalidTransitionError(
                current.value, target.value,
                f"{event.value} requires status {required.value} (current status: {current.value})"
            )
        return target


@dataclass
class Vehicle:
    """Vehicle financed by the loan"""
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None


@dataclass
class Loan(StorageRecord):
    """Installment loan with its status and servicing fields"""
    loan_number: str
    borrower_id: str
    organization_id: Optional[str]
    principal_amount: Money
    interest_rate: Decimal          # Annual percent, 30 = 30%
    term_weeks: int
    weekly_payment: Money
    status: LoanStatus = LoanStatus.DRAFT
    purpose: Optional[str] = None
    vehicle: Optional[Vehicle] = None
    status_changed_at: Optional[datetime] = None

    # Funding
    funding_date: Optional[date] = None
    remaining_balance: Optional[Money] = None
    payer_id: Optional[str] = None
    product_id: Optional[str] = None
    price_id: Optional[str] = None

    # Termination
    closure_reason: Optional[str] = None
    closure_date: Optional[datetime] = None
    closed_by: Optional[str] = None
    derogatory_status: bool = False
    derogatory_reason: Optional[str] = None
    derogatory_date: Optional[datetime] = None
    derogatory_marked_by: Optional[str] = None
    derogatory_type: Optional[DerogatoryType] = None
    final_invoice_id: Optional[str] = None

    # Delinquency
    is_late: bool = False
    days_overdue: int = 0
    last_payment_check: Optional[datetime] = None

    # In-flight funding or termination claim
    operation_lock: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def schedule_origin(self) -> date:
        """Funding date once funded, creation date before"""
        return self.funding_date or self.created_at.date()


def serialize_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert Money, dates and enums to their stored representation"""
    result = {}
    for key, value in values.items():
        if isinstance(value, Money):
            result[key] = str(value.amount)
        elif isinstance(value, (datetime, date)):
            result[key] = value.isoformat()
        elif isinstance(value, Enum):
            result[key] = value.value
        elif isinstance(value, Decimal):
            result[key] = str(value)
        else:
            result[key] = value
    return result


class LoanManager:
    """
    Persists loans, applies status transitions and owns payment schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        effective_rate: Optional[EffectiveRateFn] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.effective_rate = effective_rate

        self.loans_table = "loans"
        self.schedule_table = "payment_schedules"

    def create_loan(
        self,
        borrower_id: str,
        principal_amount: Money,
        term_weeks: int,
        interest_rate: Optional[Decimal] = None,
        weekly_payment: Optional[Money] = None,
        organization_id: Optional[str] = None,
        purpose: Optional[str] = None,
        vehicle: Optional[Vehicle] = None,
        loan_number: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Create a draft loan

        Args:
            borrower_id: Borrower taking the loan
            principal_amount: Amount financed
            term_weeks: Number of weekly payments (one of the offered terms)
            interest_rate: Annual percent; configured default when omitted
            weekly_payment: Agreed weekly payment; calculated when omitted
            organization_id: Dealer organization originating the loan
            purpose: Free-text loan purpose
            vehicle: Financed vehicle
            loan_number: Human-facing number; generated when omitted
            actor_id: User creating the loan

        Returns:
            Created Loan in draft status
        """
        config = get_config()
        validate_term_weeks(term_weeks, config.allowed_term_weeks)
        if not principal_amount.is_positive():
            raise ValidationError("Principal amount must be positive")

        if interest_rate is None:
            interest_rate = Decimal(config.default_annual_rate)
        interest_rate = Decimal(str(interest_rate))
        if interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative")

        if weekly_payment is None:
            weekly_payment = calculate_weekly_payment(
                principal_amount, term_weeks, interest_rate, self.effective_rate
            )
        elif not weekly_payment.is_positive():
            raise ValidationError("Weekly payment must be positive")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=loan_number or self._generate_loan_number(now),
            borrower_id=borrower_id,
            organization_id=organization_id,
            principal_amount=principal_amount,
            interest_rate=interest_rate,
            term_weeks=term_weeks,
            weekly_payment=weekly_payment,
            purpose=purpose,
            vehicle=vehicle,
            status_changed_at=now
        )

        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor_id,
            metadata={
                "loan_number": loan.loan_number,
                "borrower_id": borrower_id,
                "principal_amount": principal_amount.amount,
                "interest_rate": interest_rate,
                "term_weeks": term_weeks,
                "weekly_payment": weekly_payment.amount
            }
        )
        logger.info(f"Created loan {loan.loan_number} ({loan.id}) for borrower {borrower_id}")

        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return self._loan_from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFoundError"""
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, statuses: Optional[Iterable[LoanStatus]] = None) -> List[Loan]:
        """List loans, optionally restricted to some statuses"""
        loans = [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]
        if statuses is not None:
            wanted = set(statuses)
            loans = [loan for loan in loans if loan.status in wanted]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        data = self.storage.find(self.loans_table, {'borrower_id': borrower_id})
        return [self._loan_from_dict(d) for d in data]

    def transition(
        self,
        loan_id: str,
        target: LoanStatus,
        actor_id: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> Loan:
        """
        Move a loan to a new status with a conditional update

        Funding, closure, settlement and derogatory marking have side
        effects and go through their orchestrators instead.

        Args:
            loan_id: Loan to move
            target: New status
            actor_id: User or system performing the change
            updates: Extra fields written in the same update
            reason: Free-text reason recorded in the audit trail

        Returns:
            Updated Loan

        Raises:
            NotFoundError: Unknown loan
            ConflictError: Loan is terminal, claimed, or changed concurrently
            InvalidTransitionError: Transition not allowed
        """
        if target in (LoanStatus.FUNDED, LoanStatus.CLOSED, LoanStatus.SETTLED, LoanStatus.DEROGATORY):
            raise InvalidTransitionError(
                "*", target.value,
                f"Use the {target.value} operation to move a loan to {target.value}"
            )

        loan = self.require_loan(loan_id)
        LoanStateMachine.validate_transition(loan.status, target)
        return self._apply_status_change(loan, target, actor_id, updates, reason)

    def apply_signing_event(
        self,
        loan_id: str,
        event: SigningEvent,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Apply an application or e-signature event

        Forward events advance one signing step. Declined and voided
        envelopes return the loan to application_completed.
        """
        loan = self.require_loan(loan_id)
        if loan.is_terminal:
            raise ConflictError(f"Loan is already {loan.status.value}")
        target = LoanStateMachine.resolve_signing_event(loan.status, event)
        return self._apply_status_change(loan, target, actor_id, None, event.value)

    def mark_active(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Move a funded (or cured review) loan into active servicing"""
        return self.transition(loan_id, LoanStatus.ACTIVE, actor_id=actor_id)

    def _apply_status_change(
        self,
        loan: Loan,
        target: LoanStatus,
        actor_id: Optional[str],
        updates: Optional[Dict[str, Any]],
        reason: Optional[str]
    ) -> Loan:
        now = datetime.now(timezone.utc)
        fields = dict(updates or {})
        fields.update({'status': target, 'status_changed_at': now, 'updated_at': now})

        applied = self.storage.compare_and_set(
            self.loans_table,
            loan.id,
            expected={'status': loan.status.value, 'operation_lock': None},
            updates=serialize_fields(fields)
        )
        if not applied:
            raise ConflictError(f"Loan {loan.id} was modified concurrently or is locked by another operation")

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor_id,
            metadata={
                "from_status": loan.status.value,
                "to_status": target.value,
                "reason": reason
            }
        )
        logger.info(f"Loan {loan.id} status {loan.status.value} -> {target.value}")

        return self.require_loan(loan.id)

    # Operation claims used by funding and termination

    def claim(self, loan: Loan, operation: str) -> str:
        """
        Claim a loan for a multi-step operation

        The claim succeeds only if the loan still has the status it was read
        with and no other operation holds it.

        Returns:
            Claim token to pass to release_claim / complete_claim

        Raises:
            ConflictError: Another operation holds the loan or its status changed
        """
        token = f"{operation}:{uuid.uuid4()}"
        claimed = self.storage.compare_and_set(
            self.loans_table,
            loan.id,
            expected={'status': loan.status.value, 'operation_lock': None},
            updates={'operation_lock': token}
        )
        if not claimed:
            raise ConflictError(f"Loan {loan.id} is being processed by another operation")
        return token

    def release_claim(self, loan_id: str, token: str) -> bool:
        """Release a claim without changing anything else"""
        return self.storage.compare_and_set(
            self.loans_table, loan_id,
            expected={'operation_lock': token},
            updates={'operation_lock': None}
        )

    def complete_claim(self, loan_id: str, token: str, updates: Dict[str, Any]) -> Loan:
        """Write the operation's result and release the claim in one update"""
        fields = dict(updates)
        fields['updated_at'] = datetime.now(timezone.utc)
        fields['operation_lock'] = None
        if 'status' in fields:
            fields['status_changed_at'] = fields['updated_at']

        applied = self.storage.compare_and_set(
            self.loans_table, loan_id,
            expected={'operation_lock': token},
            updates=serialize_fields(fields)
        )
        if not applied:
            raise ConflictError(f"Lost claim on loan {loan_id}")
        return self.require_loan(loan_id)

    def update_servicing_fields(self, loan: Loan, updates: Dict[str, Any]) -> bool:
        """Update non-status fields if the loan is unclaimed and its status unchanged"""
        fields = dict(updates)
        fields['updated_at'] = datetime.now(timezone.utc)
        return self.storage.compare_and_set(
            self.loans_table, loan.id,
            expected={'status': loan.status.value, 'operation_lock': None},
            updates=serialize_fields(fields)
        )

    # Payment schedules

    def build_schedule(self, loan: Loan, origin_date: Optional[date] = None) -> List[PaymentScheduleEntry]:
        """Generate (without storing) the schedule for a loan"""
        return generate_payment_schedule(
            principal=loan.principal_amount,
            annual_rate_percent=loan.interest_rate,
            term_weeks=loan.term_weeks,
            weekly_payment=loan.weekly_payment,
            origin_date=origin_date or loan.schedule_origin,
            effective_rate=self.effective_rate
        )

    def store_schedule(self, loan_id: str, entries: List[PaymentScheduleEntry]) -> None:
        """Replace a loan's stored schedule in one atomic block"""
        with self.storage.atomic():
            for existing in self.storage.find(self.schedule_table, {'loan_id': loan_id}):
                self.storage.delete(self.schedule_table, existing['id'])
            for entry in entries:
                record_id = f"{loan_id}:{entry.payment_number:03d}"
                data = entry.to_dict()
                data.update({'id': record_id, 'loan_id': loan_id})
                self.storage.save(self.schedule_table, record_id, data)

    def regenerate_schedule(self, loan_id: str, actor_id: Optional[str] = None) -> List[PaymentScheduleEntry]:
        """
        Regenerate and store a loan's payment schedule

        Origin is the funding date when funded, otherwise the creation date.
        Entry statuses already recorded (paid, overdue) carry over by payment
        number. Running it twice yields identical entries.
        """
        loan = self.require_loan(loan_id)
        recorded = {
            record['payment_number']: ScheduleEntryStatus(record.get('status', ScheduleEntryStatus.PENDING.value))
            for record in self.storage.find(self.schedule_table, {'loan_id': loan.id})
        }
        entries = self.build_schedule(loan)
        for entry in entries:
            entry.status = recorded.get(entry.payment_number, entry.status)
        self.store_schedule(loan.id, entries)

        self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_GENERATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor_id,
            metadata={
                "payments": len(entries),
                "origin_date": loan.schedule_origin,
                "weekly_payment": loan.weekly_payment.amount
            }
        )
        return entries

    def get_payment_schedule(self, loan_id: str) -> List[PaymentScheduleEntry]:
        """Stored schedule for a loan, generating and storing it on first access"""
        records = self.storage.find(self.schedule_table, {'loan_id': loan_id})
        if not records:
            return self.regenerate_schedule(loan_id)
        entries = [PaymentScheduleEntry.from_dict(record) for record in records]
        entries.sort(key=lambda e: e.payment_number)
        return entries

    def update_schedule_statuses(self, loan_id: str, statuses: Dict[int, ScheduleEntryStatus]) -> int:
        """Set entry statuses by payment number; returns how many changed"""
        changed = 0
        with self.storage.atomic():
            for payment_number, status in statuses.items():
                record_id = f"{loan_id}:{payment_number:03d}"
                record = self.storage.load(self.schedule_table, record_id)
                if record and record.get('status') != status.value:
                    record['status'] = status.value
                    self.storage.save(self.schedule_table, record_id, record)
                    changed += 1
        return changed

    # Persistence helpers

    def _generate_loan_number(self, now: datetime) -> str:
        return f"LOAN-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        vehicle = loan.vehicle
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'borrower_id': loan.borrower_id,
            'organization_id': loan.organization_id,
            'currency': loan.currency.code,
            'principal_amount': str(loan.principal_amount.amount),
            'interest_rate': str(loan.interest_rate),
            'term_weeks': loan.term_weeks,
            'weekly_payment': str(loan.weekly_payment.amount),
            'status': loan.status.value,
            'status_changed_at': loan.status_changed_at.isoformat() if loan.status_changed_at else None,
            'purpose': loan.purpose,
            'vehicle_year': vehicle.year if vehicle else None,
            'vehicle_make': vehicle.make if vehicle else None,
            'vehicle_model': vehicle.model if vehicle else None,
            'vehicle_vin': vehicle.vin if vehicle else None,
            'funding_date': loan.funding_date.isoformat() if loan.funding_date else None,
            'remaining_balance': str(loan.remaining_balance.amount) if loan.remaining_balance else None,
            'payer_id': loan.payer_id,
            'product_id': loan.product_id,
            'price_id': loan.price_id,
            'closure_reason': loan.closure_reason,
            'closure_date': loan.closure_date.isoformat() if loan.closure_date else None,
            'closed_by': loan.closed_by,
            'derogatory_status': loan.derogatory_status,
            'derogatory_reason': loan.derogatory_reason,
            'derogatory_date': loan.derogatory_date.isoformat() if loan.derogatory_date else None,
            'derogatory_marked_by': loan.derogatory_marked_by,
            'derogatory_type': loan.derogatory_type.value if loan.derogatory_type else None,
            'final_invoice_id': loan.final_invoice_id,
            'is_late': loan.is_late,
            'days_overdue': loan.days_overdue,
            'last_payment_check': loan.last_payment_check.isoformat() if loan.last_payment_check else None,
            'operation_lock': loan.operation_lock,
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data.get('currency', 'USD')]

        def get_money(field: str) -> Optional[Money]:
            value = data.get(field)
            return Money(Decimal(value), currency) if value is not None else None

        def get_datetime(field: str) -> Optional[datetime]:
            value = data.get(field)
            return datetime.fromisoformat(value) if value else None

        vehicle = None
        if any(data.get(f'vehicle_{key}') for key in ('year', 'make', 'model', 'vin')):
            vehicle = Vehicle(
                year=data.get('vehicle_year'),
                make=data.get('vehicle_make'),
                model=data.get('vehicle_model'),
                vin=data.get('vehicle_vin')
            )

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            borrower_id=data['borrower_id'],
            organization_id=data.get('organization_id'),
            principal_amount=get_money('principal_amount'),
            interest_rate=Decimal(data['interest_rate']),
            term_weeks=data['term_weeks'],
            weekly_payment=get_money('weekly_payment'),
            status=LoanStatus(data['status']),
            status_changed_at=get_datetime('status_changed_at'),
            purpose=data.get('purpose'),
            vehicle=vehicle,
            funding_date=date.fromisoformat(data['funding_date']) if data.get('funding_date') else None,
            remaining_balance=get_money('remaining_balance'),
            payer_id=data.get('payer_id'),
            product_id=data.get('product_id'),
            price_id=data.get('price_id'),
            closure_reason=data.get('closure_reason'),
            closure_date=get_datetime('closure_date'),
            closed_by=data.get('closed_by'),
            derogatory_status=bool(data.get('derogatory_status', False)),
            derogatory_reason=data.get('derogatory_reason'),
            derogatory_date=get_datetime('derogatory_date'),
            derogatory_marked_by=data.get('derogatory_marked_by'),
            derogatory_type=DerogatoryType(data['derogatory_type']) if data.get('derogatory_type') else None,
            final_invoice_id=data.get('final_invoice_id'),
            is_late=bool(data.get('is_late', False)),
            days_overdue=data.get('days_overdue', 0),
            last_payment_check=get_datetime('last_payment_check'),
            operation_lock=data.get('operation_lock'),
        )
