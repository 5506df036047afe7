"""
Payment Schedule Module

Generates the weekly amortization table for a loan. Generation is a pure
function of principal, annual rate, term, weekly payment and origin date;
persistence lives with the loan manager.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .currency import Money, Currency
from .config import get_config
from .errors import ValidationError


WEEKS_PER_YEAR = Decimal('52')
VALID_TERM_WEEKS = (4, 6, 8, 12, 16)

# Maps an annual rate in percent (30 = 30%) to the annual fraction actually charged
EffectiveRateFn = Callable[[Decimal], Decimal]


class ScheduleEntryStatus(Enum):
    """Status of a single scheduled payment"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class PaymentScheduleEntry:
    """Single week in a loan's payment schedule"""
    payment_number: int
    due_date: date
    principal_payment: Money
    interest_payment: Money
    total_payment: Money
    remaining_balance: Money
    status: ScheduleEntryStatus = ScheduleEntryStatus.PENDING

    def to_dict(self) -> Dict:
        return {
            'payment_number': self.payment_number,
            'due_date': self.due_date.isoformat(),
            'principal_payment': str(self.principal_payment.amount),
            'interest_payment': str(self.interest_payment.amount),
            'total_payment': str(self.total_payment.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'currency': self.total_payment.currency.code,
            'status': self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PaymentScheduleEntry':
        currency = Currency[data.get('currency', 'USD')]
        return cls(
            payment_number=data['payment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_payment=Money(Decimal(data['principal_payment']), currency),
            interest_payment=Money(Decimal(data['interest_payment']), currency),
            total_payment=Money(Decimal(data['total_payment']), currency),
            remaining_balance=Money(Decimal(data['remaining_balance']), currency),
            status=ScheduleEntryStatus(data.get('status', 'pending'))
        )


@dataclass
class LoanPaymentQuote:
    """Weekly payment and totals for a prospective loan"""
    weekly_payment: Money
    total_payment: Money
    total_interest: Money


def default_effective_rate(annual_rate_percent: Decimal) -> Decimal:
    """
    Effective annual rate from configuration

    Returns 0 while interest calculations are disabled, otherwise the
    percentage converted to a fraction.
    """
    if not get_config().enable_interest_calculations:
        return Decimal('0')
    return Decimal(str(annual_rate_percent)) / Decimal('100')


def validate_term_weeks(term_weeks: int, allowed: Optional[Sequence[int]] = None) -> int:
    """Raise ValidationError unless term_weeks is one of the offered terms"""
    allowed = tuple(allowed) if allowed else VALID_TERM_WEEKS
    if term_weeks not in allowed:
        raise ValidationError(
            f"Invalid term: {term_weeks} weeks. Allowed terms: {', '.join(str(t) for t in allowed)}"
        )
    return term_weeks


def calculate_weekly_payment(
    principal: Money,
    term_weeks: int,
    annual_rate_percent: Decimal,
    effective_rate: Optional[EffectiveRateFn] = None
) -> Money:
    """
    Weekly payment that amortizes principal over term_weeks

    Uses the standard annuity formula P * r / (1 - (1 + r)^-n) with a weekly
    rate of effective annual rate / 52; principal / n when the rate is zero.
    """
    if term_weeks <= 0:
        raise ValidationError("Term must be a positive number of weeks")
    if not principal.is_positive():
        raise ValidationError("Principal must be positive")

    rate_fn = effective_rate or default_effective_rate
    weekly_rate = rate_fn(Decimal(str(annual_rate_percent))) / WEEKS_PER_YEAR
    n = Decimal(term_weeks)

    if weekly_rate == 0:
        return Money(principal.amount / n, principal.currency)

    factor = (Decimal('1') + weekly_rate) ** term_weeks
    payment = principal.amount * weekly_rate * factor / (factor - Decimal('1'))
    return Money(payment, principal.currency)


def calculate_loan_payment(
    principal: Money,
    term_weeks: int,
    annual_rate_percent: Decimal,
    effective_rate: Optional[EffectiveRateFn] = None
) -> LoanPaymentQuote:
    """Quote weekly payment, total repaid and total interest for a loan"""
    weekly = calculate_weekly_payment(principal, term_weeks, annual_rate_percent, effective_rate)
    total = weekly * term_weeks
    return LoanPaymentQuote(
        weekly_payment=weekly,
        total_payment=total,
        total_interest=total - principal
    )


def generate_payment_schedule(
    principal: Money,
    annual_rate_percent: Decimal,
    term_weeks: int,
    weekly_payment: Money,
    origin_date: date,
    effective_rate: Optional[EffectiveRateFn] = None
) -> List[PaymentScheduleEntry]:
    """
    Build the weekly amortization table for a loan

    Interest for each week is charged on the running balance at the
    effective weekly rate; the rest of the payment reduces principal. The
    running balance is carried at full precision and every reported amount
    is rounded to cents per entry. The last entry is not trued up, so it
    may report a small residual balance when the payment was rounded.

    Args:
        principal: Amount financed
        annual_rate_percent: Stated annual rate in percent (30 = 30%)
        term_weeks: Number of weekly payments
        weekly_payment: Scheduled weekly payment
        origin_date: Funding date (or creation date before funding)
        effective_rate: Hook mapping the stated rate to the charged rate

    Returns:
        Entries numbered 1..term_weeks, due origin + 7 * n days

    Raises:
        ValidationError: Non-positive principal, term or payment, or a negative rate
    """
    if not principal.is_positive():
        raise ValidationError("Principal must be positive")
    if term_weeks <= 0:
        raise ValidationError("Term must be a positive number of weeks")
    if not weekly_payment.is_positive():
        raise ValidationError("Weekly payment must be positive")
    annual_rate_percent = Decimal(str(annual_rate_percent))
    if annual_rate_percent < 0:
        raise ValidationError("Interest rate cannot be negative")

    rate_fn = effective_rate or default_effective_rate
    weekly_rate = rate_fn(annual_rate_percent) / WEEKS_PER_YEAR
    currency = principal.currency

    balance = principal.amount
    payment = weekly_payment.amount
    entries: List[PaymentScheduleEntry] = []

    for number in range(1, term_weeks + 1):
        interest = balance * weekly_rate
        principal_portion = payment - interest
        balance = max(Decimal('0'), balance - principal_portion)

        entries.append(PaymentScheduleEntry(
            payment_number=number,
            due_date=origin_date + timedelta(days=7 * number),
            principal_payment=Money(principal_portion, currency),
            interest_payment=Money(interest, currency),
            total_payment=Money(payment, currency),
            remaining_balance=Money(balance, currency)
        ))

    return entries
