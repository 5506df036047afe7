"""
Test suite for the weekly payment schedule

Tests weekly payment calculation and schedule generation with interest
disabled (the default) and enabled through the effective rate hook.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from lending_core.currency import Money
from lending_core.errors import ValidationError
from lending_core.schedule import (
    ScheduleEntryStatus, PaymentScheduleEntry, calculate_weekly_payment,
    calculate_loan_payment, generate_payment_schedule, validate_term_weeks
)


def full_rate(annual_rate_percent):
    """Effective rate hook that charges the stated rate"""
    return Decimal(str(annual_rate_percent)) / Decimal('100')


class TestWeeklyPayment:
    """Test weekly payment calculation"""

    def test_zero_rate_divides_principal(self):
        """Test principal / n when interest is disabled"""
        payment = calculate_weekly_payment(Money(Decimal('2968.00')), 16, Decimal('30'))
        assert payment == Money(Decimal('185.50'))

    def test_zero_rate_rounds_to_cents(self):
        """Test uneven division is rounded to cents"""
        payment = calculate_weekly_payment(Money(Decimal('1000.00')), 6, Decimal('0'))
        assert payment == Money(Decimal('166.67'))

    def test_annuity_formula(self):
        """Test the annuity payment with interest enabled"""
        principal = Money(Decimal('1000.00'))
        payment = calculate_weekly_payment(principal, 4, Decimal('30'), effective_rate=full_rate)

        r = Decimal('0.30') / 52
        factor = (1 + r) ** 4
        expected = Money(Decimal('1000.00') * r * factor / (factor - 1))
        assert payment == expected
        assert payment > Money(Decimal('250.00'))

    def test_loan_payment_quote(self):
        """Test totals in a payment quote"""
        quote = calculate_loan_payment(Money(Decimal('1200.00')), 12, Decimal('30'))
        assert quote.weekly_payment == Money(Decimal('100.00'))
        assert quote.total_payment == Money(Decimal('1200.00'))
        assert quote.total_interest.is_zero()

    def test_invalid_inputs(self):
        """Test non-positive term or principal is rejected"""
        with pytest.raises(ValidationError):
            calculate_weekly_payment(Money(Decimal('1000.00')), 0, Decimal('30'))
        with pytest.raises(ValidationError, match="Principal must be positive"):
            calculate_weekly_payment(Money.zero(), 4, Decimal('30'))


class TestTermValidation:
    """Test offered loan terms"""

    def test_offered_terms(self):
        for term in (4, 6, 8, 12, 16):
            assert validate_term_weeks(term) == term

    def test_unsupported_term(self):
        with pytest.raises(ValidationError, match="Invalid term: 10 weeks"):
            validate_term_weeks(10)

    def test_custom_allowed_terms(self):
        assert validate_term_weeks(10, [10, 20]) == 10


class TestScheduleGeneration:
    """Test payment schedule generation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.origin = date(2024, 1, 1)

    def test_entry_count_and_due_dates(self):
        """Test one entry per week, due 7 days apart from the origin"""
        schedule = generate_payment_schedule(
            Money(Decimal('2968.00')), Decimal('30'), 16, Money(Decimal('185.50')), self.origin
        )

        assert len(schedule) == 16
        assert [e.payment_number for e in schedule] == list(range(1, 17))
        for entry in schedule:
            assert entry.due_date == self.origin + timedelta(days=7 * entry.payment_number)
            assert entry.status == ScheduleEntryStatus.PENDING
        assert schedule[-1].due_date == date(2024, 4, 22)

    def test_zero_rate_schedule(self):
        """Test every payment is principal when interest is disabled"""
        schedule = generate_payment_schedule(
            Money(Decimal('1000.00')), Decimal('30'), 4, Money(Decimal('250.00')), self.origin
        )

        assert all(e.interest_payment.is_zero() for e in schedule)
        assert all(e.principal_payment == Money(Decimal('250.00')) for e in schedule)
        assert [e.remaining_balance.amount for e in schedule] == [
            Decimal('750.00'), Decimal('500.00'), Decimal('250.00'), Decimal('0.00')
        ]

    def test_balances_never_negative(self):
        """Test an overpaying weekly amount clamps the balance at zero"""
        schedule = generate_payment_schedule(
            Money(Decimal('1000.00')), Decimal('0'), 6, Money(Decimal('166.67')), self.origin
        )

        assert all(not e.remaining_balance.is_negative() for e in schedule)
        assert schedule[-1].remaining_balance.is_zero()

    def test_no_true_up_of_last_entry(self):
        """Test the residual from a rounded-down payment is left on the last entry"""
        schedule = generate_payment_schedule(
            Money(Decimal('1000.00')), Decimal('0'), 6, Money(Decimal('166.66')), self.origin
        )

        assert schedule[-1].total_payment == Money(Decimal('166.66'))
        assert schedule[-1].remaining_balance == Money(Decimal('0.04'))

    def test_interest_schedule_amortizes(self):
        """Test interest is charged on the running balance and the loan pays off"""
        principal = Money(Decimal('1000.00'))
        weekly = calculate_weekly_payment(principal, 8, Decimal('30'), effective_rate=full_rate)
        schedule = generate_payment_schedule(
            principal, Decimal('30'), 8, weekly, self.origin, effective_rate=full_rate
        )

        first = schedule[0]
        assert first.interest_payment == Money(Decimal('1000.00') * Decimal('0.30') / 52)
        assert first.principal_payment + first.interest_payment == first.total_payment
        # Interest shrinks as the balance falls
        assert schedule[-1].interest_payment < first.interest_payment
        assert schedule[-1].remaining_balance.amount <= Decimal('0.05')

    def test_regeneration_is_deterministic(self):
        """Test generating twice with the same inputs yields identical entries"""
        args = (Money(Decimal('2968.00')), Decimal('30'), 16, Money(Decimal('185.50')), self.origin)
        assert generate_payment_schedule(*args) == generate_payment_schedule(*args)

    def test_invalid_schedule_inputs(self):
        """Test validation errors"""
        with pytest.raises(ValidationError, match="Weekly payment must be positive"):
            generate_payment_schedule(Money(Decimal('100.00')), Decimal('0'), 4, Money.zero(), self.origin)
        with pytest.raises(ValidationError, match="Interest rate cannot be negative"):
            generate_payment_schedule(
                Money(Decimal('100.00')), Decimal('-1'), 4, Money(Decimal('25.00')), self.origin
            )

    def test_entry_dict_conversion(self):
        """Test stored entries load back unchanged"""
        entry = generate_payment_schedule(
            Money(Decimal('100.00')), Decimal('0'), 4, Money(Decimal('25.00')), self.origin
        )[0]
        assert PaymentScheduleEntry.from_dict(entry.to_dict()) == entry
