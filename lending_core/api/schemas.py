"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency, decimal_from_string
from ..borrowers import Address
from ..loans import Vehicle


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("USD", description="Currency code")

    def to_money(self) -> Money:
        if self.currency not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {self.currency}")
        return Money(decimal_from_string(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money_dict(money: Optional[Money]) -> Optional[dict]:
    if money is None:
        return None
    return {"amount": str(money.amount), "currency": money.currency.code}


class AddressModel(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "US"

    def to_address(self) -> Address:
        return Address(
            line1=self.line1,
            line2=self.line2,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country=self.country
        )


# Party schemas
class CreateBorrowerRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[AddressModel] = None
    organization_id: Optional[str] = None


class CreateOrganizationRequest(BaseModel):
    name: str
    email: Optional[str] = None


# Loan schemas
class VehicleModel(BaseModel):
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None

    def to_vehicle(self) -> Vehicle:
        return Vehicle(year=self.year, make=self.make, model=self.model, vin=self.vin)


class CreateLoanRequest(BaseModel):
    borrower_id: str
    principal_amount: MoneyModel
    term_weeks: int = Field(..., description="Number of weekly payments (4, 6, 8, 12 or 16)")
    interest_rate: Optional[str] = Field(None, description="Annual percent as string, e.g. '30'")
    weekly_payment: Optional[MoneyModel] = None
    organization_id: Optional[str] = None
    purpose: Optional[str] = None
    vehicle: Optional[VehicleModel] = None
    loan_number: Optional[str] = None

    def interest_rate_decimal(self) -> Optional[Decimal]:
        if self.interest_rate is None:
            return None
        return decimal_from_string(self.interest_rate)


class CloseLoanRequest(BaseModel):
    reason: str = Field(..., description="Closure reason code")
    custom_reason: Optional[str] = Field(None, description="Required when reason is 'other'")
    waive_balance: bool = False


class MarkDerogatoryRequest(BaseModel):
    reason: str = Field(..., description="Derogatory reason code")
    custom_reason: Optional[str] = Field(None, description="Required when reason is 'other'")


class SettleLoanRequest(BaseModel):
    reason: Optional[str] = None


# Webhook schemas
class SigningEventRequest(BaseModel):
    loan_id: str
    event: str = Field(..., description="application_sent, application_completed, ipay_signed, "
                                        "dealer_signed, borrower_signed, declined or voided")


# Billing schemas
class VerificationUsageRequest(BaseModel):
    organization_id: str
    verification_id: str
    quantity: int = 1
