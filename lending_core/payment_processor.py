"""
Payment Processor Module

Port to the external payment processor used for payer identities, weekly
prices, invoices, metered subscriptions and usage events. Amounts cross this
boundary as integer minor units (cents).

StripePaymentProcessor talks to Stripe with an api key from an injected
CredentialProvider on every call. InMemoryPaymentProcessor is a deterministic
stand-in for tests and local runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import itertools
import logging
import threading

import stripe

from .config import get_config, reload_config
from .errors import ConfigurationError, PaymentProcessorError

logger = logging.getLogger("lending_core.payment_processor")


class InvoiceStatus(Enum):
    """Invoice statuses as reported by the processor"""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"
    DELETED = "deleted"


class InvoiceKind(Enum):
    """What an invoice bills for, stored in its metadata"""
    SCHEDULED_PAYMENT = "scheduled_payment"
    CLOSURE_FINAL_BALANCE = "closure_final_balance"
    DEROGATORY_FINAL_BALANCE = "derogatory_final_balance"


@dataclass
class Customer:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class Product:
    id: str
    name: str


@dataclass
class Price:
    id: str
    product_id: str
    unit_amount: int
    currency: str = "usd"
    interval: str = "week"


@dataclass
class InvoiceLine:
    id: str
    amount: int
    description: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class Invoice:
    id: str
    customer_id: str
    status: InvoiceStatus
    amount_due: int = 0
    amount_paid: int = 0
    due_date: Optional[datetime] = None
    automatically_finalizes_at: Optional[datetime] = None
    description: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    lines: List[InvoiceLine] = field(default_factory=list)
    created_at: Optional[datetime] = None
    from_invoice_id: Optional[str] = None  # Set on revisions of another invoice


@dataclass
class Subscription:
    id: str
    customer_id: str
    status: str
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)


# Typed invoice metadata. Processor metadata values are strings only.

@dataclass
class ScheduledPaymentMetadata:
    """Metadata on each weekly payment invoice"""
    loan_id: str
    loan_number: str
    borrower_id: str
    payment_number: int
    total_payments: int

    kind = InvoiceKind.SCHEDULED_PAYMENT

    def to_dict(self) -> Dict[str, str]:
        return {
            'invoice_type': self.kind.value,
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            'payment_number': str(self.payment_number),
            'total_payments': str(self.total_payments),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'ScheduledPaymentMetadata':
        return cls(
            loan_id=data['loan_id'],
            loan_number=data.get('loan_number', ''),
            borrower_id=data.get('borrower_id', ''),
            payment_number=int(data.get('payment_number', 0)),
            total_payments=int(data.get('total_payments', 0)),
        )


@dataclass
class FinalBalanceMetadata:
    """Metadata on the single invoice billing a closed or derogatory loan's balance"""
    loan_id: str
    loan_number: str
    borrower_id: str
    kind: InvoiceKind
    reason: str
    original_term_weeks: int
    payments_made: int
    payments_remaining: int

    def to_dict(self) -> Dict[str, str]:
        reason_key = 'closure_reason' if self.kind == InvoiceKind.CLOSURE_FINAL_BALANCE else 'derogatory_reason'
        flag_key = ('is_closure_final_balance' if self.kind == InvoiceKind.CLOSURE_FINAL_BALANCE
                    else 'is_derogatory_final_balance')
        return {
            'invoice_type': self.kind.value,
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            flag_key: 'true',
            reason_key: self.reason,
            'original_term_weeks': str(self.original_term_weeks),
            'payments_made': str(self.payments_made),
            'payments_remaining': str(self.payments_remaining),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'FinalBalanceMetadata':
        kind = InvoiceKind(data['invoice_type'])
        reason_key = 'closure_reason' if kind == InvoiceKind.CLOSURE_FINAL_BALANCE else 'derogatory_reason'
        return cls(
            loan_id=data['loan_id'],
            loan_number=data.get('loan_number', ''),
            borrower_id=data.get('borrower_id', ''),
            kind=kind,
            reason=data.get(reason_key, ''),
            original_term_weeks=int(data.get('original_term_weeks', 0)),
            payments_made=int(data.get('payments_made', 0)),
            payments_remaining=int(data.get('payments_remaining', 0)),
        )


InvoiceMetadata = Union[ScheduledPaymentMetadata, FinalBalanceMetadata]


def parse_invoice_metadata(metadata: Dict[str, str]) -> Optional[InvoiceMetadata]:
    """Typed view of an invoice's metadata, None for invoices this system did not create"""
    if not metadata or 'loan_id' not in metadata:
        return None
    kind = metadata.get('invoice_type')
    if kind in (InvoiceKind.CLOSURE_FINAL_BALANCE.value, InvoiceKind.DEROGATORY_FINAL_BALANCE.value):
        return FinalBalanceMetadata.from_dict(metadata)
    # Invoices created before invoice_type was recorded are scheduled payments
    return ScheduledPaymentMetadata.from_dict(metadata)


# Late fees are added on a revision of the overdue invoice; these keys mark both
LATE_FEE_APPLIED = 'late_fee_applied'
LATE_FEE_APPLIED_DATE = 'late_fee_applied_date'
LATE_FEE_ORIGINAL_INVOICE = 'late_fee_original_invoice_id'
LATE_FEE_LINE_TYPE = 'late_fee'


def has_late_fee_applied(invoice: Invoice) -> bool:
    return invoice.metadata.get(LATE_FEE_APPLIED) == 'true'


def late_fee_cents(invoice: Invoice) -> int:
    """Total of the invoice's late fee lines"""
    return sum(line.amount for line in invoice.lines
               if line.metadata.get('type') == LATE_FEE_LINE_TYPE
               or 'late fee' in (line.description or '').lower())


def list_loan_invoices(processor: 'PaymentProcessor', customer_id: str, loan_id: str) -> List[Invoice]:
    """Every invoice of the customer tagged with loan_id, across all pages"""
    return [inv for inv in processor.list_invoices(customer_id) if inv.metadata.get('loan_id') == loan_id]


# Credentials

class CredentialProvider(ABC):
    """Supplies the processor api key for each call"""

    @abstractmethod
    def get_api_key(self) -> str:
        pass

    def refresh(self) -> None:
        """Re-read credentials after a rotation (default no-op)"""
        pass


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, api_key: str):
        if not api_key:
            raise ConfigurationError("Payment processor api key is empty")
        self._api_key = api_key

    def get_api_key(self) -> str:
        return self._api_key


class SettingsCredentialProvider(CredentialProvider):
    """Reads the key from a LendingConfig field (e.g. stripe_secret_key)"""

    def __init__(self, setting: str = "stripe_secret_key"):
        self.setting = setting

    def get_api_key(self) -> str:
        api_key = getattr(get_config(), self.setting, "")
        if not api_key:
            raise ConfigurationError(f"{self.setting} is not configured")
        return api_key

    def refresh(self) -> None:
        reload_config()


class PaymentProcessor(ABC):
    """Abstract payment processor"""

    @abstractmethod
    def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        phone: Optional[str] = None,
        address: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Customer:
        pass

    @abstractmethod
    def retrieve_customer(self, customer_id: str) -> Optional[Customer]:
        """Customer by id, None when missing or deleted"""
        pass

    @abstractmethod
    def create_product(self, name: str, metadata: Optional[Dict[str, str]] = None) -> Product:
        pass

    @abstractmethod
    def create_recurring_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str = "usd",
        interval: str = "week",
        metadata: Optional[Dict[str, str]] = None
    ) -> Price:
        pass

    @abstractmethod
    def create_invoice(
        self,
        customer_id: str,
        collection_method: str = "send_invoice",
        due_date: Optional[datetime] = None,
        days_until_due: Optional[int] = None,
        auto_advance: bool = True,
        automatically_finalizes_at: Optional[datetime] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Invoice:
        pass

    @abstractmethod
    def add_invoice_line(
        self,
        invoice_id: str,
        customer_id: str,
        amount: int,
        description: str,
        currency: str = "usd",
        metadata: Optional[Dict[str, str]] = None
    ) -> InvoiceLine:
        pass

    @abstractmethod
    def finalize_invoice(self, invoice_id: str) -> Invoice:
        pass

    @abstractmethod
    def void_invoice(self, invoice_id: str) -> Invoice:
        pass

    @abstractmethod
    def delete_invoice(self, invoice_id: str) -> None:
        pass

    @abstractmethod
    def revise_invoice(self, invoice_id: str) -> Invoice:
        """
        Draft revision of a finalized invoice

        The revision starts with the original's lines and metadata.
        Finalizing it voids the original.
        """
        pass

    @abstractmethod
    def update_invoice(
        self,
        invoice_id: str,
        due_date: Optional[datetime] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Invoice:
        pass

    @abstractmethod
    def list_invoices(self, customer_id: str) -> List[Invoice]:
        """All of the customer's invoices, whatever their number"""
        pass

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Subscription:
        pass

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def list_subscriptions(self, customer_id: str, status: str = "active") -> List[Subscription]:
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> Subscription:
        pass

    @abstractmethod
    def create_meter_event(
        self,
        event_name: str,
        customer_id: str,
        value: int,
        identifier: str,
        timestamp: Optional[datetime] = None
    ) -> str:
        """Report usage; returns the event identifier"""
        pass


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _plain(obj: Any) -> Dict[str, Any]:
    """Plain dict from a StripeObject (or None)"""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripePaymentProcessor(PaymentProcessor):
    """
    Stripe-backed processor.

    The api key is passed on every request from the credential provider;
    the module-level stripe.api_key is never set, so several processors
    with different accounts can coexist in one process.
    """

    def __init__(self, credentials: CredentialProvider):
        self.credentials = credentials

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        kwargs = {k: v for k, v in kwargs.items() if v is not None}
        try:
            return fn(*args, api_key=self.credentials.get_api_key(), **kwargs)
        except stripe.AuthenticationError as e:
            # Key may have been rotated; re-read once for the next call
            self.credentials.refresh()
            raise self._wrap(operation, e)
        except stripe.StripeError as e:
            raise self._wrap(operation, e)

    @staticmethod
    def _wrap(operation: str, error: 'stripe.StripeError') -> PaymentProcessorError:
        message = getattr(error, "user_message", None) or str(error)
        logger.error(f"Stripe {operation} failed: {message}")
        return PaymentProcessorError(
            f"{operation} failed: {message}",
            body=getattr(error, "json_body", None),
            code=getattr(error, "code", None)
        )

    def create_customer(self, email, name, phone=None, address=None, metadata=None) -> Customer:
        customer = self._call(
            "create_customer", stripe.Customer.create,
            email=email, name=name, phone=phone, address=address, metadata=metadata or {}
        )
        return self._to_customer(customer)

    def retrieve_customer(self, customer_id: str) -> Optional[Customer]:
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.credentials.get_api_key())
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise self._wrap("retrieve_customer", e)
        except stripe.StripeError as e:
            raise self._wrap("retrieve_customer", e)
        if getattr(customer, "deleted", False):
            return None
        return self._to_customer(customer)

    def create_product(self, name: str, metadata=None) -> Product:
        product = self._call("create_product", stripe.Product.create, name=name, metadata=metadata or {})
        return Product(id=product.id, name=product.name)

    def create_recurring_price(self, product_id, unit_amount, currency="usd", interval="week", metadata=None) -> Price:
        price = self._call(
            "create_price", stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=currency,
            recurring={"interval": interval, "interval_count": 1},
            metadata=metadata or {}
        )
        return Price(id=price.id, product_id=product_id, unit_amount=unit_amount,
                     currency=currency, interval=interval)

    def create_invoice(
        self,
        customer_id,
        collection_method="send_invoice",
        due_date=None,
        days_until_due=None,
        auto_advance=True,
        automatically_finalizes_at=None,
        description=None,
        metadata=None
    ) -> Invoice:
        invoice = self._call(
            "create_invoice", stripe.Invoice.create,
            customer=customer_id,
            collection_method=collection_method,
            due_date=_epoch(due_date),
            days_until_due=days_until_due,
            auto_advance=auto_advance,
            automatically_finalizes_at=_epoch(automatically_finalizes_at),
            description=description,
            metadata=metadata or {}
        )
        return self._to_invoice(invoice)

    def add_invoice_line(self, invoice_id, customer_id, amount, description, currency="usd", metadata=None) -> InvoiceLine:
        item = self._call(
            "add_invoice_line", stripe.InvoiceItem.create,
            customer=customer_id,
            invoice=invoice_id,
            amount=amount,
            currency=currency,
            description=description,
            metadata=metadata or {}
        )
        return InvoiceLine(id=item.id, amount=amount, description=description, metadata=_plain(item.metadata))

    def finalize_invoice(self, invoice_id: str) -> Invoice:
        return self._to_invoice(self._call("finalize_invoice", stripe.Invoice.finalize_invoice, invoice_id))

    def void_invoice(self, invoice_id: str) -> Invoice:
        return self._to_invoice(self._call("void_invoice", stripe.Invoice.void_invoice, invoice_id))

    def delete_invoice(self, invoice_id: str) -> None:
        self._call("delete_invoice", stripe.Invoice.delete, invoice_id)

    def revise_invoice(self, invoice_id: str) -> Invoice:
        invoice = self._call(
            "revise_invoice", stripe.Invoice.create,
            from_invoice={"invoice": invoice_id, "action": "revision"}
        )
        return self._to_invoice(invoice)

    def update_invoice(self, invoice_id, due_date=None, metadata=None) -> Invoice:
        invoice = self._call(
            "update_invoice", stripe.Invoice.modify, invoice_id,
            due_date=_epoch(due_date), metadata=metadata
        )
        return self._to_invoice(invoice)

    def list_invoices(self, customer_id: str) -> List[Invoice]:
        first_page = self._call("list_invoices", stripe.Invoice.list, customer=customer_id, limit=100)
        # Later pages are fetched while iterating, with the same api key
        try:
            return [self._to_invoice(invoice) for invoice in first_page.auto_paging_iter()]
        except stripe.StripeError as e:
            raise self._wrap("list_invoices", e)

    def create_subscription(self, customer_id, price_id, metadata=None) -> Subscription:
        subscription = self._call(
            "create_subscription", stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            metadata=metadata or {}
        )
        return self._to_subscription(subscription)

    def retrieve_subscription(self, subscription_id: str) -> Optional[Subscription]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.credentials.get_api_key())
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise self._wrap("retrieve_subscription", e)
        except stripe.StripeError as e:
            raise self._wrap("retrieve_subscription", e)
        return self._to_subscription(subscription)

    def list_subscriptions(self, customer_id: str, status: str = "active") -> List[Subscription]:
        page = self._call("list_subscriptions", stripe.Subscription.list, customer=customer_id, status=status)
        return [self._to_subscription(s) for s in page.data]

    def cancel_subscription(self, subscription_id: str) -> Subscription:
        return self._to_subscription(self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id))

    def create_meter_event(self, event_name, customer_id, value, identifier, timestamp=None) -> str:
        event = self._call(
            "create_meter_event", stripe.billing.MeterEvent.create,
            event_name=event_name,
            payload={"stripe_customer_id": customer_id, "value": str(value)},
            identifier=identifier,
            timestamp=_epoch(timestamp or datetime.now(timezone.utc))
        )
        return getattr(event, "identifier", None) or identifier

    # Converters

    @staticmethod
    def _to_customer(customer) -> Customer:
        return Customer(
            id=customer.id,
            email=getattr(customer, "email", None),
            name=getattr(customer, "name", None),
            metadata=_plain(getattr(customer, "metadata", None))
        )

    @staticmethod
    def _to_invoice(invoice) -> Invoice:
        lines = getattr(getattr(invoice, "lines", None), "data", None) or []
        # from_invoice.invoice is an id, or the original invoice when expanded
        original = getattr(getattr(invoice, "from_invoice", None), "invoice", None)
        return Invoice(
            id=invoice.id,
            customer_id=getattr(invoice, "customer", None),
            status=InvoiceStatus(getattr(invoice, "status", None) or "draft"),
            amount_due=getattr(invoice, "amount_due", 0) or 0,
            amount_paid=getattr(invoice, "amount_paid", 0) or 0,
            due_date=_from_epoch(getattr(invoice, "due_date", None)),
            automatically_finalizes_at=_from_epoch(getattr(invoice, "automatically_finalizes_at", None)),
            description=getattr(invoice, "description", None),
            hosted_invoice_url=getattr(invoice, "hosted_invoice_url", None),
            metadata=_plain(getattr(invoice, "metadata", None)),
            lines=[
                InvoiceLine(
                    id=line.id,
                    amount=getattr(line, "amount", 0) or 0,
                    description=getattr(line, "description", None) or "",
                    metadata=_plain(getattr(line, "metadata", None))
                )
                for line in lines
            ],
            created_at=_from_epoch(getattr(invoice, "created", None)),
            from_invoice_id=getattr(original, "id", original)
        )

    @staticmethod
    def _to_subscription(subscription) -> Subscription:
        # "items" shadows dict.items on StripeObject, so use item access
        try:
            items = subscription["items"]
        except KeyError:
            items = None
        item = items.data[0] if items is not None and getattr(items, "data", None) else None
        # Billing period moved from the subscription to its items in newer API versions
        period_source = item if item is not None and getattr(item, "current_period_start", None) else subscription
        return Subscription(
            id=subscription.id,
            customer_id=getattr(subscription, "customer", None),
            status=subscription.status,
            item_id=item.id if item is not None else None,
            price_id=item.price.id if item is not None else None,
            current_period_start=_from_epoch(getattr(period_source, "current_period_start", None)),
            current_period_end=_from_epoch(getattr(period_source, "current_period_end", None)),
            metadata=_plain(getattr(subscription, "metadata", None))
        )


class InMemoryPaymentProcessor(PaymentProcessor):
    """
    Deterministic processor for tests and local runs.

    Every call is recorded in ``calls``. ``fail_on`` makes a method raise
    PaymentProcessorError on a chosen call, counted from when the failure
    is registered.
    """

    def __init__(self):
        self.customers: Dict[str, Customer] = {}
        self.products: Dict[str, Product] = {}
        self.prices: Dict[str, Price] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.meter_events: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self._failures: Dict[str, List] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):06d}"

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        failure = self._failures.get(method)
        if failure is None:
            return
        failure[0] -= 1
        if failure[0] <= 0:
            del self._failures[method]
            raise failure[1]

    def fail_on(self, method: str, call_number: int = 1, error: Optional[Exception] = None) -> None:
        """Make the call_number-th upcoming call to method fail"""
        self._failures[method] = [
            call_number,
            error or PaymentProcessorError(f"{method} failed", body={"error": {"message": "injected failure"}})
        ]

    def call_count(self, method: Optional[str] = None) -> int:
        if method is None:
            return len(self.calls)
        return sum(1 for name, _ in self.calls if name == method)

    # Test helpers

    def mark_invoice_paid(self, invoice_id: str) -> None:
        invoice = self.invoices[invoice_id]
        invoice.status = InvoiceStatus.PAID
        invoice.amount_paid = invoice.amount_due

    def set_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> None:
        self.invoices[invoice_id].status = status

    def invoices_for_loan(self, loan_id: str) -> List[Invoice]:
        return [inv for inv in self.invoices.values()
                if inv.metadata.get('loan_id') == loan_id and inv.status != InvoiceStatus.DELETED]

    # PaymentProcessor

    def create_customer(self, email, name, phone=None, address=None, metadata=None) -> Customer:
        with self._lock:
            self._record("create_customer", email=email, name=name, metadata=metadata)
            customer = Customer(id=self._next_id("cus"), email=email, name=name, metadata=dict(metadata or {}))
            self.customers[customer.id] = customer
            return customer

    def retrieve_customer(self, customer_id: str) -> Optional[Customer]:
        with self._lock:
            self._record("retrieve_customer", customer_id=customer_id)
            return self.customers.get(customer_id)

    def create_product(self, name, metadata=None) -> Product:
        with self._lock:
            self._record("create_product", name=name, metadata=metadata)
            product = Product(id=self._next_id("prod"), name=name)
            self.products[product.id] = product
            return product

    def create_recurring_price(self, product_id, unit_amount, currency="usd", interval="week", metadata=None) -> Price:
        with self._lock:
            self._record("create_recurring_price", product_id=product_id, unit_amount=unit_amount, interval=interval)
            price = Price(id=self._next_id("price"), product_id=product_id, unit_amount=unit_amount,
                          currency=currency, interval=interval)
            self.prices[price.id] = price
            return price

    def create_invoice(
        self,
        customer_id,
        collection_method="send_invoice",
        due_date=None,
        days_until_due=None,
        auto_advance=True,
        automatically_finalizes_at=None,
        description=None,
        metadata=None
    ) -> Invoice:
        with self._lock:
            self._record(
                "create_invoice", customer_id=customer_id, due_date=due_date,
                days_until_due=days_until_due, automatically_finalizes_at=automatically_finalizes_at,
                metadata=metadata
            )
            invoice_id = self._next_id("in")
            invoice = Invoice(
                id=invoice_id,
                customer_id=customer_id,
                status=InvoiceStatus.DRAFT,
                due_date=due_date,
                automatically_finalizes_at=automatically_finalizes_at,
                description=description,
                hosted_invoice_url=f"https://invoice.example.test/{invoice_id}",
                metadata=dict(metadata or {}),
                created_at=datetime.now(timezone.utc)
            )
            self.invoices[invoice.id] = invoice
            return invoice

    def add_invoice_line(self, invoice_id, customer_id, amount, description, currency="usd", metadata=None) -> InvoiceLine:
        with self._lock:
            self._record("add_invoice_line", invoice_id=invoice_id, amount=amount, description=description)
            invoice = self._require_invoice(invoice_id)
            if invoice.status != InvoiceStatus.DRAFT:
                raise PaymentProcessorError(f"Invoice {invoice_id} is not a draft")
            line = InvoiceLine(id=self._next_id("ii"), amount=amount, description=description,
                               metadata=dict(metadata or {}))
            invoice.lines.append(line)
            invoice.amount_due += amount
            return line

    def finalize_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            self._record("finalize_invoice", invoice_id=invoice_id)
            invoice = self._require_invoice(invoice_id)
            if invoice.status != InvoiceStatus.DRAFT:
                raise PaymentProcessorError(f"Invoice {invoice_id} is {invoice.status.value}, not draft")
            invoice.status = InvoiceStatus.OPEN
            original = self.invoices.get(invoice.from_invoice_id) if invoice.from_invoice_id else None
            if original is not None and original.status == InvoiceStatus.OPEN:
                original.status = InvoiceStatus.VOID
            return invoice

    def revise_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            self._record("revise_invoice", invoice_id=invoice_id)
            original = self._require_invoice(invoice_id)
            if original.status != InvoiceStatus.OPEN:
                raise PaymentProcessorError(f"Invoice {invoice_id} is {original.status.value}, cannot revise")
            revision_id = self._next_id("in")
            revision = Invoice(
                id=revision_id,
                customer_id=original.customer_id,
                status=InvoiceStatus.DRAFT,
                amount_due=original.amount_due,
                due_date=original.due_date,
                description=original.description,
                hosted_invoice_url=f"https://invoice.example.test/{revision_id}",
                metadata=dict(original.metadata),
                lines=[InvoiceLine(self._next_id("ii"), line.amount, line.description, dict(line.metadata))
                       for line in original.lines],
                created_at=datetime.now(timezone.utc),
                from_invoice_id=original.id
            )
            self.invoices[revision.id] = revision
            return revision

    def update_invoice(self, invoice_id, due_date=None, metadata=None) -> Invoice:
        with self._lock:
            self._record("update_invoice", invoice_id=invoice_id, due_date=due_date, metadata=metadata)
            invoice = self._require_invoice(invoice_id)
            if due_date is not None:
                if invoice.status != InvoiceStatus.DRAFT:
                    raise PaymentProcessorError(f"Invoice {invoice_id} is {invoice.status.value}, due date is fixed")
                invoice.due_date = due_date
            if metadata is not None:
                invoice.metadata.update(metadata)
            return invoice

    def void_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            self._record("void_invoice", invoice_id=invoice_id)
            invoice = self._require_invoice(invoice_id)
            if invoice.status != InvoiceStatus.OPEN:
                raise PaymentProcessorError(f"Invoice {invoice_id} is {invoice.status.value}, cannot void")
            invoice.status = InvoiceStatus.VOID
            return invoice

    def delete_invoice(self, invoice_id: str) -> None:
        with self._lock:
            self._record("delete_invoice", invoice_id=invoice_id)
            invoice = self._require_invoice(invoice_id)
            if invoice.status != InvoiceStatus.DRAFT:
                raise PaymentProcessorError(f"Invoice {invoice_id} is {invoice.status.value}, cannot delete")
            invoice.status = InvoiceStatus.DELETED

    def list_invoices(self, customer_id: str) -> List[Invoice]:
        with self._lock:
            self._record("list_invoices", customer_id=customer_id)
            return [inv for inv in self.invoices.values()
                    if inv.customer_id == customer_id and inv.status != InvoiceStatus.DELETED]

    def create_subscription(self, customer_id, price_id, metadata=None) -> Subscription:
        with self._lock:
            self._record("create_subscription", customer_id=customer_id, price_id=price_id)
            now = datetime.now(timezone.utc)
            period_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            if period_start.month == 12:
                period_end = period_start.replace(year=period_start.year + 1, month=1)
            else:
                period_end = period_start.replace(month=period_start.month + 1)
            subscription = Subscription(
                id=self._next_id("sub"),
                customer_id=customer_id,
                status="active",
                item_id=self._next_id("si"),
                price_id=price_id,
                current_period_start=period_start,
                current_period_end=period_end,
                metadata=dict(metadata or {})
            )
            self.subscriptions[subscription.id] = subscription
            return subscription

    def retrieve_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            self._record("retrieve_subscription", subscription_id=subscription_id)
            return self.subscriptions.get(subscription_id)

    def list_subscriptions(self, customer_id: str, status: str = "active") -> List[Subscription]:
        with self._lock:
            self._record("list_subscriptions", customer_id=customer_id, status=status)
            return [s for s in self.subscriptions.values()
                    if s.customer_id == customer_id and s.status == status]

    def cancel_subscription(self, subscription_id: str) -> Subscription:
        with self._lock:
            self._record("cancel_subscription", subscription_id=subscription_id)
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                raise PaymentProcessorError(f"No such subscription: {subscription_id}")
            subscription.status = "canceled"
            return subscription

    def create_meter_event(self, event_name, customer_id, value, identifier, timestamp=None) -> str:
        with self._lock:
            self._record("create_meter_event", event_name=event_name, customer_id=customer_id,
                         value=value, identifier=identifier)
            self.meter_events.append({
                'event_name': event_name,
                'customer_id': customer_id,
                'value': value,
                'identifier': identifier,
                'timestamp': timestamp or datetime.now(timezone.utc)
            })
            return identifier

    def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or invoice.status == InvoiceStatus.DELETED:
            raise PaymentProcessorError(f"No such invoice: {invoice_id}",
                                        body={"error": {"code": "resource_missing"}})
        return invoice
