"""
Usage Billing Module

Pay-per-use billing for completed identity verifications. Each verification
is recorded locally exactly once and, when the organization has an active
metered subscription, reported to the processor as a meter event.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import ConfigurationError, PaymentProcessorError, ValidationError
from .organizations import OrganizationManager
from .payment_processor import PaymentProcessor
from .storage import StorageInterface

logger = logging.getLogger("lending_core.usage_billing")


class SubscriptionStatus(Enum):
    """Verification billing subscription status"""
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELED = "canceled"


@dataclass
class BillingSubscription:
    """An organization's verification billing subscription (one per organization)"""
    organization_id: str
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_id: Optional[str] = None
    subscription_item_id: Optional[str] = None
    price_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and bool(self.subscription_id)

    def to_dict(self) -> Dict:
        return {
            'id': self.organization_id,
            'organization_id': self.organization_id,
            'status': self.status.value,
            'subscription_id': self.subscription_id,
            'subscription_item_id': self.subscription_item_id,
            'price_id': self.price_id,
            'activated_at': self.activated_at.isoformat() if self.activated_at else None,
            'canceled_at': self.canceled_at.isoformat() if self.canceled_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BillingSubscription':
        return cls(
            organization_id=data['organization_id'],
            status=SubscriptionStatus(data.get('status', 'inactive')),
            subscription_id=data.get('subscription_id'),
            subscription_item_id=data.get('subscription_item_id'),
            price_id=data.get('price_id'),
            activated_at=datetime.fromisoformat(data['activated_at']) if data.get('activated_at') else None,
            canceled_at=datetime.fromisoformat(data['canceled_at']) if data.get('canceled_at') else None,
        )


@dataclass
class UsageReportResult:
    """Outcome of reporting one verification"""
    success: bool
    already_reported: bool = False
    reported_to_processor: bool = False
    usage_report_id: Optional[str] = None
    message: str = ""


@dataclass
class UsageStats:
    """Verification usage for an organization"""
    current_period_usage: int
    total_usage: int
    period_start: datetime
    period_end: datetime
    subscription_status: SubscriptionStatus


def _month_bounds(now: datetime):
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class UsageBillingReporter:
    """
    Records verification usage exactly once and forwards it to the processor.

    The unique insert keyed on the verification id is the idempotency
    boundary: it happens before any external call, so concurrent or
    repeated reports of the same verification produce one local record and
    at most one meter event.
    """

    def __init__(
        self,
        storage: StorageInterface,
        organization_manager: OrganizationManager,
        processor: PaymentProcessor,
        audit_trail: AuditTrail,
        price_id: Optional[str] = None,
        event_name: Optional[str] = None
    ):
        self.storage = storage
        self.organization_manager = organization_manager
        self.processor = processor
        self.audit_trail = audit_trail
        config = get_config()
        self.price_id = price_id if price_id is not None else config.verification_price_id
        self.event_name = event_name or config.verification_meter_event_name

        self.usage_table = "verification_usage"
        self.subscriptions_table = "billing_subscriptions"

    def report_verification_usage(
        self,
        organization_id: str,
        verification_id: str,
        quantity: int = 1,
        now: Optional[datetime] = None
    ) -> UsageReportResult:
        """
        Record a completed verification and report it if billing is active

        Args:
            organization_id: Organization that ran the verification
            verification_id: Unique id of the completed verification
            quantity: Units to bill (normally 1)
            now: Report time, defaults to the current time

        Returns:
            UsageReportResult; duplicates succeed with already_reported set

        Raises:
            ValidationError: Missing ids or non-positive quantity
            NotFoundError: Unknown organization
        """
        if not verification_id or not organization_id:
            raise ValidationError("organization_id and verification_id are required")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        if self.storage.exists(self.usage_table, verification_id):
            return UsageReportResult(success=True, already_reported=True, message="Already reported")

        organization = self.organization_manager.require_organization(organization_id)
        now = now or datetime.now(timezone.utc)

        claimed = self.storage.insert_unique(self.usage_table, verification_id, {
            'id': verification_id,
            'verification_id': verification_id,
            'organization_id': organization_id,
            'quantity': quantity,
            'usage_report_id': None,
            'reported_at': None,
            'created_at': now.isoformat(),
        })
        if not claimed:
            return UsageReportResult(success=True, already_reported=True, message="Already reported")

        usage_report_id = None
        subscription = self.get_subscription(organization_id)
        if subscription.is_active and organization.billing_customer_id:
            try:
                usage_report_id = self.processor.create_meter_event(
                    event_name=self.event_name,
                    customer_id=organization.billing_customer_id,
                    value=quantity,
                    identifier=f"verification_{verification_id}",
                    timestamp=now
                )
            except PaymentProcessorError as e:
                # Usage stays recorded locally; reconciliation can resend it
                logger.error(
                    f"Failed to report verification {verification_id} usage: {e}",
                    extra={'verification_id': verification_id}
                )

        record = self.storage.load(self.usage_table, verification_id)
        record.update({'usage_report_id': usage_report_id, 'reported_at': now.isoformat()})
        self.storage.save(self.usage_table, verification_id, record)

        self.audit_trail.log_event(
            event_type=AuditEventType.USAGE_RECORDED,
            entity_type="verification",
            entity_id=verification_id,
            metadata={
                "organization_id": organization_id,
                "quantity": quantity,
                "usage_report_id": usage_report_id
            }
        )
        logger.info(f"Recorded verification {verification_id} for organization {organization_id}",
                    extra={'verification_id': verification_id})

        return UsageReportResult(
            success=True,
            reported_to_processor=usage_report_id is not None,
            usage_report_id=usage_report_id,
            message="Usage reported" if usage_report_id else "Usage recorded"
        )

    def get_subscription(self, organization_id: str) -> BillingSubscription:
        """Stored subscription, or an inactive placeholder"""
        data = self.storage.load(self.subscriptions_table, organization_id)
        if data:
            return BillingSubscription.from_dict(data)
        return BillingSubscription(organization_id=organization_id)

    def get_or_create_billing_customer(self, organization_id: str) -> str:
        """Processor customer used to bill an organization's verifications"""
        organization = self.organization_manager.require_organization(organization_id)
        if organization.billing_customer_id:
            if self.processor.retrieve_customer(organization.billing_customer_id) is not None:
                return organization.billing_customer_id

        customer = self.processor.create_customer(
            email=organization.email,
            name=organization.name,
            metadata={'organization_id': organization.id, 'type': 'verification_billing'}
        )
        self.organization_manager.set_billing_customer(organization.id, customer.id)
        return customer.id

    def activate_subscription(self, organization_id: str) -> BillingSubscription:
        """
        Start verification billing for an organization

        Reuses an active processor subscription on the same price when one
        exists.

        Raises:
            ConfigurationError: No verification price configured
            NotFoundError: Unknown organization
            PaymentProcessorError: Processor call failed
        """
        if not self.price_id:
            raise ConfigurationError("Verification price id is not configured")

        current = self.get_subscription(organization_id)
        if current.is_active:
            remote = self.processor.retrieve_subscription(current.subscription_id)
            if remote is not None and remote.status == "active":
                return current

        customer_id = self.get_or_create_billing_customer(organization_id)

        remote = next(
            (s for s in self.processor.list_subscriptions(customer_id, status="active") if s.price_id == self.price_id),
            None
        )
        if remote is None:
            remote = self.processor.create_subscription(
                customer_id=customer_id,
                price_id=self.price_id,
                metadata={'organization_id': organization_id, 'type': 'verification_billing'}
            )

        subscription = BillingSubscription(
            organization_id=organization_id,
            status=SubscriptionStatus.ACTIVE,
            subscription_id=remote.id,
            subscription_item_id=remote.item_id,
            price_id=self.price_id,
            activated_at=datetime.now(timezone.utc)
        )
        self.storage.save(self.subscriptions_table, organization_id, subscription.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.SUBSCRIPTION_ACTIVATED,
            entity_type="organization",
            entity_id=organization_id,
            metadata={"subscription_id": remote.id, "price_id": self.price_id}
        )
        logger.info(f"Activated verification billing for organization {organization_id}")
        return subscription

    def cancel_subscription(self, organization_id: str) -> BillingSubscription:
        """Cancel verification billing; a no-op when nothing is active"""
        subscription = self.get_subscription(organization_id)
        if not subscription.is_active:
            return subscription

        self.processor.cancel_subscription(subscription.subscription_id)
        subscription.status = SubscriptionStatus.CANCELED
        subscription.canceled_at = datetime.now(timezone.utc)
        self.storage.save(self.subscriptions_table, organization_id, subscription.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.SUBSCRIPTION_CANCELED,
            entity_type="organization",
            entity_id=organization_id,
            metadata={"subscription_id": subscription.subscription_id}
        )
        return subscription

    def get_usage_stats(self, organization_id: str, now: Optional[datetime] = None) -> UsageStats:
        """
        Usage in the current billing period and overall

        The period is the active subscription's billing period, or the
        calendar month when billing is not active.
        """
        now = now or datetime.now(timezone.utc)
        subscription = self.get_subscription(organization_id)

        period_start, period_end = _month_bounds(now)
        if subscription.is_active:
            remote = self.processor.retrieve_subscription(subscription.subscription_id)
            if remote is not None and remote.current_period_start and remote.current_period_end:
                period_start, period_end = remote.current_period_start, remote.current_period_end

        records = self.storage.find(self.usage_table, {'organization_id': organization_id})
        total = 0
        current = 0
        for record in records:
            quantity = record.get('quantity', 1)
            total += quantity
            recorded_at = datetime.fromisoformat(record.get('reported_at') or record['created_at'])
            if period_start <= recorded_at < period_end:
                current += quantity

        return UsageStats(
            current_period_usage=current,
            total_usage=total,
            period_start=period_start,
            period_end=period_end,
            subscription_status=subscription.status
        )
