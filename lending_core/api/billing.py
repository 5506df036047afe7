"""
Verification billing endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user, to_http_exception
from .schemas import VerificationUsageRequest
from ..usage_billing import BillingSubscription


router = APIRouter()


def subscription_response(subscription: BillingSubscription) -> dict:
    return {
        "organization_id": subscription.organization_id,
        "status": subscription.status.value,
        "subscription_id": subscription.subscription_id,
        "price_id": subscription.price_id,
        "activated_at": subscription.activated_at.isoformat() if subscription.activated_at else None,
        "canceled_at": subscription.canceled_at.isoformat() if subscription.canceled_at else None,
    }


@router.post("/verification-usage")
def report_verification_usage(
    request: VerificationUsageRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Record a completed verification; duplicates succeed without billing twice"""
    try:
        result = system.usage_reporter.report_verification_usage(
            organization_id=request.organization_id,
            verification_id=request.verification_id,
            quantity=request.quantity
        )
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "success": result.success,
        "already_reported": result.already_reported,
        "reported_to_processor": result.reported_to_processor,
        "usage_report_id": result.usage_report_id,
        "message": result.message
    }


@router.post("/organizations/{organization_id}/subscription")
def activate_subscription(
    organization_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Activate verification billing"""
    try:
        subscription = system.usage_reporter.activate_subscription(organization_id)
    except ValueError as e:
        raise to_http_exception(e)
    return subscription_response(subscription)


@router.delete("/organizations/{organization_id}/subscription")
def cancel_subscription(
    organization_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Cancel verification billing"""
    try:
        subscription = system.usage_reporter.cancel_subscription(organization_id)
    except ValueError as e:
        raise to_http_exception(e)
    return subscription_response(subscription)


@router.get("/organizations/{organization_id}/usage")
def get_usage(
    organization_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Verification usage for the current billing period"""
    try:
        system.organization_manager.require_organization(organization_id)
        stats = system.usage_reporter.get_usage_stats(organization_id)
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "organization_id": organization_id,
        "current_period_usage": stats.current_period_usage,
        "total_usage": stats.total_usage,
        "period_start": stats.period_start.isoformat(),
        "period_end": stats.period_end.isoformat(),
        "subscription_status": stats.subscription_status.value
    }
