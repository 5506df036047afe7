"""
Scheduled job endpoints, triggered by an external scheduler
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user


router = APIRouter()


@router.post("/late-payments")
def run_late_payment_check(
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Run the late payment sweep"""
    report = system.delinquency_monitor.check_late_payments()
    return asdict(report)


@router.post("/derogatory-reviews")
def run_derogatory_reviews(
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Mark loans derogatory whose review window has passed"""
    report = system.delinquency_monitor.process_derogatory_reviews()
    return asdict(report)


@router.post("/late-fees")
def run_late_fees(
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Add the late fee to payments still open past the grace period"""
    report = system.delinquency_monitor.apply_late_fees()
    return asdict(report)
