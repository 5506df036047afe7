"""
Loan endpoints
"""

import logging

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_current_user, to_http_exception
from .schemas import (
    CloseLoanRequest, CreateLoanRequest, MarkDerogatoryRequest, SettleLoanRequest, money_dict
)
from ..currency import Money
from ..delinquency import LoanInvoice
from ..loans import Loan
from ..logging_config import log_action
from ..schedule import PaymentScheduleEntry
from ..termination import TerminationResult


router = APIRouter()
logger = logging.getLogger("lending_core.api.loans")


def loan_response(loan: Loan) -> dict:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "borrower_id": loan.borrower_id,
        "organization_id": loan.organization_id,
        "status": loan.status.value,
        "principal_amount": money_dict(loan.principal_amount),
        "interest_rate": str(loan.interest_rate),
        "term_weeks": loan.term_weeks,
        "weekly_payment": money_dict(loan.weekly_payment),
        "remaining_balance": money_dict(loan.remaining_balance),
        "funding_date": loan.funding_date.isoformat() if loan.funding_date else None,
        "payer_id": loan.payer_id,
        "closure_reason": loan.closure_reason,
        "closure_date": loan.closure_date.isoformat() if loan.closure_date else None,
        "derogatory_status": loan.derogatory_status,
        "derogatory_reason": loan.derogatory_reason,
        "derogatory_type": loan.derogatory_type.value if loan.derogatory_type else None,
        "final_invoice_id": loan.final_invoice_id,
        "is_late": loan.is_late,
        "days_overdue": loan.days_overdue,
        "created_at": loan.created_at.isoformat(),
    }


def schedule_response(entry: PaymentScheduleEntry) -> dict:
    return {
        "payment_number": entry.payment_number,
        "due_date": entry.due_date.isoformat(),
        "principal_payment": money_dict(entry.principal_payment),
        "interest_payment": money_dict(entry.interest_payment),
        "total_payment": money_dict(entry.total_payment),
        "remaining_balance": money_dict(entry.remaining_balance),
        "status": entry.status.value,
    }


def termination_response(result: TerminationResult) -> dict:
    return {
        "loan": loan_response(result.loan),
        "remaining_balance": money_dict(result.remaining_balance),
        "payments_made": result.payments_made,
        "payments_remaining": result.payments_remaining,
        "invoices_voided": result.invoices_voided,
        "invoices_deleted": result.invoices_deleted,
        "failed_invoice_ids": result.failed_invoice_ids,
        "final_invoice_id": result.final_invoice_id,
        "final_invoice_url": result.final_invoice_url,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Create a draft loan"""
    try:
        system.borrower_manager.require_borrower(request.borrower_id)
        loan = system.loan_manager.create_loan(
            borrower_id=request.borrower_id,
            principal_amount=request.principal_amount.to_money(),
            term_weeks=request.term_weeks,
            interest_rate=request.interest_rate_decimal(),
            weekly_payment=request.weekly_payment.to_money() if request.weekly_payment else None,
            organization_id=request.organization_id,
            purpose=request.purpose,
            vehicle=request.vehicle.to_vehicle() if request.vehicle else None,
            loan_number=request.loan_number,
            actor_id=user_id
        )
    except ValueError as e:
        raise to_http_exception(e)

    return loan_response(loan)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Get loan details"""
    try:
        loan = system.loan_manager.require_loan(loan_id)
    except ValueError as e:
        raise to_http_exception(e)
    return loan_response(loan)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Get the weekly payment schedule"""
    try:
        system.loan_manager.require_loan(loan_id)
        entries = system.loan_manager.get_payment_schedule(loan_id)
    except ValueError as e:
        raise to_http_exception(e)

    return {"loan_id": loan_id, "schedule": [schedule_response(entry) for entry in entries]}


@router.post("/{loan_id}/schedule/regenerate")
async def regenerate_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Regenerate and store the payment schedule"""
    try:
        entries = system.loan_manager.regenerate_schedule(loan_id, actor_id=user_id)
    except ValueError as e:
        raise to_http_exception(e)

    return {"loan_id": loan_id, "schedule": [schedule_response(entry) for entry in entries]}


@router.post("/{loan_id}/fund")
def fund_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Fund a fully signed loan"""
    log_action(logger, "info", "Funding requested", user_id=user_id, action="fund_loan", loan_id=loan_id)
    try:
        result = system.funding_orchestrator.fund_loan(loan_id, actor_id=user_id)
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "loan": loan_response(result.loan),
        "payer_id": result.payer_id,
        "product_id": result.product_id,
        "price_id": result.price_id,
        "invoice_ids": result.invoice_ids,
        "message": "Loan funded successfully"
    }


@router.post("/{loan_id}/close")
def close_loan(
    loan_id: str,
    request: CloseLoanRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Close a funded loan and bill (or waive) the remaining balance"""
    log_action(logger, "info", "Closure requested", user_id=user_id, action="close_loan", loan_id=loan_id,
               extra={"reason": request.reason, "waive_balance": request.waive_balance})
    try:
        result = system.termination_reconciler.close_loan(
            loan_id,
            reason=request.reason,
            actor_id=user_id,
            custom_reason=request.custom_reason,
            waive_balance=request.waive_balance
        )
    except ValueError as e:
        raise to_http_exception(e)

    return termination_response(result)


@router.post("/{loan_id}/mark-derogatory")
def mark_loan_derogatory(
    loan_id: str,
    request: MarkDerogatoryRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Mark a funded loan derogatory and bill the remaining balance"""
    log_action(logger, "info", "Derogatory marking requested", user_id=user_id, action="mark_derogatory",
               loan_id=loan_id, extra={"reason": request.reason})
    try:
        result = system.termination_reconciler.mark_derogatory(
            loan_id,
            reason=request.reason,
            actor_id=user_id,
            custom_reason=request.custom_reason
        )
    except ValueError as e:
        raise to_http_exception(e)

    return termination_response(result)


@router.post("/{loan_id}/settle")
def settle_loan(
    loan_id: str,
    request: SettleLoanRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Settle a serviced loan: stop scheduled billing and record the unbilled balance"""
    log_action(logger, "info", "Settlement requested", user_id=user_id, action="settle_loan", loan_id=loan_id,
               extra={"reason": request.reason})
    try:
        result = system.termination_reconciler.settle_loan(loan_id, actor_id=user_id, reason=request.reason)
    except ValueError as e:
        raise to_http_exception(e)

    return termination_response(result)


def invoice_response(entry: LoanInvoice) -> dict:
    invoice = entry.invoice
    return {
        "id": invoice.id,
        "status": invoice.status.value,
        "amount_due": money_dict(Money.from_minor_units(invoice.amount_due)),
        "amount_paid": money_dict(Money.from_minor_units(invoice.amount_paid)),
        "base_amount": money_dict(entry.base_amount),
        "has_late_fee": entry.has_late_fee,
        "late_fee_amount": money_dict(entry.late_fee),
        "payment_number": entry.payment_number,
        "is_final_balance": entry.is_final_balance,
        "created": invoice.created_at.isoformat() if invoice.created_at else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "hosted_invoice_url": invoice.hosted_invoice_url,
    }


@router.get("/{loan_id}/invoices")
def get_loan_invoices(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """List the loan's invoices, newest first, with paid amounts and late fees"""
    try:
        summary = system.delinquency_monitor.loan_invoices(loan_id)
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "loan_id": summary.loan_id,
        "invoices": [invoice_response(entry) for entry in summary.invoices],
        "summary": {
            "total_invoices": summary.total_invoices,
            "paid_invoices": summary.paid_invoices,
            "open_invoices": summary.open_invoices,
            "total_paid": money_dict(summary.total_paid),
        },
    }
