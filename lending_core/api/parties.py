"""
Borrower and organization endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LendingSystem, get_lending_system, get_current_user, to_http_exception
from .schemas import CreateBorrowerRequest, CreateOrganizationRequest


borrowers_router = APIRouter()
organizations_router = APIRouter()


@borrowers_router.post("", status_code=status.HTTP_201_CREATED)
async def create_borrower(
    request: CreateBorrowerRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Create a borrower"""
    try:
        borrower = system.borrower_manager.create_borrower(
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            phone=request.phone,
            address=request.address.to_address() if request.address else None,
            organization_id=request.organization_id
        )
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "id": borrower.id,
        "full_name": borrower.full_name,
        "email": borrower.email,
        "organization_id": borrower.organization_id,
        "payer_id": borrower.payer_id
    }


@organizations_router.post("", status_code=status.HTTP_201_CREATED)
async def create_organization(
    request: CreateOrganizationRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Create a dealer organization"""
    try:
        organization = system.organization_manager.create_organization(request.name, email=request.email)
    except ValueError as e:
        raise to_http_exception(e)

    return {
        "id": organization.id,
        "name": organization.name,
        "email": organization.email,
        "billing_customer_id": organization.billing_customer_id
    }
