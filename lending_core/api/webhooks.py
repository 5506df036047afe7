"""
Webhook endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .auth import LendingSystem, get_lending_system, get_current_user, to_http_exception
from .loans import loan_response
from .schemas import SigningEventRequest
from ..loans import SigningEvent


router = APIRouter()


@router.post("/signing")
async def signing_event(
    request: SigningEventRequest,
    system: LendingSystem = Depends(get_lending_system),
    user_id: str = Depends(get_current_user)
):
    """Apply an application or e-signature event to a loan"""
    try:
        event = SigningEvent(request.event)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown signing event: {request.event}")

    try:
        loan = system.loan_manager.apply_signing_event(request.loan_id, event, actor_id=user_id)
    except ValueError as e:
        raise to_http_exception(e)

    return loan_response(loan)
