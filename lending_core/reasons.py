"""
Closure and derogatory reason catalogs.

Reason codes are stored on the loan as given; labels are for invoices and
display. Unknown codes fall back to the raw value.
"""

from typing import Dict, Optional

from .errors import ValidationError


OTHER_REASON = "other"

DEROGATORY_REASONS: Dict[str, str] = {
    "repossession": "Repossession",
    "accident": "Accident/Total Loss",
    "trade_in": "Trade-In",
    "return": "Return",
    "exchange": "Exchange",
    "natural_disaster": "Natural Disaster",
    "voluntary_surrender": "Voluntary Surrender",
    "missed_payments": "Consecutive Missed Payments",
    OTHER_REASON: "Other",
}

CLOSURE_REASONS: Dict[str, str] = {
    "trade_in": "Trade-In",
    "early_payoff": "Early Payoff",
    "refinanced": "Refinanced",
    "dealer_agreement": "Dealer Agreement",
    "customer_request": "Customer Request",
    OTHER_REASON: "Other",
}


def get_derogatory_reason_label(reason: str) -> str:
    return DEROGATORY_REASONS.get(reason, reason)


def get_closure_reason_label(reason: str) -> str:
    return CLOSURE_REASONS.get(reason, reason)


def resolve_reason(catalog: Dict[str, str], reason: Optional[str], custom_reason: Optional[str]) -> str:
    """
    Validate a reason code and return the text stored on the loan

    Args:
        catalog: DEROGATORY_REASONS or CLOSURE_REASONS
        reason: Reason code
        custom_reason: Free text, required when reason is "other"

    Returns:
        The custom text for "other", otherwise the reason code

    Raises:
        ValidationError: Missing or unknown reason, or "other" without text
    """
    if not reason:
        raise ValidationError("Reason is required")
    if reason not in catalog:
        raise ValidationError(f"Unknown reason: {reason}")
    if reason == OTHER_REASON:
        if not custom_reason or not custom_reason.strip():
            raise ValidationError("Custom reason is required when reason is 'other'")
        return custom_reason.strip()
    return reason
