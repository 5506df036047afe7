"""
System wiring, authentication and error mapping dependencies
"""

from typing import Optional
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from ..storage import InMemoryStorage, create_storage
from ..audit import AuditTrail
from ..borrowers import BorrowerManager
from ..organizations import OrganizationManager
from ..loans import LoanManager
from ..funding import FundingOrchestrator
from ..termination import TerminationReconciler
from ..usage_billing import UsageBillingReporter
from ..delinquency import DelinquencyMonitor
from ..payment_processor import (
    InMemoryPaymentProcessor, PaymentProcessor, SettingsCredentialProvider, StripePaymentProcessor
)
from ..errors import (
    ConfigurationError, ConflictError, NotFoundError, PaymentProcessorError
)
from ..config import get_config

logger = logging.getLogger("lending_core.api")


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(
        self,
        use_sqlite: bool = True,
        processor: Optional[PaymentProcessor] = None,
        billing_processor: Optional[PaymentProcessor] = None
    ):
        config = get_config()

        # Initialize storage
        if use_sqlite:
            self.storage = create_storage(config.database_url)
        else:
            self.storage = InMemoryStorage()

        self.processor = processor or self._create_processor("stripe_secret_key")
        # Verification billing may run on a separate processor account
        self.billing_processor = billing_processor or (
            self._create_processor("stripe_verification_secret_key")
            if config.stripe_verification_secret_key else self.processor
        )

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.borrower_manager = BorrowerManager(self.storage, self.audit_trail)
        self.organization_manager = OrganizationManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(self.storage, self.audit_trail)

        self.funding_orchestrator = FundingOrchestrator(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail
        )
        self.termination_reconciler = TerminationReconciler(
            self.loan_manager, self.borrower_manager, self.processor, self.audit_trail
        )
        self.usage_reporter = UsageBillingReporter(
            self.storage, self.organization_manager, self.billing_processor, self.audit_trail
        )
        self.delinquency_monitor = DelinquencyMonitor(
            self.loan_manager, self.processor, self.termination_reconciler, self.audit_trail
        )

    @staticmethod
    def _create_processor(setting: str) -> PaymentProcessor:
        """Stripe processor when a key is configured, in-memory otherwise"""
        if getattr(get_config(), setting, ""):
            return StripePaymentProcessor(SettingsCredentialProvider(setting))
        logger.warning(f"{setting} is not configured; using the in-memory payment processor")
        return InMemoryPaymentProcessor()


# Global lending system instance, created on first use
lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Dependency to get the lending system"""
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem(use_sqlite=True)
    return lending_system


def set_lending_system(system: Optional[LendingSystem]) -> None:
    """Replace the global lending system (tests, embedding applications)"""
    global lending_system
    lending_system = system


security = HTTPBearer(auto_error=False)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """Dependency that validates the bearer JWT and returns the acting user id"""
    config = get_config()
    if not config.auth_enabled:
        return "test_user"  # For tests when auth is disabled

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def to_http_exception(error: ValueError) -> HTTPException:
    """Map a lending error (or plain ValueError from input parsing) to its HTTP response"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=500, detail=str(error))
    if isinstance(error, PaymentProcessorError):
        detail = {"message": str(error)}
        for attr in ("step", "created_invoice_ids"):
            if hasattr(error, attr):
                detail[attr] = getattr(error, attr)
        if error.body:
            detail["processor_error"] = error.body
        return HTTPException(status_code=502, detail=detail)
    return HTTPException(status_code=400, detail=str(error))
