"""
Borrower Management Module

Borrower profiles and the reference to each borrower's payer identity at
the payment processor. The payer identity is created lazily by the funding
orchestrator and reused for every later loan.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional
import logging
import re
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError

logger = logging.getLogger("lending_core.borrowers")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


@dataclass
class Address:
    """Borrower postal address"""
    line1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    line2: Optional[str] = None

    def __post_init__(self):
        if not self.line1 or not self.city or not self.state:
            raise ValidationError("Address line1, city, and state are required")
        if not re.match(r'^[A-Z]{2}$', self.country):
            raise ValidationError("Country must be 2-letter ISO code (e.g., 'US', 'CA')")


@dataclass
class Borrower(StorageRecord):
    """Borrower profile"""
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[Address] = None
    organization_id: Optional[str] = None
    payer_id: Optional[str] = None  # Customer id at the payment processor

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("Invalid email format")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class BorrowerManager:
    """Creates borrowers and records their payer identity"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "borrowers"

    def create_borrower(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: Optional[str] = None,
        address: Optional[Address] = None,
        organization_id: Optional[str] = None
    ) -> Borrower:
        """
        Create a new borrower

        Args:
            first_name: Borrower's first name
            last_name: Borrower's last name
            email: Borrower's email address
            phone: Optional phone number
            address: Optional postal address
            organization_id: Dealer organization the borrower applied through

        Returns:
            Created Borrower object
        """
        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            address=address,
            organization_id=organization_id
        )
        self._save_borrower(borrower)

        self.audit_trail.log_event(
            event_type=AuditEventType.BORROWER_CREATED,
            entity_type="borrower",
            entity_id=borrower.id,
            metadata={"email": email, "organization_id": organization_id}
        )
        return borrower

    def get_borrower(self, borrower_id: str) -> Optional[Borrower]:
        """Get borrower by ID"""
        data = self.storage.load(self.table_name, borrower_id)
        if data:
            return self._borrower_from_dict(data)
        return None

    def require_borrower(self, borrower_id: str) -> Borrower:
        borrower = self.get_borrower(borrower_id)
        if not borrower:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    def set_payer_id(self, borrower_id: str, payer_id: str) -> Borrower:
        """Record the payer identity created for a borrower"""
        borrower = self.require_borrower(borrower_id)
        previous = borrower.payer_id
        borrower.payer_id = payer_id
        borrower.updated_at = datetime.now(timezone.utc)
        self._save_borrower(borrower)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYER_IDENTITY_CREATED,
            entity_type="borrower",
            entity_id=borrower_id,
            metadata={"payer_id": payer_id, "previous_payer_id": previous}
        )
        logger.info(f"Borrower {borrower_id} linked to payer {payer_id}")
        return borrower

    def _save_borrower(self, borrower: Borrower) -> None:
        self.storage.save(self.table_name, borrower.id, self._borrower_to_dict(borrower))

    def _borrower_to_dict(self, borrower: Borrower) -> Dict:
        result = borrower.to_dict()
        if borrower.address:
            result['address'] = {
                'line1': borrower.address.line1,
                'line2': borrower.address.line2,
                'city': borrower.address.city,
                'state': borrower.address.state,
                'postal_code': borrower.address.postal_code,
                'country': borrower.address.country
            }
        return result

    def _borrower_from_dict(self, data: Dict) -> Borrower:
        address_data = data.get('address')
        return Borrower(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data.get('phone'),
            address=Address(**address_data) if address_data else None,
            organization_id=data.get('organization_id'),
            payer_id=data.get('payer_id')
        )
