"""
Organization Module

Dealer organizations that originate loans and are billed per completed
identity verification.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError


@dataclass
class Organization(StorageRecord):
    """Dealer organization"""
    name: str
    email: Optional[str] = None
    billing_customer_id: Optional[str] = None  # Verification billing customer


class OrganizationManager:
    """Creates organizations and tracks their billing customer"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "organizations"

    def create_organization(self, name: str, email: Optional[str] = None) -> Organization:
        now = datetime.now(timezone.utc)
        organization = Organization(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=email
        )
        self.storage.save(self.table_name, organization.id, organization.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ORGANIZATION_CREATED,
            entity_type="organization",
            entity_id=organization.id,
            metadata={"name": name}
        )
        return organization

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        data = self.storage.load(self.table_name, organization_id)
        if data:
            return Organization.from_dict(data)
        return None

    def require_organization(self, organization_id: str) -> Organization:
        organization = self.get_organization(organization_id)
        if not organization:
            raise NotFoundError(f"Organization {organization_id} not found")
        return organization

    def set_billing_customer(self, organization_id: str, customer_id: str) -> Organization:
        organization = self.require_organization(organization_id)
        organization.billing_customer_id = customer_id
        organization.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, organization.id, organization.to_dict())
        return organization
