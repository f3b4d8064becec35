"""Collaborator protocols for the reconciliation engine.

OrganizationDirectory: query/update interface over big-poppa.
BillingProvider: query/update interface over Stripe.
EventBus: publish-only interface for domain events and follow-up tasks.

Reconcilers receive these at construction; the concrete clients live in
``cream.integrations`` and ``cream.core.event_bus``.
"""

from typing import Any, Dict, List, Mapping, Protocol, runtime_checkable

from cream.schemas import (
    Invoice,
    Organization,
    OrganizationFilter,
    OrganizationUpdate,
    PaymentMethodOwner,
    Subscription,
)


@runtime_checkable
class OrganizationDirectory(Protocol):
    """Organization registry interface."""

    async def get_organizations(self, filter: OrganizationFilter) -> List[Organization]:
        """Return organizations matching every predicate in ``filter``."""
        ...

    async def get_organization(self, organization_id: int) -> Organization:
        """Return one organization. Raises NotFoundException if absent."""
        ...

    async def update_organization(
        self, organization_id: int, update: OrganizationUpdate
    ) -> Organization:
        """Apply a partial update and return the updated organization."""
        ...


@runtime_checkable
class BillingProvider(Protocol):
    """Billing subsystem interface. Missing objects raise NotFoundException."""

    async def get_subscription_for_organization(self, organization: Organization) -> Subscription:
        """Fetch the organization's subscription by subscription or customer reference."""
        ...

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Mapping[str, str]
    ) -> Subscription:
        """Merge ``metadata`` into the subscription's metadata."""
        ...

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Fetch an invoice by id."""
        ...

    async def get_current_invoice(self, customer_id: str) -> Invoice:
        """Fetch the most recently created invoice for a customer."""
        ...

    async def update_invoice_metadata(
        self, invoice_id: str, metadata: Mapping[str, str]
    ) -> Invoice:
        """Merge ``metadata`` into the invoice's metadata."""
        ...

    async def get_customer_payment_method_owner(self, customer_id: str) -> PaymentMethodOwner:
        """Resolve the payment-method owner from customer metadata."""
        ...

    async def get_event(self, event_id: str) -> Dict[str, Any]:
        """Fetch a Stripe event as a plain dictionary."""
        ...


@runtime_checkable
class EventBus(Protocol):
    """Fire-and-forget publisher."""

    async def publish_event(self, name: str, payload: Any) -> None:
        """Publish a domain event."""
        ...

    async def publish_task(self, name: str, payload: Any) -> None:
        """Enqueue a task for a worker."""
        ...
