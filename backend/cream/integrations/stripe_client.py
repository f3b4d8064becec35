"""Stripe API client for the reconciliation engine.

This module provides a clean interface to the Stripe API, handling all
direct Stripe interactions without business logic. Stripe objects are
converted to cream schemas at this boundary.
"""

from typing import Any, Dict, Mapping, NoReturn, Optional

import stripe

from cream.core.config import settings
from cream.core.exceptions import ExternalServiceError, NotFoundException
from cream.core.logging import logger
from cream.schemas import Invoice, Organization, PaymentMethodOwner, Subscription

PAYMENT_METHOD_OWNER_ID_KEY = "paymentMethodOwnerId"
PAYMENT_METHOD_OWNER_GITHUB_ID_KEY = "paymentMethodOwnerGithubId"


def _raise_stripe_error(e: stripe.StripeError, action: str, **context: Any) -> NoReturn:
    """Translate a Stripe SDK error.

    Stripe answers lookups of unknown objects with ``invalid_request_error``.
    Everything else (network, rate limits, API errors) is transient.
    """
    if isinstance(e, stripe.InvalidRequestError):
        message = e.user_message or str(e)
        raise NotFoundException(f"Failed to {action}: {message}", **context) from e
    raise ExternalServiceError(
        service_name="Stripe",
        message=f"Failed to {action}: {str(e)}",
    ) from e


def _to_dict(obj: Any) -> Dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = str(value).strip()
    if not value.isdigit():
        return None
    return int(value)


class StripeClient:
    """Client for Stripe API operations."""

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        """Initialize Stripe client."""
        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY
        api_version = api_version or settings.STRIPE_API_VERSION
        if api_version:
            stripe.api_version = api_version

    # Event operations

    async def get_event(self, event_id: str) -> Dict[str, Any]:
        """Retrieve a webhook event."""
        try:
            event = await stripe.Event.retrieve_async(event_id)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "retrieve event", event_id=event_id)
        return _to_dict(event)

    # Subscription operations

    async def get_subscription(self, subscription_id: str) -> Subscription:
        """Retrieve a subscription."""
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "retrieve subscription", subscription_id=subscription_id)
        return Subscription.model_validate(_to_dict(subscription))

    async def get_subscription_for_customer(self, customer_id: str) -> Subscription:
        """Retrieve the customer's subscription. A customer has at most one."""
        try:
            subscriptions = await stripe.Subscription.list_async(customer=customer_id, limit=1)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "list subscriptions", customer_id=customer_id)
        if not subscriptions.data:
            raise NotFoundException(
                f"No subscription found for customer {customer_id}", customer_id=customer_id
            )
        return Subscription.model_validate(_to_dict(subscriptions.data[0]))

    async def get_subscription_for_organization(self, organization: Organization) -> Subscription:
        """Retrieve an organization's subscription.

        Uses the stored subscription reference when there is one, falling back
        to the customer's subscription list.
        """
        if organization.billing_subscription_ref:
            return await self.get_subscription(organization.billing_subscription_ref)
        if organization.billing_customer_ref:
            return await self.get_subscription_for_customer(organization.billing_customer_ref)
        raise NotFoundException(
            f"Organization {organization.id} has no billing customer",
            organization_id=organization.id,
        )

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Mapping[str, str]
    ) -> Subscription:
        """Set metadata keys on a subscription. Stripe merges them into existing metadata."""
        try:
            subscription = await stripe.Subscription.modify_async(
                subscription_id, metadata=dict(metadata)
            )
        except stripe.StripeError as e:
            _raise_stripe_error(e, "update subscription", subscription_id=subscription_id)
        logger.debug(f"Updated metadata {sorted(metadata)} on subscription {subscription_id}")
        return Subscription.model_validate(_to_dict(subscription))

    # Invoice operations

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Retrieve an invoice."""
        try:
            invoice = await stripe.Invoice.retrieve_async(invoice_id)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "retrieve invoice", invoice_id=invoice_id)
        return Invoice.model_validate(_to_dict(invoice))

    async def get_current_invoice(self, customer_id: str) -> Invoice:
        """Retrieve the customer's most recently created invoice."""
        try:
            invoices = await stripe.Invoice.list_async(customer=customer_id)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "list invoices", customer_id=customer_id)
        parsed = [Invoice.model_validate(_to_dict(invoice)) for invoice in invoices.data]
        if not parsed:
            raise NotFoundException(
                f"No invoices found for customer {customer_id}", customer_id=customer_id
            )
        return max(parsed, key=lambda invoice: invoice.created)

    async def update_invoice_metadata(
        self, invoice_id: str, metadata: Mapping[str, str]
    ) -> Invoice:
        """Set metadata keys on an invoice. Stripe merges them into existing metadata."""
        try:
            invoice = await stripe.Invoice.modify_async(invoice_id, metadata=dict(metadata))
        except stripe.StripeError as e:
            _raise_stripe_error(e, "update invoice", invoice_id=invoice_id)
        logger.debug(f"Updated metadata {sorted(metadata)} on invoice {invoice_id}")
        return Invoice.model_validate(_to_dict(invoice))

    # Customer operations

    async def get_customer_payment_method_owner(self, customer_id: str) -> PaymentMethodOwner:
        """Resolve the big-poppa user who added the customer's card.

        The owner is stored on the customer's metadata when the payment method
        is added.

        Raises:
            NotFoundException: If either owner key is missing or not numeric.
        """
        try:
            customer = await stripe.Customer.retrieve_async(customer_id)
        except stripe.StripeError as e:
            _raise_stripe_error(e, "retrieve customer", customer_id=customer_id)

        metadata = _to_dict(customer).get("metadata") or {}
        owner_id = _parse_int(metadata.get(PAYMENT_METHOD_OWNER_ID_KEY))
        owner_github_id = _parse_int(metadata.get(PAYMENT_METHOD_OWNER_GITHUB_ID_KEY))
        if owner_id is None or owner_github_id is None:
            raise NotFoundException(
                f"Customer {customer_id} has no valid payment method owner",
                customer_id=customer_id,
            )
        return PaymentMethodOwner(id=owner_id, github_id=owner_github_id)
