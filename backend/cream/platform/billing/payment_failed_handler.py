"""Immediate notification when Stripe reports a failed invoice payment."""

from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from cream.core.datetime_utils import utc_now
from cream.core.exceptions import (
    JobValidationError,
    NotFoundException,
    WorkerStopError,
    unpack_validation_error,
)
from cream.core.logging import _ContextualLogger, logger as default_logger
from cream.platform.billing.notification_guard import NotificationGuard
from cream.platform.billing.protocols import BillingProvider, EventBus, OrganizationDirectory
from cream.schemas import (
    NOTIFIED_ADMIN_USER_ID_KEY,
    EventName,
    InvoiceFlag,
    InvoicePaymentFailedPayload,
    OrganizationFilter,
    OrganizationRef,
    PaymentMethodOwnerRef,
    StripeInvoiceJob,
    TaskName,
)

PAYMENT_FAILED_EVENT_TYPE = "invoice.payment_failed"


class _EventInvoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    customer: str


def _parse_event(event: Mapping[str, Any]) -> _EventInvoice:
    if event.get("type") != PAYMENT_FAILED_EVENT_TYPE:
        raise WorkerStopError(
            f"Stripe event {event.get('id')} is {event.get('type')!r}, "
            f"expected {PAYMENT_FAILED_EVENT_TYPE!r}"
        )
    obj = (event.get("data") or {}).get("object") or {}
    if obj.get("object") != "invoice":
        raise WorkerStopError(f"Stripe event {event.get('id')} does not carry an invoice")
    try:
        return _EventInvoice.model_validate(obj)
    except ValidationError as e:
        raise WorkerStopError(
            f"Stripe event {event.get('id')} has a malformed invoice",
            **unpack_validation_error(e),
        ) from e


class InvoicePaymentFailedHandler:
    """Notifies the payment-method owner as soon as a charge fails.

    Runs once per ``invoice.payment_failed`` Stripe event. The
    ``notifiedAdminPaymentFailed`` flag on the invoice makes redelivered or
    duplicated events a no-op.
    """

    def __init__(
        self,
        directory: OrganizationDirectory,
        billing: BillingProvider,
        guard: NotificationGuard,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[_ContextualLogger] = None,
    ):
        self.directory = directory
        self.billing = billing
        self.guard = guard
        self.event_bus = event_bus
        self.clock = clock
        self.logger = logger or default_logger

    async def handle(self, job: Mapping[str, Any]) -> None:
        """Process one ``stripe.invoice.payment-failed`` job.

        Args:
            job: Raw job payload, ``{"stripeEventId": ..., "tid": ...}``.

        Raises:
            JobValidationError: If the payload is malformed.
            WorkerStopError: If there is nothing to do for this event.
            ExternalServiceError: If Stripe or big-poppa cannot be reached.
        """
        try:
            payload = StripeInvoiceJob.model_validate(job)
        except ValidationError as e:
            raise JobValidationError(
                TaskName.STRIPE_INVOICE_PAYMENT_FAILED, unpack_validation_error(e)
            ) from e

        log = self.logger.with_context(stripe_event_id=payload.stripe_event_id)
        try:
            await self._handle(payload, log)
        except NotFoundException as e:
            raise WorkerStopError(e.message, **e.context) from e

    async def _handle(self, payload: StripeInvoiceJob, log: _ContextualLogger) -> None:
        event = await self.billing.get_event(payload.stripe_event_id)
        event_invoice = _parse_event(event)
        customer_id = event_invoice.customer

        invoice = await self.billing.get_invoice(event_invoice.id)
        if self.guard.has_been_notified(invoice, InvoiceFlag.NOTIFIED_ADMIN_PAYMENT_FAILED):
            raise WorkerStopError(
                "Payment method owner has already been notified about this invoice",
                invoice_id=invoice.id,
            )

        organizations = await self.directory.get_organizations(
            OrganizationFilter(billing_customer_ref=customer_id)
        )
        if not organizations:
            raise WorkerStopError(f"Organization with billing customer {customer_id} not found")
        organization = organizations[0]
        if not organization.has_payment_method:
            # Expected while a trial expires or after the card was removed
            raise WorkerStopError(
                "Organization has no payment method, the failure was expected",
                level="info",
                organization_id=organization.id,
            )

        owner = await self.billing.get_customer_payment_method_owner(customer_id)
        log.with_context(organization_id=organization.id).info(
            f"Invoice {invoice.id} payment failed, notifying payment method owner"
        )
        await self.guard.mark_notified(
            invoice.id,
            InvoiceFlag.NOTIFIED_ADMIN_PAYMENT_FAILED,
            self.clock(),
            extra={NOTIFIED_ADMIN_USER_ID_KEY: str(owner.id)},
        )
        await self.event_bus.publish_event(
            EventName.INVOICE_PAYMENT_FAILED.value,
            InvoicePaymentFailedPayload(
                invoice_payment_has_failed_for_24_hours=False,
                organization=OrganizationRef(id=organization.id, name=organization.name),
                payment_method_owner=PaymentMethodOwnerRef(github_id=owner.github_id),
            ),
        )
