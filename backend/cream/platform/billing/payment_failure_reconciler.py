"""Check for invoices whose payment has been failing for a day."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from cream.core.config import settings
from cream.core.datetime_utils import utc_now
from cream.core.logging import _ContextualLogger, logger as default_logger
from cream.platform.billing.notification_guard import NotificationGuard
from cream.platform.billing.pipeline import BatchResult, Ok, ReconciliationBatch, Skip, StageResult
from cream.platform.billing.protocols import BillingProvider, EventBus
from cream.platform.billing.queries import ReconciliationQueries
from cream.schemas import (
    Candidate,
    EventName,
    InvoiceFlag,
    InvoicePaymentFailedPayload,
    OrganizationRef,
    PaymentMethodOwnerRef,
)

CHECK_NAME = "invoice_payment_failed"


class PaymentFailureReconciler:
    """Tells every member of an organization that its invoice is still unpaid.

    The admin is notified as soon as Stripe reports the failure (see
    ``InvoicePaymentFailedHandler``). Organizations that entered their grace
    period within the last day and still have an unpaid current invoice get a
    second, organization-wide notification. The flag lives on the invoice, so a
    new billing period with a new failing invoice is notified again.
    """

    def __init__(
        self,
        queries: ReconciliationQueries,
        billing: BillingProvider,
        guard: NotificationGuard,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utc_now,
        lookback: Optional[timedelta] = None,
        max_concurrency: Optional[int] = None,
        logger: Optional[_ContextualLogger] = None,
    ):
        self.queries = queries
        self.billing = billing
        self.guard = guard
        self.event_bus = event_bus
        self.clock = clock
        self.lookback = lookback or timedelta(hours=settings.PAYMENT_FAILURE_LOOKBACK_HOURS)
        self.max_concurrency = max_concurrency or settings.RECONCILIATION_MAX_CONCURRENCY
        self.logger = logger or default_logger

    async def check_invoice_payment_failed_for_24_hours(self) -> BatchResult:
        """Publish ``organization.invoice.payment-failed`` to all members, once per invoice.

        Returns:
            BatchResult: Notified organizations in candidate order, plus skips with reasons.
        """
        now = self.clock()
        selection = await self.queries.select_organizations_near_grace_period_end(
            now, self.lookback
        )
        batch = ReconciliationBatch(
            CHECK_NAME,
            selection.candidates,
            max_concurrency=self.max_concurrency,
            logger=self.logger,
            skipped=selection.skipped,
        )

        await batch.apply("fetch_invoice", self._attach_current_invoice)
        batch.keep(
            "should_be_notified", self._should_be_notified, reason=self._ineligibility_reason
        )
        await batch.apply("fetch_payment_method_owner", self._attach_payment_method_owner)

        async def _mark(candidate: Candidate) -> StageResult:
            await self.guard.mark_notified(
                candidate.invoice.id, InvoiceFlag.NOTIFIED_ALL_MEMBERS_PAYMENT_FAILED, now
            )
            return Ok(candidate)

        await batch.apply("mark_notified", _mark)
        await batch.apply("publish", self._publish, sequential=True)

        result = batch.result()
        self.logger.with_context(check=CHECK_NAME).info(
            f"Published {EventName.INVOICE_PAYMENT_FAILED.value} for "
            f"{len(result.processed)} organizations, skipped {len(result.skipped)}"
        )
        return result

    async def _attach_current_invoice(self, candidate: Candidate) -> StageResult:
        customer_id = candidate.organization.billing_customer_ref
        if not customer_id:
            return Skip(candidate.organization_id, "fetch_invoice", "no billing customer")
        invoice = await self.billing.get_current_invoice(customer_id)
        return Ok(candidate.model_copy(update={"invoice": invoice}))

    def _should_be_notified(self, candidate: Candidate) -> bool:
        invoice = candidate.invoice
        return (
            invoice.attempted
            and not invoice.paid
            and not self.guard.has_been_notified(
                invoice, InvoiceFlag.NOTIFIED_ALL_MEMBERS_PAYMENT_FAILED
            )
        )

    def _ineligibility_reason(self, candidate: Candidate) -> str:
        invoice = candidate.invoice
        if not invoice.attempted:
            return f"invoice {invoice.id} has not been attempted"
        if invoice.paid:
            return f"invoice {invoice.id} is paid"
        flag = InvoiceFlag.NOTIFIED_ALL_MEMBERS_PAYMENT_FAILED.value
        return f"{flag} already set on invoice {invoice.id}"

    async def _attach_payment_method_owner(self, candidate: Candidate) -> StageResult:
        owner = await self.billing.get_customer_payment_method_owner(
            candidate.organization.billing_customer_ref
        )
        return Ok(candidate.model_copy(update={"payment_method_owner": owner}))

    async def _publish(self, candidate: Candidate) -> StageResult:
        organization = candidate.organization
        await self.event_bus.publish_event(
            EventName.INVOICE_PAYMENT_FAILED.value,
            InvoicePaymentFailedPayload(
                invoice_payment_has_failed_for_24_hours=True,
                organization=OrganizationRef(id=organization.id, name=organization.name),
                payment_method_owner=PaymentMethodOwnerRef(
                    github_id=candidate.payment_method_owner.github_id
                ),
            ),
        )
        return Ok(candidate)
