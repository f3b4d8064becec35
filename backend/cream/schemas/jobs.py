"""Task payload schemas validated by the worker before any I/O happens."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TaskName:
    """Queue names for the tasks cream consumes."""

    TRIAL_ENDING_CHECK = "organizations.trial.ending.check"
    TRIAL_ENDED_CHECK = "organizations.trial.ended.check"
    INVOICE_PAYMENT_FAILED_CHECK = "organizations.invoice.payment-failed.check"
    STRIPE_INVOICE_PAYMENT_FAILED = "stripe.invoice.payment-failed"


class CheckJob(BaseModel):
    """Payload for the scheduled checks. Carries only a correlation id."""

    model_config = ConfigDict(extra="forbid")

    tid: Optional[UUID] = None


class StripeInvoiceJob(BaseModel):
    """Payload for jobs triggered by a Stripe invoice webhook event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tid: Optional[UUID] = None
    stripe_event_id: str = Field(..., alias="stripeEventId", min_length=1)
