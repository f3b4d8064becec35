"""Domain event payloads published to the event bus."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EventName(str, Enum):
    """Names of the domain events cream emits."""

    TRIAL_ENDING = "organization.trial.ending"
    TRIAL_ENDED = "organization.trial.ended"
    INVOICE_PAYMENT_FAILED = "organization.invoice.payment-failed"


class OrganizationRef(BaseModel):
    """Organization identity carried in event payloads."""

    id: int
    name: str


class PaymentMethodOwnerRef(BaseModel):
    """Payment-method owner identity carried in event payloads."""

    model_config = ConfigDict(populate_by_name=True)

    github_id: int = Field(..., alias="githubId")


class TrialEventPayload(BaseModel):
    """Payload for ``organization.trial.ending`` and ``organization.trial.ended``."""

    organization: OrganizationRef


class InvoicePaymentFailedPayload(BaseModel):
    """Payload for ``organization.invoice.payment-failed``."""

    model_config = ConfigDict(populate_by_name=True)

    invoice_payment_has_failed_for_24_hours: bool = Field(
        ..., alias="invoicePaymentHasFailedFor24Hours"
    )
    organization: OrganizationRef
    payment_method_owner: PaymentMethodOwnerRef = Field(..., alias="paymentMethodOwner")
