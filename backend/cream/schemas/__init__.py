# flake8: noqa: F401
"""Schemas for cream."""

from .billing import (
    NOTIFIED_ADMIN_USER_ID_KEY,
    Candidate,
    Invoice,
    InvoiceFlag,
    PaymentMethodOwner,
    Subscription,
    SubscriptionFlag,
    SubscriptionStatus,
)
from .events import (
    EventName,
    InvoicePaymentFailedPayload,
    OrganizationRef,
    PaymentMethodOwnerRef,
    TrialEventPayload,
)
from .jobs import CheckJob, StripeInvoiceJob, TaskName
from .organization import Organization, OrganizationFilter, OrganizationUpdate, RangeFilter
