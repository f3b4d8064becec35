"""Billing schemas for the Stripe objects the reconcilers read and flag."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cream.core.datetime_utils import from_unix_timestamp
from cream.schemas.organization import Organization


class SubscriptionStatus(str, Enum):
    """Stripe subscription status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class SubscriptionFlag(str, Enum):
    """Notification flags stored in subscription metadata."""

    NOTIFIED_TRIAL_ENDING = "notifiedTrialEnding"
    NOTIFIED_TRIAL_ENDED = "notifiedTrialEnded"


class InvoiceFlag(str, Enum):
    """Notification flags stored in invoice metadata."""

    NOTIFIED_ADMIN_PAYMENT_FAILED = "notifiedAdminPaymentFailed"
    NOTIFIED_ALL_MEMBERS_PAYMENT_FAILED = "notifiedAllMembersPaymentFailed"


# Companion key written next to the admin flag: who was told.
NOTIFIED_ADMIN_USER_ID_KEY = "notifiedAdminPaymentFailedUserId"


def _coerce_metadata(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}


class Subscription(BaseModel):
    """Stripe subscription, reduced to what the reconcilers need."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    status: SubscriptionStatus
    metadata: Dict[str, str] = Field(default_factory=dict)
    trial_end: Optional[datetime] = None

    @field_validator("metadata", mode="before")
    def coerce_metadata(cls, v: Any) -> Dict[str, str]:
        """Stripe metadata values are always strings."""
        return _coerce_metadata(v)

    @field_validator("trial_end", mode="before")
    def parse_trial_end(cls, v: Any) -> Optional[datetime]:
        """Convert Stripe's UNIX timestamp."""
        return from_unix_timestamp(v)


class Invoice(BaseModel):
    """Stripe invoice, reduced to what the reconcilers need."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: Optional[str] = None
    paid: bool = False
    closed: bool = False
    attempted: bool = False
    status: Optional[str] = None
    created: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_api_versions(cls, data: Any) -> Any:
        """Accept payloads from both old and current Stripe API versions.

        Older versions carry ``date`` and ``paid``; newer ones only ``created``
        and ``status``.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("created") is None and data.get("date") is not None:
            data["created"] = data["date"]
        if "paid" not in data and data.get("status") is not None:
            data["paid"] = data["status"] == "paid"
        if "closed" not in data and data.get("status") is not None:
            data["closed"] = data["status"] in ("paid", "uncollectible", "void")
        return data

    @field_validator("metadata", mode="before")
    def coerce_metadata(cls, v: Any) -> Dict[str, str]:
        """Stripe metadata values are always strings."""
        return _coerce_metadata(v)

    @field_validator("created", mode="before")
    def parse_created(cls, v: Any) -> Optional[datetime]:
        """Convert Stripe's UNIX timestamp."""
        return from_unix_timestamp(v)


class PaymentMethodOwner(BaseModel):
    """The big-poppa user whose card is on file for a Stripe customer."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    github_id: int = Field(..., alias="githubId")


class Candidate(BaseModel):
    """An organization moving through a reconciliation pipeline.

    Each stage returns a copy annotated with what it fetched.
    """

    model_config = ConfigDict(frozen=True)

    organization: Organization
    subscription: Optional[Subscription] = None
    invoice: Optional[Invoice] = None
    payment_method_owner: Optional[PaymentMethodOwner] = None

    @property
    def organization_id(self) -> int:
        """Id of the candidate organization."""
        return self.organization.id
