"""Organization schemas.

Organizations live in big-poppa, which speaks camelCase JSON. Fields are
snake_case here and aliased to the registry's wire names.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cream.core.datetime_utils import ensure_utc, to_iso


class Organization(BaseModel):
    """Organization as returned by the big-poppa registry."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    github_id: Optional[int] = Field(None, alias="githubId")
    name: str
    billing_customer_ref: Optional[str] = Field(
        None, alias="stripeCustomerId", description="Stripe customer ID"
    )
    billing_subscription_ref: Optional[str] = Field(
        None, alias="stripeSubscriptionId", description="Stripe subscription ID"
    )
    trial_end: Optional[datetime] = Field(None, alias="trialEnd")
    active_period_end: Optional[datetime] = Field(None, alias="activePeriodEnd")
    grace_period_end: Optional[datetime] = Field(None, alias="gracePeriodEnd")
    has_payment_method: bool = Field(False, alias="hasPaymentMethod")
    allowed: bool = True

    @field_validator("trial_end", "active_period_end", "grace_period_end")
    def normalize_to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store every period boundary as an aware UTC datetime."""
        return ensure_utc(v)


class OrganizationUpdate(BaseModel):
    """Partial update sent to big-poppa. Only set fields are transmitted."""

    model_config = ConfigDict(populate_by_name=True)

    billing_customer_ref: Optional[str] = Field(None, alias="stripeCustomerId")
    billing_subscription_ref: Optional[str] = Field(None, alias="stripeSubscriptionId")
    trial_end: Optional[datetime] = Field(None, alias="trialEnd")
    active_period_end: Optional[datetime] = Field(None, alias="activePeriodEnd")
    grace_period_end: Optional[datetime] = Field(None, alias="gracePeriodEnd")
    has_payment_method: Optional[bool] = Field(None, alias="hasPaymentMethod")

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the registry's camelCase body, timestamps as ISO8601."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class RangeFilter(BaseModel):
    """Open interval filter on a timestamp column: ``moreThan < value < lessThan``."""

    more_than: Optional[datetime] = None
    less_than: Optional[datetime] = None

    def to_wire(self) -> Dict[str, str]:
        """Encode the set bounds as the directory expects them."""
        wire = {}
        if self.more_than is not None:
            wire["moreThan"] = to_iso(self.more_than)
        if self.less_than is not None:
            wire["lessThan"] = to_iso(self.less_than)
        return wire


class OrganizationFilter(BaseModel):
    """Query predicates understood by big-poppa's ``GET /organization``.

    Attributes:
        has_payment_method: Equality on ``hasPaymentMethod``.
        billing_customer_ref: Exact Stripe customer ID.
        billing_customer_ref_is_null: Null check on ``stripeCustomerId``.
        trial_end: Range on ``trialEnd``.
        active_period_end: Range on ``activePeriodEnd``.
        grace_period_end: Range on ``gracePeriodEnd``.
    """

    has_payment_method: Optional[bool] = None
    billing_customer_ref: Optional[str] = None
    billing_customer_ref_is_null: Optional[bool] = None
    trial_end: Optional[RangeFilter] = None
    active_period_end: Optional[RangeFilter] = None
    grace_period_end: Optional[RangeFilter] = None

    def to_query_params(self) -> Dict[str, str]:
        """Encode the filter as query string parameters.

        Scalar predicates are sent as plain values; null checks and ranges are
        sent as JSON objects, e.g. ``trialEnd={"lessThan": "2017-01-01T00:00:00Z"}``.
        """
        params: Dict[str, str] = {}
        if self.has_payment_method is not None:
            params["hasPaymentMethod"] = "true" if self.has_payment_method else "false"
        if self.billing_customer_ref is not None:
            params["stripeCustomerId"] = self.billing_customer_ref
        elif self.billing_customer_ref_is_null is not None:
            params["stripeCustomerId"] = json.dumps({"isNull": self.billing_customer_ref_is_null})
        for key, value in (
            ("trialEnd", self.trial_end),
            ("activePeriodEnd", self.active_period_end),
            ("gracePeriodEnd", self.grace_period_end),
        ):
            if value is not None:
                params[key] = json.dumps(value.to_wire())
        return params
