"""Candidate selection for the lifecycle checks.

Each selector composes a directory query with the post-fetch filtering the
directory's query language cannot express.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from cream.core.logging import _ContextualLogger, logger as default_logger
from cream.platform.billing.pipeline import Ok, Skip, StageResult, run_stage
from cream.platform.billing.protocols import BillingProvider, OrganizationDirectory
from cream.schemas import Candidate, Organization, OrganizationFilter, RangeFilter


@dataclass
class Selection:
    """Candidates for a check, plus the organizations dropped while building them."""

    candidates: List[Candidate] = field(default_factory=list)
    skipped: List[Skip] = field(default_factory=list)


class ReconciliationQueries:
    """Selects the organizations a lifecycle check should look at."""

    def __init__(
        self,
        directory: OrganizationDirectory,
        billing: BillingProvider,
        max_concurrency: int = 10,
        logger: Optional[_ContextualLogger] = None,
    ):
        self.directory = directory
        self.billing = billing
        self.max_concurrency = max_concurrency
        self.logger = logger or default_logger

    async def select_organizations_in_trial_window(
        self, window_start: datetime, window_end: datetime
    ) -> Selection:
        """Organizations without a payment method whose trial ends inside the window.

        Both bounds are exclusive. Each organization is annotated with its
        subscription; organizations whose subscription cannot be fetched (e.g.
        they never reached Stripe) are dropped and reported in ``skipped``.

        Args:
            window_start: Lower bound on ``trial_end``.
            window_end: Upper bound on ``trial_end``.

        Returns:
            Selection: Candidates with ``subscription`` set, in directory order.
        """
        organizations = await self.directory.get_organizations(
            OrganizationFilter(
                has_payment_method=False,
                billing_customer_ref_is_null=False,
                trial_end=RangeFilter(more_than=window_start, less_than=window_end),
            )
        )
        self.logger.debug(
            f"Found {len(organizations)} organizations with trial ending between "
            f"{window_start.isoformat()} and {window_end.isoformat()}"
        )

        async def _attach_subscription(candidate: Candidate) -> StageResult:
            subscription = await self.billing.get_subscription_for_organization(
                candidate.organization
            )
            return Ok(candidate.model_copy(update={"subscription": subscription}))

        results = await run_stage(
            [Candidate(organization=org) for org in organizations],
            "fetch_subscription",
            _attach_subscription,
            max_concurrency=self.max_concurrency,
        )

        selection = Selection()
        for result in results:
            if isinstance(result, Ok):
                selection.candidates.append(result.candidate)
            else:
                selection.skipped.append(result)
        return selection

    async def select_organizations_near_grace_period_end(
        self, now: datetime, lookback: timedelta
    ) -> Selection:
        """Organizations past trial and active period but still inside their grace period.

        Only organizations that entered the grace period recently are kept: their
        trial or active period must have ended after ``now - lookback``.
        """
        organizations = await self.directory.get_organizations(
            OrganizationFilter(
                has_payment_method=True,
                billing_customer_ref_is_null=False,
                trial_end=RangeFilter(less_than=now),
                active_period_end=RangeFilter(less_than=now),
                grace_period_end=RangeFilter(more_than=now),
            )
        )
        cutoff = now - lookback
        recent = [org for org in organizations if _entered_grace_since(org, cutoff)]
        self.logger.debug(
            f"Found {len(organizations)} organizations in grace period, "
            f"{len(recent)} entered it after {cutoff.isoformat()}"
        )
        return Selection(candidates=[Candidate(organization=org) for org in recent])


def _entered_grace_since(organization: Organization, cutoff: datetime) -> bool:
    trial_end = organization.trial_end
    active_period_end = organization.active_period_end
    return (trial_end is not None and trial_end > cutoff) or (
        active_period_end is not None and active_period_end > cutoff
    )
