"""Trial ending / trial ended checks."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from cream.core.config import settings
from cream.core.datetime_utils import utc_now
from cream.core.logging import _ContextualLogger, logger as default_logger
from cream.platform.billing.notification_guard import NotificationGuard
from cream.platform.billing.pipeline import BatchResult, Ok, ReconciliationBatch, Skip, StageResult
from cream.platform.billing.protocols import EventBus
from cream.platform.billing.queries import ReconciliationQueries
from cream.schemas import (
    Candidate,
    EventName,
    OrganizationRef,
    SubscriptionFlag,
    TrialEventPayload,
)


class TrialLifecycleReconciler:
    """Notifies organizations, once, that their trial is ending or has ended.

    Both checks look back ``lookback`` hours so a delayed or missed run is
    covered by the next one. The notification flag on the subscription is what
    prevents a second notification, not the window.
    """

    def __init__(
        self,
        queries: ReconciliationQueries,
        guard: NotificationGuard,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utc_now,
        lookahead: Optional[timedelta] = None,
        lookback: Optional[timedelta] = None,
        max_concurrency: Optional[int] = None,
        logger: Optional[_ContextualLogger] = None,
    ):
        self.queries = queries
        self.guard = guard
        self.event_bus = event_bus
        self.clock = clock
        self.lookahead = lookahead or timedelta(hours=settings.TRIAL_ENDING_LOOKAHEAD_HOURS)
        self.lookback = lookback or timedelta(hours=settings.RECONCILIATION_LOOKBACK_HOURS)
        self.max_concurrency = max_concurrency or settings.RECONCILIATION_MAX_CONCURRENCY
        self.logger = logger or default_logger

    async def check_trial_ending(self) -> BatchResult:
        """Publish ``organization.trial.ending`` for trials ending in the next few days."""
        now = self.clock()
        return await self._check(
            "trial_ending",
            window_start=now - self.lookback,
            window_end=now + self.lookahead,
            flag=SubscriptionFlag.NOTIFIED_TRIAL_ENDING,
            event=EventName.TRIAL_ENDING,
            now=now,
        )

    async def check_trial_ended(self) -> BatchResult:
        """Publish ``organization.trial.ended`` for trials that ended recently."""
        now = self.clock()
        return await self._check(
            "trial_ended",
            window_start=now - self.lookback,
            window_end=now,
            flag=SubscriptionFlag.NOTIFIED_TRIAL_ENDED,
            event=EventName.TRIAL_ENDED,
            now=now,
        )

    async def _check(
        self,
        check: str,
        window_start: datetime,
        window_end: datetime,
        flag: SubscriptionFlag,
        event: EventName,
        now: datetime,
    ) -> BatchResult:
        selection = await self.queries.select_organizations_in_trial_window(
            window_start, window_end
        )
        batch = ReconciliationBatch(
            check,
            selection.candidates,
            max_concurrency=self.max_concurrency,
            logger=self.logger,
            skipped=selection.skipped,
        )

        batch.keep(
            "already_notified",
            lambda c: not self.guard.has_been_notified(c.subscription, flag),
            reason=f"{flag.value} already set on subscription",
        )

        async def _mark(candidate: Candidate) -> StageResult:
            if candidate.subscription is None or not candidate.subscription.id:
                return Skip(candidate.organization_id, "mark_notified", "no subscription id")
            await self.guard.mark_notified(candidate.subscription.id, flag, now)
            return Ok(candidate)

        await batch.apply("mark_notified", _mark)

        async def _publish(candidate: Candidate) -> StageResult:
            organization = candidate.organization
            await self.event_bus.publish_event(
                event.value,
                TrialEventPayload(
                    organization=OrganizationRef(id=organization.id, name=organization.name)
                ),
            )
            return Ok(candidate)

        await batch.apply("publish", _publish, sequential=True)

        result = batch.result()
        self.logger.with_context(check=check).info(
            f"Published {event.value} for {len(result.processed)} organizations, "
            f"skipped {len(result.skipped)}"
        )
        return result
