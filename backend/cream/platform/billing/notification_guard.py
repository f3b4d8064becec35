"""Notify-once guard backed by metadata flags on Stripe objects."""

from datetime import datetime
from typing import Mapping, Optional, Union

from cream.core.datetime_utils import to_iso
from cream.platform.billing.protocols import BillingProvider
from cream.schemas import Invoice, InvoiceFlag, Subscription, SubscriptionFlag

NotificationFlag = Union[SubscriptionFlag, InvoiceFlag]


class NotificationGuard:
    """Reads and writes notification flags.

    A flag is set when its metadata key is present and non-empty. Flags are
    only ever written after the guarded action succeeded, and an event is only
    published after the write succeeded. Flags are never cleared.
    """

    def __init__(self, billing: BillingProvider):
        self.billing = billing

    @staticmethod
    def has_been_notified(obj: Union[Subscription, Invoice], flag: NotificationFlag) -> bool:
        """Whether ``obj`` already carries ``flag``."""
        return bool(obj.metadata.get(flag.value))

    async def mark_notified(
        self,
        object_id: str,
        flag: NotificationFlag,
        timestamp: datetime,
        extra: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Set ``flag`` on a subscription or invoice.

        Only the flag (and ``extra`` companion keys) is sent, so unrelated
        metadata on the object is left untouched.

        Args:
            object_id: Subscription id for a SubscriptionFlag, invoice id for an InvoiceFlag.
            flag: The flag to set.
            timestamp: When the notification happened, stored as ISO8601.
            extra: Additional metadata keys written in the same update.

        Raises:
            NotFoundException: If the object does not exist.
            ExternalServiceError: If the billing provider call fails.
        """
        if isinstance(flag, SubscriptionFlag):
            update = self.billing.update_subscription_metadata
        elif isinstance(flag, InvoiceFlag):
            update = self.billing.update_invoice_metadata
        else:
            raise TypeError(f"Unknown notification flag: {flag!r}")

        patch = {flag.value: to_iso(timestamp)}
        if extra:
            patch.update(extra)
        await update(object_id, patch)
