"""Unit tests for NotificationGuard."""

from unittest.mock import AsyncMock

import pytest

from cream.core.exceptions import ExternalServiceError
from cream.platform.billing.notification_guard import NotificationGuard
from cream.schemas import InvoiceFlag, SubscriptionFlag
from tests.fixtures.billing import NOW, make_invoice, make_subscription


class TestHasBeenNotified:
    """Tests for has_been_notified."""

    @pytest.mark.parametrize(
        "metadata, expected",
        [
            ({}, False),
            ({"notifiedTrialEnding": ""}, False),
            ({"notifiedTrialEnded": "2024-01-01T00:00:00Z"}, False),
            ({"notifiedTrialEnding": "2024-01-01T00:00:00Z"}, True),
        ],
    )
    def test_flag_must_be_present_and_non_empty(self, metadata, expected):
        subscription = make_subscription("sub_1", "cus_1", metadata)

        assert (
            NotificationGuard.has_been_notified(
                subscription, SubscriptionFlag.NOTIFIED_TRIAL_ENDING
            )
            is expected
        )

    def test_invoice_flags(self):
        invoice = make_invoice(
            "in_1", "cus_1", NOW, metadata={"notifiedAdminPaymentFailed": "2024-01-01"}
        )

        assert NotificationGuard.has_been_notified(
            invoice, InvoiceFlag.NOTIFIED_ADMIN_PAYMENT_FAILED
        )
        assert not NotificationGuard.has_been_notified(
            invoice, InvoiceFlag.NOTIFIED_ALL_MEMBERS_PAYMENT_FAILED
        )


class TestMarkNotified:
    """Tests for mark_notified."""

    @pytest.mark.asyncio
    async def test_subscription_flag_updates_subscription(self):
        billing = AsyncMock()
        guard = NotificationGuard(billing)

        await guard.mark_notified("sub_1", SubscriptionFlag.NOTIFIED_TRIAL_ENDED, NOW)

        billing.update_subscription_metadata.assert_awaited_once_with(
            "sub_1", {"notifiedTrialEnded": "2024-03-01T12:00:00Z"}
        )
        billing.update_invoice_metadata.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invoice_flag_updates_invoice_with_extra_keys(self):
        billing = AsyncMock()
        guard = NotificationGuard(billing)

        await guard.mark_notified(
            "in_1",
            InvoiceFlag.NOTIFIED_ADMIN_PAYMENT_FAILED,
            NOW,
            extra={"notifiedAdminPaymentFailedUserId": "7"},
        )

        billing.update_invoice_metadata.assert_awaited_once_with(
            "in_1",
            {
                "notifiedAdminPaymentFailed": "2024-03-01T12:00:00Z",
                "notifiedAdminPaymentFailedUserId": "7",
            },
        )

    @pytest.mark.asyncio
    async def test_preserves_unrelated_metadata(self, billing, guard):
        billing.add_subscription(
            make_subscription("sub_1", "cus_1", {"plan": "runnable-starter", "users": "3"})
        )

        await guard.mark_notified("sub_1", SubscriptionFlag.NOTIFIED_TRIAL_ENDING, NOW)

        assert billing.subscriptions["sub_1"].metadata == {
            "plan": "runnable-starter",
            "users": "3",
            "notifiedTrialEnding": "2024-03-01T12:00:00Z",
        }
        assert billing.metadata_updates == [
            ("sub_1", {"notifiedTrialEnding": "2024-03-01T12:00:00Z"})
        ]

    @pytest.mark.asyncio
    async def test_failure_propagates(self):
        billing = AsyncMock()
        billing.update_subscription_metadata.side_effect = ExternalServiceError("Stripe", "down")
        guard = NotificationGuard(billing)

        with pytest.raises(ExternalServiceError):
            await guard.mark_notified("sub_1", SubscriptionFlag.NOTIFIED_TRIAL_ENDING, NOW)

    @pytest.mark.asyncio
    async def test_rejects_unknown_flag(self):
        guard = NotificationGuard(AsyncMock())

        with pytest.raises(TypeError):
            await guard.mark_notified("sub_1", "notifiedSomething", NOW)
