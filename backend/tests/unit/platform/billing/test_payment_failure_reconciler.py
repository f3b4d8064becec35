"""Unit tests for PaymentFailureReconciler."""

from datetime import timedelta

import pytest

from cream.core.exceptions import ExternalServiceError
from cream.platform.billing.payment_failure_reconciler import PaymentFailureReconciler
from cream.schemas import EventName
from tests.fixtures.billing import NOW, make_invoice, make_organization

PAYMENT_FAILED = EventName.INVOICE_PAYMENT_FAILED.value


@pytest.fixture
def reconciler(queries, billing, guard, event_bus, clock):
    return PaymentFailureReconciler(
        queries,
        billing,
        guard,
        event_bus,
        clock=clock,
        lookback=timedelta(hours=24),
        max_concurrency=2,
    )


def add_grace_org(directory, billing, org_id, with_owner=True, **invoice_kwargs):
    customer = f"cus_{org_id}"
    directory.add(
        make_organization(
            org_id,
            trial_end=NOW - timedelta(days=30),
            active_period_end=NOW - timedelta(hours=2),
            grace_period_end=NOW + timedelta(hours=70),
            has_payment_method=True,
        )
    )
    billing.add_invoice(
        make_invoice(f"in_{org_id}", customer, NOW - timedelta(hours=2), **invoice_kwargs)
    )
    if with_owner:
        billing.set_owner(customer, id=100 + org_id, github_id=2000 + org_id)


class TestCheckInvoicePaymentFailedFor24Hours:
    """Tests for check_invoice_payment_failed_for_24_hours."""

    @pytest.mark.asyncio
    async def test_notifies_all_members(self, reconciler, directory, billing, event_bus):
        add_grace_org(directory, billing, 1)

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert result.processed_ids == [1]
        assert event_bus.events == [
            (
                PAYMENT_FAILED,
                {
                    "invoicePaymentHasFailedFor24Hours": True,
                    "organization": {"id": 1, "name": "org-1"},
                    "paymentMethodOwner": {"githubId": 2001},
                },
            )
        ]
        assert billing.invoices["in_1"].metadata == {
            "notifiedAllMembersPaymentFailed": "2024-03-01T12:00:00Z"
        }

    @pytest.mark.asyncio
    async def test_runs_twice_notifies_once(self, reconciler, directory, billing, event_bus):
        add_grace_org(directory, billing, 1)

        await reconciler.check_invoice_payment_failed_for_24_hours()
        second = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert second.processed_ids == []
        assert event_bus.organization_ids() == [1]

    @pytest.mark.asyncio
    async def test_new_invoice_is_notified_again(self, reconciler, directory, billing, event_bus):
        add_grace_org(directory, billing, 1)
        await reconciler.check_invoice_payment_failed_for_24_hours()

        billing.add_invoice(make_invoice("in_1b", "cus_1", NOW - timedelta(hours=1)))
        second = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert second.processed_ids == [1]
        assert event_bus.organization_ids() == [1, 1]
        assert billing.invoices["in_1b"].metadata["notifiedAllMembersPaymentFailed"]

    @pytest.mark.asyncio
    async def test_missing_owner_excludes_only_that_org(
        self, reconciler, directory, billing, event_bus
    ):
        add_grace_org(directory, billing, 1, with_owner=False)
        add_grace_org(directory, billing, 2)

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert result.processed_ids == [2]
        assert [(s.organization_id, s.stage) for s in result.skipped] == [
            (1, "fetch_payment_method_owner")
        ]
        assert "notifiedAllMembersPaymentFailed" not in billing.invoices["in_1"].metadata

    @pytest.mark.parametrize(
        "invoice_kwargs, reason",
        [
            ({"paid": True}, "invoice in_1 is paid"),
            ({"attempted": False}, "invoice in_1 has not been attempted"),
            (
                {"metadata": {"notifiedAllMembersPaymentFailed": "2024-02-29T12:00:00Z"}},
                "notifiedAllMembersPaymentFailed already set on invoice in_1",
            ),
        ],
    )
    @pytest.mark.asyncio
    async def test_ineligible_invoices_are_skipped(
        self, reconciler, directory, billing, event_bus, invoice_kwargs, reason
    ):
        add_grace_org(directory, billing, 1, **invoice_kwargs)

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert result.processed_ids == []
        assert result.skip_reasons() == {1: reason}
        assert event_bus.events == []

    @pytest.mark.asyncio
    async def test_admin_flag_is_not_required(self, reconciler, directory, billing):
        add_grace_org(directory, billing, 1)

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert "notifiedAdminPaymentFailed" not in billing.invoices["in_1"].metadata
        assert result.processed_ids == [1]

    @pytest.mark.asyncio
    async def test_invoice_fetch_failure_drops_org(self, reconciler, directory, billing):
        add_grace_org(directory, billing, 1)
        add_grace_org(directory, billing, 2)
        billing.failures.add(
            "get_current_invoice", "cus_1", ExternalServiceError("Stripe", "rate limited")
        )

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert result.processed_ids == [2]
        assert result.skipped[0].stage == "fetch_invoice"

    @pytest.mark.asyncio
    async def test_mark_failure_prevents_publish_until_next_run(
        self, reconciler, directory, billing, event_bus
    ):
        add_grace_org(directory, billing, 1)
        add_grace_org(directory, billing, 2)
        billing.failures.add(
            "update_invoice_metadata", "in_2", ExternalServiceError("Stripe", "timeout")
        )

        first = await reconciler.check_invoice_payment_failed_for_24_hours()
        second = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert first.processed_ids == [1]
        assert second.processed_ids == [2]
        assert event_bus.organization_ids() == [1, 2]

    @pytest.mark.asyncio
    async def test_orgs_in_grace_for_over_a_day_are_ignored(
        self, reconciler, directory, billing, event_bus
    ):
        add_grace_org(directory, billing, 1)
        directory.add(
            directory.organizations[1].model_copy(
                update={"id": 2, "active_period_end": NOW - timedelta(hours=30)}
            )
        )

        result = await reconciler.check_invoice_payment_failed_for_24_hours()

        assert result.processed_ids == [1]
