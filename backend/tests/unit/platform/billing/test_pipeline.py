"""Unit tests for the batch pipeline helper."""

import asyncio

import pytest

from cream.core.exceptions import ExternalServiceError, NotFoundException
from cream.platform.billing.pipeline import (
    BatchResult,
    Ok,
    ReconciliationBatch,
    Skip,
    run_stage,
)
from cream.schemas import Candidate
from tests.fixtures.billing import make_organization


def _candidates(*ids):
    return [Candidate(organization=make_organization(i)) for i in ids]


class TestRunStage:
    """Tests for run_stage."""

    @pytest.mark.asyncio
    async def test_results_follow_input_order(self):
        """Results come back in candidate order even when calls finish out of order."""

        async def stage(candidate):
            await asyncio.sleep(0.01 * (5 - candidate.organization_id))
            return Ok(candidate)

        results = await run_stage(_candidates(1, 2, 3, 4), "slow", stage, max_concurrency=4)

        assert [r.candidate.organization_id for r in results] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def stage(candidate):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return Ok(candidate)

        await run_stage(_candidates(*range(1, 11)), "bounded", stage, max_concurrency=3)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_anticipated_errors_become_skips(self):
        async def stage(candidate):
            if candidate.organization_id == 2:
                raise NotFoundException("subscription missing")
            if candidate.organization_id == 3:
                raise ExternalServiceError("Stripe", "rate limited")
            return Ok(candidate)

        results = await run_stage(_candidates(1, 2, 3), "fetch", stage)

        assert isinstance(results[0], Ok)
        assert results[1] == Skip(2, "fetch", "subscription missing", error=results[1].error)
        assert isinstance(results[1].error, NotFoundException)
        assert isinstance(results[2], Skip)
        assert "rate limited" in results[2].reason

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        async def stage(candidate):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await run_stage(_candidates(1), "broken", stage)

    @pytest.mark.asyncio
    async def test_sequential_runs_one_at_a_time(self):
        calls = []

        async def stage(candidate):
            calls.append(("start", candidate.organization_id))
            await asyncio.sleep(0)
            calls.append(("end", candidate.organization_id))
            return Ok(candidate)

        await run_stage(_candidates(1, 2), "publish", stage, sequential=True)

        assert calls == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]


class TestReconciliationBatch:
    """Tests for ReconciliationBatch."""

    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(ValueError):
            ReconciliationBatch("check", [], max_concurrency=0)

    def test_keep_records_skip_reasons(self):
        batch = ReconciliationBatch("check", _candidates(1, 2, 3))

        batch.keep(
            "even_only",
            lambda c: c.organization_id % 2 == 0,
            reason=lambda c: f"{c.organization_id} is odd",
        )

        result = batch.result()
        assert result.processed_ids == [2]
        assert result.skip_reasons() == {1: "1 is odd", 3: "3 is odd"}

    def test_keep_propagates_predicate_errors(self):
        batch = ReconciliationBatch("check", _candidates(1))

        with pytest.raises(ZeroDivisionError):
            batch.keep("broken", lambda c: 1 / 0, reason="never")

    @pytest.mark.asyncio
    async def test_stages_narrow_survivors_and_collect_skips(self):
        initial_skip = Skip(9, "fetch_subscription", "not found")
        batch = ReconciliationBatch("check", _candidates(1, 2, 3), skipped=[initial_skip])

        async def drop_two(candidate):
            if candidate.organization_id == 2:
                return Skip(2, "drop", "explicit")
            return Ok(candidate)

        async def fail_three(candidate):
            if candidate.organization_id == 3:
                raise NotFoundException("gone")
            return Ok(candidate)

        await batch.apply("drop", drop_two)
        await batch.apply("fail", fail_three)

        result = batch.result()
        assert isinstance(result, BatchResult)
        assert result.check == "check"
        assert result.processed_ids == [1]
        assert [(s.organization_id, s.stage) for s in result.skipped] == [
            (9, "fetch_subscription"),
            (2, "drop"),
            (3, "fail"),
        ]

    @pytest.mark.asyncio
    async def test_empty_batch_is_not_an_error(self):
        batch = ReconciliationBatch("check", [])

        async def stage(candidate):
            raise AssertionError("never called")

        await batch.apply("noop", stage)

        assert batch.result().processed_ids == []
        assert batch.result().skipped == []
