"""Task worker for Cream.

Consumes the task queues, validates each job and dispatches it to the
reconciler or handler registered for its task name. ``main()`` wires the
whole service: clients, reconcilers, worker and scheduler.
"""

import asyncio
import functools
import json
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from pydantic import ValidationError
from redis.exceptions import RedisError

from cream.core.config import settings
from cream.core.event_bus import RedisEventBus
from cream.core.exceptions import (
    ExternalServiceError,
    JobValidationError,
    WorkerStopError,
    unpack_validation_error,
)
from cream.core.logging import logger
from cream.core.redis_client import RedisClient, redis_client
from cream.integrations.big_poppa_client import BigPoppaClient
from cream.integrations.stripe_client import StripeClient
from cream.platform.billing.notification_guard import NotificationGuard
from cream.platform.billing.payment_failed_handler import InvoicePaymentFailedHandler
from cream.platform.billing.payment_failure_reconciler import PaymentFailureReconciler
from cream.platform.billing.pipeline import BatchResult
from cream.platform.billing.queries import ReconciliationQueries
from cream.platform.billing.trial_reconciler import TrialLifecycleReconciler
from cream.platform.scheduler import ReconciliationScheduler
from cream.schemas import CheckJob, TaskName

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def check_task(task_name: str, run: Callable[[], Awaitable[BatchResult]]) -> TaskHandler:
    """Wrap a reconciler check as a task handler that validates its job first."""

    async def _handle(job: Dict[str, Any]) -> BatchResult:
        try:
            CheckJob.model_validate(job)
        except ValidationError as e:
            raise JobValidationError(task_name, unpack_validation_error(e)) from e
        return await run()

    return _handle


def build_handlers(
    trial_reconciler: TrialLifecycleReconciler,
    payment_failure_reconciler: PaymentFailureReconciler,
    payment_failed_handler: InvoicePaymentFailedHandler,
) -> Dict[str, TaskHandler]:
    """Map every consumed task name to its handler."""
    return {
        TaskName.TRIAL_ENDING_CHECK: check_task(
            TaskName.TRIAL_ENDING_CHECK, trial_reconciler.check_trial_ending
        ),
        TaskName.TRIAL_ENDED_CHECK: check_task(
            TaskName.TRIAL_ENDED_CHECK, trial_reconciler.check_trial_ended
        ),
        TaskName.INVOICE_PAYMENT_FAILED_CHECK: check_task(
            TaskName.INVOICE_PAYMENT_FAILED_CHECK,
            payment_failure_reconciler.check_invoice_payment_failed_for_24_hours,
        ),
        TaskName.STRIPE_INVOICE_PAYMENT_FAILED: payment_failed_handler.handle,
    }


class TaskWorker:
    """Worker that pops jobs from Redis lists and runs their handlers.

    A failing job never stops the worker. Runs that exceed the timeout are
    abandoned, not cancelled: they keep running in the background so a
    check never stops between writing a flag and publishing its event.
    """

    POLL_ERROR_BACKOFF = 1.0

    def __init__(
        self,
        handlers: Mapping[str, TaskHandler],
        client: Optional[RedisClient] = None,
        task_prefix: Optional[str] = None,
        poll_timeout: Optional[int] = None,
        run_timeout: Optional[float] = None,
    ) -> None:
        """Initialize the worker."""
        self.handlers = dict(handlers)
        self.client = client or redis_client
        self.task_prefix = task_prefix or settings.TASK_QUEUE_PREFIX
        self.poll_timeout = poll_timeout or settings.WORKER_POLL_TIMEOUT
        self.run_timeout = run_timeout or settings.CHECK_TIMEOUT_SECONDS
        self.queues = {f"{self.task_prefix}:{name}": name for name in self.handlers}
        self.abandoned: Set[asyncio.Task] = set()
        self.running = False

    async def start(self) -> None:
        """Consume jobs until stopped."""
        logger.info(f"Starting task worker on queues: {sorted(self.queues)}")
        self.running = True
        while self.running:
            await self.poll_once()

    async def stop(self) -> None:
        """Stop polling and wait for abandoned runs to finish."""
        if self.running:
            logger.info("Stopping task worker...")
        self.running = False
        if self.abandoned:
            logger.info(f"Waiting for {len(self.abandoned)} abandoned runs to finish")
            await asyncio.wait(set(self.abandoned))

    async def poll_once(self) -> bool:
        """Wait for one job and process it.

        Returns:
            True if a job was processed, False if the poll timed out or failed.
        """
        try:
            item = await self.client.pop(list(self.queues), timeout=self.poll_timeout)
        except RedisError as e:
            logger.error(f"Failed to poll task queues: {e}", exc_info=True)
            await asyncio.sleep(self.POLL_ERROR_BACKOFF)
            return False
        if item is None:
            return False
        queue, message = item
        await self.process(self.queues[queue], message)
        return True

    async def process(self, task_name: str, message: str) -> None:
        """Decode, validate and run one job. Errors are logged, never raised."""
        log = logger.with_context(task=task_name)
        try:
            job = json.loads(message)
        except json.JSONDecodeError as e:
            log.error(f"Dropping {task_name} job that is not valid JSON: {e}")
            return
        if not isinstance(job, dict):
            log.error(f"Dropping {task_name} job that is not a JSON object")
            return
        if job.get("tid"):
            log = log.with_context(tid=str(job["tid"]))

        handler = self.handlers.get(task_name)
        if handler is None:
            log.error(f"No handler registered for {task_name}")
            return

        run = asyncio.create_task(handler(job))
        done, _ = await asyncio.wait({run}, timeout=self.run_timeout)
        if run not in done:
            log.error(
                f"{task_name} did not finish within {self.run_timeout}s, "
                "abandoned to finish in the background"
            )
            self.abandoned.add(run)
            run.add_done_callback(functools.partial(self._finish_abandoned, task_name, log))
            return
        self._report(task_name, run, log)

    def _finish_abandoned(self, task_name: str, log: Any, run: asyncio.Task) -> None:
        self.abandoned.discard(run)
        self._report(task_name, run, log)

    def _report(self, task_name: str, run: asyncio.Task, log: Any) -> None:
        if run.cancelled():
            log.warning(f"{task_name} was cancelled")
            return
        try:
            result = run.result()
        except JobValidationError as e:
            log.error(f"Dropping invalid {task_name} job: {e.errors}")
        except WorkerStopError as e:
            log.log(_log_level(e.level), f"Stopped {task_name}: {e.message}")
        except Exception as e:
            log.error(f"Error running {task_name}: {e}", exc_info=True)
        else:
            if isinstance(result, BatchResult):
                log.info(
                    f"{task_name} finished: notified {result.processed_ids}, "
                    f"skipped {len(result.skipped)}"
                )
            else:
                log.info(f"{task_name} finished")


def _log_level(name: str) -> int:
    return getattr(logging, name.upper(), logging.WARNING)


async def main() -> None:
    """Main function to run the worker and scheduler."""
    if not await redis_client.test_connection():
        await redis_client.close()
        raise ExternalServiceError("redis", "Cannot reach Redis at startup")

    stripe_client = StripeClient()
    big_poppa = BigPoppaClient()
    event_bus = RedisEventBus(redis_client)
    guard = NotificationGuard(stripe_client)
    queries = ReconciliationQueries(
        big_poppa, stripe_client, max_concurrency=settings.RECONCILIATION_MAX_CONCURRENCY
    )

    worker = TaskWorker(
        build_handlers(
            TrialLifecycleReconciler(queries, guard, event_bus),
            PaymentFailureReconciler(queries, stripe_client, guard, event_bus),
            InvoicePaymentFailedHandler(big_poppa, stripe_client, guard, event_bus),
        ),
        redis_client,
    )
    scheduler = ReconciliationScheduler(event_bus)

    # Handle shutdown signals
    def signal_handler(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.create_task(worker.stop())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await scheduler.start()
    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    finally:
        await scheduler.stop()
        await worker.stop()
        await redis_client.close()


def run() -> None:
    """Console entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
