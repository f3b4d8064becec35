"""Redis-backed event bus.

Domain events are published on namespaced channels
(``<EVENT_CHANNEL_PREFIX>:<event name>``), fire-and-forget. Tasks are pushed
onto namespaced lists (``<TASK_QUEUE_PREFIX>:<task name>``) that the worker
consumes with ``BLPOP``.

Payloads may be pydantic models (dumped by alias, so the wire format is
camelCase), dictionaries, or already-encoded strings.
"""

import json
from typing import Any, Optional

from pydantic import BaseModel
from redis.exceptions import RedisError

from cream.core.config import settings
from cream.core.exceptions import ExternalServiceError
from cream.core.logging import logger
from cream.core.redis_client import RedisClient, redis_client


def encode_payload(data: Any) -> str:
    """JSON-encode an event or task payload."""
    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        return data.model_dump_json(by_alias=True)
    return json.dumps(data, default=str)


class RedisEventBus:
    """Publishes domain events and enqueues tasks through Redis."""

    def __init__(
        self,
        client: Optional[RedisClient] = None,
        event_prefix: Optional[str] = None,
        task_prefix: Optional[str] = None,
    ):
        self.client = client or redis_client
        self.event_prefix = event_prefix or settings.EVENT_CHANNEL_PREFIX
        self.task_prefix = task_prefix or settings.TASK_QUEUE_PREFIX

    def make_channel(self, event_name: str) -> str:
        """Build an event channel name as ``<prefix>:<event name>``."""
        return f"{self.event_prefix}:{event_name}"

    def make_queue(self, task_name: str) -> str:
        """Build a task queue name as ``<prefix>:<task name>``."""
        return f"{self.task_prefix}:{task_name}"

    async def publish_event(self, name: str, payload: Any) -> None:
        """Publish a domain event.

        Raises:
            ExternalServiceError: If Redis cannot be reached.
        """
        channel = self.make_channel(name)
        try:
            receivers = await self.client.publish(channel, encode_payload(payload))
        except RedisError as e:
            raise ExternalServiceError("redis", f"Failed to publish {name}: {e}") from e
        logger.debug(f"Published {name} to {receivers} subscribers")

    async def publish_task(self, name: str, payload: Any) -> None:
        """Enqueue a task for the worker.

        Raises:
            ExternalServiceError: If Redis cannot be reached.
        """
        queue = self.make_queue(name)
        try:
            await self.client.push(queue, encode_payload(payload))
        except RedisError as e:
            raise ExternalServiceError("redis", f"Failed to enqueue {name}: {e}") from e
        logger.debug(f"Enqueued {name}")
