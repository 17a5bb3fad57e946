"""
Progress publisher: per-job fan-out of progress events.

Delivery is best-effort. A subscriber only sees events published after it
subscribed; the job store snapshot covers everything before that.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Optional, Set, Tuple

import redis
import redis.asyncio as aioredis
from pydantic import ValidationError

from config.settings import PublisherConfig
from core.errors import InfrastructureError
from core.events import ProgressEvent, dump_event, parse_event

logger = logging.getLogger(__name__)


def channel_name(kind: str, job_id: str) -> str:
    return f"progress:{kind}:{job_id}"


class Subscription(ABC):
    """Live event stream for one job."""

    def __init__(self, kind: str, job_id: str):
        self.kind = kind
        self.job_id = job_id
        self.closed = False

    @abstractmethod
    async def get(self, timeout: float) -> Optional[ProgressEvent]:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Tear down the subscription. Safe to call more than once."""
        ...

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


class ProgressPublisher(ABC):

    @abstractmethod
    def publish(self, kind: str, job_id: str, event: ProgressEvent) -> int:
        """Publish to current subscribers. Returns the number reached."""
        ...

    @abstractmethod
    async def subscribe(self, kind: str, job_id: str) -> Subscription:
        ...

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    async def aclose(self) -> None:
        self.stop()


class _MemorySubscription(Subscription):

    def __init__(self, publisher: "InMemoryProgressPublisher", kind: str, job_id: str):
        super().__init__(kind, job_id)
        self._publisher = publisher
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # subscriber's loop already closed
            return False
        return True

    async def get(self, timeout: float) -> Optional[ProgressEvent]:
        if self.closed:
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self._publisher._remove(self)


class InMemoryProgressPublisher(ProgressPublisher):
    """Process-local publisher; publish is safe from any thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[Tuple[str, str], Set[_MemorySubscription]] = defaultdict(set)

    def publish(self, kind: str, job_id: str, event: ProgressEvent) -> int:
        with self._lock:
            targets = list(self._subscribers.get((kind, job_id), ()))
        return sum(1 for sub in targets if sub._deliver(event))

    async def subscribe(self, kind: str, job_id: str) -> Subscription:
        sub = _MemorySubscription(self, kind, job_id)
        with self._lock:
            self._subscribers[(kind, job_id)].add(sub)
        return sub

    def subscriber_count(self, kind: str, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get((kind, job_id), ()))

    def _remove(self, sub: _MemorySubscription) -> None:
        with self._lock:
            sub.closed = True
            subs = self._subscribers.get((sub.kind, sub.job_id))
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[(sub.kind, sub.job_id)]

    def stop(self) -> None:
        with self._lock:
            for subs in self._subscribers.values():
                for sub in subs:
                    sub.closed = True
            self._subscribers.clear()


class _RedisSubscription(Subscription):

    def __init__(self, pubsub, kind: str, job_id: str):
        super().__init__(kind, job_id)
        self._pubsub = pubsub
        self._channel = channel_name(kind, job_id)

    async def get(self, timeout: float) -> Optional[ProgressEvent]:
        deadline = time.monotonic() + timeout
        while not self.closed:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=remaining)
            except redis.RedisError as e:
                raise InfrastructureError(f"Progress subscription failed: {e}") from e
            # subscribe confirmations come back as None too
            if message is None or message.get("type") != "message":
                continue
            try:
                return parse_event(message["data"])
            except ValidationError as e:
                logger.error("Dropping malformed progress message on %s: %s", self._channel, e)
        return None

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError as e:
            logger.warning("Error closing subscription %s: %s", self._channel, e)


class RedisProgressPublisher(ProgressPublisher):
    """Redis pub/sub. Workers publish synchronously; the API subscribes
    with the asyncio client."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None
        self._async_client: Optional[aioredis.Redis] = None

    def start(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(self.redis_url)

    def stop(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def aclose(self) -> None:
        self.stop()
        if self._async_client is not None:
            await self._async_client.aclose()
            self._async_client = None

    def publish(self, kind: str, job_id: str, event: ProgressEvent) -> int:
        self.start()
        try:
            return self._client.publish(channel_name(kind, job_id), dump_event(event))
        except redis.RedisError as e:
            raise InfrastructureError(f"Progress publish failed: {e}") from e

    async def subscribe(self, kind: str, job_id: str) -> Subscription:
        if self._async_client is None:
            self._async_client = aioredis.from_url(self.redis_url)
        pubsub = self._async_client.pubsub()
        try:
            await pubsub.subscribe(channel_name(kind, job_id))
        except redis.RedisError as e:
            try:
                await pubsub.aclose()
            except redis.RedisError as close_error:
                logger.warning("Error closing failed subscription: %s", close_error)
            raise InfrastructureError(f"Progress subscribe failed: {e}") from e
        return _RedisSubscription(pubsub, kind, job_id)


def create_publisher(config: PublisherConfig) -> ProgressPublisher:
    if config.redis_url:
        return RedisProgressPublisher(config.redis_url)
    return InMemoryProgressPublisher()
