"""
Real-time delivery of newly stored insights.

Publishers push JSON-serialisable dicts on ``insights:<tenant_code>``;
subscribers receive them in order. Redis pub/sub is used when ``REDIS_URL`` is
configured and reachable, otherwise an in-process channel with one queue per
subscriber. The channel only carries notifications: the insights table stays
the source of truth, so a lost message never loses an insight.
"""

import json
import queue
import threading
import time
from typing import Any, Dict, List, Optional

import redis

from multistock.core.logging_config import get_logger
from multistock.core_settings import Settings, get_settings

logger = get_logger(__name__)


def topic_for(tenant_code: str) -> str:
    return f"insights:{tenant_code}"


class LocalSubscription:
    def __init__(self, channel: "LocalInsightChannel", topic: str):
        self._channel = channel
        self.topic = topic
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None when ``timeout`` elapses first."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._channel._unsubscribe(self)


class LocalInsightChannel:
    backend = "local"

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[LocalSubscription]] = {}

    def publish(self, tenant_code: str, message: Dict[str, Any]) -> int:
        topic = topic_for(tenant_code)
        # Round-trip through JSON so local and Redis subscribers see the same shape.
        payload = json.loads(json.dumps(message, default=str))
        with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))
        for subscription in subscribers:
            subscription._queue.put(payload)
        return len(subscribers)

    def subscribe(self, tenant_code: str) -> LocalSubscription:
        subscription = LocalSubscription(self, topic_for(tenant_code))
        with self._lock:
            self._subscribers.setdefault(subscription.topic, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: LocalSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class RedisSubscription:
    # Upper bound of one blocking read while waiting without a timeout.
    POLL_SECONDS = 1.0

    def __init__(self, pubsub, topic: str):
        self._pubsub = pubsub
        self.topic = topic

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None when ``timeout`` elapses first. Blocks when ``timeout`` is None."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if deadline is None:
                wait = self.POLL_SECONDS
            else:
                wait = max(deadline - time.monotonic(), 0.0)
            message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=wait)
            if message:
                return json.loads(message["data"])
            if deadline is not None and time.monotonic() >= deadline:
                return None

    def close(self) -> None:
        self._pubsub.close()


class RedisInsightChannel:
    backend = "redis"

    def __init__(self, client: "redis.Redis"):
        self.client = client

    def publish(self, tenant_code: str, message: Dict[str, Any]) -> int:
        try:
            return self.client.publish(topic_for(tenant_code), json.dumps(message, default=str))
        except redis.RedisError as e:
            # Insight is already committed; subscribers can re-read the table.
            logger.warning(f"Insight publish failed for tenant {tenant_code}: {e}")
            return 0

    def subscribe(self, tenant_code: str) -> RedisSubscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        topic = topic_for(tenant_code)
        pubsub.subscribe(topic)
        return RedisSubscription(pubsub, topic)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self.client.close()


def build_channel(settings: Optional[Settings] = None):
    """Redis channel when configured and reachable, else the in-process one."""
    settings = settings or get_settings()
    if settings.REDIS_URL:
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
            client.ping()
            logger.info("Insight channel: redis")
            return RedisInsightChannel(client)
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable ({e}); using in-process insight channel")
    return LocalInsightChannel()
