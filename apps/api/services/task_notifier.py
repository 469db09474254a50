"""Push task status events to open server-sent-event streams.

Handles live in the API process that owns the client connection. Events
published elsewhere (the RQ worker, another API instance) reach them over a
Redis pattern subscription started from the API lifespan.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "ai_images:task:"
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
MAX_BUFFERED_FRAMES = 100
BRIDGE_RETRY_SECONDS = 5.0

_CLOSED = object()


def encode_event(event: Dict[str, Any], event_name: Optional[str] = None) -> bytes:
    """Encode one server-sent-event frame."""
    lines = []
    if event_name:
        lines.append(f"event: {event_name}")
    lines.append("data: " + json.dumps(event, ensure_ascii=False, default=str))
    return ("\n".join(lines) + "\n\n").encode("utf-8")


class TaskSubscription:
    """Buffered handle for one client stream of one task."""

    def __init__(self, task_id: str, max_buffered: int = MAX_BUFFERED_FRAMES):
        self.task_id = task_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffered)

    def push(self, frame: bytes) -> None:
        """Buffer a frame; raises when the handle is closed or its buffer is full."""
        if self.closed:
            raise RuntimeError(f"Subscription for task {self.task_id} is closed")
        self._queue.put_nowait(frame)

    async def next_message(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Return the next frame, or None on timeout or once the handle is closed and drained."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass


class TaskNotifier:
    """Process-local registry of task subscriptions plus the Redis bridge."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Set[TaskSubscription]] = {}
        self._bridge_task: Optional[asyncio.Task] = None
        self._bridge_ready = False

    @property
    def bridge_running(self) -> bool:
        return self._bridge_ready and self._bridge_task is not None and not self._bridge_task.done()

    def subscribe(self, task_id: str) -> TaskSubscription:
        handle = TaskSubscription(task_id)
        self._subscriptions.setdefault(task_id, set()).add(handle)
        return handle

    def unsubscribe(self, task_id: str, handle: TaskSubscription) -> None:
        handles = self._subscriptions.get(task_id)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            self._subscriptions.pop(task_id, None)

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscriptions.get(task_id, ()))

    def deliver_local(self, task_id: str, event: Dict[str, Any]) -> int:
        """Push an event to this process's handles; returns how many received it."""
        handles = list(self._subscriptions.get(task_id, ()))
        if not handles:
            return 0

        frame = encode_event(event)
        delivered = 0
        for handle in handles:
            try:
                handle.push(frame)
                delivered += 1
            except (RuntimeError, asyncio.QueueFull):
                logger.warning("Dropping stalled subscription for task %s", task_id)
                handle.close()
                self.unsubscribe(task_id, handle)

        if event.get("status") in TERMINAL_STATUSES:
            close_frame = encode_event({"taskId": task_id, "status": event.get("status")}, "close")
            for handle in list(self._subscriptions.get(task_id, ())):
                try:
                    handle.push(close_frame)
                except (RuntimeError, asyncio.QueueFull):
                    pass
                handle.close()
            self._subscriptions.pop(task_id, None)
        return delivered

    async def publish(self, task_id: str, event: Dict[str, Any]) -> None:
        """Fan an event out to every stream watching the task."""
        payload = {"taskId": task_id, **event}

        if settings.REDIS_ENABLED:
            try:
                client = redis.from_url(settings.REDIS_URL, decode_responses=True)
                try:
                    await client.publish(
                        f"{CHANNEL_PREFIX}{task_id}",
                        json.dumps(payload, ensure_ascii=False, default=str),
                    )
                finally:
                    await client.aclose()
                if self.bridge_running:
                    return
            except Exception:
                logger.warning("Redis publish failed for task %s; delivering locally", task_id, exc_info=True)

        self.deliver_local(task_id, payload)

    async def start_bridge(self) -> None:
        if not settings.REDIS_ENABLED or self._bridge_task is not None:
            return
        self._bridge_task = asyncio.create_task(self._run_bridge())

    async def stop_bridge(self) -> None:
        task = self._bridge_task
        self._bridge_task = None
        self._bridge_ready = False
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_bridge(self) -> None:
        while True:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            pubsub = client.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                self._bridge_ready = True
                logger.info("Task notifier bridge subscribed to %s*", CHANNEL_PREFIX)
                async for message in pubsub.listen():
                    if not message or message.get("type") != "pmessage":
                        continue
                    channel = str(message.get("channel") or "")
                    task_id = channel[len(CHANNEL_PREFIX):]
                    try:
                        event = json.loads(message.get("data") or "")
                    except ValueError:
                        logger.warning("Ignoring malformed task event on %s", channel)
                        continue
                    self.deliver_local(task_id, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Task notifier bridge lost its Redis subscription")
            finally:
                self._bridge_ready = False
                await pubsub.aclose()
                await client.aclose()
            await asyncio.sleep(BRIDGE_RETRY_SECONDS)


task_notifier = TaskNotifier()


def subscribe(task_id: str) -> TaskSubscription:
    return task_notifier.subscribe(task_id)


def unsubscribe(task_id: str, handle: TaskSubscription) -> None:
    task_notifier.unsubscribe(task_id, handle)


async def publish(task_id: str, event: Dict[str, Any]) -> None:
    await task_notifier.publish(task_id, event)
