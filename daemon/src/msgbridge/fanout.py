"""Fan out session events to real-time subscribers."""

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from msgbridge.protocols import ChannelProtocol

logger = logging.getLogger(__name__)

# Close code sent to subscribers that miss a delivery deadline
SLOW_CONSUMER_CLOSE_CODE = 1008

SnapshotProvider = Callable[[], list[dict[str, Any]]]


def qr_event(data_url: str) -> dict[str, Any]:
    """Build a qr event."""
    return {"event": "qr", "data": data_url}


def status_event(status: str, devices: list[dict[str, Any]]) -> dict[str, Any]:
    """Build a status event."""
    return {"event": "status", "data": {"status": status, "devices": devices}}


@dataclass
class Subscriber:
    """A live outbound channel to one viewer.

    Frames wait in ``queue`` until the subscriber's own ``writer`` task
    delivers them, so a slow channel only ever delays itself.
    """

    id: int
    channel: Any  # ChannelProtocol
    queue: asyncio.Queue = field(repr=False)
    connected_at: float = field(default_factory=time.time)
    alive: bool = True
    last_send_deadline: Optional[float] = None
    writer: Optional[asyncio.Task] = field(default=None, repr=False)


class FanoutHub:
    """Track subscribers and broadcast events with per-subscriber deadlines.

    ``broadcast`` only enqueues. Each subscriber's writer task sends its
    frames in order, racing every send against the deadline. A subscriber
    that misses it is evicted and its channel closed; the others are
    unaffected.
    """

    def __init__(
        self,
        snapshot_provider: Optional[SnapshotProvider] = None,
        send_timeout: float = 5.0,
        max_pending: int = 256,
    ):
        """Initialize hub.

        Args:
            snapshot_provider: Returns the events a new subscriber receives.
            send_timeout: Delivery deadline per frame, in seconds.
            max_pending: Undelivered frames a subscriber may accumulate
                before it is evicted.
        """
        self.snapshot_provider = snapshot_provider
        self._send_timeout = send_timeout
        self._max_pending = max_pending
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._close_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def send_timeout(self) -> float:
        return self._send_timeout

    @property
    def subscribers(self) -> list[Subscriber]:
        """Snapshot of live subscribers."""
        return list(self._subscribers.values())

    def _find(self, channel: ChannelProtocol) -> Optional[Subscriber]:
        for sub in self._subscribers.values():
            if sub.channel is channel:
                return sub
        return None

    async def subscribe(self, channel: ChannelProtocol) -> Optional[Subscriber]:
        """Register a channel and queue the current snapshot for it.

        The snapshot is queued and the subscriber registered without
        yielding, so any later broadcast lands behind the snapshot.

        Returns:
            The subscriber, or None if the hub is closed.
        """
        if self._closed:
            await self._close_channel(channel, code=1001, message=b"Shutting down")
            return None

        sub = Subscriber(
            id=next(self._ids),
            channel=channel,
            queue=asyncio.Queue(maxsize=self._max_pending),
        )

        events = self.snapshot_provider() if self.snapshot_provider else []
        for event in events:
            sub.queue.put_nowait(json.dumps(event))

        self._subscribers[sub.id] = sub
        sub.writer = asyncio.create_task(self._write_loop(sub))
        logger.info(f"Subscriber #{sub.id} connected ({len(self._subscribers)} total)")
        return sub

    async def unsubscribe(self, channel: ChannelProtocol) -> bool:
        """Remove a channel. Idempotent.

        Returns:
            True if the channel was registered.
        """
        sub = self._find(channel)
        if sub is None:
            return False

        self._detach(sub)
        logger.info(f"Subscriber #{sub.id} disconnected ({len(self._subscribers)} total)")
        return True

    async def broadcast(self, event: dict[str, Any]) -> None:
        """Queue an event for every subscriber and return immediately.

        Never waits on delivery and never raises because of a subscriber
        failure.
        """
        if self._closed or not self._subscribers:
            return

        frame = json.dumps(event)
        for sub in list(self._subscribers.values()):
            try:
                sub.queue.put_nowait(frame)
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscriber #{sub.id} has {self._max_pending} undelivered frames"
                )
                self._evict(sub)

    async def join(self) -> None:
        """Wait until every queued frame has been delivered or discarded."""
        subs = list(self._subscribers.values())
        if subs:
            await asyncio.gather(*[sub.queue.join() for sub in subs])

    async def _write_loop(self, sub: Subscriber) -> None:
        """Deliver a subscriber's frames one at a time, each under the deadline."""
        while True:
            frame = await sub.queue.get()
            sub.last_send_deadline = time.time() + self._send_timeout
            error: Optional[Exception] = None
            try:
                await asyncio.wait_for(
                    sub.channel.send_str(frame), timeout=self._send_timeout
                )
            except asyncio.TimeoutError:
                error = TimeoutError(f"Send timeout after {self._send_timeout:g}s")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
            finally:
                sub.last_send_deadline = None
                sub.queue.task_done()

            if error is not None:
                logger.warning(f"Delivery to subscriber #{sub.id} failed: {error}")
                self._evict(sub)
                return

    def _detach(self, sub: Subscriber) -> None:
        """Forget a subscriber, stop its writer and drop its pending frames."""
        self._subscribers.pop(sub.id, None)
        sub.alive = False

        if sub.writer is not None and sub.writer is not asyncio.current_task():
            sub.writer.cancel()

        while True:
            try:
                sub.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            sub.queue.task_done()

    def _evict(self, sub: Subscriber) -> None:
        """Remove a subscriber and close its channel in the background."""
        if not sub.alive:
            return
        self._detach(sub)

        logger.warning(f"Evicted subscriber #{sub.id}")
        task = asyncio.create_task(
            self._close_channel(
                sub.channel, code=SLOW_CONSUMER_CLOSE_CODE, message=b"Slow consumer"
            )
        )
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _close_channel(
        self, channel: ChannelProtocol, code: int, message: bytes
    ) -> None:
        """Close a channel without waiting longer than the send deadline."""
        try:
            await asyncio.wait_for(
                channel.close(code=code, message=message), timeout=self._send_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Channel close timed out")
        except Exception as e:
            logger.debug(f"Channel close failed: {e}")

    async def close(self) -> None:
        """Close all subscriber channels and refuse new ones."""
        self._closed = True

        subs = list(self._subscribers.values())
        for sub in subs:
            self._detach(sub)

        writers = [sub.writer for sub in subs if sub.writer is not None]
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)

        if subs:
            await asyncio.gather(
                *[
                    self._close_channel(sub.channel, code=1001, message=b"Shutting down")
                    for sub in subs
                ],
                return_exceptions=True,
            )

        if self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)

        logger.info("Fan-out hub closed")

    def __len__(self) -> int:
        return len(self._subscribers)
