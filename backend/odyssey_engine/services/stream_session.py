"""
Live stream session — caller-side policy around a streaming SDK client.

The SDK client is injected; this wrapper owns:

* connect with a timeout, replacing any stale connection first;
* start_scene retries while the data channel is not ready yet;
* interact rate limiting (the service enforces no cooldown itself);
* best-effort end_scene and idempotent disconnect.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Protocol

from odyssey_engine.config import settings
from odyssey_engine.errors import StreamChannelError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class StreamClient(Protocol):
    async def connect(self) -> bool: ...

    async def start_stream(self, prompt: str) -> None: ...

    async def interact(self, prompt: str) -> None: ...

    async def end_stream(self) -> None: ...

    def disconnect(self) -> None: ...


def is_channel_not_ready(exc: BaseException) -> bool:
    if isinstance(exc, StreamChannelError):
        return exc.transient
    return "channel not open" in str(exc).lower()


class LiveStreamSession:
    """One live rendering session; safe to tear down any number of times."""

    def __init__(
        self,
        client_factory: Callable[[], StreamClient],
        *,
        connect_timeout: Optional[float] = None,
        start_max_retries: Optional[int] = None,
        start_retry_delay: Optional[float] = None,
        interact_cooldown: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_factory = client_factory
        self.connect_timeout = settings.stream_connect_timeout_seconds if connect_timeout is None else connect_timeout
        self.start_max_retries = settings.stream_start_max_retries if start_max_retries is None else start_max_retries
        self.start_retry_delay = (
            settings.stream_start_retry_delay_seconds if start_retry_delay is None else start_retry_delay
        )
        self.interact_cooldown = (
            settings.interact_cooldown_seconds if interact_cooldown is None else interact_cooldown
        )
        self._sleep = sleep
        self._clock = clock

        self._client: Optional[StreamClient] = None
        self._connected = False
        self._streaming = False
        self._last_interact: Optional[float] = None
        self._pending: List[asyncio.Task] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    async def connect(self) -> None:
        if self._client is not None:
            self.disconnect()

        self._client = self._client_factory()
        try:
            ok = await asyncio.wait_for(self._client.connect(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as exc:
            self.disconnect()
            raise StreamChannelError(
                f"stream connection timed out after {self.connect_timeout:.0f}s"
            ) from exc
        except StreamChannelError:
            self.disconnect()
            raise
        except Exception as exc:
            self.disconnect()
            raise StreamChannelError(f"stream connection failed: {exc}") from exc

        if not ok:
            self.disconnect()
            raise StreamChannelError("stream connection failed")
        self._connected = True
        logger.info("stream connected")

    async def start_scene(self, prompt: str) -> None:
        if self._client is None or not self._connected:
            raise StreamChannelError("stream not connected; call connect() first")

        if self._streaming:
            await self.end_scene()

        for attempt in range(1, self.start_max_retries + 1):
            try:
                await self._client.start_stream(prompt)
            except Exception as exc:
                if is_channel_not_ready(exc) and attempt < self.start_max_retries:
                    logger.warning(
                        "stream channel not ready, retry %d/%d", attempt, self.start_max_retries
                    )
                    await self._sleep(self.start_retry_delay)
                    continue
                if isinstance(exc, StreamChannelError):
                    raise
                raise StreamChannelError(f"failed to start stream: {exc}") from exc
            self._streaming = True
            return

        raise StreamChannelError("failed to start stream: no attempts made")

    def interact(self, prompt: str) -> bool:
        """Fire-and-forget interaction. Returns False when dropped."""
        if self._client is None or not self._streaming:
            return False

        now = self._clock()
        if self._last_interact is not None and now - self._last_interact < self.interact_cooldown:
            return False
        self._last_interact = now

        task = asyncio.get_running_loop().create_task(self._send_interact(self._client, prompt))
        self._pending.append(task)
        task.add_done_callback(self._forget)
        return True

    async def _send_interact(self, client: StreamClient, prompt: str) -> None:
        try:
            await client.interact(prompt)
        except Exception as exc:
            logger.warning("stream interact error: %s", exc)

    def _forget(self, task: asyncio.Task) -> None:
        if task in self._pending:
            self._pending.remove(task)

    async def end_scene(self) -> None:
        if self._client is not None and self._streaming:
            try:
                await self._client.end_stream()
            except Exception as exc:
                logger.debug("end stream failed (ignored): %s", exc)
            self._streaming = False

    def disconnect(self) -> None:
        client = self._client
        if client is not None:
            try:
                client.disconnect()
            except Exception as exc:
                logger.debug("stream disconnect failed (ignored): %s", exc)
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        self._client = None
        self._connected = False
        self._streaming = False
        self._last_interact = None


class OfflineStreamClient:
    """Stream client that renders nothing; used for terminal and offline play."""

    def __init__(self) -> None:
        self.prompts: List[str] = []
        self.interactions: List[str] = []

    async def connect(self) -> bool:
        return True

    async def start_stream(self, prompt: str) -> None:
        self.prompts.append(prompt)

    async def interact(self, prompt: str) -> None:
        self.interactions.append(prompt)

    async def end_stream(self) -> None:
        return None

    def disconnect(self) -> None:
        return None
