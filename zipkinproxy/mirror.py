"""Asynchronous best-effort forwarding of raw span payloads to a downstream collector."""

import asyncio
from dataclasses import dataclass
import logging
from typing import List
from typing import Optional

from aiohttp import ClientError
from aiohttp import ClientSession
from yarl import URL


log = logging.getLogger(__name__)


DEFAULT_BUFFER_SIZE = 4096
DEFAULT_MAX_CONCURRENCY = 100


class MirrorError(Exception):
    pass


@dataclass(frozen=True)
class Payload:
    content_type: str
    body: bytes


class Mirror:
    """Replay received payloads against ``downstream_url``.

    Payloads are queued without waiting and delivered by a fixed pool of
    workers. When the queue is full new payloads are refused rather than
    slowing down ingestion.
    """

    def __init__(
        self,
        downstream_url: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.downstream_url = URL(downstream_url)
        self.buffer_size = buffer_size
        self.max_concurrency = max_concurrency
        self._queue: Optional["asyncio.Queue[Payload]"] = None
        self._workers: List["asyncio.Task[None]"] = []
        self._session: Optional[ClientSession] = None
        self._stopped = False

    def __repr__(self) -> str:
        return "<Mirror downstream_url=%r>" % str(self.downstream_url)

    async def start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.buffer_size)
        self._session = ClientSession()
        self._stopped = False
        self._workers = [asyncio.create_task(self._run()) for _ in range(self.max_concurrency)]
        log.info("mirroring spans to %s", self.downstream_url)

    async def stop(self) -> None:
        self._stopped = True
        if self._queue is not None:
            await self._queue.join()
        for w in self._workers:
            w.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._session is not None:
            await self._session.close()
            self._session = None

    def send(self, payload: Payload) -> None:
        if self._stopped or self._queue is None:
            raise MirrorError("mirror stopped")
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            raise MirrorError("mirror full")

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            payload = await self._queue.get()
            try:
                await self._forward(payload)
            finally:
                self._queue.task_done()

    async def _forward(self, payload: Payload) -> None:
        assert self._session is not None
        url = self.downstream_url
        try:
            async with self._session.post(
                url, data=payload.body, headers={"Content-Type": payload.content_type}
            ) as resp:
                if resp.status != 202:
                    body = await resp.content.read(1024)
                    log.info(
                        "unexpected response [%d] from mirror %s: %s",
                        resp.status,
                        url,
                        body.decode("utf-8", errors="replace"),
                    )
        except (ClientError, asyncio.TimeoutError) as e:
            log.info("error mirroring request to %s: %s", url, e)
