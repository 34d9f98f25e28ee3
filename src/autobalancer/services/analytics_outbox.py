from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from autobalancer.domain.models import ExecutionLog
from autobalancer.observability import Instrumentation, get_instrumentation
from autobalancer.ports import AnalyticsSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxStats:
    published: int
    delivered: int
    rejected: int
    failed: int
    dropped: int
    pending: int


class AnalyticsOutbox:
    """Bounded queue between the execution path and the analytics sink.

    ``publish`` never blocks and never raises; delivery happens on a separate
    worker task so a slow or broken sink cannot delay executions.
    """

    def __init__(
        self,
        sink: AnalyticsSink,
        *,
        maxsize: int = 1000,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.sink = sink
        self.instrumentation = instrumentation or get_instrumentation()
        self._queue: asyncio.Queue[ExecutionLog] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None
        self._published = 0
        self._delivered = 0
        self._rejected = 0
        self._failed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def publish(self, log: ExecutionLog) -> bool:
        try:
            self._queue.put_nowait(log)
        except asyncio.QueueFull:
            self._dropped += 1
            self.instrumentation.analytics_dropped()
            logger.warning(
                "analytics_outbox_full_dropped",
                extra={"extra": {"log_id": log.log_id, "maxsize": self._queue.maxsize}},
            )
            return False
        self._published += 1
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="analytics-outbox"
        )
        logger.info("analytics_outbox_started")

    async def drain(self) -> None:
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            log = self._queue.get_nowait()
            try:
                await self._deliver(log)
            finally:
                self._queue.task_done()

    async def close(self, *, drain: bool = True, timeout: float | None = 10.0) -> None:
        if drain:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "analytics_outbox_drain_timeout",
                    extra={"extra": {"pending": self._queue.qsize()}},
                )
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("analytics_outbox_closed", extra={"extra": self.stats().__dict__})

    def stats(self) -> OutboxStats:
        return OutboxStats(
            published=self._published,
            delivered=self._delivered,
            rejected=self._rejected,
            failed=self._failed,
            dropped=self._dropped,
            pending=self._queue.qsize(),
        )

    async def _run(self) -> None:
        while True:
            log = await self._queue.get()
            try:
                await self._deliver(log)
            finally:
                self._queue.task_done()

    async def _deliver(self, log: ExecutionLog) -> None:
        try:
            accepted = await self.sink.log_execution(log)
        except Exception:  # noqa: BLE001
            self._failed += 1
            self.instrumentation.analytics_failed()
            logger.exception(
                "analytics_delivery_failed",
                extra={"extra": {"log_id": log.log_id, "execution_type": log.execution_type}},
            )
            return
        if accepted:
            self._delivered += 1
        else:
            self._rejected += 1
            logger.debug("analytics_delivery_rejected", extra={"extra": {"log_id": log.log_id}})
