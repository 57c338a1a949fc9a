"""
Layer 4 – 调度层
所有上游调用经由单一通道串行执行，并保证相邻两次调用间隔不小于最小间隔。
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Job = Tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class UpstreamScheduler:
    """
    单通道 FIFO 调度器

    调用方把任务放入显式队列后等待自己的 Future；唯一的工作协程按到达顺序
    逐个取出任务，补足距上次调用完成的间隔后执行。调用方被取消只会取消它
    自己的 Future，不会影响通道的计时状态：尚未开始的任务被跳过，已开始的
    任务照常跑完，结果丢弃。
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._queue: Optional["asyncio.Queue[_Job]"] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._last_call_at: Optional[float] = None
        self._calls = 0

    @property
    def min_interval(self) -> float:
        return self._min_interval

    # ── 生命周期 ──────────────────────────────────────────

    async def start(self) -> None:
        self._ensure_worker()

    async def stop(self) -> None:
        """停止工作协程，并取消仍在排队的调用"""
        worker, queue = self._worker, self._queue
        self._worker = None
        self._queue = None
        self._loop = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        if queue is not None:
            while not queue.empty():
                _, future = queue.get_nowait()
                future.cancel()

    def _ensure_worker(self) -> "asyncio.Queue[_Job]":
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done() or self._loop is not loop:
            self._loop = loop
            self._queue = asyncio.Queue()
            self._worker = loop.create_task(self._run(self._queue), name="upstream-scheduler")
            logger.debug(f"上游调度通道已启动（最小间隔 {self._min_interval}s）")
        return self._queue

    # ── 调度 ──────────────────────────────────────────────

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """排队执行 fn，返回其结果（或抛出其异常）"""
        queue = self._ensure_worker()
        future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        queue.put_nowait((fn, future))
        return await future

    def _wait_needed(self) -> float:
        if self._last_call_at is None:
            return 0.0
        return max(0.0, self._last_call_at + self._min_interval - self._clock())

    async def _run(self, queue: "asyncio.Queue[_Job]") -> None:
        while True:
            fn, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                wait = self._wait_needed()
                if wait > 0:
                    logger.debug(f"上游调用等待 {wait:.3f}s 以满足最小间隔")
                    await self._sleep(wait)
                if future.cancelled():
                    continue
                await self._execute(fn, future)
            finally:
                queue.task_done()

    async def _execute(self, fn: Callable[[], Awaitable[Any]], future: "asyncio.Future[Any]") -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._last_call_at = self._clock()
            self._calls += 1

    def stats(self) -> dict:
        return {
            "min_interval": self._min_interval,
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "calls": self._calls,
            "running": self._worker is not None and not self._worker.done(),
        }
