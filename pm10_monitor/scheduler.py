# -*- coding: utf-8 -*-
"""
pm10_monitor/scheduler.py
常驻任务：
- Scheduler：按整点倍数（interval=5 -> 每 0/5/10... 分）跑一轮监测；间隔改了就重排
- run_housekeeper：定期清理超过保留期的记录
- run_keepalive：定期 ping 自己的公开网址，避免免费主机休眠
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


def next_boundary(now: datetime, interval_minutes: int) -> datetime:
    """now 之后（不含 now）第一个“当天分钟数是 interval 倍数”的整分时刻"""
    interval = max(1, int(interval_minutes))
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = now - midnight
    n = int(elapsed.total_seconds() // (interval * 60)) + 1
    return midnight + timedelta(minutes=n * interval)


class Scheduler:
    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        interval_minutes: int,
        *,
        clock: Callable[[], datetime],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._job = job
        self.interval_minutes = int(interval_minutes)
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        # reschedule 只叫醒等待中的那一次；正在跑的一轮不打断
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="pm10-scheduler")
        logger.info("[scheduler] started, every %d min", self.interval_minutes)

    def reschedule(self, interval_minutes: int) -> None:
        """设置变更回调：等待中就按新间隔重新对齐；正在跑的那一轮跑完后再对齐"""
        interval_minutes = int(interval_minutes)
        if interval_minutes == self.interval_minutes:
            return
        self.interval_minutes = interval_minutes
        logger.info("[scheduler] rescheduled, every %d min", interval_minutes)
        self._wake.set()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("[scheduler] stopped")

    async def _loop(self) -> None:
        try:
            while True:
                now = self._clock()
                delay = (next_boundary(now, self.interval_minutes) - now).total_seconds()
                if await self._wait(max(0.0, delay)):
                    continue
                try:
                    await self._job()
                except Exception:
                    logger.exception("[scheduler] cycle error")
        except asyncio.CancelledError:
            logger.debug("[scheduler] loop cancelled")
            raise

    async def _wait(self, delay: float) -> bool:
        """睡到下一个整点倍数；中途被 reschedule 叫醒返回 True"""
        if not self._wake.is_set():
            sleeper = asyncio.ensure_future(self._sleep(delay))
            waker = asyncio.ensure_future(self._wake.wait())
            try:
                await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                sleeper.cancel()
                waker.cancel()
        if self._wake.is_set():
            self._wake.clear()
            return True
        return False


async def run_housekeeper(prune: Callable[[], Awaitable[int]], every_sec: float = 3600):
    """定期清理过期记录，避免库膨胀。"""
    logger.info("[housekeeper] started")
    try:
        while True:
            try:
                await prune()
            except Exception as e:
                logger.error("[housekeeper] prune error: %s", e)
            await asyncio.sleep(every_sec)
    except asyncio.CancelledError:
        logger.info("[housekeeper] cancelled")
        raise


async def run_keepalive(url: str, every_sec: float = 300, *, client: Optional[httpx.AsyncClient] = None):
    """定期 POST {"message": "ping"}；失败只记日志"""
    own = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
    logger.info("[keepalive] pinging %s every %ss", url, every_sec)
    try:
        while True:
            await asyncio.sleep(every_sec)
            try:
                r = await client.post(url, json={"message": "ping"})
                logger.debug("[keepalive] %s -> %s", url, r.status_code)
            except httpx.HTTPError as e:
                logger.warning("[keepalive] ping failed: %s", e)
    except asyncio.CancelledError:
        logger.info("[keepalive] cancelled")
        raise
    finally:
        if own:
            await client.aclose()
