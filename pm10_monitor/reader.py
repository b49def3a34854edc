# -*- coding: utf-8 -*-
"""
pm10_monitor/reader.py
测站读取：用 Playwright（无头 Chromium）登入监测平台，读各站 PM10。
- 优先读站点页 iframe 里的历史表（时间窗内的每一行）
- 没有历史表时退回读即时值，时间记为当前分钟
所有步骤都有超时；任何失败都以 ReaderError(kind) 抛出，由 pipeline 记入站点健康状态。
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Optional, Sequence, Union

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .models import Sample, Station
from .utils import floor_minute, localize, now_local, parse_number

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r"-?\d+(?:,\d{3})*(?:\.\d+)?")


class ReaderError(Exception):
    AUTH = "auth"
    TIMEOUT = "timeout"
    EMPTY = "empty"
    NAVIGATION = "navigation"

    def __init__(self, kind: str, message: str = ""):
        self.kind = kind
        super().__init__(f"{kind}: {message}" if message else kind)


# --------- 解析（纯函数，方便测试） ---------
def parse_live_text(text: Optional[str]) -> Optional[float]:
    """'85 μg/m3' -> 85.0；找不到数字返回 None"""
    if not text:
        return None
    m = _NUMBER.search(text)
    return parse_number(m.group(0)) if m else None


def parse_history_rows(
    rows: Sequence[Sequence[str]],
    station_id: str,
    start: datetime,
    end: datetime,
    tz: tzinfo,
    *,
    time_format: str = "%Y/%m/%d %H:%M",
    value_column: int = 1,
) -> List[Sample]:
    """
    历史表每行：第一格时间、value_column 格 PM10。
    表头、时间解析不了的行直接跳过；只保留 [start, end] 内的行，按时间升序返回。
    """
    out: List[Sample] = []
    for cells in rows:
        if len(cells) <= value_column:
            continue
        try:
            t = floor_minute(localize(datetime.strptime(cells[0].strip(), time_format), tz))
        except ValueError:
            continue
        if not (start <= t <= end):
            continue
        out.append(Sample(station_id=station_id, time=t, value=parse_live_text(cells[value_column])))
    out.sort(key=lambda s: s.time)
    return out


# --------- 读取器 ---------
class StationReader:
    """接口：fetch(station, start, end) -> [Sample]；失败抛 ReaderError"""

    async def fetch(self, station: Station, start: datetime, end: datetime) -> List[Sample]:
        raise NotImplementedError

    def set_credentials(self, account: str, password: str) -> None:
        return

    async def close(self) -> None:
        return


class PlaywrightPortalReader(StationReader):
    def __init__(self, reader_cfg: Dict[str, Any], tz: tzinfo):
        self._cfg = reader_cfg
        self._tz = tz
        self._timeout_ms = int(float(reader_cfg.get("timeout_seconds", 30)) * 1000)
        self._account = ""
        self._password = ""
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._logged_in = False
        self._lock = asyncio.Lock()

    def set_credentials(self, account: str, password: str) -> None:
        if (account, password) != (self._account, self._password):
            self._account, self._password = account, password
            self._logged_in = False

    async def _ensure_context(self) -> BrowserContext:
        if self._context is not None and self._browser is not None and self._browser.is_connected():
            return self._context
        await self.close()
        self._pw = await async_playwright().start()
        launch_kwargs: Dict[str, Any] = {
            "headless": bool(self._cfg.get("headless", True)),
            "args": ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
        }
        if os.getenv("CHROMIUM_PATH"):
            launch_kwargs["executable_path"] = os.environ["CHROMIUM_PATH"]
        self._browser = await self._pw.chromium.launch(**launch_kwargs)
        self._context = await self._browser.new_context()
        self._context.set_default_timeout(self._timeout_ms)
        self._logged_in = False
        return self._context

    async def _login(self, ctx: BrowserContext) -> None:
        if not self._account or not self._password:
            raise ReaderError(ReaderError.AUTH, "portal credentials not configured")
        page = await ctx.new_page()
        try:
            await page.goto(self._cfg["login_url"])
            await page.fill(self._cfg["account_selector"], self._account)
            await page.fill(self._cfg["password_selector"], self._password)
            await page.click(self._cfg["submit_selector"])
            await page.wait_for_load_state("networkidle")
            if await page.locator(self._cfg["password_selector"]).count():
                raise ReaderError(ReaderError.AUTH, "still on login page after submit")
            self._logged_in = True
            logger.info("[reader] logged in to portal")
        finally:
            await page.close()

    async def _session(self) -> BrowserContext:
        # 多站并发时只登入一次
        async with self._lock:
            ctx = await self._ensure_context()
            if not self._logged_in:
                await self._login(ctx)
            return ctx

    async def fetch(self, station: Station, start: datetime, end: datetime) -> List[Sample]:
        try:
            ctx = await self._session()
            page = await ctx.new_page()
            try:
                samples = await self._read_station(page, station, start, end)
            finally:
                await page.close()
        except ReaderError:
            raise
        except PlaywrightTimeoutError as e:
            raise ReaderError(ReaderError.TIMEOUT, str(e).splitlines()[0]) from e
        except PlaywrightError as e:
            raise ReaderError(ReaderError.NAVIGATION, str(e).splitlines()[0]) from e

        if not any(s.value is not None for s in samples):
            raise ReaderError(ReaderError.EMPTY, f"no PM10 value for station {station.id}")
        return samples

    async def _read_station(self, page, station: Station, start: datetime, end: datetime) -> List[Sample]:
        await page.goto(station.url)
        if await page.locator(self._cfg["password_selector"]).count():
            # 会话过期，被导回登入页
            self._logged_in = False
            raise ReaderError(ReaderError.AUTH, "session expired")

        frame_el = await page.wait_for_selector(self._cfg["frame_selector"])
        frame = await frame_el.content_frame()
        if frame is None:
            raise ReaderError(ReaderError.NAVIGATION, "station frame not loaded")
        await frame.wait_for_load_state()

        rows = await frame.eval_on_selector_all(
            self._cfg["history_row_selector"],
            "rows => rows.map(r => Array.from(r.cells || []).map(c => c.innerText.trim()))",
        )
        samples = parse_history_rows(
            rows, station.id, start, end, self._tz,
            time_format=self._cfg.get("time_format", "%Y/%m/%d %H:%M"),
            value_column=int(self._cfg.get("value_column", 1)),
        )
        if samples:
            return samples

        item = frame.locator(self._cfg["live_item_selector"], has_text=self._cfg.get("live_item_text", "PM10"))
        if not await item.count():
            return []
        text = await item.first.locator(self._cfg["live_value_selector"]).inner_text()
        return [Sample(station_id=station.id, time=floor_minute(now_local(self._tz)), value=parse_live_text(text))]

    async def close(self) -> None:
        for obj in (self._context, self._browser):
            if obj is not None:
                try:
                    await obj.close()
                except PlaywrightError as e:
                    logger.debug("[reader] close error: %s", e)
        if self._pw is not None:
            await self._pw.stop()
        self._pw = self._browser = self._context = None
        self._logged_in = False


async def fetch_all(
    reader: StationReader,
    stations: Sequence[Station],
    start: datetime,
    end: datetime,
) -> Dict[str, Union[List[Sample], BaseException]]:
    """所有站并发读取，全部结束后一起返回；单站失败以异常对象出现在结果里"""
    results = await asyncio.gather(
        *(reader.fetch(st, start, end) for st in stations), return_exceptions=True
    )
    return {st.id: res for st, res in zip(stations, results)}
