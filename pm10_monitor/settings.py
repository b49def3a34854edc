# -*- coding: utf-8 -*-
"""
pm10_monitor/settings.py
运行参数（可在聊天里改、也可直接改库）：
- get_settings()：缺失或不合法的值写回默认后返回
- set_value()：进程内修改（聊天指令），立即触发回调
- watch()：轮询检测库里的外部修改（和 config.yml 的热加载同一做法），有变化就触发回调
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiosqlite

from . import storage
from .models import OperationalSettings
from .utils import parse_number

logger = logging.getLogger(__name__)

SCRAPE_INTERVAL = "scrape_interval_minutes"
PM10_THRESHOLD = "pm10_threshold"
ALERT_INTERVAL = "alert_interval_minutes"
PORTAL_ACCOUNT = "portal_account"
PORTAL_PASSWORD = "portal_password"

KEYS = (SCRAPE_INTERVAL, PM10_THRESHOLD, ALERT_INTERVAL, PORTAL_ACCOUNT, PORTAL_PASSWORD)

Callback = Callable[[Any], Union[None, Awaitable[None]]]


def default_settings() -> Dict[str, Any]:
    return {
        SCRAPE_INTERVAL: 5,
        PM10_THRESHOLD: 150.0,
        ALERT_INTERVAL: 60,
        PORTAL_ACCOUNT: os.getenv("PORTAL_ACCOUNT", ""),
        PORTAL_PASSWORD: os.getenv("PORTAL_PASSWORD", ""),
    }


def coerce(key: str, value: Any) -> Optional[Any]:
    """按 key 转型；不合法返回 None"""
    if key in (SCRAPE_INTERVAL, ALERT_INTERVAL):
        f = parse_number(value)
        if f is None or not f.is_integer() or f < 1:
            return None
        return int(f)
    if key == PM10_THRESHOLD:
        f = parse_number(value)
        if f is None or f <= 0:
            return None
        return f
    if key in (PORTAL_ACCOUNT, PORTAL_PASSWORD):
        return None if value is None else str(value)
    raise KeyError(f"unknown setting: {key}")


class SettingsProvider:
    def __init__(self, db: aiosqlite.Connection, defaults: Optional[Dict[str, Any]] = None):
        self._db = db
        self._defaults = {**default_settings(), **(defaults or {})}
        self._snapshot: Dict[str, Any] = {}
        self._callbacks: Dict[str, List[Callback]] = defaultdict(list)

    def on_change(self, key: str, callback: Callback) -> None:
        if key not in KEYS:
            raise KeyError(f"unknown setting: {key}")
        self._callbacks[key].append(callback)

    async def get_settings(self) -> OperationalSettings:
        raw = await storage.get_all_settings(self._db)
        values: Dict[str, Any] = {}
        for key in KEYS:
            v = coerce(key, raw.get(key))
            if v is None:
                if key in raw:
                    logger.warning("[settings] invalid %s=%r, reset to default", key, raw[key])
                v = coerce(key, self._defaults[key])
                await storage.set_setting(self._db, key, v)
            values[key] = v
        if not self._snapshot:
            self._snapshot = dict(values)
        return OperationalSettings(**values)

    async def set_value(self, key: str, value: Any) -> Any:
        """写入并返回转型后的值；不合法抛 ValueError"""
        v = coerce(key, value)
        if v is None:
            raise ValueError(f"invalid value for {key}: {value!r}")
        await storage.set_setting(self._db, key, v)
        old = self._snapshot.get(key)
        self._snapshot[key] = v
        if old != v:
            logger.info("[settings] %s: %r -> %r", key, old, v)
            await self._fire(key, v)
        return v

    async def refresh(self) -> OperationalSettings:
        """重新读库，和上一次快照比对，变化的 key 触发回调"""
        first = not self._snapshot
        current = await self.get_settings()
        if first:
            return current
        for key in KEYS:
            v = getattr(current, key)
            if self._snapshot.get(key) != v:
                logger.info("[settings] %s changed in store: %r -> %r", key, self._snapshot.get(key), v)
                self._snapshot[key] = v
                await self._fire(key, v)
        return current

    async def watch(self, poll_seconds: float = 30) -> None:
        logger.info("[settings] watch started (every %ss)", poll_seconds)
        try:
            while True:
                try:
                    await self.refresh()
                except Exception as e:
                    logger.error("[settings] refresh error: %s", e)
                await asyncio.sleep(poll_seconds)
        except asyncio.CancelledError:
            logger.info("[settings] watch cancelled")
            raise

    async def _fire(self, key: str, value: Any) -> None:
        for cb in list(self._callbacks.get(key, ())):
            try:
                res = cb(value)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception("[settings] on_change callback for %s failed", key)
