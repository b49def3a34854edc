# -*- coding: utf-8 -*-
"""
tests/test_settings.py
运行参数：默认值写回、不合法值重置、set_value 回调、外部修改由 refresh 侦测。
"""
import asyncio

import pytest

from pm10_monitor import storage
from pm10_monitor.settings import (
    ALERT_INTERVAL,
    PM10_THRESHOLD,
    SCRAPE_INTERVAL,
    SettingsProvider,
    coerce,
)


def run(tmp_path, body, **kwargs):
    async def main():
        db = await storage.init_db(tmp_path / "s.db")
        try:
            await body(db, SettingsProvider(db, **kwargs))
        finally:
            await db.close()

    asyncio.run(main())


def test_defaults_written_back(tmp_path, monkeypatch):
    monkeypatch.setenv("PORTAL_ACCOUNT", "acc")
    monkeypatch.setenv("PORTAL_PASSWORD", "pw")

    async def body(db, sp):
        s = await sp.get_settings()
        assert s.scrape_interval_minutes == 5
        assert s.pm10_threshold == 150.0
        assert s.alert_interval_minutes == 60
        assert (s.portal_account, s.portal_password) == ("acc", "pw")
        stored = await storage.get_all_settings(db)
        assert stored[SCRAPE_INTERVAL] == "5"
        assert stored[PM10_THRESHOLD] == "150.0"

    run(tmp_path, body)


def test_invalid_value_reset_to_default(tmp_path):
    async def body(db, sp):
        await storage.set_setting(db, ALERT_INTERVAL, "abc")
        await storage.set_setting(db, PM10_THRESHOLD, "-3")
        s = await sp.get_settings()
        assert s.alert_interval_minutes == 60
        assert s.pm10_threshold == 150.0
        assert await storage.get_setting(db, ALERT_INTERVAL) == "60"

    run(tmp_path, body)


def test_custom_defaults(tmp_path):
    async def body(db, sp):
        s = await sp.get_settings()
        assert s.pm10_threshold == 120.0

    run(tmp_path, body, defaults={PM10_THRESHOLD: 120})


def test_set_value_fires_callbacks(tmp_path):
    seen = []

    async def async_cb(v):
        seen.append(("async", v))

    async def body(db, sp):
        await sp.get_settings()
        sp.on_change(SCRAPE_INTERVAL, lambda v: seen.append(("sync", v)))
        sp.on_change(SCRAPE_INTERVAL, async_cb)
        assert await sp.set_value(SCRAPE_INTERVAL, "10") == 10
        # 同样的值不再触发
        await sp.set_value(SCRAPE_INTERVAL, 10)
        s = await sp.get_settings()
        assert s.scrape_interval_minutes == 10

    run(tmp_path, body)
    assert seen == [("sync", 10), ("async", 10)]


def test_set_value_rejects_invalid(tmp_path):
    async def body(db, sp):
        with pytest.raises(ValueError):
            await sp.set_value(PM10_THRESHOLD, "abc")
        with pytest.raises(ValueError):
            await sp.set_value(SCRAPE_INTERVAL, "0")

    run(tmp_path, body)


def test_refresh_detects_external_change(tmp_path):
    seen = []

    async def body(db, sp):
        sp.on_change(ALERT_INTERVAL, seen.append)
        await sp.refresh()
        await storage.set_setting(db, ALERT_INTERVAL, "30")
        s = await sp.refresh()
        assert s.alert_interval_minutes == 30
        await sp.refresh()

    run(tmp_path, body)
    assert seen == [30]


def test_callback_error_does_not_break_set_value(tmp_path):
    def boom(v):
        raise RuntimeError("boom")

    async def body(db, sp):
        await sp.get_settings()
        sp.on_change(PM10_THRESHOLD, boom)
        assert await sp.set_value(PM10_THRESHOLD, "200") == 200.0

    run(tmp_path, body)


def test_coerce():
    assert coerce(SCRAPE_INTERVAL, "5.0") == 5
    assert coerce(SCRAPE_INTERVAL, "2.5") is None
    assert coerce(PM10_THRESHOLD, "180") == 180.0
    assert coerce(PM10_THRESHOLD, None) is None
    with pytest.raises(KeyError):
        coerce("unknown", 1)
