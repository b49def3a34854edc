# -*- coding: utf-8 -*-
"""
tests/test_commands.py
聊天指令：即時查詢、24小時記錄、廣播、設定流程（等待输入 / 取消 / 过期 / 权限）。
"""
import asyncio
import copy
from datetime import datetime, timedelta

import pytz

from pm10_monitor import storage
from pm10_monitor.commands import HELP_TEXT, CommandHandler, parse_command
from pm10_monitor.config import DEFAULT_CFG
from pm10_monitor.models import Record, Sample
from pm10_monitor.pipeline import Monitor
from pm10_monitor.report import TRUNCATE_SUFFIX
from pm10_monitor.reader import StationReader
from pm10_monitor.settings import PM10_THRESHOLD, SettingsProvider

TZ = pytz.timezone("Asia/Taipei")


def at(h, m=0):
    return TZ.localize(datetime(2026, 10, 17, h, m))


class FakeReader(StationReader):
    def __init__(self):
        self.values = {"184": 80.0, "185": None}

    async def fetch(self, station, start, end):
        return [Sample(station.id, end, self.values.get(station.id))]


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def broadcast(self, text):
        self.sent.append(text)
        return True

    async def display_name(self, user_id):
        return {"U1": "小明"}.get(user_id, user_id)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def run(tmp_path, body, **commands_cfg):
    async def main():
        cfg = copy.deepcopy(DEFAULT_CFG)
        cfg["server"]["records_dir"] = str(tmp_path / "records")
        cfg["server"]["public_base_url"] = "https://pm10.example.com/"
        cfg["commands"].update(commands_cfg)
        db = await storage.init_db(tmp_path / "c.db")
        try:
            clock = Clock(at(10))
            reader, notifier = FakeReader(), FakeNotifier()
            monitor = Monitor(db, cfg, SettingsProvider(db), reader, notifier, clock=clock)
            handler = CommandHandler(monitor, notifier, cfg)
            await body(handler, monitor, reader, notifier, clock)
        finally:
            await db.close()

    asyncio.run(main())


def test_parse_command():
    assert parse_command("即時查詢") == ("current", "")
    assert parse_command("  Current   Reading ") == ("current", "")
    assert parse_command("24") == ("report", "")
    assert parse_command("240") is None
    assert parse_command("廣播 今日停工") == ("broadcast", "今日停工")
    assert parse_command("廣播今日停工") == ("broadcast", "今日停工")
    assert parse_command("broadcasting") is None
    assert parse_command("設定閾值 180") == ("set_threshold", "180")
    assert parse_command("set alert interval 30") == ("set_alert_interval", "30")
    assert parse_command("你好") is None


def test_unknown_text_no_reply(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        assert await handler.handle("U1", "你好") is None
        assert await handler.handle("U1", "123") is None

    run(tmp_path, body)


def test_help(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        assert await handler.handle("U1", "指令") == [HELP_TEXT]

    run(tmp_path, body)


def test_current_reading_runs_cycle_when_stale(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        replies = await handler.handle("U1", "即時查詢")
        assert len(replies) == 1
        text = replies[0]
        assert text.startswith("即時 PM10 數據：")
        assert "理虹(184): 80 μg/m³ (10/17 10:00)" in text
        assert "理虹(185): 無法取得數據" in text
        assert monitor.last_cycle_at == at(10)

    run(tmp_path, body)


def test_report_reply_truncated_with_link(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        # 造很多超标记录，让摘要超过 300 字
        for i in range(40):
            ts = at(9) + timedelta(minutes=i)
            await storage.upsert_record(monitor.db, Record(ts, {"184": 300.0 + i}))
        replies = await handler.handle("U1", "24小時記錄")
        assert len(replies) == 2
        assert replies[0].endswith(TRUNCATE_SUFFIX)
        assert len(replies[0]) == 300 + len(TRUNCATE_SUFFIX)
        assert replies[1].endswith("https://pm10.example.com/download/24hr_record.txt")

    run(tmp_path, body)


def test_set_threshold_flow(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        prompt = await handler.handle("U1", "設定閾值")
        assert "目前為 150 μg/m³" in prompt[0]
        assert handler.get_pending("U1") == PM10_THRESHOLD

        bad = await handler.handle("U1", "abc")
        assert "不是有效的" in bad[0]
        assert handler.get_pending("U1") == PM10_THRESHOLD

        ok = await handler.handle("U1", "180")
        assert ok == ["已將PM10 閾值更新為 180 μg/m³。"]
        assert handler.get_pending("U1") is None
        assert notifier.sent == ["小明 已將PM10 閾值設定為 180 μg/m³。"]
        s = await monitor.settings.get_settings()
        assert s.pm10_threshold == 180.0

    run(tmp_path, body)


def test_inline_setting_value(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        replies = await handler.handle("U1", "設定抓取間隔 10")
        assert replies == ["已將抓取間隔更新為 10 分鐘。"]
        s = await monitor.settings.get_settings()
        assert s.scrape_interval_minutes == 10

    run(tmp_path, body)


def test_cancel(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        assert await handler.handle("U1", "取消") == ["目前沒有進行中的設定。"]
        await handler.handle("U1", "設定警示間隔")
        assert await handler.handle("U1", "cancel") == ["已取消設定。"]
        assert await handler.handle("U1", "30") is None

    run(tmp_path, body)


def test_pending_expires(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        await handler.handle("U1", "設定警示間隔")
        clock.now = at(10, 11)
        assert await handler.handle("U1", "30") is None

    run(tmp_path, body)


def test_show_settings(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        text = (await handler.handle("U1", "目前設定"))[0]
        assert "PM10 閾值: 150 μg/m³" in text
        assert "警示間隔: 60 分鐘" in text
        assert "抓取間隔: 5 分鐘" in text

    run(tmp_path, body)


def test_broadcast(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        assert await handler.handle("U1", "廣播 今日停工") == ["廣播訊息已發送給所有使用者。"]
        assert notifier.sent == ["今日停工"]
        usage = await handler.handle("U1", "廣播")
        assert "請在「廣播」後面" in usage[0]

    run(tmp_path, body)


def test_admin_only(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        assert await handler.handle("U2", "廣播 hi") == ["您沒有廣播的權限。"]
        assert await handler.handle("U2", "設定閾值 10") == ["您沒有修改設定的權限。"]
        assert notifier.sent == []
        assert await handler.handle("U1", "設定閾值 170") == ["已將PM10 閾值更新為 170 μg/m³。"]

    run(tmp_path, body, admin_user_ids=["U1"])


def test_numeric_reply_goes_to_pending_setting(tmp_path):
    async def body(handler, monitor, reader, notifier, clock):
        await handler.handle("U1", "設定警示間隔")
        assert await handler.handle("U1", "24") == ["已將警示間隔更新為 24 分鐘。"]
        s = await monitor.settings.get_settings()
        assert s.alert_interval_minutes == 24
        # 没有等待中的设定时 "24" 仍是 24小時記錄
        replies = await handler.handle("U1", "24")
        assert len(replies) == 2
        assert replies[1].endswith("/download/24hr_record.txt")

    run(tmp_path, body)
