# -*- coding: utf-8 -*-
"""
pm10_monitor/commands.py
聊天指令：即時查詢 / 24小時記錄 / 廣播 / 設定流程。
handle() 返回要回覆的文字列表；不认识的文字返回 None（不回覆）。
设定流程：先发「設定閾值」，机器人记下“等待输入”状态，使用者再回一个数字；也可以直接「設定閾值 180」。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .notifier import Notifier
from .pipeline import Monitor
from .report import truncate_reply
from .settings import ALERT_INTERVAL, PM10_THRESHOLD, SCRAPE_INTERVAL
from .utils import fmt_time, fmt_value, parse_number

logger = logging.getLogger(__name__)

# 指令 -> 动作
ALIASES: Dict[str, str] = {
    "即時查詢": "current",
    "current reading": "current",
    "24小時記錄": "report",
    "24": "report",
    "24-hour record": "report",
    "指令": "help",
    "show commands": "help",
    "取消": "cancel",
    "cancel": "cancel",
    "設定閾值": "set_threshold",
    "set threshold": "set_threshold",
    "設定警示間隔": "set_alert_interval",
    "set alert interval": "set_alert_interval",
    "設定抓取間隔": "set_scrape_interval",
    "set scrape interval": "set_scrape_interval",
    "目前設定": "show_settings",
    "show settings": "show_settings",
    "廣播": "broadcast",
    "broadcast": "broadcast",
}
_WITH_ARGS = {"broadcast", "set_threshold", "set_alert_interval", "set_scrape_interval"}

SETTING_OF = {
    "set_threshold": PM10_THRESHOLD,
    "set_alert_interval": ALERT_INTERVAL,
    "set_scrape_interval": SCRAPE_INTERVAL,
}
LABELS = {
    PM10_THRESHOLD: ("PM10 閾值", " μg/m³"),
    ALERT_INTERVAL: ("警示間隔", " 分鐘"),
    SCRAPE_INTERVAL: ("抓取間隔", " 分鐘"),
}

HELP_TEXT = "\n".join([
    "可用指令：",
    "即時查詢 - 各測站最新 PM10 數據",
    "24小時記錄 - 24小時超標記錄與下載連結",
    "目前設定 - 目前的閾值與間隔",
    "設定閾值 / 設定警示間隔 / 設定抓取間隔 - 修改設定",
    "廣播 <訊息> - 發送訊息給所有使用者",
    "取消 - 取消進行中的設定",
])

FAILED_TEXT = "查詢失敗，請稍後再試。"


def parse_command(text: str) -> Optional[Tuple[str, str]]:
    """'設定閾值 180' -> ('set_threshold', '180')；不是指令返回 None"""
    norm = " ".join((text or "").split())
    low = norm.lower()
    for alias in sorted(ALIASES, key=len, reverse=True):
        action = ALIASES[alias]
        if low == alias:
            return action, ""
        if action in _WITH_ARGS and low.startswith(alias):
            rest = norm[len(alias):]
            # 英文指令后面必须隔一个空格
            if alias.isascii() and not rest.startswith(" "):
                continue
            return action, rest.strip()
    return None


class CommandHandler:
    def __init__(self, monitor: Monitor, notifier: Notifier, cfg: Dict[str, Any]):
        self.monitor = monitor
        self.notifier = notifier
        c = cfg.get("commands", {})
        self._stale_seconds = float(c.get("stale_seconds", 60))
        self._max_chars = int(c.get("reply_max_chars", 300))
        self._admins = {str(u) for u in (c.get("admin_user_ids") or [])}
        self._pending_ttl = timedelta(minutes=float(c.get("pending_ttl_minutes", 10)))
        srv = cfg.get("server", {})
        self._base_url = str(srv.get("public_base_url") or "").rstrip("/")
        self._report_name = srv.get("report_filename", "24hr_record.txt")
        # user_id -> (等待输入的设定 key, 过期时间)
        self._pending: Dict[str, Tuple[str, datetime]] = {}

    # --------- 等待输入状态 ---------
    def get_pending(self, user_id: str) -> Optional[str]:
        item = self._pending.get(user_id)
        if item is None:
            return None
        key, expires = item
        if self.monitor.now() >= expires:
            self._pending.pop(user_id, None)
            return None
        return key

    def set_pending(self, user_id: str, key: str) -> None:
        self._pending[user_id] = (key, self.monitor.now() + self._pending_ttl)

    def clear_pending(self, user_id: str) -> bool:
        return self._pending.pop(user_id, None) is not None

    def is_admin(self, user_id: Optional[str]) -> bool:
        return not self._admins or (user_id is not None and user_id in self._admins)

    # --------- 入口 ---------
    async def handle(self, user_id: Optional[str], text: str) -> Optional[List[str]]:
        uid = user_id or ""
        key = self.get_pending(uid) if uid else None
        # 等待输入设定时，数字一律当成设定值（"24" 不当成 24小時記錄）
        if key is not None and parse_number(text) is not None:
            parsed = ("apply", key)
        else:
            parsed = parse_command(text)
            if parsed is None:
                if key is None:
                    return None
                parsed = ("apply", key)

        action, arg = parsed
        try:
            if action == "apply":
                return await self._apply_setting(uid, arg, text.strip())
            if action == "help":
                return [HELP_TEXT]
            if action == "current":
                return [await self._current()]
            if action == "report":
                return await self._report()
            if action == "show_settings":
                return [await self._show_settings()]
            if action == "cancel":
                return ["已取消設定。" if self.clear_pending(uid) else "目前沒有進行中的設定。"]
            if action == "broadcast":
                return [await self._broadcast(uid, arg)]
            if action in SETTING_OF:
                return await self._start_setting(uid, SETTING_OF[action], arg)
        except Exception:
            logger.exception("[commands] %s failed", action)
            return [FAILED_TEXT]
        return None

    # --------- 各指令 ---------
    async def _current(self) -> str:
        try:
            await self.monitor.ensure_fresh(self._stale_seconds)
        except Exception as e:
            # 抓取失败时仍回覆库里最新的值
            logger.error("[commands] on-demand cycle failed: %s", e)
        latest = await self.monitor.latest()
        lines = ["即時 PM10 數據："]
        for st in self.monitor.stations:
            item = latest.get(st.id)
            if item is None:
                lines.append(f"{st.name}: 無法取得數據")
            else:
                t, v = item
                lines.append(f"{st.name}: {fmt_value(v)} μg/m³ ({fmt_time(t)})")
        return "\n".join(lines)

    async def _report(self) -> List[str]:
        summary, _ = await self.monitor.make_report()
        link = f"{self._base_url}/download/{self._report_name}"
        return [
            truncate_reply(summary, self._max_chars),
            f"24小時內的記錄已生成，請點擊下方鏈接下載：\n{link}",
        ]

    async def _show_settings(self) -> str:
        s = await self.monitor.settings.get_settings()
        return "\n".join([
            "目前設定：",
            f"PM10 閾值: {fmt_value(s.pm10_threshold)} μg/m³",
            f"警示間隔: {s.alert_interval_minutes} 分鐘",
            f"抓取間隔: {s.scrape_interval_minutes} 分鐘",
        ])

    async def _broadcast(self, uid: str, text: str) -> str:
        if not self.is_admin(uid):
            return "您沒有廣播的權限。"
        if not text:
            return "請在「廣播」後面加上要發送的訊息，例如：廣播 今日停工"
        ok = await self.notifier.broadcast(text)
        return "廣播訊息已發送給所有使用者。" if ok else "廣播發送失敗，請稍後再試。"

    async def _start_setting(self, uid: str, key: str, arg: str) -> List[str]:
        if not self.is_admin(uid):
            return ["您沒有修改設定的權限。"]
        if arg:
            return await self._apply_setting(uid, key, arg)
        s = await self.monitor.settings.get_settings()
        label, unit = LABELS[key]
        self.set_pending(uid, key)
        return [f"請輸入新的{label}（目前為 {fmt_value(getattr(s, key))}{unit}），或輸入「取消」放棄。"]

    async def _apply_setting(self, uid: str, key: str, raw: str) -> List[str]:
        label, unit = LABELS[key]
        try:
            v = await self.monitor.settings.set_value(key, raw)
        except ValueError:
            hint = "大於 0 的數字" if key == PM10_THRESHOLD else "大於等於 1 的整數"
            self.set_pending(uid, key)
            return [f"「{raw}」不是有效的{label}，請輸入{hint}，或輸入「取消」放棄。"]
        self.clear_pending(uid)
        name = await self.notifier.display_name(uid) if uid else "管理員"
        await self.notifier.broadcast(f"{name} 已將{label}設定為 {fmt_value(v)}{unit}。")
        return [f"已將{label}更新為 {fmt_value(v)}{unit}。"]
