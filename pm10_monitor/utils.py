# -*- coding: utf-8 -*-
"""
utils.py
通用辅助：时区换算、毫秒时间戳、“HH:MM-HH:MM” 时间窗判断、数值解析。
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, tzinfo
from typing import Any, Optional

import pytz

logger = logging.getLogger(__name__)

DEFAULT_TZ = "Asia/Taipei"


def now_ms() -> int:
    """当前 UTC 毫秒时间戳"""
    return int(time.time() * 1000)


def get_tz(name: Optional[str] = None) -> tzinfo:
    return pytz.timezone(name or DEFAULT_TZ)


def now_local(tz: tzinfo) -> datetime:
    return datetime.now(tz)


def floor_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def localize(naive: datetime, tz: tzinfo) -> datetime:
    """naive datetime 视为本地时间；pytz 时区要用 localize 而不是 replace(tzinfo=...)"""
    if naive.tzinfo is not None:
        return naive.astimezone(tz)
    if hasattr(tz, "localize"):
        return tz.localize(naive)
    return naive.replace(tzinfo=tz)


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_ms(ms: Optional[int], tz: tzinfo) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=pytz.UTC).astimezone(tz)


def fmt_time(dt: datetime) -> str:
    """对外展示用：'MM/DD HH:MM'"""
    return dt.strftime("%m/%d %H:%M")


def fmt_full(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M")


def parse_hhmm(s: str) -> int:
    """'HH:MM' -> 分钟数"""
    hh, mm = s.strip().split(":")
    h, m = int(hh), int(mm)
    if not (0 <= h <= 24 and 0 <= m < 60):
        raise ValueError(f"invalid HH:MM: {s!r}")
    return h * 60 + m


def in_time_window(rng: Optional[str], now: datetime) -> bool:
    """
    rng: 'HH:MM-HH:MM'（本地时间，左闭右开）
    空字符串或起终相等表示全天有效
    跨日（如 22:00-06:00）也能正确处理
    """
    if not rng or "-" not in rng:
        return True
    try:
        start, end = rng.split("-", 1)
        start_m = parse_hhmm(start)
        end_m = parse_hhmm(end)
    except ValueError:
        logger.warning("invalid time window %r, treated as whole day", rng)
        return True
    now_m = now.hour * 60 + now.minute
    if start_m == end_m:
        return True
    if start_m < end_m:
        return start_m <= now_m < end_m
    # 跨午夜
    return now_m >= start_m or now_m < end_m


def parse_number(v: Any) -> Optional[float]:
    """
    把抓到的读数转成 float；None / 空串 / 非数字 / NaN 一律返回 None。
    例：'  85 ' -> 85.0，'--' -> None
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    else:
        s = str(v).strip().replace(",", "")
        if not s:
            return None
        try:
            f = float(s)
        except ValueError:
            return None
    if f != f:  # NaN
        return None
    return f


def fmt_value(v: Optional[float], placeholder: str = "-") -> str:
    """读数展示：整数不带小数点，缺值用占位符"""
    if v is None:
        return placeholder
    if float(v).is_integer():
        return str(int(v))
    return f"{v:.1f}"
