# -*- coding: utf-8 -*-
"""
pm10_monitor/evaluator.py
告警判定（纯函数，不做 I/O）：
- evaluate()：超标警示；只在时间窗内、且距上次成功发出已满 alert_interval_minutes 才会触发
- record_fetch_result() / check_outage()：站点断线警示，每站各自节流

两个判定在触发时都会直接改写传入的 AlertState；
调用方（pipeline）传入副本，等推送成功后才把副本落库。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .models import AlertMessage, AlertState, Record, Station, StationHealth
from .utils import fmt_time, fmt_value, in_time_window, parse_number

logger = logging.getLogger(__name__)

CATEGORY_THRESHOLD = "threshold"
CATEGORY_OUTAGE = "outage"

COMPARE_GT = "gt"
COMPARE_GTE = "gte"

DEFAULT_ACTIVE_HOURS = "08:00-17:00"
DEFAULT_MISSING_DATA_HOURS = 12

REMEDIATION = "請立即啟動抑制措施！"


def exceeds(value, threshold: float, compare: str = COMPARE_GT) -> bool:
    """空值 / 非数字永远不算超标"""
    v = parse_number(value)
    if v is None:
        return False
    if compare == COMPARE_GTE:
        return v >= threshold
    return v > threshold


def _station_order(records: Sequence[Record], stations: Optional[Sequence[Station]]) -> List[Station]:
    if stations:
        return list(stations)
    ids = sorted({sid for r in records for sid in r.values})
    return [Station(id=sid, name=sid) for sid in ids]


# --------- 超标警示 ---------
def evaluate(
    records: Sequence[Record],
    threshold: float,
    alert_interval_minutes: float,
    alert_state: AlertState,
    now: datetime,
    *,
    stations: Optional[Sequence[Station]] = None,
    active_hours: str = DEFAULT_ACTIVE_HOURS,
    quiet_hours: bool = True,
    compare: str = COMPARE_GT,
) -> Optional[AlertMessage]:
    """
    逐条（时间升序）逐站（配置顺序）扫描，每个超标值一行；
    至少一行时组成一条消息并把 last_threshold_alert 设为 now。
    前向填充出来的值不参与判定（它不是该时刻真实的读数）。
    """
    if quiet_hours and not in_time_window(active_hours, now):
        return None

    last = alert_state.last_threshold_alert
    if last is not None and now - last < timedelta(minutes=alert_interval_minutes):
        logger.debug("[evaluator] threshold alert rate-limited (last=%s)", last.isoformat())
        return None

    lines: List[str] = []
    for rec in sorted(records, key=lambda r: r.timestamp):
        for st in _station_order(records, stations):
            if st.id in rec.filled:
                continue
            v = rec.value_of(st.id)
            if exceeds(v, threshold, compare):
                lines.append(f"{fmt_time(rec.timestamp)} {st.name} PM10 濃度 {fmt_value(parse_number(v))} μg/m³")

    if not lines:
        return None

    word = "已達" if compare == COMPARE_GTE else "已超過"
    text = "\n".join(
        [f"【PM10 超標警示】以下數據{word} {fmt_value(threshold)} μg/m³："]
        + lines
        + [REMEDIATION]
    )
    alert_state.last_threshold_alert = now
    return AlertMessage(category=CATEGORY_THRESHOLD, text=text, created_at=now)


# --------- 站点健康 ---------
def record_fetch_result(health: StationHealth, ok: bool, now: datetime) -> StationHealth:
    """
    ok=True：记下成功时间并清掉失败计时；
    ok=False：只有“从未成功过、且还没记过”的站点才记下第一次失败时间。
    """
    if ok:
        health.last_success_time = now
        health.first_failure_time = None
    elif health.last_success_time is None and health.first_failure_time is None:
        health.first_failure_time = now
    return health


# --------- 断线警示 ---------
def check_outage(
    station_id: str,
    health: StationHealth,
    alert_state: AlertState,
    now: datetime,
    *,
    missing_data_hours: float = DEFAULT_MISSING_DATA_HOURS,
    station_name: Optional[str] = None,
    active_hours: str = DEFAULT_ACTIVE_HOURS,
    quiet_hours: bool = False,
) -> Optional[AlertMessage]:
    if quiet_hours and not in_time_window(active_hours, now):
        return None

    reference = health.last_success_time or health.first_failure_time
    if reference is None:
        return None

    limit = timedelta(hours=missing_data_hours)
    if now - reference <= limit:
        return None

    last = alert_state.last_outage_alert.get(station_id)
    if last is not None and now - last <= limit:
        return None

    name = station_name or station_id
    if health.last_success_time is not None:
        since = f"最後一次取得數據：{fmt_time(health.last_success_time)}"
    else:
        since = f"自 {fmt_time(health.first_failure_time)} 起從未取得數據"
    text = (
        f"【測站斷線警示】{name} 已超過 {fmt_value(missing_data_hours)} 小時沒有有效的 PM10 數據"
        f"（{since}），請檢查測站或監測平台。"
    )
    alert_state.last_outage_alert[station_id] = now
    logger.info("[evaluator] outage alert for %s (reference=%s)", station_id, reference.isoformat())
    return AlertMessage(category=CATEGORY_OUTAGE, text=text, created_at=now, station_id=station_id)
