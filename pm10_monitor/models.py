# -*- coding: utf-8 -*-
"""
models.py
定义监测数据模型：Sample / Record / OperationalSettings / AlertState / StationHealth / AlertMessage。
时间一律是带时区的 datetime（本地时区见 config.yml 的 timezone），精度到分钟。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set


@dataclass(frozen=True)
class Station:
    # 站点代码，如 "184" / "185" / "dacheng"
    id: str
    # 显示名称，如 "理虹(184)"
    name: str
    # 站点页面（抓取用）
    url: str = ""
    # 该站是否允许前向填充（整点才出数的站点需要）
    forward_fill: bool = True


@dataclass(frozen=True)
class Sample:
    """单个站点在某一分钟的读数；value 为 None 表示该时刻没有有效值。"""
    station_id: str
    time: datetime
    value: Optional[float]


@dataclass
class Record:
    """按时间戳合并后的一条记录，每个站点一个值（可为空）。"""
    timestamp: datetime
    values: Dict[str, Optional[float]] = field(default_factory=dict)
    # 哪些站点的值是前向填充出来的（不是本时刻真实抓到的）
    filled: Set[str] = field(default_factory=set)

    def value_of(self, station_id: str) -> Optional[float]:
        return self.values.get(station_id)

    def has_any_value(self) -> bool:
        return any(v is not None for v in self.values.values())


@dataclass
class OperationalSettings:
    scrape_interval_minutes: int
    pm10_threshold: float
    alert_interval_minutes: int
    portal_account: str
    portal_password: str


@dataclass
class AlertState:
    # 超标警示（全局）上次成功发出的时间
    last_threshold_alert: Optional[datetime] = None
    # 断线警示：每站各自的上次发出时间
    last_outage_alert: Dict[str, datetime] = field(default_factory=dict)

    def copy(self) -> "AlertState":
        return AlertState(self.last_threshold_alert, dict(self.last_outage_alert))


@dataclass
class StationHealth:
    station_id: str
    last_success_time: Optional[datetime] = None
    # 只在“从未成功过”的站点上记录第一次失败
    first_failure_time: Optional[datetime] = None


@dataclass(frozen=True)
class AlertMessage:
    category: str          # "threshold" / "outage"
    text: str
    created_at: datetime
    station_id: Optional[str] = None
