# -*- coding: utf-8 -*-
"""
config.py
静态配置：ops/config.yml 可选；不存在就用默认。
每个小节做浅合并（只合并一层，避免过度魔法）。
密钥类（LINE token、入口网站帐密）只从环境变量 / .env 读。
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .models import Station

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CFG_PATH = ROOT / "ops" / "config.yml"

_PORTAL = "https://www.jsene.com/juno"

DEFAULT_CFG: Dict[str, Any] = {
    "timezone": "Asia/Taipei",
    "stations": [
        {"id": "184", "name": "理虹(184)", "url": f"{_PORTAL}/Station.aspx?PJ=200209&ST=3100184"},
        {"id": "185", "name": "理虹(185)", "url": f"{_PORTAL}/Station.aspx?PJ=200209&ST=3100185"},
    ],
    "reader": {
        "login_url": f"{_PORTAL}/Login.aspx",
        "account_selector": "#T_Account",
        "password_selector": "#T_Password",
        "submit_selector": "#Btn_Login",
        "frame_selector": "iframe#ifs",
        # 历史表：每行第一格时间、PM10 所在列由 value_column 指定
        "history_row_selector": "table tr",
        "time_format": "%Y/%m/%d %H:%M",
        "value_column": 1,
        # 没有历史表时退回读即时值
        "live_item_selector": ".list-group-item",
        "live_item_text": "PM10",
        "live_value_selector": "span.pull-right",
        "timeout_seconds": 30,
        "window_minutes": 60,
        "headless": True,
    },
    "merge": {
        "forward_fill": True,
    },
    "store": {
        "db_path": "pm10.db",
        "retention_hours": 24,
        # fill_null：已存的真实值不覆盖；overwrite：新抓到的真实值覆盖旧值
        "update_policy": "fill_null",
    },
    "alerts": {
        "active_hours": "08:00-17:00",
        "threshold_quiet_hours": True,
        "outage_quiet_hours": False,
        # gt：严格大于；gte：大于等于
        "threshold_compare": "gt",
        "missing_data_hours": 12,
    },
    "scheduler": {
        "housekeeping_minutes": 60,
        "settings_poll_seconds": 30,
    },
    "notifier": {
        "channel": "line",
        "retry": {"max_times": 5, "backoff_sec": 1},
        "include_quota": False,
    },
    "commands": {
        "stale_seconds": 60,
        "reply_max_chars": 300,
        "admin_user_ids": [],
        "pending_ttl_minutes": 10,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 4000,
        "public_base_url": "",
        "records_dir": "records",
        "report_filename": "24hr_record.txt",
    },
    "keepalive": {
        "url": "",
        "every_sec": 300,
    },
    "logging": {
        "level": "INFO",
    },
}


def load_cfg(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """读取 ops/config.yml（或指定路径），与 DEFAULT_CFG 按小节浅合并。"""
    load_dotenv()
    out = copy.deepcopy(DEFAULT_CFG)
    p = Path(path) if path else DEFAULT_CFG_PATH
    if not p.exists():
        logger.info("[config] %s not found, using defaults", p)
        return _apply_env(out)

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{p}: top level must be a mapping")
    for key, val in data.items():
        if isinstance(out.get(key), dict) and isinstance(val, dict):
            out[key] = {**out[key], **val}
        elif val is not None:
            out[key] = val
    return _apply_env(out)


def _apply_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """环境变量优先于文件（部署平台只方便设环境变量）"""
    if os.getenv("PM10_DB_PATH"):
        cfg["store"]["db_path"] = os.environ["PM10_DB_PATH"]
    if os.getenv("PUBLIC_BASE_URL"):
        cfg["server"]["public_base_url"] = os.environ["PUBLIC_BASE_URL"]
    if os.getenv("PORT"):
        cfg["server"]["port"] = int(os.environ["PORT"])
    return cfg


def stations_from_cfg(cfg: Dict[str, Any]) -> List[Station]:
    """stations 小节 -> Station 列表；顺序即告警行/报表列的固定顺序。"""
    default_ff = bool(cfg.get("merge", {}).get("forward_fill", True))
    out: List[Station] = []
    seen = set()
    for raw in cfg.get("stations") or []:
        sid = str(raw.get("id", "")).strip()
        if not sid:
            raise ValueError(f"station without id: {raw!r}")
        if sid in seen:
            raise ValueError(f"duplicate station id: {sid}")
        seen.add(sid)
        out.append(Station(
            id=sid,
            name=str(raw.get("name") or sid),
            url=str(raw.get("url") or ""),
            forward_fill=bool(raw.get("forward_fill", default_ff)),
        ))
    return out
