# -*- coding: utf-8 -*-
"""
pm10_monitor/merger.py
多站读数按时间戳合并 -> 前向填充 -> 入库（按字段）-> 清理超过保留期的记录。

有的站点每几分钟一笔，有的整点才一笔；合并后同一时刻缺值的站点用该站上一笔已知值补上，
补出来的值记在 Record.filled 里，之后抓到真实值会盖过它。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

import aiosqlite
import pandas as pd

from .models import Record, Sample, Station
from .storage import POLICY_FILL_NULL, delete_older_than, upsert_records
from .utils import floor_minute, parse_number, to_ms

logger = logging.getLogger(__name__)


def _column_order(per_station: Mapping[str, Sequence[Sample]], stations: Sequence[Station]) -> List[str]:
    """配置里的站点顺序在前；配置外的站点（理论上不会有）按代码排在后面"""
    order = [s.id for s in stations]
    extra = sorted(sid for sid in per_station if sid not in order)
    return order + extra


def merge_samples(
    per_station: Mapping[str, Sequence[Sample]],
    stations: Sequence[Station],
    *,
    forward_fill: bool = True,
) -> List[Record]:
    """
    把 {station_id: [Sample, ...]} 合并为按时间升序的 Record 列表。

    - 输出的时间戳集合 == 所有输入样本时间的并集（不丢、不造）
    - forward_fill=False 时整体关闭填充；否则按各站 Station.forward_fill 决定
    - 同一站同一分钟出现多笔时取最后一笔
    """
    order = _column_order(per_station, stations)
    ff_enabled = {s.id: s.forward_fill for s in stations}

    # 用毫秒整数做索引，避免时区对象混用带来的对齐问题
    times: Dict[int, datetime] = {}
    columns: Dict[str, pd.Series] = {}
    for sid in order:
        samples = per_station.get(sid) or []
        if not samples:
            continue
        idx, vals = [], []
        for smp in samples:
            t = floor_minute(smp.time)
            ms = to_ms(t)
            times.setdefault(ms, t)
            idx.append(ms)
            vals.append(parse_number(smp.value))
        s = pd.Series(vals, index=idx, dtype="float64")
        columns[sid] = s[~s.index.duplicated(keep="last")]

    if not columns:
        return []

    df = pd.DataFrame(columns).reindex(columns=order).sort_index()
    missing = df.isna()

    if forward_fill:
        ff_cols = [sid for sid in order if ff_enabled.get(sid, True)]
        if ff_cols:
            df[ff_cols] = df[ff_cols].ffill()

    out: List[Record] = []
    for ms, row in df.iterrows():
        values: Dict[str, Optional[float]] = {}
        filled = set()
        for sid in order:
            v = row[sid]
            values[sid] = None if pd.isna(v) else float(v)
            if values[sid] is not None and bool(missing.at[ms, sid]):
                filled.add(sid)
        out.append(Record(timestamp=times[int(ms)], values=values, filled=filled))
    return out


async def prune(db: aiosqlite.Connection, now: datetime, retention_hours: float = 24) -> int:
    """删除早于 now - retention_hours 的记录（边界上的保留）"""
    return await delete_older_than(db, now - timedelta(hours=retention_hours))


async def merge_and_store(
    db: aiosqlite.Connection,
    per_station: Mapping[str, Sequence[Sample]],
    stations: Sequence[Station],
    *,
    now: datetime,
    forward_fill: bool = True,
    policy: str = POLICY_FILL_NULL,
    retention_hours: float = 24,
) -> List[Record]:
    """
    一轮抓取的合并 + 入库 + 清理。
    没有任何站点带回数据时直接返回 []（不入库；清理交给 housekeeper 定时做）。
    """
    if not any(per_station.get(sid) for sid in per_station):
        logger.info("[merger] no station returned data, nothing to store")
        return []

    records = merge_samples(per_station, stations, forward_fill=forward_fill)
    n = await upsert_records(db, records, policy=policy)
    logger.info("[merger] stored %d records (%s .. %s)", n,
                records[0].timestamp.isoformat(), records[-1].timestamp.isoformat())
    await prune(db, now, retention_hours)
    return records
