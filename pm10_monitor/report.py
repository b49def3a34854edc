# -*- coding: utf-8 -*-
"""
pm10_monitor/report.py
24 小时报表：聊天回覆用的摘要 + 供下载的纯文本档。
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from .evaluator import COMPARE_GT, exceeds
from .models import Record, Station
from .utils import fmt_full, fmt_value

PLACEHOLDER = "-"
REPORT_HOURS = 24
REPLY_MAX_CHARS = 300
TRUNCATE_SUFFIX = "...資料過多，請點擊24小時記錄查詢。"


def _stations_of(records: Sequence[Record], stations: Optional[Sequence[Station]]) -> List[Station]:
    if stations:
        return list(stations)
    ids = sorted({sid for r in records for sid in r.values})
    return [Station(id=sid, name=sid) for sid in ids]


def _extremes(records: Sequence[Record], stations: Sequence[Station]) -> List[str]:
    """每站最高 / 最低值及发生时间；同值取最早一笔"""
    lines = []
    for st in stations:
        hi: Optional[Tuple[float, datetime]] = None
        lo: Optional[Tuple[float, datetime]] = None
        for rec in records:
            v = rec.value_of(st.id)
            if v is None or st.id in rec.filled:
                continue
            if hi is None or v > hi[0]:
                hi = (v, rec.timestamp)
            if lo is None or v < lo[0]:
                lo = (v, rec.timestamp)
        if hi is None:
            lines.append(f"{st.name} 24小時內沒有有效數據")
            continue
        lines.append(f"{st.name} 最高值: {fmt_value(hi[0])} μg/m³ (發生於: {fmt_full(hi[1])})")
        lines.append(f"{st.name} 最低值: {fmt_value(lo[0])} μg/m³ (發生於: {fmt_full(lo[1])})")
    return lines


def build_report(
    records: Sequence[Record],
    threshold: float,
    now: datetime,
    *,
    stations: Optional[Sequence[Station]] = None,
    compare: str = COMPARE_GT,
) -> Tuple[str, str]:
    """
    返回 (summary_text, file_content)。
    只取 timestamp >= now - 24h 的记录；file_content 对同样输入逐字节一致。
    """
    cutoff = now - timedelta(hours=REPORT_HOURS)
    recent = sorted((r for r in records if r.timestamp >= cutoff), key=lambda r: r.timestamp)
    order = _stations_of(recent, stations)

    # 下载档：一行一条记录，时间 + 各站值（缺值用占位符）
    file_lines = []
    for rec in recent:
        cols = "  ".join(f"{st.name}: {fmt_value(rec.value_of(st.id), PLACEHOLDER)}" for st in order)
        file_lines.append(f"{fmt_full(rec.timestamp)} - {cols}")
    file_content = "\n".join(file_lines) + ("\n" if file_lines else "")

    # 摘要：超标记录（只列超标的站）+ 各站最高最低
    hits = []
    for rec in recent:
        parts = [
            f"{st.name}: {fmt_value(rec.value_of(st.id))} μg/m³"
            for st in order
            if st.id not in rec.filled and exceeds(rec.value_of(st.id), threshold, compare)
        ]
        if parts:
            hits.append(f"{fmt_full(rec.timestamp)} - " + ", ".join(parts))

    t = fmt_value(threshold)
    if hits:
        head = [f"以下為24小時內超過 {t} μg/m³ 的記錄："] + hits
    else:
        head = [f"24小時內沒有超過 {t} μg/m³ 的記錄。"]
    summary = "\n".join(head + [""] + _extremes(recent, order))
    return summary, file_content


def truncate_reply(text: str, max_chars: int = REPLY_MAX_CHARS, suffix: str = TRUNCATE_SUFFIX) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix


def write_report(path: Union[str, Path], content: str) -> Path:
    """先写临时档再 os.replace，下载端不会读到写了一半的档案"""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".report-", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, p)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return p
