# -*- coding: utf-8 -*-
"""
pm10_monitor/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表
- 合并记录写入（按字段 upsert，不整条覆盖）
- 时间范围查询 / 各站最新值 / 未判定读数
- 清理超过保留期的记录
- 运行参数（settings）、告警节流状态、站点健康状态
时间一律存 UTC 毫秒（ts_ms），读出时换回本地时区 datetime。
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import aiosqlite

from .models import AlertState, Record, StationHealth
from .utils import from_ms, now_ms, to_ms

logger = logging.getLogger(__name__)

POLICY_FILL_NULL = "fill_null"
POLICY_OVERWRITE = "overwrite"
POLICIES = (POLICY_FILL_NULL, POLICY_OVERWRITE)

# 同一连接上的写入串行化：定时任务与聊天指令触发的抓取可能同时写同一时间戳
_WRITE_LOCKS: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _WRITE_LOCKS.get(db)
    if lock is None:
        lock = _WRITE_LOCKS[db] = asyncio.Lock()
    return lock


# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    ts_ms       INTEGER PRIMARY KEY,
    created_at  INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS record_values (
    ts_ms       INTEGER NOT NULL,
    station_id  TEXT    NOT NULL,
    value       REAL    NOT NULL,
    filled      INTEGER NOT NULL DEFAULT 0,
    updated_at  INTEGER,
    evaluated   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (ts_ms, station_id)
);
CREATE INDEX IF NOT EXISTS idx_values_station ON record_values(station_id, ts_ms DESC);
CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT,
    updated_at  INTEGER
);
CREATE TABLE IF NOT EXISTS alert_state (
    category       TEXT PRIMARY KEY,
    last_alert_ms  INTEGER
);
CREATE TABLE IF NOT EXISTS station_health (
    station_id        TEXT PRIMARY KEY,
    last_success_ms   INTEGER,
    first_failure_ms  INTEGER
);
"""

# 旧值是填充值就更新（新真实值、或按更新的真实值重新填充）；真实值永远不被填充值或空值覆盖
_UPSERT_FILL_NULL = """
INSERT INTO record_values(ts_ms, station_id, value, filled, updated_at)
VALUES(?,?,?,?,?)
ON CONFLICT(ts_ms, station_id) DO UPDATE SET
    value      = excluded.value,
    filled     = excluded.filled,
    updated_at = excluded.updated_at,
    evaluated  = 0
WHERE record_values.filled = 1
  AND (record_values.value != excluded.value OR excluded.filled = 0)
"""

# 新抓到的真实值覆盖旧值（入口网站事后修正读数的情况）；填充值仍不能盖掉真实值
_UPSERT_OVERWRITE = """
INSERT INTO record_values(ts_ms, station_id, value, filled, updated_at)
VALUES(?,?,?,?,?)
ON CONFLICT(ts_ms, station_id) DO UPDATE SET
    value      = excluded.value,
    filled     = excluded.filled,
    updated_at = excluded.updated_at,
    evaluated  = 0
WHERE (excluded.filled = 0 OR record_values.filled = 1)
  AND (record_values.value != excluded.value OR record_values.filled != excluded.filled)
"""

THRESHOLD_CATEGORY = "threshold"
OUTAGE_PREFIX = "outage:"


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """初始化数据库并返回连接；db_path 可为 ':memory:'（测试用）"""
    if str(db_path) != ":memory:":
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(p)
    db = await aiosqlite.connect(str(db_path))
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    for stmt in filter(None, SCHEMA.split(";")):
        s = stmt.strip()
        if s:
            await db.execute(s + ";")
    # 旧库没有 evaluated 栏：已存的读数视为判定过
    async with db.execute("PRAGMA table_info(record_values);") as cur:
        cols = {row[1] async for row in cur}
    if "evaluated" not in cols:
        await db.execute("ALTER TABLE record_values ADD COLUMN evaluated INTEGER NOT NULL DEFAULT 1;")
    await db.commit()
    return db


# --------- 记录写入 ---------
async def upsert_record(db: aiosqlite.Connection, record: Record, *, policy: str = POLICY_FILL_NULL) -> None:
    """
    单条记录作为一个事务写入：
    - 时间戳不存在则新建
    - 每个站点各自 upsert；值为 None 的站点不写（不会把已存的值清空）
    """
    if policy not in POLICIES:
        raise ValueError(f"unknown update policy: {policy!r}")
    sql = _UPSERT_FILL_NULL if policy == POLICY_FILL_NULL else _UPSERT_OVERWRITE
    ts = to_ms(record.timestamp)
    now = now_ms()
    async with _write_lock(db):
        try:
            await db.execute(
                "INSERT OR IGNORE INTO records(ts_ms, created_at) VALUES(?, ?);", (ts, now)
            )
            for station_id, value in record.values.items():
                if value is None:
                    continue
                filled = 1 if station_id in record.filled else 0
                await db.execute(sql, (ts, station_id, float(value), filled, now))
            await db.commit()
        except BaseException:
            # 含 CancelledError：不能把半个事务留在共享连接上
            await db.rollback()
            raise


async def upsert_records(db: aiosqlite.Connection, records: Iterable[Record], *, policy: str = POLICY_FILL_NULL) -> int:
    n = 0
    for rec in records:
        await upsert_record(db, rec, policy=policy)
        n += 1
    return n


# --------- 查询 ---------
async def get_records(
    db: aiosqlite.Connection,
    tz: tzinfo,
    *,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Record]:
    """按时间升序返回 [since, until] 内的记录（两端都含）"""
    sql = """
    SELECT r.ts_ms, v.station_id, v.value, v.filled
      FROM records r
      LEFT JOIN record_values v ON v.ts_ms = r.ts_ms
     WHERE r.ts_ms >= ? AND r.ts_ms <= ?
     ORDER BY r.ts_ms ASC, v.station_id ASC;
    """
    lo = to_ms(since) if since else 0
    hi = to_ms(until) if until else 2 ** 62
    out: List[Record] = []
    current: Optional[Record] = None
    current_ts: Optional[int] = None
    async with db.execute(sql, (lo, hi)) as cur:
        async for ts_ms, station_id, value, filled in cur:
            if ts_ms != current_ts:
                current = Record(timestamp=from_ms(ts_ms, tz))
                current_ts = ts_ms
                out.append(current)
            if station_id is not None:
                current.values[station_id] = float(value)
                if filled:
                    current.filled.add(station_id)
    return out


async def get_unevaluated(
    db: aiosqlite.Connection,
    tz: tzinfo,
    *,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Record]:
    """
    还没判定过的真实读数（填充值不算），按时间升序。
    迟到的站点读数即使时间戳较早也会在这里出现；值被更新过的会重新出现。
    """
    sql = """
    SELECT ts_ms, station_id, value
      FROM record_values
     WHERE evaluated = 0 AND filled = 0 AND ts_ms >= ? AND ts_ms <= ?
     ORDER BY ts_ms ASC, station_id ASC;
    """
    lo = to_ms(since) if since else 0
    hi = to_ms(until) if until else 2 ** 62
    out: List[Record] = []
    current_ts: Optional[int] = None
    async with db.execute(sql, (lo, hi)) as cur:
        async for ts_ms, station_id, value in cur:
            if ts_ms != current_ts:
                out.append(Record(timestamp=from_ms(ts_ms, tz)))
                current_ts = ts_ms
            out[-1].values[station_id] = float(value)
    return out


async def mark_evaluated(db: aiosqlite.Connection, records: Iterable[Record]) -> None:
    """只标记值没变过的那几格；判定之后才到的新值保持未判定"""
    rows = [
        (to_ms(rec.timestamp), station_id, float(value))
        for rec in records
        for station_id, value in rec.values.items()
        if value is not None and station_id not in rec.filled
    ]
    if not rows:
        return
    async with _write_lock(db):
        await db.executemany(
            "UPDATE record_values SET evaluated = 1 WHERE ts_ms = ? AND station_id = ? AND value = ? AND filled = 0;",
            rows,
        )
        await db.commit()


async def latest_values(db: aiosqlite.Connection, tz: tzinfo) -> Dict[str, Tuple[datetime, float]]:
    """各站最新一笔有值的读数：{station_id: (time, value)}"""
    sql = """
    SELECT v.station_id, v.ts_ms, v.value
      FROM record_values v
      JOIN (SELECT station_id, MAX(ts_ms) AS ts_ms FROM record_values GROUP BY station_id) m
        ON m.station_id = v.station_id AND m.ts_ms = v.ts_ms;
    """
    out: Dict[str, Tuple[datetime, float]] = {}
    async with db.execute(sql) as cur:
        async for station_id, ts_ms, value in cur:
            out[station_id] = (from_ms(ts_ms, tz), float(value))
    return out


# --------- 清理过期 ---------
async def delete_older_than(db: aiosqlite.Connection, cutoff: datetime) -> int:
    """删除 ts < cutoff 的记录；恰好等于 cutoff 的保留。返回删除的时间戳数。"""
    cutoff_ms = to_ms(cutoff)
    async with _write_lock(db):
        await db.execute("DELETE FROM record_values WHERE ts_ms < ?;", (cutoff_ms,))
        cur = await db.execute("DELETE FROM records WHERE ts_ms < ?;", (cutoff_ms,))
        n = cur.rowcount
        await cur.close()
        await db.commit()
    if n:
        logger.info("[storage] pruned %d records older than %s", n, cutoff.isoformat())
    return n


# --------- 运行参数 ---------
async def get_all_settings(db: aiosqlite.Connection) -> Dict[str, str]:
    out: Dict[str, str] = {}
    async with db.execute("SELECT key, value FROM settings;") as cur:
        async for key, value in cur:
            out[key] = value
    return out


async def get_setting(db: aiosqlite.Connection, key: str) -> Optional[str]:
    async with db.execute("SELECT value FROM settings WHERE key = ?;", (key,)) as cur:
        row = await cur.fetchone()
    return row[0] if row else None


async def set_setting(db: aiosqlite.Connection, key: str, value: str) -> None:
    async with _write_lock(db):
        await db.execute(
            """
            INSERT INTO settings(key, value, updated_at) VALUES(?,?,?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
            """,
            (key, str(value), now_ms()),
        )
        await db.commit()


# --------- 告警节流状态 ---------
async def load_alert_state(db: aiosqlite.Connection, tz: tzinfo) -> AlertState:
    state = AlertState()
    async with db.execute("SELECT category, last_alert_ms FROM alert_state;") as cur:
        async for category, ms in cur:
            when = from_ms(ms, tz)
            if when is None:
                continue
            if category == THRESHOLD_CATEGORY:
                state.last_threshold_alert = when
            elif category.startswith(OUTAGE_PREFIX):
                state.last_outage_alert[category[len(OUTAGE_PREFIX):]] = when
    return state


async def save_alert_state(db: aiosqlite.Connection, state: AlertState) -> None:
    rows = []
    if state.last_threshold_alert is not None:
        rows.append((THRESHOLD_CATEGORY, to_ms(state.last_threshold_alert)))
    for station_id, when in state.last_outage_alert.items():
        rows.append((OUTAGE_PREFIX + station_id, to_ms(when)))
    if not rows:
        return
    async with _write_lock(db):
        await db.executemany(
            """
            INSERT INTO alert_state(category, last_alert_ms) VALUES(?,?)
            ON CONFLICT(category) DO UPDATE SET last_alert_ms = excluded.last_alert_ms;
            """,
            rows,
        )
        await db.commit()


# --------- 站点健康状态 ---------
async def load_station_health(db: aiosqlite.Connection, station_id: str, tz: tzinfo) -> StationHealth:
    sql = "SELECT last_success_ms, first_failure_ms FROM station_health WHERE station_id = ?;"
    async with db.execute(sql, (station_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return StationHealth(station_id=station_id)
    return StationHealth(
        station_id=station_id,
        last_success_time=from_ms(row[0], tz),
        first_failure_time=from_ms(row[1], tz),
    )


async def save_station_health(db: aiosqlite.Connection, health: StationHealth) -> None:
    last_ok = to_ms(health.last_success_time) if health.last_success_time else None
    first_fail = to_ms(health.first_failure_time) if health.first_failure_time else None
    async with _write_lock(db):
        await db.execute(
            """
            INSERT INTO station_health(station_id, last_success_ms, first_failure_ms) VALUES(?,?,?)
            ON CONFLICT(station_id) DO UPDATE SET
                last_success_ms  = excluded.last_success_ms,
                first_failure_ms = excluded.first_failure_ms;
            """,
            (health.station_id, last_ok, first_fail),
        )
        await db.commit()
