# -*- coding: utf-8 -*-
"""
pm10_monitor/pipeline.py
一轮监测：读取 -> 站点健康 -> 合并入库 -> 判定 -> 推送。
定时器和聊天指令（即时查询）共用同一个 Monitor：
- 同一时间只跑一轮（_cycle_lock）
- 判定 + 推送 + 节流状态落库在 _alert_lock 里完成，两条路径不会重复发警示
- 推送失败时不推进节流状态，读数也不标记为已判定，下一轮重试
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiosqlite

from . import storage
from .config import stations_from_cfg
from .evaluator import check_outage, evaluate, record_fetch_result
from .merger import merge_and_store, prune
from .models import AlertMessage, OperationalSettings, Record, Sample, StationHealth
from .notifier import Notifier
from .reader import ReaderError, StationReader, fetch_all
from .report import build_report, write_report
from .settings import SettingsProvider
from .utils import get_tz, now_local

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    started_at: datetime
    records: List[Record] = field(default_factory=list)
    # station_id -> 失败类型（auth / timeout / empty / navigation / 异常类名）
    failures: Dict[str, str] = field(default_factory=dict)
    alerts: List[AlertMessage] = field(default_factory=list)


class Monitor:
    def __init__(
        self,
        db: aiosqlite.Connection,
        cfg: Dict[str, Any],
        settings: SettingsProvider,
        reader: StationReader,
        notifier: Notifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.cfg = cfg
        self.settings = settings
        self.reader = reader
        self.notifier = notifier
        self.tz = get_tz(cfg.get("timezone"))
        self.stations = stations_from_cfg(cfg)
        self._clock = clock or (lambda: now_local(self.tz))
        self._cycle_lock = asyncio.Lock()
        self._alert_lock = asyncio.Lock()
        self.last_cycle_at: Optional[datetime] = None

    def now(self) -> datetime:
        return self._clock()

    # --------- 一轮 ---------
    async def run_cycle(self) -> CycleResult:
        async with self._cycle_lock:
            return await self._run_cycle()

    async def ensure_fresh(self, stale_seconds: float) -> Optional[CycleResult]:
        """距上一轮超过 stale_seconds 才跑一轮；正在跑的那一轮结束后重新判断"""
        async with self._cycle_lock:
            last = self.last_cycle_at
            if last is not None and (self.now() - last).total_seconds() <= stale_seconds:
                return None
            return await self._run_cycle()

    async def _run_cycle(self) -> CycleResult:
        now = self.now()
        result = CycleResult(started_at=now)
        s = await self.settings.get_settings()
        self.reader.set_credentials(s.portal_account, s.portal_password)

        window = float(self.cfg["reader"].get("window_minutes", 60))
        fetched = await fetch_all(self.reader, self.stations, now - timedelta(minutes=window), now)

        per_station: Dict[str, List[Sample]] = {}
        healths: Dict[str, StationHealth] = {}
        for st in self.stations:
            res = fetched[st.id]
            if isinstance(res, BaseException) and not isinstance(res, Exception):
                raise res
            if isinstance(res, Exception):
                kind = res.kind if isinstance(res, ReaderError) else type(res).__name__
                logger.warning("[pipeline] station %s fetch failed (%s): %s", st.id, kind, res)
                result.failures[st.id] = kind
                ok = False
            else:
                ok = any(x.value is not None for x in res)
                if ok:
                    per_station[st.id] = res
                else:
                    logger.warning("[pipeline] station %s returned no valid samples", st.id)
                    result.failures[st.id] = ReaderError.EMPTY
            health = await storage.load_station_health(self.db, st.id, self.tz)
            healths[st.id] = record_fetch_result(health, ok, now)
            await storage.save_station_health(self.db, health)

        store_cfg = self.cfg["store"]
        result.records = await merge_and_store(
            self.db, per_station, self.stations,
            now=now,
            policy=store_cfg.get("update_policy", storage.POLICY_FILL_NULL),
            retention_hours=float(store_cfg.get("retention_hours", 24)),
        )
        result.alerts = await self.evaluate_and_notify(healths, s, now)
        self.last_cycle_at = now
        logger.info("[pipeline] cycle done: %d records, %d failures, %d alerts",
                    len(result.records), len(result.failures), len(result.alerts))
        return result

    # --------- 判定 + 推送 ---------
    async def evaluate_and_notify(
        self,
        healths: Dict[str, StationHealth],
        s: OperationalSettings,
        now: datetime,
    ) -> List[AlertMessage]:
        a = self.cfg["alerts"]
        sent: List[AlertMessage] = []
        async with self._alert_lock:
            state = await storage.load_alert_state(self.db, self.tz)

            # 库里还没判定过的读数：上一轮没送出的、迟到的站点读数都在里面
            retention = float(self.cfg["store"].get("retention_hours", 24))
            fresh = await storage.get_unevaluated(self.db, self.tz, since=now - timedelta(hours=retention), until=now)
            draft = state.copy()
            msg = evaluate(
                fresh, s.pm10_threshold, s.alert_interval_minutes, draft, now,
                stations=self.stations,
                active_hours=a.get("active_hours", ""),
                quiet_hours=bool(a.get("threshold_quiet_hours", True)),
                compare=a.get("threshold_compare", "gt"),
            )
            delivered = msg is None or await self.notifier.broadcast(msg.text)
            if msg is not None and delivered:
                state.last_threshold_alert = draft.last_threshold_alert
                sent.append(msg)
            elif msg is not None:
                logger.warning("[pipeline] threshold alert not delivered, will retry next cycle")
            if delivered and fresh:
                await storage.mark_evaluated(self.db, fresh)

            for st in self.stations:
                health = healths.get(st.id)
                if health is None:
                    continue
                draft = state.copy()
                msg = check_outage(
                    st.id, health, draft, now,
                    missing_data_hours=float(a.get("missing_data_hours", 12)),
                    station_name=st.name,
                    active_hours=a.get("active_hours", ""),
                    quiet_hours=bool(a.get("outage_quiet_hours", False)),
                )
                if msg is None:
                    continue
                if await self.notifier.broadcast(msg.text):
                    state.last_outage_alert[st.id] = draft.last_outage_alert[st.id]
                    sent.append(msg)
                else:
                    logger.warning("[pipeline] outage alert for %s not delivered", st.id)

            if sent:
                await storage.save_alert_state(self.db, state)
        return sent

    # --------- 查询 ---------
    async def latest(self) -> Dict[str, Tuple[datetime, float]]:
        return await storage.latest_values(self.db, self.tz)

    async def prune(self) -> int:
        hours = float(self.cfg["store"].get("retention_hours", 24))
        return await prune(self.db, self.now(), hours)

    async def make_report(self) -> Tuple[str, Path]:
        """清理 -> 取 24 小时内记录 -> 生成摘要并写下载档"""
        now = self.now()
        await self.prune()
        s = await self.settings.get_settings()
        records = await storage.get_records(self.db, self.tz, since=now - timedelta(hours=24), until=now)
        summary, content = build_report(
            records, s.pm10_threshold, now,
            stations=self.stations,
            compare=self.cfg["alerts"].get("threshold_compare", "gt"),
        )
        srv = self.cfg["server"]
        path = write_report(Path(srv.get("records_dir", "records")) / srv.get("report_filename", "24hr_record.txt"), content)
        return summary, path
