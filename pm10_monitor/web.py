# -*- coding: utf-8 -*-
"""
pm10_monitor/web.py
HTTP 服务（FastAPI）：
- POST /webhook：LINE 事件（验 X-Line-Signature），文字讯息交给 CommandHandler，背景处理，立即回 200
- GET  /download/{filename}：24 小时记录档
- POST /ping：保活
lifespan 里组装各组件并启动常驻任务（定时抓取、清理、设定轮询、保活）。
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse

from .commands import CommandHandler
from .config import load_cfg
from .notifier import Notifier
from .pipeline import Monitor
from .reader import PlaywrightPortalReader, StationReader
from .scheduler import Scheduler, run_housekeeper, run_keepalive
from .settings import SCRAPE_INTERVAL, SettingsProvider
from .storage import init_db
from .utils import get_tz

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: aiosqlite.Connection
    settings: SettingsProvider
    reader: StationReader
    notifier: Notifier
    monitor: Monitor
    handler: CommandHandler
    scheduler: Optional[Scheduler] = None
    tasks: List[asyncio.Task] = field(default_factory=list)


async def build_services(cfg: Dict[str, Any]) -> Services:
    db = await init_db(cfg["store"]["db_path"])
    settings = SettingsProvider(db)
    reader = PlaywrightPortalReader(cfg["reader"], get_tz(cfg.get("timezone")))
    notifier = Notifier(cfg)
    monitor = Monitor(db, cfg, settings, reader, notifier)
    handler = CommandHandler(monitor, notifier, cfg)
    return Services(db, settings, reader, notifier, monitor, handler)


async def start_background(svc: Services, cfg: Dict[str, Any]) -> None:
    s = await svc.settings.get_settings()
    svc.scheduler = Scheduler(svc.monitor.run_cycle, s.scrape_interval_minutes, clock=svc.monitor.now)
    svc.settings.on_change(SCRAPE_INTERVAL, svc.scheduler.reschedule)
    svc.scheduler.start()

    sch = cfg["scheduler"]
    svc.tasks.append(asyncio.create_task(
        run_housekeeper(svc.monitor.prune, every_sec=float(sch.get("housekeeping_minutes", 60)) * 60)))
    svc.tasks.append(asyncio.create_task(
        svc.settings.watch(float(sch.get("settings_poll_seconds", 30)))))
    ka = cfg.get("keepalive", {})
    if ka.get("url"):
        svc.tasks.append(asyncio.create_task(run_keepalive(ka["url"], float(ka.get("every_sec", 300)))))
    # 启动时先跑一轮，不用等到下一个整点倍数
    svc.tasks.append(asyncio.create_task(svc.monitor.run_cycle()))


async def shutdown(svc: Services) -> None:
    if svc.scheduler is not None:
        await svc.scheduler.stop()
    for t in svc.tasks:
        t.cancel()
    await asyncio.gather(*svc.tasks, return_exceptions=True)
    await svc.reader.close()
    await svc.notifier.close()
    await svc.db.close()
    logger.info("[web] shutdown complete")


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """X-Line-Signature = base64(HMAC-SHA256(channel secret, body))"""
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(base64.b64encode(digest).decode("ascii"), signature)


async def handle_event(svc: Services, event: Dict[str, Any]) -> None:
    """单个 LINE 事件：文字讯息 -> 指令 -> 回覆"""
    try:
        msg = event.get("message") or {}
        if event.get("type") != "message" or msg.get("type") != "text":
            return
        user_id = (event.get("source") or {}).get("userId")
        replies = await svc.handler.handle(user_id, msg.get("text", ""))
        token = event.get("replyToken")
        if replies and token:
            await svc.notifier.reply(token, replies)
    except Exception:
        logger.exception("[web] event handling failed")


def create_app(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    services: Optional[Services] = None,
    channel_secret: Optional[str] = None,
) -> FastAPI:
    """services 传入时（测试）不在 lifespan 里组装、也不启动常驻任务"""
    cfg = cfg or load_cfg()
    secret = channel_secret if channel_secret is not None else os.getenv("LINE_CHANNEL_SECRET", "")
    srv = cfg["server"]
    records_dir = Path(srv.get("records_dir", "records"))
    report_name = srv.get("report_filename", "24hr_record.txt")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        svc = await build_services(cfg)
        app.state.services = svc
        await start_background(svc, cfg)
        logger.info("[web] started, notifier channel=%s", svc.notifier.channel)
        try:
            yield
        finally:
            await shutdown(svc)

    app = FastAPI(
        title="PM10 Monitor",
        description="PM10 station monitoring bot: LINE webhook, 24-hour report download and keep-alive ping.",
        version="0.1",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        body = await request.body()
        if secret and not verify_signature(secret, body, request.headers.get("X-Line-Signature")):
            logger.warning("[web] webhook signature mismatch, events ignored")
            return {"status": "ignored"}
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            logger.warning("[web] webhook body is not JSON")
            return {"status": "ignored"}
        svc: Services = request.app.state.services
        events = payload.get("events") if isinstance(payload, dict) else None
        for event in events or []:
            background_tasks.add_task(handle_event, svc, event)
        return {"status": "ok"}

    def _report_file(filename: str) -> FileResponse:
        if filename != report_name:
            raise HTTPException(status_code=404, detail="File not found")
        path = records_dir / filename
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Report not generated yet")
        return FileResponse(path, media_type="text/plain; charset=utf-8", filename=filename)

    @app.get("/download/{filename}")
    async def download(filename: str):
        """最新的 24 小时记录档"""
        return _report_file(filename)

    @app.get("/download")
    async def download_query(file: str = Query(..., description="Report file name")):
        return _report_file(file)

    @app.post("/ping")
    async def ping():
        return {"message": "pong"}

    return app
