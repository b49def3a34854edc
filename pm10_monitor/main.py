# -*- coding: utf-8 -*-
# pm10_monitor/main.py
# 入口：读配置 -> 设日志 -> 起 FastAPI（lifespan 里启动定时抓取 / 清理 / 设定轮询 / 保活）
# --once：只跑一轮监测就退出（部署前自检用）

from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn

from .config import load_cfg
from .web import build_services, create_app, shutdown

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO),
                        format='%(asctime)s - %(levelname)s - %(message)s')


async def run_once(cfg: dict) -> int:
    svc = await build_services(cfg)
    try:
        result = await svc.monitor.run_cycle()
        for sid, kind in result.failures.items():
            logger.warning("[main] station %s: %s", sid, kind)
        logger.info("[main] %d records, %d alerts", len(result.records), len(result.alerts))
        return 1 if len(result.failures) == len(svc.monitor.stations) else 0
    finally:
        await shutdown(svc)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pm10-monitor", description="PM10 station monitoring bot")
    parser.add_argument("--config", default=None, help="path to config.yml (default: ops/config.yml)")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--once", action="store_true", help="run a single monitoring cycle and exit")
    args = parser.parse_args(argv)

    cfg = load_cfg(args.config)
    setup_logging(cfg.get("logging", {}).get("level", "INFO"))

    if args.once:
        return asyncio.run(run_once(cfg))

    srv = cfg["server"]
    uvicorn.run(
        create_app(cfg),
        host=args.host or srv.get("host", "0.0.0.0"),
        port=int(args.port or srv.get("port", 4000)),
        log_level=str(cfg.get("logging", {}).get("level", "INFO")).lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
