# -*- coding: utf-8 -*-
"""
pm10_monitor/notifier.py
推送模块：LINE Messaging API（或回退到 stdout）
- broadcast：群发给所有好友
- reply：回覆某次聊天事件（replyToken）
- get_profile：取使用者显示名称
- get_quota：本月额度 / 已用量（可选附加在警示后面）
429/5xx/网络错误按指数退避 + 抖动重试，优先使用服务端给的 Retry-After；最终失败只记一条日志并返回 False。
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

logger = logging.getLogger(__name__)

LINE_API = "https://api.line.me/v2/bot"
# LINE 单则文字讯息上限 5000 字，单次最多 5 则
MAX_TEXT = 5000
MAX_MESSAGES = 5


def _truncate(s: Optional[str], limit: int = MAX_TEXT) -> str:
    if s is None:
        return ""
    return s if len(s) <= limit else s[:limit - 3] + "..."


def _text_messages(texts: Sequence[str]) -> List[Dict[str, str]]:
    return [{"type": "text", "text": _truncate(t)} for t in list(texts)[:MAX_MESSAGES] if t]


def _retry_after(r: httpx.Response) -> float:
    try:
        return float(r.headers.get("Retry-After", 0))
    except ValueError:
        return 0.0


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class _LineAdapter:
    def __init__(self, token: str, retry: Dict[str, Any], *, base_url: str = LINE_API,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._token = token
        self._retry = retry or {}
        self._base_url = base_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池；读系统代理/CERT；HTTP/2
        if self._client is None:
            timeout = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=30.0)
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=timeout,
                http2=True,
                trust_env=True,
                headers={"Authorization": f"Bearer {self._token}"},
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None,
                       headers: Optional[Dict[str, str]] = None) -> Optional[httpx.Response]:
        """成功返回 Response；用尽重试或遇到不可重试的 4xx 返回 None"""
        max_times = max(1, int(self._retry.get("max_times", 5)))
        backoff = float(self._retry.get("backoff_sec", 1))
        last_err = None

        for attempt in range(1, max_times + 1):
            try:
                r = await self._client_get().request(method, path, json=json, headers=headers)
                if 200 <= r.status_code < 300:
                    return r

                if r.status_code == 429 or 500 <= r.status_code < 600:
                    last_err = f"http {r.status_code}"
                    if attempt == max_times:
                        break
                    sleep_sec = _retry_after(r) or (backoff * (2 ** (attempt - 1)))
                    sleep_sec = min(sleep_sec, 30)
                    sleep_sec += random.uniform(0, 0.6)
                    await asyncio.sleep(sleep_sec)
                    continue

                # 其他 4xx：直接失败
                last_err = f"http {r.status_code}: {(r.text or '')[:300]}"
                break

            except httpx.HTTPError as e:
                last_err = repr(e)
                if attempt == max_times:
                    break
                sleep_sec = backoff * (2 ** (attempt - 1)) + random.uniform(0, 0.6)
                await asyncio.sleep(min(sleep_sec, 20))

        logger.error("[notifier] line %s %s failed after %d attempts: %s", method, path, attempt, last_err)
        return None

    async def broadcast(self, texts: Sequence[str]) -> bool:
        messages = _text_messages(texts)
        if not messages:
            return True
        # 同一个 retry key 重送时 LINE 不会重复群发
        headers = {"X-Line-Retry-Key": str(uuid.uuid4())}
        r = await self._request("POST", "/message/broadcast", json={"messages": messages}, headers=headers)
        return r is not None

    async def reply(self, reply_token: str, texts: Sequence[str]) -> bool:
        messages = _text_messages(texts)
        if not messages:
            return True
        r = await self._request("POST", "/message/reply",
                                json={"replyToken": reply_token, "messages": messages})
        return r is not None

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        r = await self._request("GET", f"/profile/{user_id}")
        return r.json() if r is not None else None

    async def get_quota(self) -> Optional[Tuple[int, Optional[int]]]:
        """(本月已用, 上限)；上限为 None 表示无上限"""
        q = await self._request("GET", "/message/quota")
        c = await self._request("GET", "/message/quota/consumption")
        if q is None or c is None:
            return None
        qj = q.json()
        limit = int(qj["value"]) if qj.get("type") == "limited" else None
        return int(c.json().get("totalUsage", 0)), limit

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _StdoutAdapter:
    async def broadcast(self, texts: Sequence[str]) -> bool:
        for t in texts:
            print("\n" + t + "\n")
        return True

    async def reply(self, reply_token: str, texts: Sequence[str]) -> bool:
        for t in texts:
            print(f"\n[reply {reply_token}] {t}\n")
        return True

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return None

    async def get_quota(self) -> Optional[Tuple[int, Optional[int]]]:
        return None

    async def close(self):
        return


# ------------------------------------------------------------
# Notifier 主体
# ------------------------------------------------------------

class Notifier:
    def __init__(self, cfg: Optional[dict] = None, *, token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        raw = cfg or {}
        # 允许传进来“整份 cfg”或“notifier 子配置”
        self._cfg = raw["notifier"] if "notifier" in raw else raw

        token = token or self._cfg.get("token") or os.environ.get("LINE_CHANNEL_ACCESS_TOKEN", "").strip()
        channel = self._cfg.get("channel", "line")
        retry = self._cfg.get("retry") or {}

        if channel == "line" and token:
            self._adapter: Union[_LineAdapter, _StdoutAdapter] = _LineAdapter(token, retry, transport=transport)
            self._channel = "line"
        else:
            self._adapter = _StdoutAdapter()
            self._channel = "stdout"
            if channel == "line":
                logger.warning("[notifier] LINE_CHANNEL_ACCESS_TOKEN 缺失，自动降级为 stdout")

    @property
    def channel(self) -> str:
        return self._channel

    async def broadcast(self, text: str) -> bool:
        """群发一则文字；notifier.include_quota 开启时附上本月用量"""
        if self._cfg.get("include_quota"):
            quota = await self.get_quota()
            if quota is not None:
                used, limit = quota
                text += f"\n（本月訊息用量：{used}/{limit if limit is not None else '無上限'}）"
        ok = await self._adapter.broadcast([text])
        if ok:
            logger.info("[notifier] broadcast sent via %s", self._channel)
        return ok

    async def reply(self, reply_token: str, texts: Union[str, Sequence[str]]) -> bool:
        if isinstance(texts, str):
            texts = [texts]
        return await self._adapter.reply(reply_token, texts)

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._adapter.get_profile(user_id)

    async def display_name(self, user_id: str) -> str:
        """取不到资料时退回 user_id"""
        profile = await self.get_profile(user_id)
        return (profile or {}).get("displayName") or user_id

    async def get_quota(self) -> Optional[Tuple[int, Optional[int]]]:
        return await self._adapter.get_quota()

    async def close(self):
        await self._adapter.close()
