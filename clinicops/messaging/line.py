"""
具体 Messenger 实现。

已注册后端：
  line      LinePushMessenger  (LINE Messaging API push)
  console   ConsoleMessenger   (只写日志，本地开发用)
"""

import logging

import requests
from django.conf import settings

from ..settings_store import resolve_setting
from .base import BaseMessenger
from .types import SendResult

logger = logging.getLogger(__name__)


# ── LinePushMessenger ──────────────────────────────────────────────────────
#
# POST {LINE_API_BASE}/v2/bot/message/push
# token：租户设置 line.channel_access_token → settings.LINE_CHANNEL_ACCESS_TOKEN

class LinePushMessenger(BaseMessenger):
    backend = "line"

    PUSH_PATH = "/v2/bot/message/push"

    def send(self, handle: str, messages: list[dict], tenant_id=None) -> SendResult:
        token = resolve_setting(tenant_id, "line.channel_access_token")
        if not token:
            logger.warning("[line-push] channel access token 未配置 tenant=%s", tenant_id)
            return SendResult(ok=False, error="LINE channel access token is not configured")

        response = requests.post(
            settings.LINE_API_BASE.rstrip("/") + self.PUSH_PATH,
            json={"to": handle, "messages": messages},
            headers={"Authorization": f"Bearer {token}"},
            timeout=settings.OUTBOUND_HTTP_TIMEOUT,
        )

        if not response.ok:
            logger.warning(
                "[line-push] push 失败 status=%s body=%s",
                response.status_code, response.text[:200],
            )
            return SendResult(ok=False, status_code=response.status_code, error=response.text[:200])

        return SendResult(ok=True, status_code=response.status_code)


# ── ConsoleMessenger ───────────────────────────────────────────────────────

class ConsoleMessenger(BaseMessenger):
    backend = "console"

    def send(self, handle: str, messages: list[dict], tenant_id=None) -> SendResult:
        logger.info("[console-push] tenant=%s to=%s messages=%s", tenant_id, handle, messages)
        return SendResult(ok=True)
