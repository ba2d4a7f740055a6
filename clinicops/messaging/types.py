"""
消息发送层的标准返回结构。

所有 Messenger 的 send() 都返回 SendResult。
调用方（ReminderDispatcher / StepExecutor）只看 ok，
ok=False 和抛异常一样按「单条失败」处理。
"""

from dataclasses import dataclass


@dataclass
class SendResult:
    ok: bool
    status_code: int | None = None   # HTTP 状态码（非 HTTP 后端为 None）
    error: str = ""
