"""
BaseMessenger — 所有出站消息后端的抽象基类。

每个新后端只需：
1. 继承 BaseMessenger
2. 实现 send()
3. 在 factory.py 的 _build_registry() 注册一行

dispatcher / executor 完全不知道背后用哪家推送服务。
"""

from abc import ABC, abstractmethod

from .types import SendResult


class BaseMessenger(ABC):

    # 与 factory 注册键一致
    backend: str = ""

    @abstractmethod
    def send(self, handle: str, messages: list[dict], tenant_id=None) -> SendResult:
        """
        向一个接收者推送消息。

        Args:
            handle:    接收者标识（LINE UID）
            messages:  消息对象列表，例如 [{"type": "text", "text": "..."}]
            tenant_id: 租户，用于解析租户自己的 token

        Returns:
            SendResult(ok=...)；网络错误也可以直接抛出，调用方统一计为失败
        """
