"""
工厂函数：根据 settings.MESSENGER_BACKEND 返回对应的 Messenger 实例。

新增推送后端只需：
  1. 在 line.py（或新文件）新建 XxxMessenger(BaseMessenger) 类
  2. 在此处 _build_registry() 加一行
  不需要修改 dispatcher / executor。
"""

from django.conf import settings

from .base import BaseMessenger


def _build_registry() -> dict[str, type[BaseMessenger]]:
    # 延迟导入，避免在 Django 启动前触发 settings 访问
    from .line import ConsoleMessenger, LinePushMessenger

    return {
        "line":    LinePushMessenger,
        "console": ConsoleMessenger,
    }


def get_messenger() -> BaseMessenger:
    """
    Raises:
        ValueError: MESSENGER_BACKEND 未知
    """
    backend = getattr(settings, "MESSENGER_BACKEND", "line")
    registry = _build_registry()
    messenger_cls = registry.get(backend)

    if messenger_cls is None:
        raise ValueError(
            f"Unknown MESSENGER_BACKEND: {backend!r}. "
            f"Known backends: {list(registry.keys())}"
        )

    return messenger_cls()
