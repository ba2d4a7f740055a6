from .factory import get_messenger
from .types import SendResult

__all__ = ["get_messenger", "SendResult"]
