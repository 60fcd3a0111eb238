"""Chat client, stream decoding, and tool orchestration."""

from .client import ApproxByteCounter, ChatClient, ClientSettings, TokenCounterRegistry
from .errors import ChatEngineError

__all__ = ["ChatClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter", "ChatEngineError"]
