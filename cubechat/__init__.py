"""
cubechat - streaming chat relay for the Cube analytics API

Relays the upstream NDJSON chat stream as a clean downstream protocol,
persists conversations, and folds the stream into renderable segments.
"""

__version__ = "0.1.0"

from ._exceptions import (
    AuthenticationError,
    ConfigurationError,
    CubeChatError,
    DecodeError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UpstreamHttpError,
)
from .client import ChatStream, CubeChat
from .config import CubeConfig
from .reducer import SegmentReducer
from .reemitter import ChatService, ChatTurn
from .store import InMemoryConversationStore, Message
from .upstream import CubeClient

__all__ = [
    "AuthenticationError",
    "ChatService",
    "ChatStream",
    "ChatTurn",
    "ConfigurationError",
    # Main client
    "CubeChat",
    "CubeChatError",
    "CubeClient",
    "CubeConfig",
    "DecodeError",
    "InMemoryConversationStore",
    "Message",
    "NotFoundError",
    "PermissionDeniedError",
    "RateLimitError",
    "SegmentReducer",
    "UpstreamHttpError",
]
