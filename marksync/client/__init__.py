from marksync.client.collection import ClientCollection
from marksync.client.engine import SyncEngine
from marksync.client.errors import (
    AuthenticationError,
    AuthorizationError,
    MarksyncError,
    TransportError,
    ValidationError,
)
from marksync.client.feed import (
    ChangeFeed,
    FeedChannel,
    HttpChangeFeed,
    SubscribeOutcome,
)
from marksync.client.gateway import BookmarkGateway
from marksync.client.mirror import LiveWindowMirror
from marksync.client.models import (
    BookmarkRecord,
    ConnectionStatus,
    EngineState,
    SyncMode,
)

__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "BookmarkGateway",
    "BookmarkRecord",
    "ChangeFeed",
    "ClientCollection",
    "ConnectionStatus",
    "EngineState",
    "FeedChannel",
    "HttpChangeFeed",
    "LiveWindowMirror",
    "MarksyncError",
    "SubscribeOutcome",
    "SyncEngine",
    "SyncMode",
    "TransportError",
    "ValidationError",
]
