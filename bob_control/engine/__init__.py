"""Bob Control engine: rooms, agent sessions and the request lifecycle."""
from .models import (
    AgentStatus,
    Message,
    MessageRole,
    ObserverEntry,
    RoomStatus,
    WorktreeRecord,
)
from .config import ServerConfig
from .errors import (
    AgentBusyError,
    AgentFailureError,
    AgentReportedError,
    BobControlError,
    DirectoryNotFoundError,
    NoAgentError,
    NotFoundError,
    RequestCancelledError,
    RequestTimeoutError,
    RoomBusyError,
    RoomClosedError,
    RoomNotFoundError,
    SafetyViolationError,
    SubprocessFailureError,
    UnavailableExecutableError,
    UnknownAgentKindError,
    WorktreeError,
)
from .room import Room
from .room_manager import RoomManager

__all__ = [
    # Models
    "AgentStatus",
    "Message",
    "MessageRole",
    "ObserverEntry",
    "RoomStatus",
    "WorktreeRecord",
    # Config
    "ServerConfig",
    # Rooms
    "Room",
    "RoomManager",
    # Errors
    "AgentBusyError",
    "AgentFailureError",
    "AgentReportedError",
    "BobControlError",
    "DirectoryNotFoundError",
    "NoAgentError",
    "NotFoundError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "RoomBusyError",
    "RoomClosedError",
    "RoomNotFoundError",
    "SafetyViolationError",
    "SubprocessFailureError",
    "UnavailableExecutableError",
    "UnknownAgentKindError",
    "WorktreeError",
]
