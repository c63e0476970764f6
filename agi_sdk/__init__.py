"""AGI SDK - Python client for AGI agents: HTTP sessions, desktop agent loop and local driver"""

__version__ = "0.1.0"

# Client
from .client import AgiClient
from .core.sessions import SessionContext, SessionsResource

# Desktop loop
from .core.agent_loop import AgentLoop
from .core.executor import ActionExecutor
from .core.actions import (
    AwaitUserInputAction,
    ClickAction,
    ClickType,
    DesktopAction,
    DragAction,
    FinishedAction,
    HotkeyAction,
    ScrollAction,
    ScrollDirection,
    TypeAction,
    UnknownAction,
    WaitAction,
    parse_action,
)
from .core.models import LoopState, SessionResponse, StepResponse, TaskResult

# Driver
from .driver.driver import AgentDriver, DriverOptions, DriverResult
from .driver.protocol import DriverState

from .exceptions import (
    AgentExecutionError,
    AgiConnectionError,
    AgiError,
    AgiTimeoutError,
    APIError,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    RateLimitError,
    ValidationError,
)

__all__ = [
    "__version__",
    # Client
    "AgiClient",
    "SessionContext",
    "SessionsResource",
    # Desktop loop
    "AgentLoop",
    "ActionExecutor",
    "LoopState",
    "StepResponse",
    "SessionResponse",
    "TaskResult",
    # Actions
    "DesktopAction",
    "ClickAction",
    "ClickType",
    "TypeAction",
    "ScrollAction",
    "ScrollDirection",
    "HotkeyAction",
    "DragAction",
    "WaitAction",
    "FinishedAction",
    "AwaitUserInputAction",
    "UnknownAction",
    "parse_action",
    # Driver
    "AgentDriver",
    "DriverOptions",
    "DriverResult",
    "DriverState",
    # Errors
    "AgiError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "RateLimitError",
    "ValidationError",
    "APIError",
    "AgentExecutionError",
    "AgiTimeoutError",
    "AgiConnectionError",
    "ProtocolError",
]
