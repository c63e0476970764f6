"""Data models for the AGI SDK"""

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import ProtocolError
from .actions import DesktopAction, parse_action


class LoopState(str, Enum):
    """State of the HTTP-driven desktop loop"""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    ERROR = "error"


class SessionStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    PAUSED = "paused"
    FINISHED = "finished"
    ERROR = "error"


class AgentSessionType(str, Enum):
    MANAGED_CDP = "managed-cdp"  # API manages the browser
    EXTERNAL_CDP = "external-cdp"  # caller's browser over a CDP websocket
    DESKTOP = "desktop"  # client-driven step loop


class SaveSnapshotMode(str, Enum):
    NONE = "none"
    AUTO = "auto"
    ALWAYS = "always"


class MessageType(str, Enum):
    THOUGHT = "THOUGHT"
    QUESTION = "QUESTION"
    USER = "USER"
    DONE = "DONE"
    ERROR = "ERROR"
    LOG = "LOG"


class EventType(str, Enum):
    """Server-sent event types on a session's live channel"""
    STEP = "step"
    THOUGHT = "thought"
    QUESTION = "question"
    DONE = "done"
    ERROR = "error"
    LOG = "log"
    PAUSED = "paused"
    RESUMED = "resumed"
    HEARTBEAT = "heartbeat"
    USER = "user"


def _enum_or_none(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class StepRequest:
    """Body sent to a desktop session's step endpoint"""
    screenshot: str  # base64-encoded image
    session_id: str
    message: Optional[str] = None
    user_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"screenshot": self.screenshot, "session_id": self.session_id}
        if self.message is not None:
            data["message"] = self.message
        if self.user_response is not None:
            data["user_response"] = self.user_response
        return data


@dataclass
class StepResponse:
    """
    The agent's decision for one turn.

    The loop acts on it in a fixed order: finished first, then ask_user,
    then actions.
    """
    actions: List[DesktopAction] = field(default_factory=list)
    thinking: Optional[str] = None
    finished: bool = False
    ask_user: Optional[str] = None
    step: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResponse":
        if not isinstance(data, dict):
            raise ProtocolError(f"Step response must be an object, got {type(data).__name__}")
        ask_user = data.get("askUser", data.get("ask_user"))
        return cls(
            actions=[parse_action(a) for a in data.get("actions") or []],
            thinking=data.get("thinking"),
            finished=bool(data.get("finished", False)),
            ask_user=ask_user,
            step=int(data.get("step") or 0),
        )


@dataclass
class SessionResponse:
    session_id: str
    agent_name: str = ""
    status: Optional[SessionStatus] = None
    created_at: str = ""
    vnc_url: Optional[str] = None
    agent_url: Optional[str] = None
    environment_id: Optional[str] = None
    goal: Optional[str] = None
    agent_session_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionResponse":
        return cls(
            session_id=data.get("session_id", ""),
            agent_name=data.get("agent_name", ""),
            status=_enum_or_none(SessionStatus, data.get("status")),
            created_at=data.get("created_at", ""),
            vnc_url=data.get("vnc_url"),
            agent_url=data.get("agent_url"),
            environment_id=data.get("environment_id"),
            goal=data.get("goal"),
            agent_session_type=data.get("agent_session_type"),
        )


@dataclass
class ExecuteStatusResponse:
    status: Optional[SessionStatus]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecuteStatusResponse":
        return cls(status=_enum_or_none(SessionStatus, data.get("status")))


@dataclass
class MessageResponse:
    id: int
    type: Optional[MessageType]
    content: Any = None
    timestamp: str = ""
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageResponse":
        return cls(
            id=int(data.get("id") or 0),
            type=_enum_or_none(MessageType, data.get("type")),
            content=data.get("content"),
            timestamp=data.get("timestamp", ""),
            metadata=data.get("metadata"),
        )

    def content_as_string(self) -> Optional[str]:
        if self.content is None or isinstance(self.content, str):
            return self.content
        return json.dumps(self.content)


@dataclass
class MessagesResponse:
    messages: List[MessageResponse] = field(default_factory=list)
    status: str = ""
    has_agent: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessagesResponse":
        return cls(
            messages=[MessageResponse.from_dict(m) for m in data.get("messages") or []],
            status=data.get("status", ""),
            has_agent=bool(data.get("hasAgent", data.get("has_agent", False))),
        )


@dataclass
class SendMessageResponse:
    success: bool
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SendMessageResponse":
        return cls(success=bool(data.get("success", False)), message=data.get("message"))


# Same wire shape as a send-message acknowledgement
DeleteResponse = SendMessageResponse


@dataclass
class Screenshot:
    """Screenshot of a remote browser session"""
    data: str  # base64
    url: str = ""
    title: str = ""
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Screenshot":
        return cls(
            data=data.get("screenshot", ""),
            url=data.get("url", ""),
            title=data.get("title", ""),
            width=data.get("width"),
            height=data.get("height"),
        )

    def get_bytes(self) -> bytes:
        payload = self.data
        # Tolerate data URLs
        if payload.startswith("data:") and "," in payload:
            payload = payload.split(",", 1)[1]
        return base64.b64decode(payload)

    def save(self, path) -> Path:
        path = Path(path)
        path.write_bytes(self.get_bytes())
        return path


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    description: Optional[str] = None
    capabilities: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelInfo":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description"),
            capabilities=list(data.get("capabilities") or []),
        )


@dataclass
class SSEEvent:
    """One event from a session's server-sent event stream"""
    event: EventType
    data: Any = None  # decoded JSON, or the raw string if it was not JSON
    id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.event in (EventType.DONE, EventType.ERROR)


@dataclass
class TaskMetadata:
    session_id: str
    duration: float
    steps: int
    success: bool
    timestamp: datetime
    messages: List[MessageResponse] = field(default_factory=list)


@dataclass
class TaskResult:
    """Outcome of SessionContext.run_task"""
    data: Any
    metadata: TaskMetadata
