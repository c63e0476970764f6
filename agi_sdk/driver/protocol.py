"""
Driver wire protocol: newline-delimited JSON events (driver -> SDK) and
commands (SDK -> driver).

Each line is one object discriminated by an ``event`` or ``command`` field.
Field names are snake_case. Unknown fields on events are kept in ``extra``;
optional command fields left as None are omitted on write.
"""

import json
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

from ..core.actions import DesktopAction, parse_action
from ..exceptions import ProtocolError


class DriverState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_CONFIRMATION = "waiting_confirmation"
    WAITING_ANSWER = "waiting_answer"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERROR = "error"


def _typed(kind: Any, default: Any = None):
    """Optional field whose wire type cannot be read off its default."""
    return field(default=default, metadata={"type": kind})


def _parsed(parser: Callable[[Any], Any], default: Any = None):
    """Field decoded by a dedicated parser."""
    return field(default=default, metadata={"parse": parser})


# ============================================================================
# Events
# ============================================================================

class DriverEvent:
    """Base class for events emitted by the driver process."""

    event_name: ClassVar[str] = ""


@dataclass
class ReadyEvent(DriverEvent):
    event_name: ClassVar[str] = "ready"

    version: str = ""
    protocol: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StateChangeEvent(DriverEvent):
    event_name: ClassVar[str] = "state_change"

    state: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def get_state(self) -> DriverState:
        try:
            return DriverState(self.state)
        except ValueError:
            return DriverState.ERROR


@dataclass
class ThinkingEvent(DriverEvent):
    event_name: ClassVar[str] = "thinking"

    text: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionEvent(DriverEvent):
    event_name: ClassVar[str] = "action"

    action: Optional[DesktopAction] = _parsed(parse_action)
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfirmEvent(DriverEvent):
    """The driver wants approval before performing ``action``."""

    event_name: ClassVar[str] = "confirm"

    action: Optional[DesktopAction] = _parsed(parse_action)
    reason: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AskQuestionEvent(DriverEvent):
    event_name: ClassVar[str] = "ask_question"

    question: str = ""
    question_id: Optional[str] = _typed(str)
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FinishedEvent(DriverEvent):
    event_name: ClassVar[str] = "finished"

    reason: str = ""
    summary: str = ""
    success: bool = False
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorEvent(DriverEvent):
    event_name: ClassVar[str] = "error"

    message: str = ""
    code: str = ""
    recoverable: bool = False
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScreenshotCapturedEvent(DriverEvent):
    event_name: ClassVar[str] = "screenshot_captured"

    width: int = 0
    height: int = 0
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionCreatedEvent(DriverEvent):
    """Remote mode: the driver provisioned a managed session."""

    event_name: ClassVar[str] = "session_created"

    session_id: str = ""
    vnc_url: Optional[str] = _typed(str)
    agent_url: Optional[str] = _typed(str)
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AudioTranscriptEvent(DriverEvent):
    event_name: ClassVar[str] = "audio_transcript"

    transcript: str = ""
    seconds_ago: int = 0
    duration: int = 0
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VideoFrameEvent(DriverEvent):
    event_name: ClassVar[str] = "video_frame"

    frame_base64: str = ""
    source: str = ""
    seconds_ago: int = 0
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SpeechStartedEvent(DriverEvent):
    event_name: ClassVar[str] = "speech_started"

    text: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SpeechFinishedEvent(DriverEvent):
    event_name: ClassVar[str] = "speech_finished"

    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnDetectedEvent(DriverEvent):
    event_name: ClassVar[str] = "turn_detected"

    transcript: str = ""
    step: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


EVENT_TYPES: Dict[str, Type[DriverEvent]] = {
    cls.event_name: cls
    for cls in (
        ReadyEvent,
        StateChangeEvent,
        ThinkingEvent,
        ActionEvent,
        ConfirmEvent,
        AskQuestionEvent,
        FinishedEvent,
        ErrorEvent,
        ScreenshotCapturedEvent,
        SessionCreatedEvent,
        AudioTranscriptEvent,
        VideoFrameEvent,
        SpeechStartedEvent,
        SpeechFinishedEvent,
        TurnDetectedEvent,
    )
}


# ============================================================================
# Commands
# ============================================================================

@dataclass
class MCPServerConfig:
    name: str = ""
    command: str = ""
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = _typed(dict)

    @classmethod
    def from_dict(cls, data: Any) -> "MCPServerConfig":
        if not isinstance(data, dict):
            raise ProtocolError(f"MCP server config must be an object, got {type(data).__name__}")
        args = data.get("args") or []
        env = data.get("env")
        if not isinstance(args, list) or (env is not None and not isinstance(env, dict)):
            raise ProtocolError(f"Invalid MCP server config: {data!r}")
        return cls(
            name=str(data.get("name", "")),
            command=str(data.get("command", "")),
            args=[str(a) for a in args],
            env={str(k): str(v) for k, v in env.items()} if env is not None else None,
        )


@dataclass
class AgentIdentity:
    name: str = "agi-2-claude"
    creator: str = "AGI Company"
    creator_url: str = "https://theagi.company"

    @classmethod
    def from_dict(cls, data: Any) -> "AgentIdentity":
        if not isinstance(data, dict):
            raise ProtocolError(f"agent_identity must be an object, got {type(data).__name__}")
        defaults = cls()
        return cls(
            name=str(data.get("name", defaults.name)),
            creator=str(data.get("creator", defaults.creator)),
            creator_url=str(data.get("creator_url", defaults.creator_url)),
        )


def _parse_mcp_servers(value: Any) -> List[MCPServerConfig]:
    if not isinstance(value, list):
        raise ProtocolError(f"mcp_servers must be a list, got {type(value).__name__}")
    return [MCPServerConfig.from_dict(item) for item in value]


class DriverCommand:
    """Base class for commands sent to the driver process."""

    command_name: ClassVar[str] = ""


@dataclass
class StartCommand(DriverCommand):
    """
    Begin a run.

    ``mode`` selects the driver's operating mode: None/"" for the legacy
    SDK-driven mode (screenshots supplied by the caller), "local" for
    autonomous local control, "remote" for a managed VM. Multimodal flags
    stay None unless the feature is enabled so they are omitted on the wire.
    ``tool_choice`` is either a mode string ("auto", "required", "none") or
    ``{"type": "tool", "name": ...}``.
    """

    command_name: ClassVar[str] = "start"

    session_id: str = ""
    goal: str = ""
    screenshot: str = ""
    screen_width: int = 0
    screen_height: int = 0
    platform: str = "desktop"
    model: str = "claude-sonnet"
    mode: Optional[str] = _typed(str)
    agent_name: Optional[str] = _typed(str)
    api_url: Optional[str] = _typed(str)
    environment_type: Optional[str] = _typed(str)
    audio_input_enabled: Optional[bool] = _typed(bool)
    turn_detection_enabled: Optional[bool] = _typed(bool)
    speech_output_enabled: Optional[bool] = _typed(bool)
    speech_voice: Optional[str] = _typed(str)
    camera_enabled: Optional[bool] = _typed(bool)
    screen_recording_enabled: Optional[bool] = _typed(bool)
    mcp_servers: Optional[List[MCPServerConfig]] = _parsed(_parse_mcp_servers)
    agent_identity: Optional[AgentIdentity] = _parsed(AgentIdentity.from_dict)
    tool_choice: Any = _typed(object)


@dataclass
class ScreenshotCommand(DriverCommand):
    command_name: ClassVar[str] = "screenshot"

    data: str = ""
    screen_width: int = 0
    screen_height: int = 0


@dataclass
class PauseCommand(DriverCommand):
    command_name: ClassVar[str] = "pause"


@dataclass
class ResumeCommand(DriverCommand):
    command_name: ClassVar[str] = "resume"


@dataclass
class StopCommand(DriverCommand):
    command_name: ClassVar[str] = "stop"

    reason: Optional[str] = _typed(str)


@dataclass
class ConfirmResponseCommand(DriverCommand):
    command_name: ClassVar[str] = "confirm"

    approved: bool = False
    message: Optional[str] = _typed(str)


@dataclass
class AnswerCommand(DriverCommand):
    command_name: ClassVar[str] = "answer"

    text: str = ""
    question_id: Optional[str] = _typed(str)


@dataclass
class GetAudioTranscriptCommand(DriverCommand):
    command_name: ClassVar[str] = "get_audio_transcript"

    seconds_ago: int = 5
    duration: int = 5


@dataclass
class GetVideoFrameCommand(DriverCommand):
    command_name: ClassVar[str] = "get_video_frame"

    source: str = "screen"
    seconds_ago: int = 1


COMMAND_TYPES: Dict[str, Type[DriverCommand]] = {
    cls.command_name: cls
    for cls in (
        StartCommand,
        ScreenshotCommand,
        PauseCommand,
        ResumeCommand,
        StopCommand,
        ConfirmResponseCommand,
        AnswerCommand,
        GetAudioTranscriptCommand,
        GetVideoFrameCommand,
    )
}


# ============================================================================
# Codec
# ============================================================================

def parse_event(line: str) -> DriverEvent:
    """
    Parse one line of driver output.

    Raises:
        ProtocolError: Invalid JSON, not an object, unknown event type
            or a field of the wrong type
    """
    data = _load_line(line)
    name = data.get("event")
    if not isinstance(name, str):
        raise ProtocolError("Driver message has no 'event' field", line)
    cls = EVENT_TYPES.get(name)
    if cls is None:
        raise ProtocolError(f"Unknown event type: {name}", line)
    return _decode(cls, data, "event", line)


def parse_command(line: str) -> DriverCommand:
    """Parse one command line (the driver's side of the protocol)."""
    data = _load_line(line)
    name = data.get("command")
    if not isinstance(name, str):
        raise ProtocolError("Driver message has no 'command' field", line)
    cls = COMMAND_TYPES.get(name)
    if cls is None:
        raise ProtocolError(f"Unknown command type: {name}", line)
    return _decode(cls, data, "command", line)


def serialize_command(command: DriverCommand) -> str:
    """Encode a command as one compact JSON line (no trailing newline)."""
    data: Dict[str, Any] = {"command": command.command_name}
    data.update(_encode_fields(command))
    return json.dumps(data, separators=(",", ":"))


def serialize_event(event: DriverEvent) -> str:
    """Encode an event as one compact JSON line (no trailing newline)."""
    data: Dict[str, Any] = {"event": event.event_name}
    data.update(_encode_fields(event))
    for key, value in event.extra.items():
        data.setdefault(key, value)
    return json.dumps(data, separators=(",", ":"))


def _load_line(line: str) -> Dict[str, Any]:
    try:
        data = json.loads(line)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON: {e}", line)
    if not isinstance(data, dict):
        raise ProtocolError(f"Driver message must be a JSON object, got {type(data).__name__}", line)
    return data


def _decode(cls, data: Dict[str, Any], discriminator: str, line: str):
    kwargs: Dict[str, Any] = {}
    known = {discriminator}
    has_extra = False
    for f in fields(cls):
        if f.name == "extra":
            has_extra = True
            continue
        known.add(f.name)
        value = data.get(f.name)
        if value is None:
            continue  # absent or null -> default
        if "parse" in f.metadata:
            try:
                kwargs[f.name] = f.metadata["parse"](value)
            except ProtocolError as e:
                raise ProtocolError(f"{cls.__name__}.{f.name}: {e}", line)
        else:
            kwargs[f.name] = _check_type(value, f, cls, line)

    if has_extra:
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}
    return cls(**kwargs)


def _check_type(value: Any, f, cls, line: str) -> Any:
    kind = f.metadata.get("type", type(f.default))
    if kind is object:
        return value
    if kind is bool:
        if isinstance(value, bool):
            return value
    elif kind is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    elif kind is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(value, kind):
        return value
    raise ProtocolError(
        f"{cls.__name__}.{f.name} expects {kind.__name__}, got {type(value).__name__}",
        line,
    )


def _encode_fields(obj) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for f in fields(obj):
        if f.name == "extra":
            continue
        value = getattr(obj, f.name)
        if value is None:
            continue
        data[f.name] = _encode_value(value)
    return data


def _encode_value(value: Any) -> Any:
    if isinstance(value, DesktopAction):
        return value.to_dict()
    if is_dataclass(value):
        return _encode_fields(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_encode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items() if v is not None}
    return value
