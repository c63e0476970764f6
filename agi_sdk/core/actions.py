"""Desktop actions returned by the agent, one dataclass per action kind"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional

from ..exceptions import ProtocolError


class ClickType(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    DOUBLE = "double"
    MIDDLE = "middle"


class ScrollDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


class DesktopAction:
    """
    Base class for a single device-effect instruction.

    Subclasses are dataclasses that declare only the fields meaningful for
    their own kind. Unrecognised wire fields are kept in ``extra`` so nothing
    the agent sent is lost.
    """

    action_type: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Wire form: ``type`` plus populated fields, unset optionals omitted."""
        data: Dict[str, Any] = {"type": self.action_type}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            data[f.name] = value.value if isinstance(value, Enum) else value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data


@dataclass
class ClickAction(DesktopAction):
    x: int
    y: int
    click_type: ClickType = ClickType.LEFT
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "click"


@dataclass
class TypeAction(DesktopAction):
    text: str
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "type"


@dataclass
class ScrollAction(DesktopAction):
    direction: ScrollDirection
    amount: int = 3
    x: Optional[int] = None
    y: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "scroll"


@dataclass
class HotkeyAction(DesktopAction):
    key: str  # e.g. "ctrl+a"
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "hotkey"


@dataclass
class DragAction(DesktopAction):
    start_x: int
    start_y: int
    end_x: int
    end_y: int
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "drag"


@dataclass
class WaitAction(DesktopAction):
    duration: float = 1.0  # seconds
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "wait"


@dataclass
class FinishedAction(DesktopAction):
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "finished"


@dataclass
class AwaitUserInputAction(DesktopAction):
    extra: Dict[str, Any] = field(default_factory=dict)

    action_type: ClassVar[str] = "await_user_input"


@dataclass
class UnknownAction(DesktopAction):
    """An action kind this SDK version does not know; params hold the raw fields."""
    type_name: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.params)
        data["type"] = self.type_name
        return data

    @property
    def extra(self) -> Dict[str, Any]:
        return self.params


def _require_int(data: Dict[str, Any], key: str, action_type: str) -> int:
    value = data.get(key)
    # bool is an int subclass but never a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{action_type} action requires numeric '{key}', got {value!r}")
    return int(value)


def _optional_int(data: Dict[str, Any], key: str, action_type: str) -> Optional[int]:
    if data.get(key) is None:
        return None
    return _require_int(data, key, action_type)


def _require_str(data: Dict[str, Any], key: str, action_type: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"{action_type} action requires string '{key}', got {value!r}")
    return value


def _enum_value(enum_cls, value, default, action_type: str):
    if value is None:
        return default
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ProtocolError(f"{action_type} action has invalid {enum_cls.__name__}: {value!r}")


def _extra(data: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != "type" and k not in known}


def _parse_click(data: Dict[str, Any]) -> ClickAction:
    return ClickAction(
        x=_require_int(data, "x", "click"),
        y=_require_int(data, "y", "click"),
        click_type=_enum_value(ClickType, data.get("click_type"), ClickType.LEFT, "click"),
        extra=_extra(data, ("x", "y", "click_type")),
    )


def _parse_type(data: Dict[str, Any]) -> TypeAction:
    # Older agents send the text under "content"
    key = "text" if data.get("text") is not None else "content"
    return TypeAction(
        text=_require_str(data, key, "type"),
        extra=_extra(data, ("text", "content")),
    )


def _parse_scroll(data: Dict[str, Any]) -> ScrollAction:
    amount = data.get("amount")
    return ScrollAction(
        direction=_enum_value(ScrollDirection, data.get("direction"), ScrollDirection.DOWN, "scroll"),
        amount=3 if amount is None else _require_int(data, "amount", "scroll"),
        x=_optional_int(data, "x", "scroll"),
        y=_optional_int(data, "y", "scroll"),
        extra=_extra(data, ("direction", "amount", "x", "y")),
    )


def _parse_hotkey(data: Dict[str, Any]) -> HotkeyAction:
    return HotkeyAction(
        key=_require_str(data, "key", "hotkey"),
        extra=_extra(data, ("key",)),
    )


def _parse_drag(data: Dict[str, Any]) -> DragAction:
    return DragAction(
        start_x=_require_int(data, "start_x", "drag"),
        start_y=_require_int(data, "start_y", "drag"),
        end_x=_require_int(data, "end_x", "drag"),
        end_y=_require_int(data, "end_y", "drag"),
        extra=_extra(data, ("start_x", "start_y", "end_x", "end_y")),
    )


def _parse_wait(data: Dict[str, Any]) -> WaitAction:
    duration = data.get("duration")
    if duration is None:
        duration = 1.0
    elif isinstance(duration, bool) or not isinstance(duration, (int, float)):
        raise ProtocolError(f"wait action requires numeric 'duration', got {duration!r}")
    return WaitAction(duration=float(duration), extra=_extra(data, ("duration",)))


_PARSERS: Dict[str, Callable[[Dict[str, Any]], DesktopAction]] = {
    "click": _parse_click,
    "type": _parse_type,
    "scroll": _parse_scroll,
    "hotkey": _parse_hotkey,
    "drag": _parse_drag,
    "wait": _parse_wait,
    "finished": lambda data: FinishedAction(extra=_extra(data, ())),
    "await_user_input": lambda data: AwaitUserInputAction(extra=_extra(data, ())),
}


def parse_action(data: Any) -> DesktopAction:
    """
    Build the action variant for a decoded wire object.

    Args:
        data: Decoded JSON object with a ``type`` discriminator

    Returns:
        The matching DesktopAction subclass, or UnknownAction for kinds
        this version does not recognise

    Raises:
        ProtocolError: If the object is malformed or a required field is missing
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Action must be an object, got {type(data).__name__}")
    action_type = data.get("type")
    if not isinstance(action_type, str) or not action_type:
        raise ProtocolError(f"Action is missing a 'type': {data!r}")

    parser = _PARSERS.get(action_type.lower())
    if parser is None:
        params = {k: v for k, v in data.items() if k != "type"}
        return UnknownAction(type_name=action_type, params=params)
    return parser(data)
