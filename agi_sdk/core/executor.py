"""Contract between the control loops and a device-level action executor"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from ..utils.logger import log
from .actions import (
    AwaitUserInputAction,
    ClickAction,
    DesktopAction,
    DragAction,
    FinishedAction,
    HotkeyAction,
    ScrollAction,
    TypeAction,
    UnknownAction,
    WaitAction,
)

# Type for screenshot capture: async () -> base64 image
CaptureScreenshot = Callable[[], Awaitable[str]]
# Type for action execution: async (actions) -> None
ExecuteActions = Callable[[List[DesktopAction]], Awaitable[None]]
# Type for executor error reporting: (action, error) -> None
ActionErrorCallback = Callable[[DesktopAction, Exception], Any]


class ActionExecutor:
    """
    Base class for executors that perform actions on a real device.

    An instance is directly usable as the ``execute_actions`` capability of
    AgentLoop. Subclasses implement one coroutine per action kind; actions
    run sequentially in the order received. A failing action is reported
    through on_error and the rest of the batch still runs.

    Action coordinates are in screenshot pixels. Subclasses that inject
    input in logical pixels override _detect_scale_factor; the detected
    factor is cached per instance until invalidate_scale_factor() is called
    (e.g. after a display change).
    """

    def __init__(self, on_error: Optional[ActionErrorCallback] = None):
        self._on_error = on_error
        self._scale_factor: Optional[float] = None

    async def __call__(self, actions: List[DesktopAction]):
        await self.execute_actions(actions)

    async def execute_actions(self, actions: List[DesktopAction]):
        for action in actions:
            try:
                ok = await self.execute_action(action)
                if ok is False:
                    log("Executor", f"Action not performed: {action.action_type or action}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log("Executor", f"Action {action.to_dict().get('type')} failed: {e}", force=True)
                await self._report(action, e)

    async def execute_action(self, action: DesktopAction) -> bool:
        """Dispatch one action to the handler for its kind."""
        if isinstance(action, ClickAction):
            return await self.click(action)
        if isinstance(action, TypeAction):
            return await self.type_text(action)
        if isinstance(action, ScrollAction):
            return await self.scroll(action)
        if isinstance(action, HotkeyAction):
            return await self.hotkey(action)
        if isinstance(action, DragAction):
            return await self.drag(action)
        if isinstance(action, WaitAction):
            return await self.wait(action)
        if isinstance(action, (FinishedAction, AwaitUserInputAction)):
            return True
        if isinstance(action, UnknownAction):
            return await self.unknown(action)
        raise TypeError(f"Unsupported action: {action!r}")

    async def click(self, action: ClickAction) -> bool:
        raise NotImplementedError

    async def type_text(self, action: TypeAction) -> bool:
        raise NotImplementedError

    async def scroll(self, action: ScrollAction) -> bool:
        raise NotImplementedError

    async def hotkey(self, action: HotkeyAction) -> bool:
        raise NotImplementedError

    async def drag(self, action: DragAction) -> bool:
        raise NotImplementedError

    async def wait(self, action: WaitAction) -> bool:
        await asyncio.sleep(max(action.duration, 0.0))
        return True

    async def unknown(self, action: UnknownAction) -> bool:
        log("Executor", f"Unknown action type: {action.type_name}", force=True)
        return False

    async def get_scale_factor(self) -> float:
        if self._scale_factor is None:
            self._scale_factor = await self._detect_scale_factor()
        return self._scale_factor

    def invalidate_scale_factor(self):
        self._scale_factor = None

    async def _detect_scale_factor(self) -> float:
        return 1.0

    async def to_logical(self, x: int, y: int) -> Tuple[int, int]:
        """Convert screenshot (physical) pixels to the logical pixels input APIs expect."""
        scale = await self.get_scale_factor()
        if scale == 1.0:
            return x, y
        return int(round(x / scale)), int(round(y / scale))

    async def _report(self, action: DesktopAction, error: Exception):
        if self._on_error is None:
            return
        try:
            result = self._on_error(action, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log("Executor", f"Error callback failed: {e}")
