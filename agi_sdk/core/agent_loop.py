"""Agent loop for client-driven desktop sessions"""

import asyncio
import inspect
from typing import Any, Callable, Optional

from ..exceptions import AgentExecutionError
from ..utils.logger import log
from .executor import CaptureScreenshot, ExecuteActions
from .models import LoopState, StepResponse

# Type for thinking callback: (text: str) -> None
ThinkingCallback = Callable[[str], Any]
# Type for ask-user callback: async (question: str) -> answer
AskUserCallback = Callable[[str], Any]
# Type for step callback: (step: int, result: StepResponse) -> None
StepCallback = Callable[[int, StepResponse], Any]
# Type for error callback: (error: Exception) -> None
ErrorCallback = Callable[[Exception], Any]


class AgentLoop:
    """
    Drives a desktop session: screenshot -> step endpoint -> local actions.

    Each turn captures a screenshot, posts it to the session's step endpoint
    and acts on the returned decision (finished, then ask_user, then
    actions). The loop runs until the agent finishes, the step budget is
    exhausted, an error occurs or stop() is called.

    Callbacks may be plain functions or coroutines. Exceptions raised by
    on_thinking, on_step and on_error are logged and never stop the loop;
    on_ask_user is part of the turn, so its failures are fatal.
    """

    def __init__(
        self,
        client,
        agent_url: str,
        session_id: str,
        capture_screenshot: CaptureScreenshot,
        execute_actions: ExecuteActions,
        on_thinking: Optional[ThinkingCallback] = None,
        on_ask_user: Optional[AskUserCallback] = None,
        on_step: Optional[StepCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        step_delay: float = 0.5,
        max_steps: int = 0,
        raise_on_action_error: bool = False,
    ):
        """
        Initialize agent loop.

        Args:
            client: AgiClient (or anything exposing sessions.step)
            agent_url: Agent URL from the desktop session response
            session_id: Session ID for routing
            capture_screenshot: Returns a base64-encoded screenshot
            execute_actions: Performs a decision's actions on the device
            on_thinking: Receives the agent's reasoning text
            on_ask_user: Answers the agent's questions; required if the agent asks
            on_step: Receives (step number, decision) after every turn
            on_error: Receives loop failures and executor failures
            step_delay: Seconds to wait between turns (0 = no delay)
            max_steps: Maximum number of step calls (0 = unlimited)
            raise_on_action_error: Abort the run when the executor raises
                instead of reporting the failure and continuing
        """
        if client is None:
            raise ValueError("client is required")
        if not agent_url:
            raise ValueError("agent_url is required")
        if not session_id:
            raise ValueError("session_id is required")
        if capture_screenshot is None:
            raise ValueError("capture_screenshot is required")
        if execute_actions is None:
            raise ValueError("execute_actions is required")

        self._client = client
        self._agent_url = agent_url
        self._session_id = session_id
        self._capture_screenshot = capture_screenshot
        self._execute_actions = execute_actions
        self._on_thinking = on_thinking
        self._on_ask_user = on_ask_user
        self._on_step = on_step
        self._on_error = on_error
        self._step_delay = step_delay
        self._max_steps = max_steps
        self._raise_on_action_error = raise_on_action_error

        self._state = LoopState.IDLE
        self._current_step = 0
        self._last_result: Optional[StepResponse] = None
        self._task: Optional[asyncio.Task] = None
        # Set = running freely, cleared = paused
        self._unpaused: Optional[asyncio.Event] = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def current_step(self) -> int:
        return self._current_step

    @property
    def last_result(self) -> Optional[StepResponse]:
        return self._last_result

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._state == LoopState.RUNNING

    @property
    def is_paused(self) -> bool:
        return self._state == LoopState.PAUSED

    @property
    def is_finished(self) -> bool:
        return self._state == LoopState.FINISHED

    async def start(self, message: Optional[str] = None) -> StepResponse:
        """
        Run the loop until the agent finishes.

        Args:
            message: Optional task description sent with the first step

        Returns:
            The final decision (finished=True)

        Raises:
            AgentExecutionError: Step budget exhausted or unanswerable question
            asyncio.CancelledError: stop() was called (state returns to IDLE)
            Exception: Any other failure (state becomes ERROR)
        """
        if self._task is not None and not self._task.done():
            raise RuntimeError("Agent loop is already running")

        self._state = LoopState.RUNNING
        self._current_step = 0
        self._last_result = None
        self._unpaused = asyncio.Event()
        self._unpaused.set()
        log("Loop", f"Starting session={self._session_id}, max_steps={self._max_steps or 'unlimited'}")

        self._task = asyncio.ensure_future(self._run(message))
        return await self._task

    def pause(self):
        """Pause before the next turn. No-op unless running."""
        if self._state != LoopState.RUNNING:
            return
        self._unpaused.clear()
        self._state = LoopState.PAUSED
        log("Loop", f"Pause requested at step {self._current_step}")

    def resume(self):
        """Resume a paused loop. No-op unless paused."""
        if self._state != LoopState.PAUSED:
            return
        self._state = LoopState.RUNNING
        self._unpaused.set()
        log("Loop", "Resumed")

    def stop(self):
        """Cancel the run, releasing a pending pause."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._unpaused is not None:
            self._unpaused.set()

    async def _run(self, message: Optional[str]) -> StepResponse:
        try:
            return await self._loop(message)
        except asyncio.CancelledError:
            self._state = LoopState.IDLE
            log("Loop", f"Stopped at step {self._current_step}")
            raise
        except Exception as e:
            self._state = LoopState.ERROR
            log("Loop", f"Failed at step {self._current_step}: {type(e).__name__}: {e}", force=True)
            await self._notify("Error", self._on_error, e)
            raise

    async def _loop(self, message: Optional[str]) -> StepResponse:
        current_message = message
        user_response: Optional[str] = None

        while True:
            if not self._unpaused.is_set():
                log("Loop", "Paused")
                await self._unpaused.wait()

            if self._max_steps > 0 and self._current_step >= self._max_steps:
                raise AgentExecutionError(
                    f"Max steps ({self._max_steps}) exceeded",
                    session_id=self._session_id,
                    step=self._current_step,
                )

            screenshot = await self._capture_screenshot()

            self._current_step += 1
            log("")  # Blank line between steps
            log("Loop", f"Step {self._current_step}" + (f"/{self._max_steps}" if self._max_steps else ""))
            result = await self._client.sessions.step(
                self._agent_url,
                self._session_id,
                screenshot,
                message=current_message,
                user_response=user_response,
            )
            self._last_result = result

            # message and user_response are sent exactly once
            current_message = None
            user_response = None

            if result.thinking is not None:
                await self._notify("Thinking", self._on_thinking, result.thinking)
            await self._notify("Step", self._on_step, self._current_step, result)

            if result.finished:
                self._state = LoopState.FINISHED
                log("Loop", f"Finished after {self._current_step} steps")
                return result

            if result.ask_user is not None:
                if self._on_ask_user is None:
                    raise AgentExecutionError(
                        f"Agent asked for user input but no on_ask_user handler provided: {result.ask_user}",
                        session_id=self._session_id,
                        step=self._current_step,
                    )
                log("Loop", f"Agent asks: {result.ask_user}")
                answer = self._on_ask_user(result.ask_user)
                if inspect.isawaitable(answer):
                    answer = await answer
                user_response = "" if answer is None else str(answer)
                continue  # Skip actions, answer goes out with the next step

            if result.actions:
                log("Loop", f"Actions: {', '.join(a.to_dict()['type'] for a in result.actions)}")
                try:
                    await self._execute_actions(list(result.actions))
                except Exception as e:
                    if self._raise_on_action_error:
                        raise
                    log("Loop", f"Action execution failed at step {self._current_step}: {e}", force=True)
                    await self._notify("Error", self._on_error, e)

            if self._step_delay > 0:
                await asyncio.sleep(self._step_delay)

    async def _notify(self, name: str, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log("Loop", f"{name} callback error: {e}")
