"""
AgentDriver - runs the agi-driver process and relays its JSON-line protocol.

The driver process owns the agent; this class owns the process. Events are
read from stdout by a dedicated reader task and dispatched to observer
callbacks; commands are written to stdin under a lock and flushed at once.
"""

import asyncio
import inspect
import json
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.actions import DesktopAction
from ..exceptions import AgentExecutionError, AgiTimeoutError, ProtocolError
from ..utils.logger import log, truncate
from .locator import find_binary_path
from .protocol import (
    ActionEvent,
    AnswerCommand,
    AskQuestionEvent,
    AudioTranscriptEvent,
    ConfirmEvent,
    ConfirmResponseCommand,
    DriverCommand,
    DriverEvent,
    DriverState,
    ErrorEvent,
    FinishedEvent,
    GetAudioTranscriptCommand,
    GetVideoFrameCommand,
    MCPServerConfig,
    PauseCommand,
    ReadyEvent,
    ResumeCommand,
    ScreenshotCommand,
    StartCommand,
    StateChangeEvent,
    StopCommand,
    ThinkingEvent,
    VideoFrameEvent,
    parse_event,
    serialize_command,
)

# Screenshots and video frames arrive as single base64 lines
STREAM_LIMIT = 16 * 1024 * 1024

# Non-secret variables passed through when the parent environment is not inherited
SYSTEM_ENV_VARS = ("PATH", "SYSTEMROOT", "HOME", "TMP", "TEMP", "TMPDIR", "LANG")

DEFAULT_SPEECH_VOICE = "alloy"


@dataclass
class DriverOptions:
    """
    Configuration for AgentDriver.

    Attributes:
        binary_path: Path to agi-driver (discovered when None)
        args: Extra arguments for the driver process
        model: Model name sent with the start command
        platform: "desktop" or "browser"
        mode: "" for the legacy SDK-driven mode, "local" or "remote"
        agent_name: Agent to use in remote mode
        api_url: API base URL for remote mode
        environment_type: Remote environment, e.g. "ubuntu-1" or "chrome-1"
        env: Variables given to the process (credentials go here)
        inherit_env: Pass the whole parent environment instead of a small allow-list
        voice: Enable voice input, turn detection and speech output
        camera: Enable the camera feed
        screen: Enable screen recording
        mcp: Load MCP servers from mcp_config
        mcp_config: Path of the MCP server config file
        ready_timeout: Seconds to wait for the ready event
        stop_timeout: Seconds to wait for a graceful exit before killing
    """

    binary_path: Optional[str] = None
    args: List[str] = field(default_factory=list)
    model: str = "claude-sonnet"
    platform: str = "desktop"
    mode: str = ""
    agent_name: Optional[str] = None
    api_url: Optional[str] = None
    environment_type: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    inherit_env: bool = False
    voice: bool = False
    camera: bool = False
    screen: bool = False
    mcp: bool = False
    mcp_config: str = "~/.agi/mcp.json"
    ready_timeout: float = 10.0
    stop_timeout: float = 1.0


@dataclass
class DriverResult:
    """Outcome of a driver run"""

    success: bool
    reason: str
    summary: str
    step: int


def load_mcp_config(path: str) -> Optional[List[MCPServerConfig]]:
    """
    Load MCP servers from a JSON file mapping server name to
    {command, args, env}. A top-level "mcpServers" wrapper is accepted.

    Returns:
        Server list, or None if the file is missing or unreadable
    """
    expanded = os.path.abspath(os.path.expanduser(path))
    if not os.path.isfile(expanded):
        return None
    try:
        with open(expanded, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log("Driver", f"Failed to load MCP config {expanded}: {e}", force=True)
        return None
    if isinstance(data, dict) and isinstance(data.get("mcpServers"), dict):
        data = data["mcpServers"]
    if not isinstance(data, dict):
        log("Driver", f"Ignoring MCP config {expanded}: expected an object", force=True)
        return None

    servers = []
    for name, entry in data.items():
        if not isinstance(entry, dict):
            continue
        try:
            servers.append(MCPServerConfig.from_dict({**entry, "name": name}))
        except ProtocolError as e:
            log("Driver", f"Skipping MCP server {name}: {e}", force=True)
    return servers


def _kill(process: asyncio.subprocess.Process):
    try:
        process.kill()
    except ProcessLookupError:
        pass  # Already exited


class AgentDriver:
    """
    Runs one agent task through the agi-driver process.

    Usage:
        driver = AgentDriver(DriverOptions(env={"ANTHROPIC_API_KEY": key}),
                             on_thinking=print, on_confirm=lambda reason, action: True)
        result = await driver.start("Open the calculator and compute 2+2", mode="local")

    Callbacks may be plain functions or coroutines:
        on_thinking(text)
        on_action(action)
        on_confirm(reason, action) -> bool
        on_ask_question(question) -> str
        on_state_change(state)
        on_event(event)           every decoded event
        on_error(message)         protocol, process and handler failures

    Confirm and ask-question handlers run in their own tasks so events keep
    flowing while they wait. If a handler is missing or fails the driver stays
    in the waiting state until respond_confirm()/respond_answer() is called.
    """

    def __init__(
        self,
        options: Optional[DriverOptions] = None,
        on_thinking: Optional[Callable[[str], Any]] = None,
        on_action: Optional[Callable[[Optional[DesktopAction]], Any]] = None,
        on_confirm: Optional[Callable[[str, Optional[DesktopAction]], Any]] = None,
        on_ask_question: Optional[Callable[[str], Any]] = None,
        on_state_change: Optional[Callable[[DriverState], Any]] = None,
        on_event: Optional[Callable[[DriverEvent], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
    ):
        self._options = options or DriverOptions()
        self._on_thinking = on_thinking
        self._on_action = on_action
        self._on_confirm = on_confirm
        self._on_ask_question = on_ask_question
        self._on_state_change = on_state_change
        self._on_event = on_event
        self._on_error = on_error

        self._state = DriverState.IDLE
        self._step = 0
        self._session_id: Optional[str] = None
        self._driver_version: Optional[str] = None
        self._protocol_version: Optional[str] = None
        self._last_transcript: Optional[str] = None
        self._last_video_frame: Optional[str] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._write_lock: Optional[asyncio.Lock] = None
        self._ready: Optional[asyncio.Future] = None
        self._result: Optional[asyncio.Future] = None
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._closing = False

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def step(self) -> int:
        return self._step

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._state == DriverState.RUNNING

    @property
    def is_waiting(self) -> bool:
        return self._state in (DriverState.WAITING_CONFIRMATION, DriverState.WAITING_ANSWER)

    @property
    def driver_version(self) -> Optional[str]:
        return self._driver_version

    @property
    def protocol_version(self) -> Optional[str]:
        return self._protocol_version

    @property
    def last_transcript(self) -> Optional[str]:
        return self._last_transcript

    @property
    def last_video_frame(self) -> Optional[str]:
        return self._last_video_frame

    async def start(
        self,
        goal: str,
        screenshot: str = "",
        screen_width: int = 0,
        screen_height: int = 0,
        mode: Optional[str] = None,
    ) -> DriverResult:
        """
        Spawn the driver, run the goal and wait for the outcome.

        Args:
            goal: Task for the agent
            screenshot: Initial base64 screenshot (legacy mode only)
            screen_width: Screen width in pixels (legacy mode only)
            screen_height: Screen height in pixels (legacy mode only)
            mode: Overrides DriverOptions.mode for this run

        Returns:
            DriverResult from the finished event, or success=False with
            reason "stopped" when stop() ends the run

        Raises:
            AgiTimeoutError: No ready event within ready_timeout
            AgentExecutionError: Non-recoverable driver error or unexpected exit
        """
        if self._process is not None:
            raise RuntimeError("Driver is already running")

        binary = self._options.binary_path or find_binary_path()
        loop = asyncio.get_running_loop()
        self._session_id = f"session_{uuid.uuid4().hex}"
        self._state = DriverState.IDLE
        self._step = 0
        self._closing = False
        self._write_lock = asyncio.Lock()
        self._ready = loop.create_future()
        self._result = loop.create_future()

        log("Driver", f"Spawning {binary} {' '.join(self._options.args)}".rstrip())
        self._process = await asyncio.create_subprocess_exec(
            binary,
            *self._options.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._build_env(),
            limit=STREAM_LIMIT,
        )
        self._reader_task = asyncio.ensure_future(self._read_loop(self._process))
        self._stderr_task = asyncio.ensure_future(self._drain_stderr(self._process))

        try:
            try:
                ready = await asyncio.wait_for(asyncio.shield(self._ready), self._options.ready_timeout)
            except asyncio.TimeoutError:
                log("Driver", "No ready event, tearing down", force=True)
                await self._set_state(DriverState.ERROR)
                raise AgiTimeoutError(
                    "Driver failed to start: timeout waiting for ready event",
                    self._options.ready_timeout,
                )
            if ready is None or self._closing:
                # stop() during the handshake; it resolves the result
                return await self._result
            self._driver_version = ready.version
            self._protocol_version = ready.protocol
            log("Driver", f"Ready: version={ready.version}, protocol={ready.protocol}")

            await self._set_state(DriverState.RUNNING)
            await self._send(self._build_start_command(goal, screenshot, screen_width, screen_height, mode))
            return await self._result

        except asyncio.CancelledError:
            self._state = DriverState.IDLE
            raise

        finally:
            await self._cleanup()

    async def send_screenshot(self, screenshot: str, screen_width: int = 0, screen_height: int = 0):
        """Send a new screenshot (legacy mode)."""
        if self._process is None:
            raise RuntimeError("Driver is not running")
        await self._send(ScreenshotCommand(data=screenshot, screen_width=screen_width, screen_height=screen_height))

    async def pause(self):
        if self._process is None:
            return
        await self._send(PauseCommand())

    async def resume(self):
        if self._process is None:
            return
        await self._send(ResumeCommand())

    async def stop(self, reason: Optional[str] = None):
        """
        Stop the run: send stop, give the process stop_timeout seconds to
        exit, then kill it. A pending start() returns a "stopped" result.
        """
        process = self._process
        if process is None:
            return

        self._closing = True
        log("Driver", f"Stopping{': ' + reason if reason else ''}")
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)
        try:
            await self._send(StopCommand(reason=reason))
        except (ConnectionError, RuntimeError) as e:
            log("Driver", f"Could not send stop command: {e}")

        try:
            await asyncio.wait_for(process.wait(), self._options.stop_timeout)
        except asyncio.TimeoutError:
            log("Driver", "Driver did not exit in time, killing", force=True)
            _kill(process)

        await self._cleanup()
        await self._set_state(DriverState.STOPPED)
        if self._result is not None and not self._result.done():
            self._result.set_result(DriverResult(success=False, reason="stopped", summary=reason or "", step=self._step))

    async def respond_confirm(self, approved: bool, message: Optional[str] = None):
        """Answer a pending confirmation request."""
        if self._process is None or self._state != DriverState.WAITING_CONFIRMATION:
            raise RuntimeError("Not waiting for confirmation")
        await self._set_state(DriverState.RUNNING)
        await self._send(ConfirmResponseCommand(approved=approved, message=message))

    async def respond_answer(self, text: str, question_id: Optional[str] = None):
        """Answer a pending question."""
        if self._process is None or self._state != DriverState.WAITING_ANSWER:
            raise RuntimeError("Not waiting for answer")
        await self._set_state(DriverState.RUNNING)
        await self._send(AnswerCommand(text=text, question_id=question_id))

    async def request_audio_transcript(
        self, seconds_ago: int = 5, duration: int = 5, timeout: float = 10.0
    ) -> AudioTranscriptEvent:
        """Ask for a transcript of recent audio and wait for it."""
        return await self._request(
            GetAudioTranscriptCommand(seconds_ago=seconds_ago, duration=duration),
            AudioTranscriptEvent.event_name,
            timeout,
        )

    async def request_video_frame(
        self, source: str = "screen", seconds_ago: int = 1, timeout: float = 10.0
    ) -> VideoFrameEvent:
        """Ask for a recent video frame ("screen" or "camera") and wait for it."""
        return await self._request(
            GetVideoFrameCommand(source=source, seconds_ago=seconds_ago),
            VideoFrameEvent.event_name,
            timeout,
        )

    async def __aenter__(self) -> "AgentDriver":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ========================================================================
    # Internals
    # ========================================================================

    def _build_env(self) -> Dict[str, str]:
        if self._options.inherit_env:
            env = dict(os.environ)
        else:
            env = {name: os.environ[name] for name in SYSTEM_ENV_VARS if name in os.environ}
        env.update(self._options.env or {})
        return env

    def _build_start_command(
        self,
        goal: str,
        screenshot: str,
        screen_width: int,
        screen_height: int,
        mode: Optional[str],
    ) -> StartCommand:
        opts = self._options
        voice = True if opts.voice else None
        return StartCommand(
            session_id=self._session_id,
            goal=goal,
            screenshot=screenshot,
            screen_width=screen_width,
            screen_height=screen_height,
            platform=opts.platform,
            model=opts.model,
            mode=(mode if mode is not None else opts.mode) or None,
            agent_name=opts.agent_name,
            api_url=opts.api_url,
            environment_type=opts.environment_type,
            audio_input_enabled=voice,
            turn_detection_enabled=voice,
            speech_output_enabled=voice,
            speech_voice=DEFAULT_SPEECH_VOICE if opts.voice else None,
            camera_enabled=True if opts.camera else None,
            screen_recording_enabled=True if opts.screen else None,
            mcp_servers=load_mcp_config(opts.mcp_config) if opts.mcp else None,
        )

    async def _send(self, command: DriverCommand):
        process = self._process
        if process is None or process.stdin is None:
            raise RuntimeError("Driver is not running")
        line = serialize_command(command)
        log("Driver", f"-> {truncate(line)}")
        async with self._write_lock:
            process.stdin.write(line.encode("utf-8") + b"\n")
            await process.stdin.drain()

    async def _request(self, command: DriverCommand, event_name: str, timeout: float):
        if self._process is None:
            raise RuntimeError("Driver is not running")
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(event_name, []).append(waiter)
        try:
            await self._send(command)
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise AgiTimeoutError(f"No {event_name} event received", timeout)
        finally:
            pending = self._waiters.get(event_name, [])
            if waiter in pending:
                pending.remove(waiter)

    async def _read_loop(self, process: asyncio.subprocess.Process):
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                # Line longer than STREAM_LIMIT; the stream skips past it
                await self._report_error(f"Error reading driver output: {e}")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = parse_event(line)
            except ProtocolError as e:
                log("Driver", f"Skipping malformed line: {truncate(line)}")
                await self._report_error(f"Error parsing event: {e}")
                continue
            log("Driver", f"<- {truncate(line)}")
            await self._handle_event(event)

        await self._handle_exit(process)

    async def _drain_stderr(self, process: asyncio.subprocess.Process):
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            log("Driver", f"stderr: {raw.decode('utf-8', errors='replace').rstrip()}")

    async def _handle_exit(self, process: asyncio.subprocess.Process):
        if self._closing:
            return
        try:
            code = await asyncio.wait_for(process.wait(), self._options.stop_timeout)
        except asyncio.TimeoutError:
            code = None
        message = f"Driver process exited unexpectedly (exit code {code if code is not None else 'unknown'})"
        if self._result is not None and self._result.done():
            return
        log("Driver", message, force=True)
        await self._set_state(DriverState.ERROR)
        await self._report_error(message)
        await self._fail(AgentExecutionError(message, session_id=self._session_id, step=self._step))

    async def _handle_event(self, event: DriverEvent):
        if event.step:
            self._step = event.step
        await self._notify("Event", self._on_event, event)

        if isinstance(event, ReadyEvent):
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(event)

        elif isinstance(event, StateChangeEvent):
            await self._set_state(event.get_state())

        elif isinstance(event, ThinkingEvent):
            await self._notify("Thinking", self._on_thinking, event.text)

        elif isinstance(event, ActionEvent):
            await self._notify("Action", self._on_action, event.action)

        elif isinstance(event, ConfirmEvent):
            await self._set_state(DriverState.WAITING_CONFIRMATION)
            if self._on_confirm is not None:
                self._spawn_handler(self._auto_confirm(event))

        elif isinstance(event, AskQuestionEvent):
            await self._set_state(DriverState.WAITING_ANSWER)
            if self._on_ask_question is not None:
                self._spawn_handler(self._auto_answer(event))

        elif isinstance(event, FinishedEvent):
            await self._set_state(DriverState.FINISHED)
            log("Driver", f"Finished: success={event.success}, reason={event.reason}")
            if self._result is not None and not self._result.done():
                self._result.set_result(
                    DriverResult(success=event.success, reason=event.reason, summary=event.summary, step=self._step)
                )

        elif isinstance(event, ErrorEvent):
            message = f"{event.code}: {event.message}"
            await self._report_error(message)
            if not event.recoverable:
                log("Driver", f"Fatal driver error: {message}", force=True)
                await self._set_state(DriverState.ERROR)
                await self._fail(
                    AgentExecutionError(message, session_id=self._session_id, step=self._step, code=event.code)
                )

        elif isinstance(event, AudioTranscriptEvent):
            self._last_transcript = event.transcript
            self._resolve_waiters(event)

        elif isinstance(event, VideoFrameEvent):
            self._last_video_frame = event.frame_base64
            self._resolve_waiters(event)

        # screenshot_captured, session_created and speech/turn telemetry are on_event only

    async def _auto_confirm(self, event: ConfirmEvent):
        try:
            approved = self._on_confirm(event.reason, event.action)
            if inspect.isawaitable(approved):
                approved = await approved
            await self.respond_confirm(bool(approved))
        except Exception as e:
            log("Driver", f"Confirm handler failed, waiting for manual response: {e}", force=True)
            await self._report_error(f"Confirm handler failed: {e}")

    async def _auto_answer(self, event: AskQuestionEvent):
        try:
            answer = self._on_ask_question(event.question)
            if inspect.isawaitable(answer):
                answer = await answer
            await self.respond_answer("" if answer is None else str(answer), event.question_id)
        except Exception as e:
            log("Driver", f"Question handler failed, waiting for manual response: {e}", force=True)
            await self._report_error(f"Question handler failed: {e}")

    def _spawn_handler(self, coro):
        task = asyncio.ensure_future(coro)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    def _resolve_waiters(self, event: DriverEvent):
        for waiter in self._waiters.pop(event.event_name, []):
            if not waiter.done():
                waiter.set_result(event)

    async def _fail(self, error: Exception):
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
        elif self._result is not None and not self._result.done():
            self._result.set_exception(error)

    async def _set_state(self, state: DriverState):
        if state == self._state:
            return
        log("Driver", f"State: {self._state.value} -> {state.value}")
        self._state = state
        await self._notify("State change", self._on_state_change, state)

    async def _report_error(self, message: str):
        await self._notify("Error", self._on_error, message)

    async def _notify(self, name: str, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log("Driver", f"{name} callback error: {e}")

    async def _cleanup(self):
        """Release the process, its pipes and every task. Safe to call twice."""
        process = self._process
        if process is None:
            return
        self._process = None
        self._closing = True

        current = asyncio.current_task()
        for task in list(self._handler_tasks):
            if task is not current:
                task.cancel()
        self._handler_tasks.clear()

        for waiters in self._waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        self._waiters.clear()

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), self._options.stop_timeout)
            except asyncio.TimeoutError:
                _kill(process)
                await process.wait()

        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None and t is not current]
        self._reader_task = None
        self._stderr_task = None
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log("Driver", f"Cleaned up (exit code {process.returncode})")
