"""Session resource and per-session context for the AGI API"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, TYPE_CHECKING

from ..exceptions import AgentExecutionError, AgiError, AgiTimeoutError, ProtocolError
from ..utils.logger import log
from .agent_loop import AgentLoop
from .executor import CaptureScreenshot, ExecuteActions
from .models import (
    AgentSessionType,
    DeleteResponse,
    ExecuteStatusResponse,
    MessageResponse,
    MessagesResponse,
    MessageType,
    ModelInfo,
    SaveSnapshotMode,
    Screenshot,
    SendMessageResponse,
    SessionResponse,
    SessionStatus,
    SSEEvent,
    StepRequest,
    StepResponse,
    TaskMetadata,
    TaskResult,
)

if TYPE_CHECKING:
    from ..utils.http_client import HttpClient


def _query(**values) -> Optional[Dict[str, str]]:
    """Drop unset values and stringify the rest (aiohttp rejects bools)."""
    query = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, bool):
            query[key] = "true" if value else "false"
        elif hasattr(value, "value"):
            query[key] = str(value.value)
        else:
            query[key] = str(value)
    return query or None


class SessionsResource:
    """All session endpoints of the API"""

    def __init__(self, http: "HttpClient"):
        self._http = http

    # Session management

    async def create(
        self,
        agent_name: str = "agi-0",
        max_steps: Optional[int] = None,
        webhook_url: Optional[str] = None,
        goal: Optional[str] = None,
        agent_session_type: Optional[AgentSessionType] = None,
        restore_from_environment_id: Optional[str] = None,
        cdp_ws_url: Optional[str] = None,
        model: Optional[str] = None,
        environment_type: Optional[str] = None,
    ) -> SessionResponse:
        """
        Create a new session.

        Args:
            agent_name: Agent to run (e.g., "agi-0")
            max_steps: Server-side step limit
            webhook_url: URL notified on session events
            goal: Task description stored with the session
            agent_session_type: desktop sessions get an agent_url for the step loop
            restore_from_environment_id: Snapshot to restore
            cdp_ws_url: External browser websocket (external-cdp sessions)
            model: Model override
            environment_type: Remote environment image
        """
        body: Dict[str, Any] = {"agent_name": agent_name}
        optional = {
            "max_steps": max_steps,
            "webhook_url": webhook_url,
            "goal": goal,
            "agent_session_type": agent_session_type.value if agent_session_type else None,
            "restore_from_environment_id": restore_from_environment_id,
            "cdp_ws_url": cdp_ws_url,
            "model": model,
            "environment_type": environment_type,
        }
        body.update({k: v for k, v in optional.items() if v is not None})

        data = await self._http.request("POST", "/v1/sessions", json_body=body)
        return SessionResponse.from_dict(data)

    async def list(self) -> List[SessionResponse]:
        data = await self._http.request("GET", "/v1/sessions")
        return [SessionResponse.from_dict(s) for s in (data or {}).get("sessions") or []]

    async def get(self, session_id: str) -> SessionResponse:
        data = await self._http.request("GET", f"/v1/sessions/{session_id}")
        return SessionResponse.from_dict(data)

    async def delete(
        self,
        session_id: str,
        save_snapshot_mode: Optional[SaveSnapshotMode] = None,
    ) -> DeleteResponse:
        data = await self._http.request(
            "DELETE",
            f"/v1/sessions/{session_id}",
            params=_query(save_snapshot_mode=save_snapshot_mode),
        )
        return DeleteResponse.from_dict(data or {})

    async def delete_all(self) -> DeleteResponse:
        data = await self._http.request("DELETE", "/v1/sessions")
        return DeleteResponse.from_dict(data or {})

    # Agent interaction

    async def send_message(
        self,
        session_id: str,
        message: str,
        start_url: Optional[str] = None,
        context: Optional[str] = None,
    ) -> SendMessageResponse:
        body: Dict[str, Any] = {"message": message}
        if start_url is not None:
            body["start_url"] = start_url
        if context is not None:
            body["context"] = context
        data = await self._http.request("POST", f"/v1/sessions/{session_id}/message", json_body=body)
        return SendMessageResponse.from_dict(data or {})

    async def get_status(self, session_id: str) -> ExecuteStatusResponse:
        data = await self._http.request("GET", f"/v1/sessions/{session_id}/status")
        return ExecuteStatusResponse.from_dict(data or {})

    async def get_messages(
        self,
        session_id: str,
        after_id: Optional[int] = None,
        sanitize: Optional[bool] = None,
    ) -> MessagesResponse:
        data = await self._http.request(
            "GET",
            f"/v1/sessions/{session_id}/messages",
            params=_query(after_id=after_id, sanitize=sanitize),
        )
        return MessagesResponse.from_dict(data or {})

    def stream_events(self, session_id: str, after_id: Optional[str] = None) -> AsyncIterator[SSEEvent]:
        """Live event stream; iteration ends after a done or error event."""
        return self._http.stream_events(
            f"/v1/sessions/{session_id}/events",
            params=_query(after_id=after_id),
        )

    # Session control

    async def pause(self, session_id: str) -> ExecuteStatusResponse:
        data = await self._http.request("POST", f"/v1/sessions/{session_id}/pause")
        return ExecuteStatusResponse.from_dict(data or {})

    async def resume(self, session_id: str) -> ExecuteStatusResponse:
        data = await self._http.request("POST", f"/v1/sessions/{session_id}/resume")
        return ExecuteStatusResponse.from_dict(data or {})

    async def cancel(self, session_id: str) -> ExecuteStatusResponse:
        data = await self._http.request("POST", f"/v1/sessions/{session_id}/cancel")
        return ExecuteStatusResponse.from_dict(data or {})

    # Browser control

    async def navigate(self, session_id: str, url: str):
        await self._http.request("POST", f"/v1/sessions/{session_id}/navigate", json_body={"url": url})

    async def screenshot(self, session_id: str) -> Screenshot:
        data = await self._http.request("GET", f"/v1/sessions/{session_id}/screenshot")
        return Screenshot.from_dict(data or {})

    # Desktop mode

    async def step(
        self,
        agent_url: str,
        session_id: str,
        screenshot: str,
        message: Optional[str] = None,
        user_response: Optional[str] = None,
    ) -> StepResponse:
        """
        Execute one desktop-mode turn.

        Args:
            agent_url: Agent URL from the session response
            session_id: Session ID for routing
            screenshot: Base64-encoded screenshot
            message: Optional message (typically only on the first step)
            user_response: Answer to the agent's previous question

        Returns:
            The agent's decision for this turn
        """
        request = StepRequest(
            screenshot=screenshot,
            session_id=session_id,
            message=message,
            user_response=user_response,
        )
        data = await self._http.request_url(
            "POST",
            f"{agent_url.rstrip('/')}/step_desktop",
            json_body=request.to_dict(),
        )
        if not isinstance(data, dict):
            raise ProtocolError(
                f"Step endpoint for session {session_id} returned {type(data).__name__}, expected a JSON object",
                data if isinstance(data, str) else None,
            )
        return StepResponse.from_dict(data)

    async def list_models(self, filter: Optional[str] = None) -> List[ModelInfo]:
        data = await self._http.request("GET", "/v1/models", params=_query(filter=filter))
        return [ModelInfo.from_dict(m) for m in (data or {}).get("models") or []]


# Type for status callback: (status: SessionStatus) -> None
StatusCallback = Callable[[SessionStatus], Any]
# Type for message callback: (message: MessageResponse) -> None
MessageCallback = Callable[[MessageResponse], Any]


class SessionContext:
    """
    One live session, bound to the client that created it.

    Use as an async context manager so the session is deleted on exit:

        async with await client.session("agi-0") as session:
            result = await session.run_task("Find the cheapest flight")
    """

    def __init__(self, client, session: SessionResponse):
        self._client = client
        self._session = session
        self._closed = False

    @property
    def session(self) -> SessionResponse:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def agent_url(self) -> Optional[str]:
        return self._session.agent_url

    @property
    def vnc_url(self) -> Optional[str]:
        return self._session.vnc_url

    @property
    def agent_name(self) -> str:
        return self._session.agent_name

    @property
    def status(self) -> Optional[SessionStatus]:
        return self._session.status

    @property
    def environment_id(self) -> Optional[str]:
        return self._session.environment_id

    async def run_task(
        self,
        task: str,
        start_url: Optional[str] = None,
        context: Optional[str] = None,
        poll_interval: float = 3.0,
        timeout: float = 600.0,
        on_status_change: Optional[StatusCallback] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> TaskResult:
        """
        Send a task and poll until the session finishes.

        Args:
            task: Task description sent as the first message
            start_url: Page the agent starts on
            context: Extra context for the agent
            poll_interval: Seconds between status polls
            timeout: Overall limit in seconds
            on_status_change: Called when the session status changes
            on_message: Called for every new message

        Returns:
            TaskResult whose data is the content of the last DONE message

        Raises:
            AgentExecutionError: If the agent stops to wait for user input
            AgiTimeoutError: If the session does not finish within timeout
        """
        start_time = time.monotonic()
        messages: List[MessageResponse] = []
        last_message_id = 0
        last_status = SessionStatus.READY

        await self.send_message(task, start_url=start_url, context=context)
        log("Session", f"Task sent to {self.session_id}")

        try:
            return await asyncio.wait_for(
                self._poll_until_done(
                    start_time, messages, last_message_id, last_status,
                    poll_interval, on_status_change, on_message,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise AgiTimeoutError("Task timed out", timeout)

    async def _poll_until_done(
        self,
        start_time: float,
        messages: List[MessageResponse],
        last_message_id: int,
        last_status: SessionStatus,
        poll_interval: float,
        on_status_change: Optional[StatusCallback],
        on_message: Optional[MessageCallback],
    ) -> TaskResult:
        while True:
            status = (await self.get_status()).status
            if status != last_status:
                last_status = status
                log("Session", f"Status: {status.value if status else 'unknown'}")
                if on_status_change:
                    on_status_change(status)

            response = await self.get_messages(after_id=last_message_id)
            for msg in response.messages:
                if msg.id > last_message_id:
                    last_message_id = msg.id
                    messages.append(msg)
                    if on_message:
                        on_message(msg)

            if status in (SessionStatus.FINISHED, SessionStatus.ERROR):
                done = [m for m in messages if m.type == MessageType.DONE]
                return TaskResult(
                    data=done[-1].content if done else None,
                    metadata=TaskMetadata(
                        session_id=self.session_id,
                        duration=time.monotonic() - start_time,
                        steps=sum(1 for m in messages if m.type == MessageType.THOUGHT),
                        success=status == SessionStatus.FINISHED,
                        timestamp=datetime.now(timezone.utc),
                        messages=messages,
                    ),
                )

            if status == SessionStatus.WAITING_FOR_INPUT:
                questions = [m for m in messages if m.type == MessageType.QUESTION]
                question = questions[-1].content_as_string() if questions else None
                raise AgentExecutionError(
                    f"Agent is waiting for input: {question or 'Unknown question'}",
                    session_id=self.session_id,
                )

            await asyncio.sleep(poll_interval)

    def create_agent_loop(
        self,
        capture_screenshot: CaptureScreenshot,
        execute_actions: ExecuteActions,
        **options,
    ) -> AgentLoop:
        """
        Build a desktop step loop for this session.

        Extra keyword arguments are passed to AgentLoop (callbacks,
        step_delay, max_steps, ...).
        """
        if not self.agent_url:
            raise AgiError(
                "Session does not have an agent URL. "
                "Make sure the session was created with AgentSessionType.DESKTOP"
            )
        return AgentLoop(
            client=self._client,
            agent_url=self.agent_url,
            session_id=self.session_id,
            capture_screenshot=capture_screenshot,
            execute_actions=execute_actions,
            **options,
        )

    # Wrapped SessionsResource methods

    async def send_message(self, message: str, start_url: str = None, context: str = None) -> SendMessageResponse:
        return await self._client.sessions.send_message(self.session_id, message, start_url=start_url, context=context)

    async def get_status(self) -> ExecuteStatusResponse:
        return await self._client.sessions.get_status(self.session_id)

    async def get_messages(self, after_id: int = None, sanitize: bool = None) -> MessagesResponse:
        return await self._client.sessions.get_messages(self.session_id, after_id=after_id, sanitize=sanitize)

    def stream_events(self, after_id: str = None) -> AsyncIterator[SSEEvent]:
        return self._client.sessions.stream_events(self.session_id, after_id=after_id)

    async def pause(self) -> ExecuteStatusResponse:
        return await self._client.sessions.pause(self.session_id)

    async def resume(self) -> ExecuteStatusResponse:
        return await self._client.sessions.resume(self.session_id)

    async def cancel(self) -> ExecuteStatusResponse:
        return await self._client.sessions.cancel(self.session_id)

    async def navigate(self, url: str):
        await self._client.sessions.navigate(self.session_id, url)

    async def screenshot(self) -> Screenshot:
        return await self._client.sessions.screenshot(self.session_id)

    async def close(self):
        """Delete the session; failures are logged, not raised."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.sessions.delete(self.session_id)
        except AgiError as e:
            log("Session", f"Failed to delete session {self.session_id}: {e}", force=True)

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
