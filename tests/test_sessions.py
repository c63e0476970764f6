"""
Test the sessions resource, session context and client against a fake API.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agi_sdk.client import AgiClient
from agi_sdk.core.agent_loop import AgentLoop
from agi_sdk.core.models import (
    AgentSessionType,
    ExecuteStatusResponse,
    MessageResponse,
    MessagesResponse,
    MessageType,
    SaveSnapshotMode,
    SendMessageResponse,
    SessionResponse,
    SessionStatus,
)
from agi_sdk.core.sessions import SessionContext
from agi_sdk.exceptions import AgentExecutionError, AgiError, AgiTimeoutError, AuthenticationError, ProtocolError


class FakeApi:
    """Minimal in-memory AGI API."""

    def __init__(self):
        self.requests = []
        self.statuses = ["running", "finished"]
        self.messages = [
            {"id": 1, "type": "THOUGHT", "content": "Searching"},
            {"id": 2, "type": "DONE", "content": {"answer": "Tokyo"}},
        ]

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/sessions", self.create)
        app.router.add_delete("/v1/sessions/{sid}", self.delete)
        app.router.add_post("/v1/sessions/{sid}/message", self.message)
        app.router.add_get("/v1/sessions/{sid}/status", self.status)
        app.router.add_get("/v1/sessions/{sid}/messages", self.get_messages)
        app.router.add_post("/agent/{sid}/step_desktop", self.step)
        app.router.add_get("/v1/models", self.models)
        return app

    async def create(self, request):
        body = await request.json()
        self.requests.append(("create", body))
        sid = "sess_1"
        data = {"session_id": sid, "agent_name": body["agent_name"], "status": "ready"}
        if body.get("agent_session_type") == "desktop":
            data["agent_url"] = str(request.url.with_path(f"/agent/{sid}"))
        return web.json_response(data)

    async def delete(self, request):
        self.requests.append(("delete", dict(request.query)))
        return web.json_response({"success": True, "message": "deleted"})

    async def message(self, request):
        self.requests.append(("message", await request.json()))
        return web.json_response({"success": True})

    async def status(self, request):
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return web.json_response({"status": status})

    async def get_messages(self, request):
        after_id = int(request.query.get("after_id", "0"))
        self.requests.append(("messages", after_id))
        return web.json_response({"messages": [m for m in self.messages if m["id"] > after_id], "status": "running"})

    async def step(self, request):
        body = await request.json()
        self.requests.append(("step", body))
        return web.json_response({"actions": [], "finished": True, "step": 1})

    async def models(self, request):
        assert request.query.get("filter") == "desktop"
        return web.json_response({"models": [{"id": "agi-2-claude", "name": "AGI 2"}]})


async def with_api(api: FakeApi, fn):
    server = TestServer(api.app())
    await server.start_server()
    client = AgiClient(api_key="test-key", base_url=str(server.make_url("")))
    try:
        return await fn(client)
    finally:
        await client.close()
        await server.close()


class TestClient:
    def test_api_key_required(self, monkeypatch):
        monkeypatch.delenv("AGI_API_KEY", raising=False)
        with pytest.raises(AuthenticationError):
            AgiClient()

    def test_env_fallbacks(self, monkeypatch):
        monkeypatch.setenv("AGI_API_KEY", "from-env")
        monkeypatch.setenv("AGI_BASE_URL", "https://staging.example/")
        client = AgiClient()
        assert client._http.base_url == "https://staging.example"

    def test_default_base_url(self, monkeypatch):
        monkeypatch.delenv("AGI_BASE_URL", raising=False)
        assert AgiClient(api_key="k")._http.base_url == "https://api.agi.tech"


class TestSessionsResource:
    """Test endpoint wiring against the fake API."""

    def test_create_omits_unset_fields(self):
        api = FakeApi()

        async def fn(client):
            return await client.sessions.create("agi-0", max_steps=50)

        session = asyncio.run(with_api(api, fn))
        assert session.session_id == "sess_1"
        assert session.status == SessionStatus.READY
        assert api.requests[0] == ("create", {"agent_name": "agi-0", "max_steps": 50})

    def test_delete_with_snapshot_mode(self):
        api = FakeApi()

        async def fn(client):
            return await client.sessions.delete("sess_1", save_snapshot_mode=SaveSnapshotMode.AUTO)

        response = asyncio.run(with_api(api, fn))
        assert response.success is True
        assert api.requests[0] == ("delete", {"save_snapshot_mode": "auto"})

    def test_list_models(self):
        async def fn(client):
            return await client.sessions.list_models(filter="desktop")

        models = asyncio.run(with_api(FakeApi(), fn))
        assert [m.id for m in models] == ["agi-2-claude"]

    def test_desktop_session_step(self):
        api = FakeApi()

        async def fn(client):
            async with await client.desktop_session("agi-2-claude") as session:
                assert session.agent_url.endswith("/agent/sess_1")
                return await client.sessions.step(session.agent_url, session.session_id, "c2NyZWVu", message="open calc")

        result = asyncio.run(with_api(api, fn))
        assert result.finished is True
        create = api.requests[0]
        assert create[1]["agent_session_type"] == "desktop"
        step = next(body for kind, body in api.requests if kind == "step")
        assert step == {"screenshot": "c2NyZWVu", "session_id": "sess_1", "message": "open calc"}
        assert api.requests[-1][0] == "delete"

    def test_step_non_json_body(self):
        class HtmlStepApi(FakeApi):
            async def step(self, request):
                return web.Response(text="<html>maintenance</html>", content_type="text/html")

        async def fn(client):
            return await client.sessions.step(client._http.base_url + "/agent/sess_9", "sess_9", "c2NyZWVu")

        with pytest.raises(ProtocolError) as exc_info:
            asyncio.run(with_api(HtmlStepApi(), fn))
        assert "sess_9" in str(exc_info.value)
        assert exc_info.value.line == "<html>maintenance</html>"


class TestSessionContext:
    """Test run_task polling and the agent loop factory."""

    def test_run_task(self):
        api = FakeApi()
        statuses = []
        seen = []

        async def fn(client):
            async with await client.session() as session:
                return await session.run_task(
                    "Find the capital of Japan",
                    start_url="https://wikipedia.org",
                    poll_interval=0.01,
                    on_status_change=statuses.append,
                    on_message=seen.append,
                )

        result = asyncio.run(with_api(api, fn))

        assert result.data == {"answer": "Tokyo"}
        assert result.metadata.success is True
        assert result.metadata.steps == 1
        assert result.metadata.session_id == "sess_1"
        assert [m.id for m in seen] == [1, 2]
        assert statuses == [SessionStatus.RUNNING, SessionStatus.FINISHED]
        assert ("message", {"message": "Find the capital of Japan", "start_url": "https://wikipedia.org"}) in api.requests

    def _context(self, statuses, messages):
        client = MagicMock()
        client.sessions.send_message = AsyncMock(return_value=SendMessageResponse(success=True))
        client.sessions.get_status = AsyncMock(side_effect=[ExecuteStatusResponse(s) for s in statuses])
        client.sessions.get_messages = AsyncMock(return_value=MessagesResponse(messages=messages))
        return SessionContext(client, SessionResponse(session_id="sess_2"))

    def test_waiting_for_input_raises(self):
        question = MessageResponse(id=4, type=MessageType.QUESTION, content="Which airport?")
        session = self._context([SessionStatus.RUNNING, SessionStatus.WAITING_FOR_INPUT], [question])

        with pytest.raises(AgentExecutionError) as exc_info:
            asyncio.run(session.run_task("Book a flight", poll_interval=0.01))

        assert "Which airport?" in str(exc_info.value)
        assert exc_info.value.session_id == "sess_2"

    def test_timeout(self):
        session = self._context([SessionStatus.RUNNING] * 1000, [])
        with pytest.raises(AgiTimeoutError):
            asyncio.run(session.run_task("Never ends", poll_interval=0.01, timeout=0.1))

    def test_failed_session(self):
        error = MessageResponse(id=1, type=MessageType.ERROR, content="crashed")
        session = self._context([SessionStatus.ERROR], [error])
        result = asyncio.run(session.run_task("Try", poll_interval=0.01))
        assert result.metadata.success is False
        assert result.data is None

    def test_create_agent_loop(self):
        session = SessionContext(MagicMock(), SessionResponse(session_id="s", agent_url="https://agent/s"))
        loop = session.create_agent_loop(AsyncMock(), AsyncMock(), max_steps=5)
        assert isinstance(loop, AgentLoop)
        assert loop.session_id == "s"

    def test_create_agent_loop_requires_agent_url(self):
        session = SessionContext(MagicMock(), SessionResponse(session_id="s"))
        with pytest.raises(AgiError):
            session.create_agent_loop(AsyncMock(), AsyncMock())
