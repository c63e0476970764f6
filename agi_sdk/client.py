"""Entry point for the AGI HTTP API"""

import os
from typing import Optional

from .core.models import AgentSessionType
from .core.sessions import SessionContext, SessionsResource
from .exceptions import AuthenticationError
from .utils.http_client import HttpClient

DEFAULT_BASE_URL = "https://api.agi.tech"


class AgiClient:
    """
    Client for the AGI API.

    Usage:
        async with AgiClient() as client:
            async with await client.desktop_session("agi-2-claude") as session:
                loop = session.create_agent_loop(capture, execute)
                await loop.start("Open the calculator")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_retries: int = 3,
    ):
        """
        Initialize the client.

        Args:
            api_key: API key. Falls back to AGI_API_KEY env var.
            base_url: API base URL. Falls back to AGI_BASE_URL, then the public API.
            timeout: Per-request timeout in seconds
            max_retries: Retries for rate-limited, 5xx and connection failures
        """
        api_key = api_key or os.getenv("AGI_API_KEY")
        if not api_key:
            raise AuthenticationError(
                "API key is required. Provide it explicitly or set the AGI_API_KEY environment variable."
            )
        self._http = HttpClient(
            api_key=api_key,
            base_url=base_url or os.getenv("AGI_BASE_URL") or DEFAULT_BASE_URL,
            timeout=timeout,
            max_retries=max_retries,
        )
        self.sessions = SessionsResource(self._http)

    async def session(self, agent_name: str = "agi-0", **options) -> SessionContext:
        """Create a session and wrap it in a SessionContext."""
        session = await self.sessions.create(agent_name, **options)
        return SessionContext(self, session)

    async def desktop_session(self, agent_name: str = "agi-0", **options) -> SessionContext:
        """Create a desktop (client-driven) session; its context can build an AgentLoop."""
        options["agent_session_type"] = AgentSessionType.DESKTOP
        return await self.session(agent_name, **options)

    async def close(self):
        await self._http.close()

    async def __aenter__(self) -> "AgiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
