"""aiohttp transport for the AGI API with retry and server-sent event support"""

import asyncio
import json
import random
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Mapping, Optional

import aiohttp

from ..core.models import EventType, SSEEvent
from ..exceptions import (
    AgiConnectionError,
    AgiError,
    AgiTimeoutError,
    APIError,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationError,
)
from .logger import log

USER_AGENT = "agi-python/0.1.0"


class HttpClient:
    """
    Thin aiohttp wrapper used by every API resource.

    Features:
    - Bearer authentication and JSON bodies
    - Exponential backoff retry (with jitter) for 429/5xx and connection errors
    - Retry-After header honoured when the server provides one
    - Server-sent event streaming
    """

    # Recoverable error status codes
    RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

    # Retry configuration
    BASE_DELAY = 1.0  # seconds, doubled each attempt
    MAX_JITTER = 0.5  # seconds
    MAX_DELAY = 30.0  # seconds

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 60.0,
        max_retries: int = 3,
    ):
        """
        Initialize HTTP client.

        Args:
            api_key: API key sent as a bearer token
            base_url: API base URL, e.g. "https://api.agi.tech"
            timeout: Total per-request timeout in seconds
            max_retries: Retries after the first attempt for recoverable errors
        """
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily so the session binds to the running event loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make a request to a path under the API base URL."""
        return await self.request_url(method, f"{self._base_url}{path}", json_body=json_body, params=params)

    async def request_url(
        self,
        method: str,
        url: str,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Make a request to an absolute URL.

        Args:
            method: HTTP method
            url: Absolute URL (agent step endpoints live outside the API base)
            json_body: Object serialized as the JSON request body
            params: Query parameters

        Returns:
            Decoded JSON response, the raw text if the body is not JSON,
            or None for an empty body

        Raises:
            AgiError subclass matching the failure
        """
        session = self._get_session()
        last_error: Optional[AgiError] = None

        for attempt in range(self._max_retries + 1):
            delay = None
            try:
                async with session.request(method, url, json=json_body, params=params) as resp:
                    content = await resp.text()
                    if resp.status < 400:
                        return _decode_body(content)

                    error = create_error(resp.status, content, resp.headers)
                    if resp.status not in self.RETRY_STATUS_CODES or attempt >= self._max_retries:
                        raise error
                    last_error = error
                    delay = self._retry_delay(attempt, parse_retry_after(resp.headers))
                    log("HTTP", f"{method} {url} -> {resp.status}, attempt {attempt + 1}/{self._max_retries + 1}")

            except asyncio.TimeoutError:
                raise AgiTimeoutError("Request timed out", self._timeout)

            except aiohttp.ClientError as e:
                last_error = AgiConnectionError(f"Connection error: {e}")
                if attempt >= self._max_retries:
                    raise last_error from e
                delay = self._retry_delay(attempt, None)
                log("HTTP", f"Connection error, attempt {attempt + 1}/{self._max_retries + 1}: {e}")

            await asyncio.sleep(delay)

        # All retries exhausted
        raise last_error or AgiError("Request failed after all retries")

    async def stream_events(
        self,
        path: str,
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[SSEEvent]:
        """
        Stream server-sent events from a path under the API base URL.

        Stops after a done or error event without waiting for the
        connection to close.
        """
        session = self._get_session()
        # Streams stay open for the whole session; only bound the connect phase
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout)
        try:
            async with session.get(
                f"{self._base_url}{path}",
                params=params,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as resp:
                if resp.status >= 400:
                    content = await resp.text()
                    raise create_error(resp.status, content, resp.headers)
                async for event in parse_sse_lines(_iter_lines(resp.content)):
                    yield event
        except aiohttp.ClientError as e:
            raise AgiConnectionError(f"Connection error: {e}") from e

    def _retry_delay(self, attempt: int, retry_after: Optional[float]) -> float:
        """Server hint if present, else exponential backoff with jitter"""
        if retry_after is not None:
            return retry_after
        return min(
            self.BASE_DELAY * (2 ** attempt) + random.uniform(0, self.MAX_JITTER),
            self.MAX_DELAY,
        )


def _decode_body(content: str) -> Any:
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except ValueError:
        return content


async def _iter_lines(stream: aiohttp.StreamReader) -> AsyncIterator[str]:
    async for raw in stream:
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def parse_sse_lines(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """
    Turn text/event-stream lines into SSEEvent objects.

    A blank line dispatches the pending event. Unknown event types are
    skipped; data that is not JSON is passed through as a string. The
    generator returns right after a terminal (done/error) event.
    """
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    data_lines: List[str] = []

    async for line in lines:
        if line == "":
            if event_type is not None and data_lines:
                event = _build_sse_event(event_id, event_type, "\n".join(data_lines))
                if event is not None:
                    yield event
                    if event.is_terminal:
                        return
            event_id = None
            event_type = None
            data_lines = []
            continue

        if line.startswith(":"):
            continue  # comment / keep-alive
        if line.startswith("id:"):
            event_id = line[3:].strip()
        elif line.startswith("event:"):
            event_type = line[6:].strip()
        elif line.startswith("data:"):
            value = line[5:]
            data_lines.append(value[1:] if value.startswith(" ") else value)


def _build_sse_event(event_id: Optional[str], event_type: str, data: str) -> Optional[SSEEvent]:
    try:
        kind = EventType(event_type.lower())
    except ValueError:
        log("HTTP", f"Skipping unknown SSE event type: {event_type}")
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        payload = data
    return SSEEvent(event=kind, data=payload, id=event_id)


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    value = headers.get("Retry-After") if headers is not None else None
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(seconds, 0.0)


def create_error(status: int, content: str, headers: Optional[Mapping[str, str]] = None) -> AgiError:
    """
    Map an error response to the matching exception.

    Args:
        status: HTTP status code
        content: Raw response body
        headers: Response headers (for Retry-After)
    """
    message = _extract_error_message(content) or f"Request failed with status {status}"

    if status == 401:
        return AuthenticationError(message, content)
    if status == 403:
        return PermissionDeniedError(message, content)
    if status == 404:
        return NotFoundError(message, content)
    if status == 429:
        return RateLimitError(message, content, retry_after=parse_retry_after(headers))
    if status == 422:
        return ValidationError(message, _extract_validation_errors(content), content)
    return APIError(message, status, content)


def _load_object(content: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract_error_message(content: str) -> Optional[str]:
    doc = _load_object(content)
    if doc is None:
        return None
    error = doc.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(doc.get("message"), str):
        return doc["message"]
    if isinstance(doc.get("detail"), str):
        return doc["detail"]
    return None


def _extract_validation_errors(content: str) -> Dict[str, List[str]]:
    doc = _load_object(content)
    if doc is None:
        return {}
    errors = doc.get("errors")
    if not isinstance(errors, dict):
        errors = doc.get("detail")
    if not isinstance(errors, dict):
        return {}

    result: Dict[str, List[str]] = {}
    for name, value in errors.items():
        if isinstance(value, list):
            result[name] = [str(v) for v in value]
        else:
            result[name] = [str(value)]
    return result
