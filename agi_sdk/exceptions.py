"""Exception hierarchy for the AGI SDK"""

from typing import Dict, List, Optional


class AgiError(Exception):
    """
    Base exception for all SDK errors.

    Carries the HTTP status code and raw response body when the error
    originated from an API response.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_content: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_content = response_content


class AuthenticationError(AgiError):
    """Invalid or missing API key (401)"""

    def __init__(self, message: str = "Invalid or missing API key", response_content: str = None):
        super().__init__(message, 401, response_content)


class PermissionDeniedError(AgiError):
    """Permission denied (403)"""

    def __init__(self, message: str = "Permission denied", response_content: str = None):
        super().__init__(message, 403, response_content)


class NotFoundError(AgiError):
    """Resource not found (404)"""

    def __init__(self, message: str = "Resource not found", response_content: str = None):
        super().__init__(message, 404, response_content)


class RateLimitError(AgiError):
    """
    Rate limit exceeded (429).

    retry_after is the server-supplied wait in seconds, if any.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        response_content: str = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, 429, response_content)
        self.retry_after = retry_after


class ValidationError(AgiError):
    """Request validation failed (422)"""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Dict[str, List[str]]] = None,
        response_content: str = None,
    ):
        super().__init__(message, 422, response_content)
        self.errors = errors or {}


class APIError(AgiError):
    """Server error (5xx) or any other unexpected status"""

    def __init__(self, message: str, status_code: int, response_content: str = None):
        super().__init__(message, status_code, response_content)


class AgentExecutionError(AgiError):
    """
    Raised when an agent run fails.

    Covers step budget exhaustion, questions nobody can answer, fatal
    driver errors and unexpected driver exits. session_id and step locate
    the failure without re-running.
    """

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        step: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.step = step
        self.code = code


class AgiTimeoutError(AgiError):
    """Operation timed out"""

    def __init__(self, message: str = "Operation timed out", timeout: Optional[float] = None):
        if timeout is not None:
            message = f"{message} (timeout: {timeout}s)"
        super().__init__(message)
        self.timeout = timeout


class AgiConnectionError(AgiError):
    """Network-level failure talking to the API"""


class ProtocolError(AgiError):
    """A wire message could not be decoded (unknown or malformed)"""

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line
