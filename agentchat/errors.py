"""Error codes surfaced to API clients.

Every error that crosses the HTTP boundary carries a stable code and a
human-readable message. The status code is derived from the code unless the
raiser supplies one. Provider errors always map to 502 and report the
upstream status separately.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CONFLICT = "SESSION_CONFLICT"
    LIMIT_REACHED = "LIMIT_REACHED"
    FREE_LIMIT_EXCEEDED = "FREE_LIMIT_EXCEEDED"
    AI_AGENT_ERROR = "AI_AGENT_ERROR"
    OPENAI_ERROR = "OPENAI_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.AGENT_NOT_FOUND: 404,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_EXPIRED: 410,
    ErrorCode.SESSION_CONFLICT: 409,
    ErrorCode.LIMIT_REACHED: 429,
    ErrorCode.FREE_LIMIT_EXCEEDED: 403,
    ErrorCode.AI_AGENT_ERROR: 502,
    ErrorCode.OPENAI_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


class AgentChatError(Exception):
    """Base exception for errors reported to the client.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code
    """

    def __init__(self, code: ErrorCode, message: str, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.status_code = status_code or ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code.value}


class ValidationError(AgentChatError):
    def __init__(self, message: str = "Invalid request"):
        super().__init__(ErrorCode.VALIDATION_ERROR, message)


class AccessDeniedError(AgentChatError):
    def __init__(self, message: str = "Session access denied"):
        super().__init__(ErrorCode.ACCESS_DENIED, message)


class NotFoundError(AgentChatError):
    def __init__(self, code: ErrorCode = ErrorCode.SESSION_NOT_FOUND, message: str = "AI agent session not found"):
        super().__init__(code, message)


class SessionExpiredError(AgentChatError):
    def __init__(self, message: str = "Session has expired and cannot be reactivated"):
        super().__init__(ErrorCode.SESSION_EXPIRED, message)


class SessionConflictError(AgentChatError):
    def __init__(self, message: str = "Session was modified by another request, retry the message"):
        super().__init__(ErrorCode.SESSION_CONFLICT, message)


class UsageLimitError(AgentChatError):
    pass


class ProviderError(AgentChatError):
    """Failure reported by, or while reaching, the completion provider."""

    def __init__(self, code: ErrorCode, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(code, message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.upstream_status is not None:
            body["upstreamStatus"] = self.upstream_status
        return body


class ConfigurationError(Exception):
    pass
