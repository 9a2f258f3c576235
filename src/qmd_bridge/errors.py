"""Error taxonomy surfaced by the registry, gateway and auth boundary.

Every error carries a stable ``code`` and a fixed, human-readable ``message``.
The exception text itself may hold internal detail (paths, stderr) for the
logs; callers that answer a client must only use :meth:`BridgeError.to_payload`.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all typed bridge failures."""

    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# Gateway


class InvalidCommand(BridgeError):
    code = "INVALID_COMMAND"
    message = "Command not in allowed list"


class InvalidRequest(BridgeError):
    code = "INVALID_REQUEST"
    message = "Invalid request"


class QueryTooLong(InvalidRequest):
    code = "QUERY_TOO_LONG"
    message = "Query exceeds maximum length"


class TooManyRequests(BridgeError):
    code = "TOO_MANY_REQUESTS"
    message = "Max concurrent executions reached"


class ExecutionTimeout(BridgeError):
    code = "EXECUTION_TIMEOUT"
    message = "qmd execution timed out"


class ExecutionFailed(BridgeError):
    code = "EXECUTION_FAILED"
    message = "qmd execution failed"


# Registry


class NotFound(BridgeError):
    code = "NOT_FOUND"
    message = "Tenant not found"


class AlreadyExists(BridgeError):
    code = "ALREADY_EXISTS"
    message = "Tenant already exists"


class InvalidPath(BridgeError):
    """Tenant path rejected; ``reason`` tells which check failed."""

    code = "INVALID_PATH"
    message = "Invalid tenant path"

    REASON_MESSAGES = {
        "not_absolute": "Path must be an absolute path.",
        "dangerous": "Cannot use root directory or home directory as tenant path.",
        "missing": "Path does not exist.",
        "not_a_directory": "Path must be a directory.",
    }

    def __init__(self, reason: str, detail: str | None = None) -> None:
        if reason not in self.REASON_MESSAGES:
            raise ValueError(f"Unknown path rejection reason: {reason}")
        super().__init__(detail or self.REASON_MESSAGES[reason])
        self.reason = reason

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.REASON_MESSAGES[self.reason], "reason": self.reason}


# Auth / scheduler boundary


class Unauthorized(BridgeError):
    code = "INVALID_TOKEN"
    message = "Invalid or missing authentication token"


class IndexInProgress(BridgeError):
    code = "INDEX_IN_PROGRESS"
    message = "Indexing already in progress"


class ConfigError(BridgeError):
    code = "CONFIG_ERROR"
    message = "Invalid bridge configuration"


class DaemonError(BridgeError):
    code = "DAEMON_ERROR"
    message = "Background server operation failed"
