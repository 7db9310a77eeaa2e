"""Error types raised by the chat pipeline."""

from __future__ import annotations

from typing import Any, Literal

from ..schemas.chat import ImageBlockedPayload

ToolErrorKind = Literal["validation", "safety_block", "provider", "storage"]


class ToolError(Exception):
    """Base class for failures inside a tool invocation."""

    kind: ToolErrorKind = "provider"

    def __init__(self, function_name: str, message: str):
        super().__init__(message)
        self.function_name = function_name
        self.message = message

    def to_result(self) -> dict[str, Any]:
        """Render the error as a function result the model can react to."""

        return {
            "error": True,
            "success": False,
            "errorType": self.kind,
            "functionName": self.function_name,
            "message": self.message,
        }


class ToolValidationError(ToolError):
    """The tool was called with unusable input."""

    kind = "validation"


class ToolProviderError(ToolError):
    """The upstream provider failed for a reason other than safety."""

    kind = "provider"

    def __init__(self, function_name: str, message: str, *, status_code: int | None = None):
        super().__init__(function_name, message)
        self.status_code = status_code


class ToolStorageError(ToolError):
    """The tool produced output but it could not be stored."""

    kind = "storage"


class SafetyBlockError(ToolError):
    """A safety layer refused the request.

    Unlike the other tool errors this one ends the turn: it is surfaced to
    the browser as an ``imageBlocked`` event instead of being fed back to
    the model.
    """

    kind = "safety_block"

    def __init__(self, function_name: str, payload: ImageBlockedPayload):
        super().__init__(function_name, payload.message)
        self.payload = payload


class ChatRequestError(Exception):
    """A chat request that must be rejected before streaming starts."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ModelSetupRequiredError(ChatRequestError):
    status_code = 503


class ThreadNotFoundError(ChatRequestError):
    status_code = 404


class UnsupportedImageError(ChatRequestError):
    status_code = 400


class ModelUnavailableError(ChatRequestError):
    status_code = 400


__all__ = [
    "ChatRequestError",
    "ModelSetupRequiredError",
    "ModelUnavailableError",
    "SafetyBlockError",
    "ThreadNotFoundError",
    "ToolError",
    "ToolErrorKind",
    "ToolProviderError",
    "ToolStorageError",
    "ToolValidationError",
    "UnsupportedImageError",
]
