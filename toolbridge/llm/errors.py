"""Typed failures raised by the LLM subsystem."""

from __future__ import annotations

from toolbridge.types import ErrorCode


class ToolBridgeError(Exception):
    """Base class for every failure this package raises."""

    code: str = ""


class UnrecoverableArgumentsError(ToolBridgeError):
    """
    Tool-call arguments could not be turned into valid JSON.

    Carries the offending string, the call id (when known) and the names of
    the strategies that were attempted so the failure can be studied offline.
    """

    code = ErrorCode.UNRECOVERABLE_ARGUMENTS

    def __init__(
        self,
        raw: str,
        call_id: str | None = None,
        attempted: tuple[str, ...] = (),
        backend: str | None = None,
    ) -> None:
        self.raw = raw
        self.call_id = call_id
        self.attempted = attempted
        self.backend = backend
        preview = raw if len(raw) <= 200 else raw[:200] + "..."
        super().__init__(
            f"unrecoverable tool-call arguments backend={backend} "
            f"call_id={call_id} attempted={','.join(attempted)} raw={preview!r}"
        )


class TruncatedStreamError(ToolBridgeError):
    """The stream ended before the backend sent its terminal marker."""

    code = ErrorCode.TRUNCATED_STREAM

    def __init__(self, backend: str | None = None, pending_calls: int = 0) -> None:
        self.backend = backend
        self.pending_calls = pending_calls
        super().__init__(
            f"stream from {backend or 'backend'} ended without a terminal marker "
            f"({pending_calls} tool call(s) pending)"
        )


class BackendProtocolError(ToolBridgeError):
    """The backend response is missing fields this layer depends on."""

    code = ErrorCode.BACKEND_PROTOCOL_ERROR


class BackendAPIError(ToolBridgeError):
    """The backend answered with an error status or an error object."""

    code = ErrorCode.BACKEND_API_ERROR

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_code: str | int | None = None,
    ) -> None:
        self.status = status
        self.error_code = error_code
        super().__init__(message)
