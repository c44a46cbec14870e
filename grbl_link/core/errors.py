"""Error taxonomy for command dispatch and connection health."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Failure codes surfaced on caller futures."""

    QUEUE_FULL = "QUEUE_FULL"
    """Submission rejected because the command queue is at capacity."""

    COMMAND_TIMEOUT = "COMMAND_TIMEOUT"
    """No acknowledgement arrived before the command's timeout elapsed."""

    COMMAND_CANCELLED = "COMMAND_CANCELLED"
    """Command discarded by a bulk clear or a soft reset."""

    COMMAND_EXPIRED = "COMMAND_EXPIRED"
    """Command removed by janitorial expiry of stuck entries."""

    WRITE_FAILED = "WRITE_FAILED"
    """The transport refused the write; the command was never acknowledged."""

    DISCONNECTED = "DISCONNECTED"
    """The transport went away while the command was queued or in flight."""

    def describe(self, detail: Optional[str] = None) -> str:
        """Human-readable message for this code, with an optional detail."""

        summary = _SUMMARIES[self]
        if detail and detail != summary:
            return f"{summary} ({detail})"
        return summary


_SUMMARIES = {
    ErrorCode.QUEUE_FULL: "Command queue full",
    ErrorCode.COMMAND_TIMEOUT: "Command timed out",
    ErrorCode.COMMAND_CANCELLED: "Command cancelled",
    ErrorCode.COMMAND_EXPIRED: "Command expired",
    ErrorCode.WRITE_FAILED: "Write failed",
    ErrorCode.DISCONNECTED: "Serial disconnected",
}


class DispatchError(RuntimeError):
    """Raised into a caller's future when a command cannot complete."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        command_id: Optional[str] = None,
        payload: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.command_id = command_id
        self.payload = payload

    def __repr__(self) -> str:
        return (
            f"DispatchError(code={self.code.value!r}, command_id={self.command_id!r}, "
            f"message={str(self)!r})"
        )


class LineParseError(ValueError):
    """Raised when an inbound line looks like a reply but cannot be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line!r}")
        self.line = line


class TransportError(RuntimeError):
    """Raised when the serial transport cannot complete an operation."""


class ProbeError(RuntimeError):
    """Raised internally when a liveness probe does not succeed."""
