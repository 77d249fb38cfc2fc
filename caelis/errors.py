"""Error codes, coded errors and the approval hooks used by tools."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class ErrorCode(str, Enum):
    """Stable machine-readable codes for runtime and execution errors."""

    SESSION_BUSY = "ERR_SESSION_BUSY"
    APPROVAL_REQUIRED = "ERR_APPROVAL_REQUIRED"
    APPROVAL_ABORTED = "ERR_APPROVAL_ABORTED"
    SANDBOX_UNSUPPORTED = "ERR_SANDBOX_UNSUPPORTED"
    SANDBOX_UNAVAILABLE = "ERR_SANDBOX_UNAVAILABLE"
    SANDBOX_COMMAND_TIMEOUT = "ERR_SANDBOX_COMMAND_TIMEOUT"
    SANDBOX_IDLE_TIMEOUT = "ERR_SANDBOX_IDLE_TIMEOUT"
    HOST_COMMAND_TIMEOUT = "ERR_HOST_COMMAND_TIMEOUT"
    HOST_IDLE_TIMEOUT = "ERR_HOST_IDLE_TIMEOUT"

    def __str__(self) -> str:
        return self.value


class CodedError(Exception):
    """An error that carries a stable code and an optional cause."""

    def __init__(
        self,
        code: ErrorCode | str,
        message: str = "",
        cause: BaseException | None = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message.strip()
        self.cause = cause
        super().__init__(self._render())
        if cause is not None:
            self.__cause__ = cause

    def _render(self) -> str:
        if self.cause is None:
            return self.message
        if not self.message:
            return str(self.cause)
        return f"{self.message}: {self.cause}"

    def __str__(self) -> str:
        return self._render()


class ApprovalRequiredError(CodedError):
    """The call has to be reviewed by the application before it runs."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            ErrorCode.APPROVAL_REQUIRED, f"tool: approval required: {reason}"
        )


class ApprovalAbortedError(CodedError):
    """The user explicitly cancelled an approval request."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        shown = reason or "approval canceled by user"
        super().__init__(
            ErrorCode.APPROVAL_ABORTED, f"tool: approval canceled: {shown}"
        )


@dataclass(frozen=True)
class ApprovalRequest:
    """One approval request raised by a tool."""

    tool_name: str = ""
    action: str = ""
    reason: str = ""
    command: str = ""


@runtime_checkable
class Approver(Protocol):
    """Decides approval requests on behalf of the user."""

    def approve(self, request: ApprovalRequest) -> bool:
        """Return True to allow the request; raise ApprovalAbortedError to cancel."""


def _error_chain(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def error_code_of(err: BaseException | None) -> ErrorCode | None:
    """Return the first error code found along the cause chain, if any."""
    for one in _error_chain(err):
        if isinstance(one, CodedError):
            return one.code
    return None


def is_error_code(err: BaseException | None, code: ErrorCode | str) -> bool:
    """Report whether err carries the given code."""
    found = error_code_of(err)
    return found is not None and found == code


def is_approval_aborted(err: BaseException | None) -> bool:
    """Report whether err, or one of its causes, is an aborted approval."""
    return any(isinstance(one, ApprovalAbortedError) for one in _error_chain(err))


_current_approver: ContextVar[Approver | None] = ContextVar(
    "caelis_approver", default=None
)


@contextmanager
def use_approver(approver: Approver | None) -> Iterator[Approver | None]:
    """Make approver the current one for the enclosed block."""
    if approver is None:
        yield _current_approver.get()
        return
    token = _current_approver.set(approver)
    try:
        yield approver
    finally:
        _current_approver.reset(token)


def current_approver() -> Approver | None:
    """Return the approver installed by use_approver, or None."""
    return _current_approver.get()