"""Exception hierarchy shared by the reconciler, engines and CLI."""
from __future__ import annotations

import re
from typing import Any, Optional

# Matches [CODE] at start of a middleware error message
_ERROR_CODE_RE = re.compile(r"\[([A-Z]+)\]\s*(.*)", re.DOTALL)
# Matches a dotted field path before a colon
_FIELD_RE = re.compile(r"^([\w.]+):\s*(.*)", re.DOTALL)
_PROCESS_EXIT_RE = re.compile(r"^Process exited with status \d+:\s*")

ERROR_SUGGESTIONS = {
    "EINVAL": "Check the configuration. A field may be invalid or unexpected.",
    "ENOENT": "Resource not found. It may have been deleted outside Tillstand.",
    "EFAULT": "The remote operation failed. Check the image and device sources.",
    "EEXIST": "Resource already exists. Choose a different name or remove it first.",
    "ENOTEMPTY": "Resource still has children. Remove them first.",
}


class TillstandError(Exception):
    """Base class for all Tillstand failures."""


class ConfigValidationError(TillstandError):
    """Raised when the desired-state configuration file is invalid."""


class LockError(TillstandError):
    """Raised when unable to acquire the apply lock."""


class RPCError(TillstandError):
    """A middleware call failed."""

    def __init__(
        self,
        method: str,
        message: str,
        code: str = "UNKNOWN",
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        self.method = method
        self.message = message
        self.code = code
        self.field = field
        self.suggestion = suggestion
        text = f"{method}: {message}"
        if suggestion:
            text += f"\n\nSuggestion: {suggestion}"
        super().__init__(text)

    @classmethod
    def from_output(cls, method: str, raw: str) -> "RPCError":
        """Parse raw midclt error output into a structured error."""
        cleaned = _PROCESS_EXIT_RE.sub("", (raw or "").strip())

        # Drop Python tracebacks from the middleware
        for marker in ("\nTraceback", "Traceback (most recent call last)"):
            idx = cleaned.find(marker)
            if idx != -1:
                cleaned = cleaned[:idx].strip()

        code = "UNKNOWN"
        field = None
        message = cleaned or "unknown error"

        match = _ERROR_CODE_RE.search(cleaned)
        if match:
            code = match.group(1)
            message = match.group(2).strip()
            field_match = _FIELD_RE.match(message)
            if field_match:
                field = field_match.group(1)

        return cls(
            method,
            message,
            code=code,
            field=field,
            suggestion=ERROR_SUGGESTIONS.get(code),
        )

    @property
    def is_not_found(self) -> bool:
        return self.code == "ENOENT" or "does not exist" in self.message.lower()


class MalformedResponseError(TillstandError):
    """A middleware response could not be decoded into the expected shape."""

    def __init__(self, method: str, detail: str):
        self.method = method
        self.detail = detail
        super().__init__(f"{method}: parse response: {detail}")


class NotFoundError(TillstandError):
    """A resource expected to exist was not returned by a query."""

    def __init__(self, kind: str, name: Any, context: str = ""):
        self.kind = kind
        self.name = name
        suffix = f" {context}" if context else ""
        super().__init__(f"{kind} {name!r} not found{suffix}")


class DeviceOperationError(TillstandError):
    """A device create/update/delete failed during reconciliation."""

    def __init__(self, action: str, kind: str, identity: Any, cause: Exception):
        self.action = action
        self.kind = kind
        self.identity = identity
        self.cause = cause
        target = f"{kind} device {identity!r}" if identity not in (None, "") else f"{kind} device"
        super().__init__(f"failed to {action} {target}: {cause}")


class StateTimeoutError(TillstandError):
    """Power state did not become stable before the deadline."""

    def __init__(self, resource: str, state: str, elapsed: float, desired: Optional[str] = None):
        self.resource = resource
        self.state = state
        self.elapsed = elapsed
        self.desired = desired
        target = f" (waiting for {desired})" if desired else ""
        super().__init__(
            f"{resource} still in transient state {state} after {elapsed:.1f}s{target}"
        )


class WrongTerminalStateError(TillstandError):
    """A stable state was reached but it is not the desired one."""

    def __init__(self, resource: str, reached: str, desired: str):
        self.resource = resource
        self.reached = reached
        self.desired = desired
        super().__init__(f"{resource} reached state {reached} instead of desired {desired}")


class OperationCancelled(TillstandError):
    """The caller cancelled a wait in progress."""
