"""Typed outcomes returned by guard, workflow and api calls.

Domain failures (denied, missing, malformed, gone) are values, not
exceptions. Only unexpected storage errors propagate to the boundary.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Self


class ErrorKind(StrEnum):
    """Failure categories and the HTTP status each one maps onto."""

    MALFORMED = "malformed"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    INELIGIBLE = "ineligible"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    GONE = "gone"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.MALFORMED: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INELIGIBLE: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.GONE: 410,
}


@dataclass(frozen=True)
class Outcome:
    """Result of a core operation.

    ``data`` carries the success payload, or diagnostics on failure
    (for example the eligibility checklist behind an ``INELIGIBLE``).
    """

    ok: bool
    kind: ErrorKind | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> Self:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **data: Any) -> Self:
        return cls(ok=False, kind=kind, message=message, data=data)

    @property
    def status_code(self) -> int:
        if self.ok or self.kind is None:
            return 200
        return self.kind.status_code

    def to_response(self) -> dict[str, Any]:
        """Shape the outcome as the external response body."""
        if self.ok:
            return {"status": "OK", **self.data}
        return {"status": "error", "msg": self.message, **self.data}
