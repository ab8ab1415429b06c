"""Domain error taxonomy shared by position operations and duplication jobs.

Each error carries a stable ``code`` and a ``context`` mapping so callers can
log and surface failures without parsing messages. Retry decisions are made
from the class alone:

- ``ValidationError`` (and ``NotFoundError``): rejected immediately, never retried.
- ``ConflictError`` (and ``AttemptTimeoutError``): retried with backoff.
- ``IntegrityError``: terminal, operator attention required.
- ``PartialResourceFailure``: degraded success, rows stay committed.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HierarchyError(Exception):
    code = "hierarchy_error"
    retryable = False

    def __init__(self, detail: str, *, code: Optional[str] = None, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code
        self.context: Dict[str, Any] = dict(context)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.detail, "context": dict(self.context)}


class ValidationError(HierarchyError):
    code = "validation_failed"


class NotFoundError(ValidationError):
    code = "not_found"


class ConflictError(HierarchyError):
    code = "conflict"
    retryable = True


class AttemptTimeoutError(ConflictError):
    code = "attempt_timeout"


class IntegrityError(HierarchyError):
    code = "integrity_violation"


class PartialResourceFailure(HierarchyError):
    code = "attachment_copy_failed"


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


__all__ = [
    "HierarchyError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AttemptTimeoutError",
    "IntegrityError",
    "PartialResourceFailure",
    "is_retryable",
]
