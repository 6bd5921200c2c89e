# restopos/errors.py
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class NoticeKind(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """A user-facing message emitted by a coordinator operation."""

    message: str
    kind: NoticeKind = NoticeKind.INFO
    # validation | conflict | not_found | persistence | unexpected, None for plain news
    category: Optional[str] = None


class PosError(Exception):
    category = "unexpected"
    kind = NoticeKind.ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_notice(self) -> Notice:
        return Notice(self.message, self.kind, self.category)


class ValidationError(PosError):
    category = "validation"


class ConflictError(PosError):
    category = "conflict"
    kind = NoticeKind.INFO


class NotFoundError(PosError):
    category = "not_found"


class StoreError(PosError):
    """
    The data store rejected an operation. `detail` keeps the raw driver text;
    `context` replaces the caller's operation description when set.
    """

    category = "persistence"

    def __init__(self, message: str, detail: str = "", context: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail
        self.context = context


_CONNECTION_HINTS = ("could not connect", "connection refused", "unable to open database", "server closed")
_TABLE_RE = re.compile(r'(?:table|relation)\s+"?([\w.]+)"?', re.IGNORECASE)


def describe_store_error(error: Exception, operation: str = "") -> str:
    """Turn a driver error into a domain message, keeping the raw driver text at the end."""
    operation = operation.strip() or "Operation failed"
    detail = str(getattr(error, "detail", "") or error).strip() or error.__class__.__name__
    lowered = detail.lower()

    if any(hint in lowered for hint in _CONNECTION_HINTS):
        return (
            f"{operation}. Connection problem: the database could not be reached. "
            f"Check the database service and try again. Detail: {detail}"
        )

    if "constraint" in lowered or "integrity" in lowered:
        m = _TABLE_RE.search(detail)
        where = f'on table "{m.group(1)}" ' if m else ""
        return f"{operation}. The change {where}was rejected by a database constraint. Detail: {detail}"

    return f"{operation}. Detail: {detail}"
