"""Error type and classification for ADT operations.

Collaborators raise ``AdtError``. Where they already know what went wrong they set
``kind`` and ``classify`` trusts it; otherwise the status code, the ADT exception
type and finally the message text decide.
"""

import asyncio
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .adt_rest_utils import extract_exception
from .types import ErrorKind, SessionState, WorkflowStep

ALREADY_EXISTS_MARKERS = (
    "already exists",
    "does already exist",
    "resource already exists",
    "object already exists",
)
ALREADY_EXISTS_EXCEPTION_TYPES = ("ExceptionResourceAlreadyExists",)

LOCK_CONFLICT_MARKERS = (
    "locked by",
    "currently editing",
    "currently being edited",
    "already locked",
    "enqueue",
)

ALREADY_UNLOCKED_MARKERS = (
    "not locked",
    "already unlocked",
    "no lock",
)

DUPLICATE_CHECK_MARKERS = (
    "has been checked",
    "was checked",
    "already checked",
)

NOT_FOUND_EXCEPTION_TYPES = ("ExceptionResourceNotFound",)

TRANSPORT_MARKERS = (
    "transport request",
    "correction request",
    "no request",
    "request is required",
)

# Kind reported when a step fails for a reason nothing more specific explains
STEP_DEFAULT_KINDS = {
    WorkflowStep.VALIDATE: ErrorKind.VALIDATION_FAILED,
    WorkflowStep.PRECHECK: ErrorKind.CHECK_FAILED,
    WorkflowStep.POSTCHECK: ErrorKind.CHECK_FAILED,
    WorkflowStep.UPDATE: ErrorKind.UPDATE_FAILED,
    WorkflowStep.UNLOCK: ErrorKind.UNLOCK_FAILED,
    WorkflowStep.ACTIVATE: ErrorKind.ACTIVATION_FAILED,
}


class AdtError(Exception):
    """Failure of a single ADT operation"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        kind: Optional[ErrorKind] = None,
        exception_type: Optional[str] = None,
        raw_response: Optional[str] = None,
        session_state: Optional[SessionState] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind
        self.exception_type = exception_type
        self.raw_response = raw_response
        self.session_state = session_state

    @classmethod
    def from_response(
        cls,
        result: Dict[str, Any],
        session_state: Optional[SessionState] = None,
        context: Optional[str] = None,
    ) -> "AdtError":
        """Build an error from a standardized HTTP client result"""
        status_code = result.get("status_code")
        raw_response = result.get("raw_response")
        exception_type, message = extract_exception(raw_response)
        message = message or result.get("error") or f"HTTP {status_code}"
        if context:
            message = f"{context}: {message}"

        kind = None
        if result.get("connection_error") or status_code == 0:
            kind = ErrorKind.CONNECTION_FAILED

        return cls(
            message,
            status_code=status_code,
            kind=kind,
            exception_type=exception_type,
            raw_response=raw_response,
            session_state=session_state,
        )

    def __repr__(self) -> str:
        return (
            f"AdtError({self.message!r}, status_code={self.status_code}, "
            f"kind={self.kind.value if self.kind else None})"
        )


def _describe(raw_error: Any) -> Tuple[Optional[int], str, Optional[str], bool]:
    """Pull status code, lower-cased message, exception type and the
    connection-error flag out of whatever a collaborator produced."""
    if isinstance(raw_error, AdtError):
        return (
            raw_error.status_code,
            (raw_error.message or "").lower(),
            raw_error.exception_type,
            False,
        )
    if isinstance(raw_error, dict):
        message = raw_error.get("error") or raw_error.get("message") or ""
        return (
            raw_error.get("status_code"),
            str(message).lower(),
            raw_error.get("exception_type"),
            bool(raw_error.get("connection_error")),
        )
    if isinstance(raw_error, BaseException):
        status_code = getattr(raw_error, "status_code", None) or getattr(
            raw_error, "status", None
        )
        if not isinstance(status_code, int):
            status_code = None
        return status_code, str(raw_error).lower(), None, False
    return None, str(raw_error or "").lower(), None, False


def _contains(message: str, markers) -> bool:
    return any(marker in message for marker in markers)


def classify(raw_error: Any) -> ErrorKind:
    """Assign a failed operation to an ErrorKind.

    Args:
        raw_error: An AdtError, any other exception, a standardized HTTP result
            dict or a bare message string

    Returns:
        The ErrorKind, ``ErrorKind.UNKNOWN`` when nothing matches
    """
    if isinstance(raw_error, AdtError) and raw_error.kind is not None:
        return raw_error.kind

    if isinstance(
        raw_error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)
    ):
        return ErrorKind.CONNECTION_FAILED

    status_code, message, exception_type, connection_error = _describe(raw_error)

    if connection_error or status_code == 0:
        return ErrorKind.CONNECTION_FAILED

    if exception_type in ALREADY_EXISTS_EXCEPTION_TYPES or _contains(
        message, ALREADY_EXISTS_MARKERS
    ):
        return ErrorKind.ALREADY_EXISTS

    # The backend answers a foreign enqueue with 409 as well, the text tells them apart
    if status_code == 423 or _contains(message, LOCK_CONFLICT_MARKERS):
        return ErrorKind.LOCK_CONFLICT

    if status_code == 409:
        return ErrorKind.ALREADY_EXISTS

    if status_code == 404 or exception_type in NOT_FOUND_EXCEPTION_TYPES:
        return ErrorKind.NOT_FOUND

    if _contains(message, TRANSPORT_MARKERS):
        return ErrorKind.TRANSPORT_REQUEST_REQUIRED

    return ErrorKind.UNKNOWN


def is_duplicate_check(raw_error: Any) -> bool:
    """Whether the backend rejected a check only because it already ran"""
    _, message, _, _ = _describe(raw_error)
    return _contains(message, DUPLICATE_CHECK_MARKERS)


def is_already_unlocked(raw_error: Any) -> bool:
    """Whether an unlock failed only because no lock was held any more"""
    _, message, _, _ = _describe(raw_error)
    return _contains(message, ALREADY_UNLOCKED_MARKERS)


def resolve_step_kind(kind: ErrorKind, step: Optional[WorkflowStep]) -> ErrorKind:
    """Replace an Unknown classification with the failing step's own kind.

    A failure outside any step happened while establishing the session.
    """
    if kind != ErrorKind.UNKNOWN:
        return kind
    if step is None:
        return ErrorKind.CONNECTION_FAILED
    return STEP_DEFAULT_KINDS.get(step, ErrorKind.UNKNOWN)
