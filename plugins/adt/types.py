from enum import Enum
from typing import Dict, Any, List, Optional
import time

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorKind(str, Enum):
    """Categories assigned to a failed remote operation"""

    VALIDATION_FAILED = "ValidationFailed"
    ALREADY_EXISTS = "AlreadyExists"
    LOCK_CONFLICT = "LockConflict"
    CHECK_FAILED = "CheckFailed"
    UPDATE_FAILED = "UpdateFailed"
    UNLOCK_FAILED = "UnlockFailed"
    ACTIVATION_FAILED = "ActivationFailed"
    TRANSPORT_REQUEST_REQUIRED = "TransportRequestRequired"
    CONNECTION_FAILED = "ConnectionFailed"
    NOT_FOUND = "NotFound"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class WorkflowStep(str, Enum):
    VALIDATE = "validate"
    CREATE = "create"
    LOCK = "lock"
    PRECHECK = "precheck"
    UPDATE = "update"
    UNLOCK = "unlock"
    POSTCHECK = "postcheck"
    ACTIVATE = "activate"
    DELETE = "delete"


class WorkflowState(str, Enum):
    START = "start"
    VALIDATED = "validated"
    CREATED = "created"
    LOCKED = "locked"
    PRECHECKED = "prechecked"
    UPDATED = "updated"
    UNLOCKED = "unlocked"
    POSTCHECKED = "postchecked"
    ACTIVATED = "activated"
    DONE = "done"
    COMPENSATING = "compensating"
    FAILED = "failed"


class WorkflowMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ObjectDescriptor(BaseModel):
    """Identifies one repository object for the duration of a workflow run"""

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    package_name: Optional[str] = None
    transport_request: Optional[str] = None
    parent_name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("kind")
    @classmethod
    def _normalize_kind(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("Object name must not be empty")
        return value

    @field_validator("parent_name", "package_name", "transport_request")
    @classmethod
    def _normalize_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None

    @property
    def label(self) -> str:
        if self.parent_name:
            return f"{self.kind} {self.parent_name}/{self.name}"
        return f"{self.kind} {self.name}"


class SessionState(BaseModel):
    """Conversation state that lets consecutive calls share one backend session.

    Instances are never modified; every response that carries new cookies or a
    new CSRF token produces a fresh instance via ``with_updates``.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    cookies: Optional[str] = None
    csrf_token: Optional[str] = None
    cookie_store: Dict[str, str] = Field(default_factory=dict)

    def with_updates(
        self,
        cookie_store: Optional[Dict[str, str]] = None,
        csrf_token: Optional[str] = None,
    ) -> "SessionState":
        store = dict(self.cookie_store)
        if cookie_store:
            store.update(cookie_store)
        cookies = "; ".join(f"{k}={v}" for k, v in store.items()) or None
        return SessionState(
            session_id=self.session_id,
            cookies=cookies,
            csrf_token=csrf_token if csrf_token is not None else self.csrf_token,
            cookie_store=store,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "cookies": self.cookies,
            "csrf_token": self.csrf_token,
            "cookie_store": dict(self.cookie_store),
        }

    @classmethod
    def from_payload(cls, session_id: str, payload: Dict[str, Any]) -> "SessionState":
        """Rebuild a session from the blob a caller got back from a previous call.

        Accepts both snake_case and camelCase keys.
        """
        cookie_store = payload.get("cookie_store", payload.get("cookieStore")) or {}
        csrf_token = payload.get("csrf_token", payload.get("csrfToken"))
        cookies = payload.get("cookies")
        if not cookie_store and cookies:
            for part in cookies.split(";"):
                if "=" in part:
                    key, value = part.strip().split("=", 1)
                    cookie_store[key] = value
        return cls(
            session_id=session_id,
            cookies=cookies,
            csrf_token=csrf_token,
            cookie_store=dict(cookie_store),
        )


class LockLease(BaseModel):
    """An acquired lock handle together with what it protects"""

    model_config = ConfigDict(frozen=True)

    descriptor: ObjectDescriptor
    handle: str
    session_id: str
    acquired_at: float = Field(default_factory=time.time)

    @property
    def short_handle(self) -> str:
        return short_handle(self.handle)


def short_handle(handle: Optional[str]) -> str:
    """Shorten a lock handle for log output"""
    if not handle:
        return "<none>"
    if len(handle) <= 20:
        return handle
    return f"{handle[:20]}..."


class CheckMessage(BaseModel):
    type: str = "E"
    text: str
    line: Optional[int] = None
    uri: Optional[str] = None

    def __str__(self) -> str:
        if self.line is not None:
            return f"{self.type}: {self.text} (line {self.line})"
        return f"{self.type}: {self.text}"


class CheckResult(BaseModel):
    """Outcome of a syntax check against proposed or persisted content"""

    passed: bool
    errors: List[CheckMessage] = Field(default_factory=list)
    warnings: List[CheckMessage] = Field(default_factory=list)
    benign: bool = False

    @classmethod
    def benign_result(cls, text: str) -> "CheckResult":
        return cls(passed=True, benign=True, warnings=[CheckMessage(type="I", text=text)])

    def summary(self) -> str:
        if not self.errors:
            return "Check passed"
        return "; ".join(str(message) for message in self.errors)


class ActivationResult(BaseModel):
    activated: bool
    checked: bool = False
    generated: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ValidationReport(BaseModel):
    valid: bool
    severity: Optional[str] = None
    message: Optional[str] = None
    exception_type: Optional[str] = None


class AdapterResult(BaseModel):
    """What every adapter operation returns: a payload plus the latest session"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session: SessionState
    data: Any = None
    status_code: Optional[int] = None


class WorkflowOptions(BaseModel):
    mode: WorkflowMode = WorkflowMode.CREATE
    activate: bool = True
    # "halt" or "proceed"; None means the configured default
    validation_policy: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @field_validator("validation_policy")
    @classmethod
    def _check_policy(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.lower()
        if value not in ("halt", "proceed"):
            raise ValueError("validation_policy must be 'halt' or 'proceed'")
        return value


class WorkflowOutcome(BaseModel):
    success: bool
    steps_completed: List[WorkflowStep] = Field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    activation_warnings: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    final_state: WorkflowState = WorkflowState.START
    session_state: Optional[SessionState] = None

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the response shape returned by the tools"""
        result: Dict[str, Any] = {
            "success": self.success,
            "steps_completed": [step.value for step in self.steps_completed],
        }
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind.value
        if self.error_message:
            result["error"] = self.error_message
        if self.activation_warnings:
            result["activation_warnings"] = list(self.activation_warnings)
        if self.warnings:
            result["warnings"] = list(self.warnings)
        if self.diagnostics:
            result["diagnostics"] = list(self.diagnostics)
        if self.session_state is not None:
            result["session_id"] = self.session_state.session_id
            result["session_state"] = self.session_state.to_payload()
        return result
