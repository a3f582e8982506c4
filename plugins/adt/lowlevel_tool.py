"""Single-step ADT tool for conversations split across invocations."""

import logging
from typing import Dict, Any, List, Optional, Callable

from mcp_tools.interfaces import ToolInterface
from mcp_tools.plugin import register_tool

from .adapters import (
    ObjectAdapter,
    activate_objects,
    check_transport_request,
    get_object_adapter,
)
from .check_gate import CheckGate
from .errors import AdtError, classify, resolve_step_kind
from .lock_manager import LockManager
from .lock_registry import LockRegistry
from .object_tool import descriptor_from_arguments, error_result
from .session import ConnectionProvider, SessionContext
from .types import AdapterResult, ErrorKind, LockLease, ObjectDescriptor, WorkflowStep

logger = logging.getLogger(__name__)

STEP_OPERATIONS = {
    "validate": WorkflowStep.VALIDATE,
    "create": WorkflowStep.CREATE,
    "lock": WorkflowStep.LOCK,
    "check": WorkflowStep.PRECHECK,
    "update": WorkflowStep.UPDATE,
    "unlock": WorkflowStep.UNLOCK,
    "activate": WorkflowStep.ACTIVATE,
    "delete": WorkflowStep.DELETE,
}


@register_tool
class AdtLowLevelTool(ToolInterface):
    """Run one lifecycle step of an ABAP repository object per call.

    Every call accepts the ``session_id`` and ``session_state`` returned by the
    previous one, so a caller can lock an object in one call, update it in the
    next and unlock it in a third within the same backend session. Locks taken
    here are recorded in the lock registry; ``unlock`` without a
    ``lock_handle`` uses the recorded handle, and ``list_locks`` shows what is
    still held.

    ``activate`` with an ``objects`` list activates several objects in one
    request, for objects that only activate cleanly together.

    Example:
        locked = await tool.execute_tool({
            "operation": "lock", "object_type": "program", "name": "ZPROG",
        })
        await tool.execute_tool({
            "operation": "update", "object_type": "program", "name": "ZPROG",
            "content": "REPORT zprog.", "lock_handle": locked["lock_handle"],
            "session_id": locked["session_id"],
            "session_state": locked["session_state"],
        })
    """

    def __init__(
        self,
        connection_provider_factory: Optional[Callable[[], ConnectionProvider]] = None,
        lock_registry: Optional[LockRegistry] = None,
    ):
        self._connection_provider_factory = (
            connection_provider_factory or ConnectionProvider.from_env
        )
        self._lock_registry = lock_registry

    @property
    def lock_registry(self) -> LockRegistry:
        if self._lock_registry is None:
            self._lock_registry = LockRegistry()
        return self._lock_registry

    @property
    def name(self) -> str:
        return "adt_object_low"

    @property
    def description(self) -> str:
        return (
            "Run a single ADT lifecycle step (session, validate, create, lock, check, "
            "update, unlock, activate, delete) or list outstanding locks"
        )

    @property
    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "description": "The step to run",
                    "enum": ["get_session", "list_locks"] + list(STEP_OPERATIONS),
                },
                "object_type": {"type": "string", "description": "Kind of repository object"},
                "name": {"type": "string", "description": "Object name"},
                "package_name": {"type": "string", "description": "Package of the object"},
                "description": {"type": "string", "description": "Short description"},
                "parent_name": {
                    "type": "string",
                    "description": "Function group of a function module",
                },
                "transport_request": {"type": "string", "description": "Transport request"},
                "content": {
                    "type": "string",
                    "description": "Source for update, or proposed source for check",
                },
                "version": {
                    "type": "string",
                    "description": "Version to check when no content is given",
                    "enum": ["inactive", "active"],
                    "default": "inactive",
                },
                "lock_handle": {
                    "type": "string",
                    "description": "Handle from a previous lock call",
                },
                "objects": {
                    "type": "array",
                    "description": (
                        "Objects to activate together in one request, instead of "
                        "object_type and name"
                    ),
                    "items": {
                        "type": "object",
                        "properties": {
                            "object_type": {"type": "string"},
                            "name": {"type": "string"},
                            "parent_name": {"type": "string"},
                        },
                        "required": ["object_type", "name"],
                    },
                },
                "session_id": {"type": "string", "description": "Session to continue"},
                "session_state": {
                    "type": "object",
                    "description": "Session state returned by a previous call",
                },
            },
            "required": ["operation"],
        }

    async def execute_tool(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Execute the tool with the provided arguments."""
        operation = arguments.get("operation", "")

        if operation == "list_locks":
            locks = [record.model_dump() for record in self.lock_registry.list_locks()]
            return {"success": True, "locks": locks, "count": len(locks)}

        if operation != "get_session" and operation not in STEP_OPERATIONS:
            return {"success": False, "error": f"Unknown operation: {operation}"}

        descriptor = None
        group: Optional[List[ObjectDescriptor]] = None
        try:
            if operation == "activate" and arguments.get("objects") is not None:
                group = self._group_from_arguments(arguments["objects"])
            elif operation != "get_session":
                descriptor = descriptor_from_arguments(arguments)
        except ValueError as e:
            return error_result(str(e), ErrorKind.VALIDATION_FAILED)

        if operation in ("create", "update", "delete"):
            try:
                check_transport_request(descriptor)
            except AdtError as e:
                return error_result(e.message, ErrorKind.TRANSPORT_REQUEST_REQUIRED)

        try:
            provider = self._connection_provider_factory()
        except ValueError as e:
            logger.error(f"ADT connection not configured: {e}")
            return error_result(str(e), ErrorKind.CONNECTION_FAILED)

        async with provider as connection:
            session_ctx = SessionContext(connection)
            try:
                await session_ctx.open(
                    arguments.get("session_state"), arguments.get("session_id")
                )
            except AdtError as e:
                logger.error(f"Could not start ADT session: {e.message}")
                return error_result(
                    e.message, resolve_step_kind(classify(e), None), e.session_state
                )

            if descriptor is None and group is None:
                result: Dict[str, Any] = {"success": True}
            else:
                step = STEP_OPERATIONS[operation]
                try:
                    if group is not None:
                        target = f"{len(group)} objects"
                        activation = await activate_objects(
                            connection, group, session_ctx.current
                        )
                        session_ctx.advance(activation.session)
                        result = self._activation_result(activation)
                        result["objects"] = [d.label for d in group]
                    else:
                        target = descriptor.label
                        adapter = get_object_adapter(descriptor.kind, connection)
                        result = await self._run_step(
                            operation, adapter, descriptor, session_ctx, arguments
                        )
                except AdtError as e:
                    session_ctx.advance(e.session_state)
                    kind = resolve_step_kind(classify(e), step)
                    logger.error(f"{operation} failed for {target}: [{kind.value}] {e.message}")
                    return error_result(e.message, kind, session_ctx.current)

        result["session_id"] = session_ctx.current.session_id
        result["session_state"] = session_ctx.current.to_payload()
        return result

    @staticmethod
    def _group_from_arguments(objects: Any) -> List[ObjectDescriptor]:
        if not isinstance(objects, list) or not objects:
            raise ValueError("objects must be a non-empty list")
        if not all(isinstance(entry, dict) for entry in objects):
            raise ValueError("each entry of objects needs object_type and name")
        return [descriptor_from_arguments(entry) for entry in objects]

    @staticmethod
    def _activation_result(result: AdapterResult) -> Dict[str, Any]:
        """Raises AdtError ActivationFailed unless the backend activated"""
        activation = result.data
        if not activation.activated:
            raise AdtError(
                "Activation failed: "
                + ("; ".join(activation.errors) or "activation was not executed"),
                kind=ErrorKind.ACTIVATION_FAILED,
                session_state=result.session,
            )
        return {
            "success": True,
            "activated": True,
            "activation_warnings": activation.warnings,
        }

    async def _run_step(
        self,
        operation: str,
        adapter: ObjectAdapter,
        descriptor: ObjectDescriptor,
        session_ctx: SessionContext,
        arguments: Dict[str, Any],
    ) -> Dict[str, Any]:
        if operation == "lock":
            lease = await LockManager(adapter, self.lock_registry).acquire(
                descriptor, session_ctx
            )
            return {"success": True, "lock_handle": lease.handle}

        if operation == "unlock":
            lease = self._lease_for(descriptor, session_ctx, arguments)
            await LockManager(adapter, self.lock_registry).release(lease, session_ctx)
            return {"success": True, "unlocked": descriptor.name}

        if operation == "check":
            check = await CheckGate(adapter).check(
                descriptor,
                session_ctx,
                proposed_content=arguments.get("content"),
                version=arguments.get("version", "inactive"),
            )
            return {
                "success": True,
                "passed": check.passed,
                "benign": check.benign,
                "errors": [str(message) for message in check.errors],
                "warnings": [str(message) for message in check.warnings],
            }

        session = session_ctx.current
        if operation == "validate":
            result = await adapter.validate(descriptor, session=session)
        elif operation == "create":
            result = await adapter.create(descriptor, session=session)
        elif operation == "update":
            content = arguments.get("content")
            if content is None:
                raise AdtError(
                    "content is required for update operation",
                    kind=ErrorKind.VALIDATION_FAILED,
                )
            lease = self._lease_for(descriptor, session_ctx, arguments)
            result = await adapter.update(descriptor, content, lease.handle, session=session)
        elif operation == "activate":
            result = await adapter.activate(descriptor, session=session)
        else:
            result = await adapter.delete(descriptor, session=session)
        session_ctx.advance(result.session)

        if operation == "activate":
            return self._activation_result(result)
        return {"success": True}

    def _lease_for(
        self,
        descriptor: ObjectDescriptor,
        session_ctx: SessionContext,
        arguments: Dict[str, Any],
    ) -> LockLease:
        """The caller's lock handle, or the one recorded in the lock registry"""
        handle = arguments.get("lock_handle")
        if handle:
            return LockLease(
                descriptor=descriptor,
                handle=handle,
                session_id=session_ctx.current.session_id,
            )

        record = self.lock_registry.find(descriptor)
        if record is None:
            raise AdtError(
                f"No lock_handle given and no recorded lock for {descriptor.label}",
                kind=ErrorKind.VALIDATION_FAILED,
            )
        return LockLease(
            descriptor=descriptor,
            handle=record.lock_handle,
            session_id=record.session_id,
            acquired_at=record.timestamp,
        )
