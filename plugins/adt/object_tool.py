"""ADT object workflow tool implementation."""

import logging
from typing import Dict, Any, Optional, Callable

from mcp_tools.interfaces import ToolInterface
from mcp_tools.plugin import register_tool

from .adapters import (
    OBJECT_KINDS,
    check_transport_request,
    get_kind_spec,
    get_object_adapter,
)
from .errors import AdtError
from .lock_registry import LockRegistry
from .session import ConnectionProvider, SessionContext
from .types import ErrorKind, ObjectDescriptor, SessionState, WorkflowOptions
from .workflow import WorkflowExecutor

logger = logging.getLogger(__name__)


def descriptor_from_arguments(arguments: Dict[str, Any]) -> ObjectDescriptor:
    """Build an ObjectDescriptor from tool arguments

    Raises:
        ValueError: If required arguments are missing or invalid
    """
    object_type = arguments.get("object_type")
    name = arguments.get("name")
    if not object_type:
        raise ValueError("object_type is required")
    if not name:
        raise ValueError("name is required")
    get_kind_spec(object_type)

    return ObjectDescriptor(
        kind=object_type,
        name=name,
        package_name=arguments.get("package_name"),
        transport_request=arguments.get("transport_request"),
        parent_name=arguments.get("parent_name"),
        description=arguments.get("description"),
    )


def error_result(
    message: str,
    kind: ErrorKind,
    session_state: Optional[SessionState] = None,
) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_kind": kind.value,
    }
    if session_state is not None:
        result["session_id"] = session_state.session_id
        result["session_state"] = session_state.to_payload()
    return result


@register_tool
class AdtObjectTool(ToolInterface):
    """Create, update and delete ABAP repository objects through ADT.

    Each call runs the complete lifecycle for one object: the name is
    validated, the object created, locked, its proposed source checked, saved,
    unlocked, checked again and activated. The lock is released on every path
    once it was acquired. Re-creating an object that already exists succeeds
    with ``error_kind`` "AlreadyExists".

    Configuration:
        The connection is read from environment variables with the ADT_ prefix:
        - ADT_URL: Base URL of the backend
        - ADT_USER / ADT_PASSWORD: Basic authentication
        - ADT_BEARER_TOKEN: Static bearer token used instead of basic auth
        - ADT_CLIENT: Client number
        - ADT_LANGUAGE: Logon language (default EN)

    Example:
        result = await adt_tool.execute_tool({
            "operation": "create",
            "object_type": "class",
            "name": "ZCL_TEST",
            "package_name": "$TMP",
            "content": "CLASS zcl_test DEFINITION ...",
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
        return "adt_object"

    @property
    def description(self) -> str:
        return (
            "Create, update or delete ABAP repository objects (classes, programs, "
            "tables, CDS views, domains, behavior definitions, ...) with validation, "
            "locking, syntax checks and activation"
        )

    @property
    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "description": "The lifecycle operation to run",
                    "enum": ["create", "update", "delete"],
                },
                "object_type": {
                    "type": "string",
                    "description": "Kind of repository object",
                    "enum": list(OBJECT_KINDS),
                },
                "name": {
                    "type": "string",
                    "description": "Object name, upper-cased before use",
                },
                "package_name": {
                    "type": "string",
                    "description": "Package of the object (required for create)",
                },
                "description": {
                    "type": "string",
                    "description": "Short description used on create",
                },
                "content": {
                    "type": "string",
                    "description": "Source code or metadata document (required for update)",
                },
                "transport_request": {
                    "type": "string",
                    "description": "Transport request, required outside local ($) packages",
                },
                "parent_name": {
                    "type": "string",
                    "description": "Function group of a function module",
                },
                "activate": {
                    "type": "boolean",
                    "description": "Activate the object after saving",
                    "default": True,
                },
                "validation_policy": {
                    "type": "string",
                    "description": "What to do when name validation fails",
                    "enum": ["halt", "proceed"],
                },
                "timeout_seconds": {
                    "type": "number",
                    "description": "Deadline for the whole workflow",
                },
                "session_id": {
                    "type": "string",
                    "description": "Session to continue, as returned by a previous call",
                },
                "session_state": {
                    "type": "object",
                    "description": "Session state returned by a previous call",
                },
            },
            "required": ["operation", "object_type", "name"],
        }

    async def execute_tool(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Execute the tool with the provided arguments."""
        operation = arguments.get("operation", "")
        if operation not in ("create", "update", "delete"):
            return {"success": False, "error": f"Unknown operation: {operation}"}

        try:
            descriptor = descriptor_from_arguments(arguments)
            options = WorkflowOptions(
                mode=operation,
                activate=arguments.get("activate", True),
                validation_policy=arguments.get("validation_policy"),
                timeout_seconds=arguments.get("timeout_seconds"),
            )
        except ValueError as e:
            return error_result(str(e), ErrorKind.VALIDATION_FAILED)

        content = arguments.get("content")
        if operation == "create" and not descriptor.package_name:
            return error_result(
                "package_name is required for create operation",
                ErrorKind.VALIDATION_FAILED,
            )
        if operation == "update" and content is None:
            return error_result(
                "content is required for update operation", ErrorKind.VALIDATION_FAILED
            )

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
            if arguments.get("session_state") or arguments.get("session_id"):
                session_ctx.restore(
                    arguments.get("session_state"), arguments.get("session_id")
                )

            executor = WorkflowExecutor(
                get_object_adapter(descriptor.kind, connection),
                lock_registry=self.lock_registry,
            )
            outcome = await executor.run(descriptor, content, session_ctx, options)

        result: Dict[str, Any] = {"name": descriptor.name, "object_type": descriptor.kind}
        result.update(outcome.to_dict())
        return result

