"""ABAP Development Tools (ADT) Plugin for MCP Tools.

This plugin drives the lifecycle of ABAP repository objects over the ADT REST
interface: validation, creation, locking, syntax checks, source updates,
unlocking and activation, with the edit lock released on every exit path.
"""

from .check_gate import CheckGate
from .lock_manager import LockManager
from .lowlevel_tool import AdtLowLevelTool
from .object_tool import AdtObjectTool
from .workflow import WorkflowExecutor

__all__ = ["AdtObjectTool", "AdtLowLevelTool", "WorkflowExecutor", "LockManager", "CheckGate"]
