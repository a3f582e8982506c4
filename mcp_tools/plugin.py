import importlib
import inspect
import logging
import os
import pkgutil
import time
from contextlib import contextmanager
from typing import Dict, List, Type, Set, Optional

from mcp_tools.interfaces import ToolInterface

logger = logging.getLogger(__name__)


@contextmanager
def time_plugin_operation(name: str):
    start_time = time.time()
    logger.info(f"Starting {name}...")
    try:
        yield
    finally:
        duration = time.time() - start_time
        logger.info(f"{name} completed in {duration:.2f}s")


def _excluded_tool_names() -> Set[str]:
    """Tool names disabled through MCP_EXCLUDED_TOOL_NAMES"""
    value = os.environ.get("MCP_EXCLUDED_TOOL_NAMES", "")
    return {tool.strip() for tool in value.split(",") if tool.strip()}


class PluginRegistry:
    """Registry for MCP tool plugins.

    This class handles the registration, discovery, and management of tool plugins
    that implement the ToolInterface.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(PluginRegistry, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the plugin registry"""
        self.tools: Dict[str, Type[ToolInterface]] = {}
        self.instances: Dict[str, ToolInterface] = {}
        self.discovered_paths: Set[str] = set()

    def register_tool(
        self, tool_class: Type[ToolInterface]
    ) -> Optional[Type[ToolInterface]]:
        """Register a tool class.

        Args:
            tool_class: A class that implements ToolInterface

        Returns:
            The registered tool class or None if it wasn't registered

        Raises:
            TypeError: If the provided class doesn't implement ToolInterface
        """
        if not inspect.isclass(tool_class):
            raise TypeError(f"Expected a class, got {type(tool_class)}")

        if not issubclass(tool_class, ToolInterface):
            raise TypeError(
                f"Class {tool_class.__name__} does not implement ToolInterface"
            )

        if inspect.isabstract(tool_class):
            logger.debug(
                f"Skipping registration of abstract class {tool_class.__name__}"
            )
            return None

        # Create a temporary instance to get the name
        try:
            tool_name = tool_class().name
        except Exception as e:
            logger.error(f"Error creating instance of {tool_class.__name__}: {e}")
            return None

        if tool_name in _excluded_tool_names():
            logger.info(f"Skipping excluded tool: {tool_name}")
            return None

        logger.info(f"Registering tool: {tool_name} ({tool_class.__name__})")
        self.tools[tool_name] = tool_class
        return tool_class

    def get_tool_instance(self, tool_name: str) -> Optional[ToolInterface]:
        """Get or create an instance of a registered tool.

        Args:
            tool_name: Name of the tool to get

        Returns:
            Instance of the tool, or None if not found
        """
        if tool_name in self.instances:
            return self.instances[tool_name]

        registered_name = tool_name
        if tool_name not in self.tools:
            matches = [n for n in self.tools if n.lower() == tool_name.lower()]
            if not matches:
                logger.warning(f"Tool '{tool_name}' not found")
                return None
            registered_name = matches[0]
            logger.debug(
                f"Found tool '{tool_name}' with case-insensitive match: '{registered_name}'"
            )

        if registered_name in self.instances:
            return self.instances[registered_name]

        try:
            instance = self.tools[registered_name]()
        except Exception as e:
            logger.error(f"Error creating instance of tool {registered_name}: {e}")
            return None

        self.instances[registered_name] = instance
        return instance

    def discover_tools(self, package_name: str = "plugins") -> None:
        """Discover tools by recursively scanning a package.

        Args:
            package_name: Name of the package to scan for tools
        """
        logger.info(f"Discovering tools in package: {package_name}")

        try:
            package = importlib.import_module(package_name)
        except ImportError as e:
            logger.error(f"Error discovering tools in {package_name}: {e}")
            return

        package_path = getattr(package, "__path__", [])

        for _, module_name, is_pkg in pkgutil.iter_modules(package_path):
            # Test modules never define tools
            if module_name == "tests" or module_name.startswith("test_"):
                continue

            full_name = f"{package_name}.{module_name}"
            if full_name in self.discovered_paths:
                continue
            self.discovered_paths.add(full_name)

            try:
                if is_pkg:
                    self.discover_tools(full_name)
                else:
                    module = importlib.import_module(full_name)
                    self._scan_module_for_tools(module)
            except Exception as e:
                logger.warning(f"Error processing module {full_name}: {e}")

    def _scan_module_for_tools(self, module) -> None:
        """Register every concrete ToolInterface class defined in a module."""
        for name, obj in inspect.getmembers(module, inspect.isclass):
            if (
                obj.__module__ == module.__name__
                and issubclass(obj, ToolInterface)
                and obj is not ToolInterface
                and obj not in self.tools.values()
            ):
                logger.debug(f"Found tool class {name} in {module.__name__}")
                self.register_tool(obj)

    def get_all_tools(self) -> List[Type[ToolInterface]]:
        """Get all registered tool classes."""
        return list(self.tools.values())

    def get_all_instances(self) -> List[ToolInterface]:
        """Get instances of all registered tools.

        This will create instances of tools that haven't been instantiated yet.
        """
        for tool_name in self.tools:
            if tool_name not in self.instances:
                self.get_tool_instance(tool_name)
        return list(self.instances.values())

    def clear(self) -> None:
        """Clear all registered tools and instances."""
        self.tools.clear()
        self.instances.clear()
        self.discovered_paths.clear()


# Create singleton instance
registry = PluginRegistry()


# Decorator for registering tools
def register_tool(cls=None):
    """Decorator to register a tool class with the plugin registry.

    Example:
        @register_tool
        class MyTool(ToolInterface):
            ...
    """

    def _register(cls):
        result = registry.register_tool(cls)
        return cls if result is None else result

    if cls is None:
        return _register
    return _register(cls)


def discover_and_register_tools(package_name: str = "plugins"):
    """Discover and register all tools shipped in the plugin packages."""
    with time_plugin_operation("Tool discovery"):
        registry.discover_tools(package_name)

    logger.info(f"Total tools registered: {len(registry.tools)}")
    logger.debug(f"Registered tool names: {list(registry.tools.keys())}")
