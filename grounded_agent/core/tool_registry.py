# Discovers and manages all available tools automatically.
# Version 2.0.0: Tools return grounded results; arguments are validated before execution.

import pkgutil
import inspect
from types import ModuleType
from typing import Dict, List, Any, Iterable, Optional

from pydantic import ValidationError

from grounded_agent import tools as tools_package
from grounded_agent.core.exceptions import ArgumentParseError, ToolExecutionError
from grounded_agent.models.grounding import ToolExecutionResult
from grounded_agent.tools.base_tool import BaseTool
from grounded_agent.utils.logger import console


class ToolRegistry:
    """
    A class to discover, register, and execute tools. Its `execute` method is the
    default tool executor of the orchestrator.
    """
    def __init__(self, discover: bool = True):
        self.tools: Dict[str, BaseTool] = {}
        if discover:
            self.discover(tools_package)
            console.success(f"Tool discovery complete. Found {len(self.tools)} tools: {list(self.tools.keys())}")

    def register(self, tool: BaseTool):
        if tool.name in self.tools:
            console.warning(f"Tool '{tool.name}' is already registered; replacing it.")
        self.tools[tool.name] = tool
        console.info(f"Successfully registered tool: '{tool.name}'")

    def discover(self, package: ModuleType):
        """
        Scans a package, imports all modules, finds classes that inherit from
        BaseTool, and creates an instance of each to register.
        """
        for _, modname, _ in pkgutil.iter_modules(package.__path__, f"{package.__name__}."):
            if modname.endswith(".base_tool"):
                continue
            try:
                module = __import__(modname, fromlist="dummy")
                for name, obj in inspect.getmembers(module):
                    if inspect.isclass(obj) and issubclass(obj, BaseTool) and obj is not BaseTool \
                            and not inspect.isabstract(obj) and obj.__module__ == module.__name__:
                        self.register(obj())
            except Exception as e:
                console.error(f"Failed to load or register tool from module {modname}: {e}")

    def get(self, tool_name: str) -> Optional[BaseTool]:
        return self.tools.get(tool_name)

    def get_definitions(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Returns the tool definitions for the LLM, optionally restricted to some names."""
        if names is None:
            return [tool.get_definition() for tool in self.tools.values()]
        definitions = []
        for name in names:
            tool = self.tools.get(name)
            if tool is None:
                console.warning(f"Requested tool '{name}' is not registered; skipping it.")
                continue
            definitions.append(tool.get_definition())
        return definitions

    async def execute(self, tool_name: str, arguments: Dict[str, Any]) -> ToolExecutionResult:
        """
        Validates the arguments against the tool's schema and executes it.

        Raises:
            ToolExecutionError: The tool is unknown or did not return a grounded result.
            ArgumentParseError: The arguments fail schema validation.
        """
        tool = self.tools.get(tool_name)
        if tool is None:
            console.error(f"Attempted to execute unknown tool: {tool_name}")
            raise ToolExecutionError(f"Tool '{tool_name}' not found.", tool_name=tool_name)

        try:
            validated = tool.args_schema.model_validate(arguments or {})
        except ValidationError as e:
            raise ArgumentParseError(
                f"Invalid arguments for tool '{tool_name}': {e.error_count()} validation error(s). "
                f"{e.errors(include_url=False)}",
                tool_name=tool_name,
            ) from e

        result = await tool.execute(**validated.model_dump())
        if not isinstance(result, ToolExecutionResult):
            raise ToolExecutionError(
                f"Tool '{tool_name}' returned {type(result).__name__} instead of a grounded result.",
                tool_name=tool_name,
            )
        return result


# Create a singleton instance for global use throughout the application.
tool_registry = ToolRegistry()
