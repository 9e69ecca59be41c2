# The module is to define the base class for all action tools.
# Date: 2026-10-18
# Version: 0.2.0

from abc import ABC, abstractmethod
from pydantic import BaseModel
from typing import Dict, Any, Optional, Type

from grounded_agent.models.grounding import FAMILY_RISK, RiskLevel, ToolExecutionResult, ToolFamily


class BaseTool(ABC):
    """
    Abstract Base Class for all tools.

    This class defines a standard interface that all tools must implement.
    Attributes:
        name (str): The name of the tool, used for identification.
        description (str): A brief description of what the tool does.
        args_schema (Type[BaseModel]): A Pydantic model defining the arguments
            that the tool accepts, which will be validated before execution.
        family (Optional[ToolFamily]): The tool family. It fixes the risk level
            and the response templates of every result the tool returns.
    """
    name: str
    description: str
    args_schema: Type[BaseModel]
    family: Optional[ToolFamily] = None

    @abstractmethod
    async def execute(self, **kwargs) -> ToolExecutionResult:
        """
        The core logic of the tool. This method must be implemented by all subclasses.

        Args:
            **kwargs: The arguments for the tool, validated against args_schema.

        Returns:
            A grounded result, normally built with `build_result` or one of the
            `create_*_result` factories of `grounded_agent.core.grounding`.
        """
        pass

    @property
    def risk_level(self) -> Optional[RiskLevel]:
        return FAMILY_RISK.get(self.family) if self.family else None

    def get_definition(self) -> Dict[str, Any]:
        """
        Returns the tool's definition in a format compliant with OpenAI's
        function-calling format. This method is inherited by all tools.
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_schema.model_json_schema()
            }
        }
