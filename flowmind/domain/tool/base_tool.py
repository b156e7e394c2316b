from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from flowmind.domain.insight.insight_model import InsightModel
    from flowmind.domain.reasoning.reasoner import Reasoner
    from flowmind.domain.store.thought_store import ThoughtStore
    from flowmind.domain.task.task_queue import TaskQueue


@dataclass
class ToolContext:
    """Collaborators a tool may use while it runs"""
    store: "ThoughtStore"
    insight: "InsightModel"
    task_queue: Optional["TaskQueue"] = None
    reasoner: Optional["Reasoner"] = None


class Tool(ABC):
    """A named, side-effecting operation dispatched by the registry

    `parameters` maps each parameter name to a spec of the form
    {"type": "string", "required": True, "default": ...}.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Dict[str, Any]] = {}

    @abstractmethod
    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        """Run the tool and return a JSON-serializable result"""

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }
