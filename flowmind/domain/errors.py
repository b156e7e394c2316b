from typing import Any, Dict, Optional


class FlowMindError(Exception):
    """Base class for errors raised by the reasoning core"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidRequestError(FlowMindError):
    """Missing or malformed request parameters; no state was changed"""


class ThoughtNotFoundError(FlowMindError):
    def __init__(self, thought_id: str):
        super().__init__(f"Thought {thought_id} not found", {"thoughtId": thought_id})
        self.thought_id = thought_id


class ToolNotFoundError(FlowMindError):
    def __init__(self, tool_name: str):
        super().__init__(f"Tool {tool_name} not found", {"toolName": tool_name})
        self.tool_name = tool_name


class ToolParameterError(FlowMindError):
    """Tool parameters failed validation"""

    def __init__(self, tool_name: str, errors):
        super().__init__(f"Invalid parameters for {tool_name}: {'; '.join(errors)}", {"errors": list(errors)})
        self.tool_name = tool_name
        self.errors = list(errors)
