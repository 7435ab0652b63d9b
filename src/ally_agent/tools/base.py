"""Tool contract offered to the model, plus an adapter for plain callables."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from ally_agent.types import ToolParameter


class Tool(ABC):
    """A function the model may call.

    Subclasses declare ``name``, ``description`` and ``parameters`` and
    implement ``execute()``.  The returned text goes back to the model as the
    ``tool`` message; raising marks the call as failed.
    """

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()
    max_output: int = 5000  # chars; 0 disables truncation

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Run the tool with the model-supplied arguments."""

    def to_openai_schema(self) -> dict[str, Any]:
        """Function-calling definition sent in the request's ``tools`` list."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.to_schema() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }

    def to_compact_description(self) -> str:
        signature = ", ".join(
            f"{p.name}: {p.type}{'' if p.required else '?'}" for p in self.parameters
        )
        return f"{self.name}({signature}) - {self.description}"


class FunctionTool(Tool):
    """Wraps a sync or async callable that takes keyword arguments."""

    def __init__(
        self,
        name: str,
        description: str,
        func: Callable[..., Any],
        parameters: list[ToolParameter] | None = None,
        max_output: int = 5000,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = tuple(parameters or ())
        self.max_output = max_output
        self._func = func

    async def execute(self, **kwargs: Any) -> str:
        value = self._func(**kwargs)
        if inspect.isawaitable(value):
            value = await value
        return "" if value is None else str(value)
