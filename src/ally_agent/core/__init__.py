"""Core agent components."""

from ally_agent.core.agent import AllyAgent
from ally_agent.core.executor import Executor
from ally_agent.core.state import (
    AgentState,
    AgentStateHolder,
    Complete,
    Error,
    ExecutingTool,
    Generating,
    Idle,
    StateThrottle,
    Thinking,
)

__all__ = [
    "AgentState",
    "AgentStateHolder",
    "AllyAgent",
    "Complete",
    "Error",
    "ExecutingTool",
    "Executor",
    "Generating",
    "Idle",
    "StateThrottle",
    "Thinking",
]
