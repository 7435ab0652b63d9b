"""Companion tools: memories, profile, goals, insights and assessments.

The tools only validate arguments and delegate.  Storage lives behind the
store protocols below; each store method returns the text shown to the model
and may be sync or async.
"""

from __future__ import annotations

import inspect
from datetime import datetime
from typing import Any, Callable, Protocol

from ally_agent.tools.registry import ToolRegistry
from ally_agent.types import ToolParameter

MEMORY_CATEGORIES = ["CORE_IDENTITY", "EVOLVING_UNDERSTANDING", "CONTEXTUAL", "EPISODIC"]
MEMORY_IMPORTANCE = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
GOAL_CATEGORIES = [
    "CAREER", "RELATIONSHIPS", "HEALTH", "PERSONAL_GROWTH",
    "FINANCE", "CREATIVITY", "SPIRITUALITY", "OTHER",
]
INSIGHT_CATEGORIES = ["PATTERN", "DISCOVERY", "GROWTH", "REFLECTION", "SUGGESTION"]

DEFAULT_LIMIT = 5


# ---------------------------------------------------------------------------
# Store protocols
# ---------------------------------------------------------------------------

class MemoryStore(Protocol):
    def search(self, query: str, category: str | None, limit: int) -> Any: ...
    def recent(self, limit: int, category: str | None) -> Any: ...
    def create(
        self, content: str, category: str, importance: str, tags: list[str],
    ) -> Any: ...


class ProfileStore(Protocol):
    def profile(self) -> Any: ...
    def context(self) -> Any: ...


class InsightStore(Protocol):
    def active_goals(self, limit: int) -> Any: ...
    def create_goal(
        self, title: str, category: str, description: str | None, target_date: str | None,
    ) -> Any: ...
    def recent_insights(self, limit: int) -> Any: ...
    def create_insight(self, title: str, content: str, category: str) -> Any: ...


class AssessmentStore(Protocol):
    def available(self) -> Any: ...
    def results(self, assessment_id: str | None) -> Any: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _resolve(value: Any) -> str:
    if inspect.isawaitable(value):
        value = await value
    return "" if value is None else str(value)


def _limit(value: Any) -> int:
    if value is None:
        return DEFAULT_LIMIT
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"limit must be an integer, got {value!r}") from None
    return max(1, limit)


def _choice(value: Any, allowed: list[str], what: str) -> str:
    if not isinstance(value, str) or value.upper() not in allowed:
        raise ValueError(f"Invalid {what} '{value}'")
    return value.upper()


def _required(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} is required")
    return value


def _limit_param(what: str) -> ToolParameter:
    return ToolParameter(
        "limit", "integer",
        f"Maximum number of {what} to return (default {DEFAULT_LIMIT})",
        required=False,
    )


def _category_param(choices: list[str], description: str, required: bool) -> ToolParameter:
    return ToolParameter("category", "string", description, required=required, enum=choices)


def format_now(now: datetime) -> str:
    hour = now.hour % 12 or 12
    meridiem = "AM" if now.hour < 12 else "PM"
    return (
        f"Current date and time: {now:%A, %B} {now.day}, {now.year} "
        f"at {hour}:{now.minute:02d} {meridiem}"
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register_companion_tools(
    registry: ToolRegistry,
    memories: MemoryStore | None = None,
    profile: ProfileStore | None = None,
    insights: InsightStore | None = None,
    assessments: AssessmentStore | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> list[str]:
    """Register the tools whose store is available.  Returns their names."""
    before = set(registry.tool_names())

    if memories is not None:
        _register_memory_tools(registry, memories)
    if profile is not None:
        _register_profile_tools(registry, profile)
    if insights is not None:
        _register_insight_tools(registry, insights)
    if assessments is not None:
        _register_assessment_tools(registry, assessments)

    async def get_current_date_time() -> str:
        return format_now(clock())

    registry.register_function(
        "get_current_date_time",
        "Get the current date and time. Useful for time-aware responses.",
        get_current_date_time,
    )
    return [name for name in registry.tool_names() if name not in before]


def _register_memory_tools(registry: ToolRegistry, store: MemoryStore) -> None:
    async def search_memories(
        query: str = "", category: str | None = None, limit: int | None = None,
    ) -> str:
        query = _required(query, "query")
        if category is not None:
            category = _choice(category, MEMORY_CATEGORIES, "category")
        return await _resolve(store.search(query, category, _limit(limit)))

    async def get_recent_memories(
        limit: int | None = None, category: str | None = None,
    ) -> str:
        if category is not None:
            category = _choice(category, MEMORY_CATEGORIES, "category")
        return await _resolve(store.recent(_limit(limit), category))

    async def create_memory(
        content: str = "",
        category: str = "",
        importance: str | None = None,
        tags: list[str] | None = None,
    ) -> str:
        content = _required(content, "content")
        category = _choice(category, MEMORY_CATEGORIES, "category")
        level = (importance or "MEDIUM").upper()
        if level not in MEMORY_IMPORTANCE:
            level = "MEDIUM"
        clean_tags = [t for t in (tags or []) if isinstance(t, str)]
        return await _resolve(store.create(content, category, level, clean_tags))

    registry.register_function(
        "search_memories",
        "Search through the user's memories to find relevant information. "
        "Use this when you need to recall something about the user or find "
        "context for the conversation.",
        search_memories,
        [
            ToolParameter("query", "string", "The search query to find relevant memories"),
            _category_param(MEMORY_CATEGORIES, "Optional category filter", required=False),
            _limit_param("memories"),
        ],
    )
    registry.register_function(
        "get_recent_memories",
        "Get the user's most recent memories. Useful for understanding recent context.",
        get_recent_memories,
        [
            _limit_param("memories"),
            _category_param(MEMORY_CATEGORIES, "Optional category filter", required=False),
        ],
    )
    registry.register_function(
        "create_memory",
        "Create a new memory to store important information about the user. "
        "Use this when the user shares something significant that should be "
        "remembered.",
        create_memory,
        [
            ToolParameter("content", "string", "The content of the memory"),
            _category_param(MEMORY_CATEGORIES, "The category of the memory", required=True),
            ToolParameter(
                "importance", "string", "The importance level of the memory",
                required=False, enum=MEMORY_IMPORTANCE,
            ),
            ToolParameter(
                "tags", "array", "Tags to help categorize the memory",
                required=False, items={"type": "string"},
            ),
        ],
    )


def _register_profile_tools(registry: ToolRegistry, store: ProfileStore) -> None:
    async def get_user_profile() -> str:
        return await _resolve(store.profile()) or "User profile not found"

    async def get_user_context() -> str:
        return await _resolve(store.context()) or "User context not found"

    registry.register_function(
        "get_user_profile",
        "Get the user's profile information including name, preferences, and stats.",
        get_user_profile,
    )
    registry.register_function(
        "get_user_context",
        "Get the universal context summary of who the user is, including "
        "personality, goals, challenges, and preferences.",
        get_user_context,
    )


def _register_insight_tools(registry: ToolRegistry, store: InsightStore) -> None:
    async def get_active_goals(limit: int | None = None) -> str:
        return await _resolve(store.active_goals(_limit(limit)))

    async def create_goal(
        title: str = "",
        category: str = "",
        description: str | None = None,
        targetDate: str | None = None,
    ) -> str:
        title = _required(title, "title")
        category = _choice(category, GOAL_CATEGORIES, "category")
        return await _resolve(store.create_goal(title, category, description, targetDate))

    async def get_recent_insights(limit: int | None = None) -> str:
        return await _resolve(store.recent_insights(_limit(limit)))

    async def create_insight(title: str = "", content: str = "", category: str = "") -> str:
        title = _required(title, "title")
        content = _required(content, "content")
        category = _choice(category, INSIGHT_CATEGORIES, "category")
        return await _resolve(store.create_insight(title, content, category))

    registry.register_function(
        "get_active_goals",
        "Get the user's active goals and their progress.",
        get_active_goals,
        [_limit_param("goals")],
    )
    registry.register_function(
        "create_goal",
        "Create a new goal for the user. Use this when the user wants to set a new goal.",
        create_goal,
        [
            ToolParameter("title", "string", "The title of the goal"),
            ToolParameter(
                "description", "string", "A detailed description of the goal",
                required=False,
            ),
            _category_param(
                GOAL_CATEGORIES, "The life domain category for this goal", required=True,
            ),
            ToolParameter(
                "targetDate", "string",
                "Target completion date in ISO format (optional)", required=False,
            ),
        ],
    )
    registry.register_function(
        "get_recent_insights",
        "Get recent insights and patterns discovered about the user.",
        get_recent_insights,
        [_limit_param("insights")],
    )
    registry.register_function(
        "create_insight",
        "Create a new insight or pattern discovered about the user.",
        create_insight,
        [
            ToolParameter("title", "string", "A brief title for the insight"),
            ToolParameter("content", "string", "The detailed insight content"),
            _category_param(INSIGHT_CATEGORIES, "The category of the insight", required=True),
        ],
    )


def _register_assessment_tools(registry: ToolRegistry, store: AssessmentStore) -> None:
    async def get_available_assessments() -> str:
        return await _resolve(store.available()) or "No assessments available"

    async def get_assessment_results(assessmentId: str | None = None) -> str:
        return await _resolve(store.results(assessmentId)) or "No completed assessments found"

    registry.register_function(
        "get_available_assessments",
        "Get available personality and psychology assessments that the user can take.",
        get_available_assessments,
    )
    registry.register_function(
        "get_assessment_results",
        "Get results from assessments the user has completed.",
        get_assessment_results,
        [
            ToolParameter(
                "assessmentId", "string",
                "Optional specific assessment ID to get results for", required=False,
            ),
        ],
    )
