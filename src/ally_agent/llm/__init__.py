"""Transport layer: retry policy, rate limits and stream parsing.

The HTTP client lives in :mod:`ally_agent.llm.client`.
"""

from ally_agent.llm.assembler import ToolCallAssembler
from ally_agent.llm.rate_limit import RateLimitStatus, RateLimitTracker
from ally_agent.llm.retry import RetryConfig, is_retryable, next_delay, with_retry
from ally_agent.llm.stream_parser import StreamParser

__all__ = [
    "RateLimitStatus",
    "RateLimitTracker",
    "RetryConfig",
    "StreamParser",
    "ToolCallAssembler",
    "is_retryable",
    "next_delay",
    "with_retry",
]
