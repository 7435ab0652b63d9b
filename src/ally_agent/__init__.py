"""ally-agent: streaming completion and tool orchestration for the Ally companion."""

__version__ = "0.3.0"
