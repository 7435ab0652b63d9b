"""Configuration for ally-agent.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./ally_agent.yaml``
  3. ``~/.config/ally-agent/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from ally_agent.llm.retry import RetryConfig

_logger = logging.getLogger(__name__)

API_KEY_ENV = "ALLY_API_KEY"

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """An OpenAI-compatible endpoint."""

    id: str = "deepinfra"
    name: str = "DeepInfra"
    base_url: str = "https://api.deepinfra.com/v1/openai"
    api_endpoint: str = "/chat/completions"
    models_endpoint: str | None = "/models"
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    supports_streaming: bool = True
    supports_tool_calling: bool = True
    default_model: str = "meta-llama/Llama-3.3-70B-Instruct"
    extra_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelSpec:
    """Per-model capabilities and sampling defaults."""

    model_id: str
    provider_id: str = "deepinfra"
    display_name: str = ""
    context_length: int = 4096
    max_output_tokens: int | None = None
    supports_tool_calling: bool = False
    supports_reasoning: bool = False
    supports_vision: bool = False
    temperature: float = 0.7
    top_p: float | None = None
    stop: list[str] | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.model_id


@dataclass
class TimeoutSpec:
    """HTTP timeouts in seconds.  Streams never apply ``read``."""

    connect: float = 30.0
    read: float = 120.0
    write: float = 60.0


@dataclass
class AgentSettings:
    """Knobs for the completion orchestrator."""

    debounce_interval: float = 0.05
    debounce_chars: int = 10
    stream_idle_timeout: float = 120.0
    parallel_tool_calls: bool = False
    max_tokens: int | None = 4096
    system_prompt: str | None = None


def _default_models() -> list[ModelSpec]:
    return [
        ModelSpec(
            model_id="meta-llama/Llama-3.3-70B-Instruct",
            display_name="Llama 3.3 70B",
            context_length=131072,
            supports_tool_calling=True,
        ),
        ModelSpec(
            model_id="deepseek-ai/DeepSeek-R1",
            display_name="DeepSeek R1",
            context_length=65536,
            supports_reasoning=True,
        ),
    ]


@dataclass
class AllyConfig:
    """Top-level configuration."""

    # Active provider id
    provider: str = "deepinfra"

    providers: dict[str, ProviderSpec] = field(
        default_factory=lambda: {"deepinfra": ProviderSpec()}
    )
    models: list[ModelSpec] = field(default_factory=_default_models)
    retry: RetryConfig = field(default_factory=RetryConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)
    timeouts: TimeoutSpec = field(default_factory=TimeoutSpec)

    @property
    def active_provider(self) -> ProviderSpec:
        return self.providers.get(self.provider, ProviderSpec())

    def model(self, model_id: str) -> ModelSpec | None:
        for spec in self.models:
            if spec.model_id == model_id:
                return spec
        return None

    def models_for(self, provider_id: str) -> list[ModelSpec]:
        return [m for m in self.models if m.provider_id == provider_id]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./ally_agent.yaml"),
    Path.home() / ".config" / "ally-agent" / "config.yaml",
]


def resolve_api_key(value: str | None) -> str | None:
    """Expand ``${VAR}`` references; fall back to ``$ALLY_API_KEY``."""
    if value:
        match = _ENV_REF.match(value.strip())
        if match is None:
            return value
        resolved = os.environ.get(match.group(1))
        if resolved:
            return resolved
        _logger.warning("Environment variable %s is not set", match.group(1))
    return os.environ.get(API_KEY_ENV) or None


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*."""
    names = {f.name for f in fields(cls)}
    unknown = set(raw) - names
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return {k: v for k, v in raw.items() if k in names and v is not None}


def _parse_provider(pid: str, raw: dict[str, Any]) -> ProviderSpec:
    values = _pick(ProviderSpec, {"id": pid, **raw})
    if "models_endpoint" in raw and raw["models_endpoint"] is None:
        values["models_endpoint"] = None
    spec = ProviderSpec(**values)
    spec.api_key = resolve_api_key(spec.api_key)
    return spec


def _parse_models(raw: list[dict[str, Any]] | None) -> list[ModelSpec]:
    if not raw:
        return _default_models()
    models: list[ModelSpec] = []
    for entry in raw:
        if isinstance(entry, str):
            models.append(ModelSpec(model_id=entry))
        else:
            models.append(ModelSpec(**_pick(ModelSpec, entry)))
    return models


def _parse_retry(raw: Any) -> RetryConfig:
    if raw is None:
        return RetryConfig()
    if isinstance(raw, str):
        return RetryConfig.from_profile(raw)
    raw = dict(raw)
    profile = raw.pop("profile", None)
    base = RetryConfig.from_profile(profile) if profile else RetryConfig()
    overrides = _pick(RetryConfig, raw)
    values = {f.name: getattr(base, f.name) for f in fields(RetryConfig)}
    values.update(overrides)
    return RetryConfig(**values)


def load_config(path: str | Path | None = None) -> AllyConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    AllyConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return _with_env_key(AllyConfig())
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return _with_env_key(AllyConfig())

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    providers: dict[str, ProviderSpec] = {}
    for pid, praw in (raw.get("providers") or {}).items():
        providers[pid] = _parse_provider(pid, praw or {})
    if not providers:
        providers["deepinfra"] = _parse_provider("deepinfra", {})

    provider = raw.get("provider") or next(iter(providers))
    if provider not in providers:
        _logger.warning("Unknown provider %r, falling back to %s", provider, next(iter(providers)))
        provider = next(iter(providers))

    return AllyConfig(
        provider=provider,
        providers=providers,
        models=_parse_models(raw.get("models")),
        retry=_parse_retry(raw.get("retry")),
        agent=AgentSettings(**_pick(AgentSettings, raw.get("agent") or {})),
        timeouts=TimeoutSpec(**_pick(TimeoutSpec, raw.get("timeouts") or {})),
    )


def _with_env_key(config: AllyConfig) -> AllyConfig:
    for spec in config.providers.values():
        spec.api_key = resolve_api_key(spec.api_key)
    return config
