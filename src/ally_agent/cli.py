"""Command line front end for exercising the engine against a provider."""

from __future__ import annotations

import asyncio
import logging
import sys
import time

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from ally_agent import __version__
from ally_agent.config import AllyConfig, load_config
from ally_agent.core.agent import AllyAgent
from ally_agent.core.state import AgentState, Error, ExecutingTool
from ally_agent.llm.client import TransportClient
from ally_agent.tools.companion import register_companion_tools
from ally_agent.tools.registry import ToolRegistry
from ally_agent.types import ContentText, ReasoningText, StreamDelta

console = Console()


def _make_client(config: AllyConfig) -> TransportClient:
    provider = config.active_provider
    return TransportClient(
        provider,
        retry=config.retry,
        timeouts=config.timeouts,
        stream_idle_timeout=config.agent.stream_idle_timeout,
        fallback_models=config.models_for(provider.id),
    )


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to ally_agent.yaml (auto-detected from CWD or ~/.config/ally-agent/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="ally-agent")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Ally - streaming companion agent."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = load_config(config_path)


@main.command()
@click.argument("message")
@click.option("--model", "-m", default=None, help="Model id (defaults to the provider default)")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--no-tools", is_flag=True, help="Do not offer tools to the model")
@click.option("--show-reasoning", is_flag=True, help="Print reasoning text as it streams")
@click.pass_obj
def chat(
    config: AllyConfig,
    message: str,
    model: str | None,
    system_prompt: str | None,
    no_tools: bool,
    show_reasoning: bool,
) -> None:
    """Send MESSAGE and stream the reply."""
    code = asyncio.run(_chat(
        config, message, model, system_prompt or config.agent.system_prompt,
        not no_tools, show_reasoning,
    ))
    sys.exit(code)


async def _chat(
    config: AllyConfig,
    message: str,
    model: str | None,
    system_prompt: str | None,
    use_tools: bool,
    show_reasoning: bool,
) -> int:
    client = _make_client(config)
    registry = ToolRegistry()
    register_companion_tools(registry)
    registry.discover()
    agent = AllyAgent(client, registry, settings=config.agent, models=config.models)

    def on_state(state: AgentState) -> None:
        if isinstance(state, ExecutingTool) and not state.arguments:
            console.print(f"\n[dim]-> {state.tool_name}[/dim]")

    def on_chunk(delta: StreamDelta) -> None:
        if isinstance(delta, ContentText):
            console.print(delta.text, end="", markup=False, highlight=False)
        elif isinstance(delta, ReasoningText) and show_reasoning:
            console.print(delta.text, end="", style="dim italic", markup=False, highlight=False)

    unsubscribe = agent.state.subscribe(on_state)
    start = time.monotonic()
    try:
        response = await agent.process_message(
            message, model=model, system_prompt=system_prompt,
            on_chunk=on_chunk, use_tools=use_tools,
        )
    finally:
        unsubscribe()
        await client.close()

    console.print()
    if response.error is not None:
        state = agent.state.value
        hint = state.suggested_action if isinstance(state, Error) else None
        body = response.error.user_message + (f"\n[dim]{hint}[/dim]" if hint else "")
        console.print(Panel(body, title="Error", border_style="red"))
        return 1
    console.print(
        f"[dim]({time.monotonic() - start:.1f}s, {response.tokens_used} tokens, "
        f"{len(response.tool_results)} tool call(s), {response.model})[/dim]"
    )
    return 0


@main.command()
@click.pass_obj
def models(config: AllyConfig) -> None:
    """List models offered by the active provider."""
    asyncio.run(_models(config))


async def _models(config: AllyConfig) -> None:
    client = _make_client(config)
    try:
        specs = await client.fetch_models()
    finally:
        await client.close()

    table = Table(title=f"Models @ {config.active_provider.name}")
    table.add_column("Model")
    table.add_column("Name")
    table.add_column("Context", justify="right")
    table.add_column("Tools")
    for spec in specs:
        table.add_row(
            spec.model_id,
            spec.label,
            str(spec.context_length),
            "yes" if spec.supports_tool_calling else "",
        )
    console.print(table)


@main.command()
@click.pass_obj
def ping(config: AllyConfig) -> None:
    """Check that the active provider is reachable."""
    ok = asyncio.run(_ping(config))
    provider = config.active_provider
    if ok:
        console.print(f"[green]{provider.name} is reachable ({provider.base_url})[/green]")
    else:
        console.print(f"[red]{provider.name} is not reachable ({provider.base_url})[/red]")
        sys.exit(1)


async def _ping(config: AllyConfig) -> bool:
    client = _make_client(config)
    try:
        return await client.is_available()
    finally:
        await client.close()


@main.command()
def tools() -> None:
    """Show the tools offered to the model."""
    registry = ToolRegistry()
    register_companion_tools(registry)
    registry.discover()
    lines = "\n".join(f"- `{t.to_compact_description()}`" for t in registry.list_tools())
    console.print(Markdown(lines))


if __name__ == "__main__":
    main()
