"""TermAgent CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

logger = logging.getLogger("termagent.cli")

console = Console()

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def main() -> None:
    from termagent import __version__

    parser = argparse.ArgumentParser(
        prog="termagent",
        description="TermAgent: an AI coding assistant in your terminal",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.termagent/config.json)")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    chat_parser = subparsers.add_parser("chat", help="Chat with the agent (interactive unless -m is given)")
    chat_parser.add_argument("-m", "--message", default=None, help="Send one message and exit")
    chat_parser.add_argument("--provider", default=None, help="Provider to use (overrides config)")
    chat_parser.add_argument("--model", default=None, help="Model to use (overrides config)")
    chat_parser.add_argument("--resume", "-c", action="store_true", help="Continue the last session")

    subparsers.add_parser("sessions", help="List saved sessions")
    subparsers.add_parser("providers", help="List providers and whether a key is configured")

    args = parser.parse_args()

    # Initialize config globally with the provided path (if any)
    from termagent.core.config import get_config
    cfg = get_config(args.config)

    from termagent.logger import setup_logging
    setup_logging(cfg.log_file or None, logging.DEBUG if args.debug else logging.INFO)

    if args.command == "chat":
        try:
            asyncio.run(_run_chat(args, cfg))
        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted.[/dim]")
    elif args.command == "sessions":
        _run_sessions()
    elif args.command == "providers":
        _run_providers(cfg)
    else:
        parser.print_help()
        sys.exit(1)


def _run_sessions() -> None:
    from termagent.core.session import list_sessions

    sessions = list_sessions()
    if not sessions:
        console.print("[dim]No saved sessions.[/dim]")
        return
    table = Table(title="Saved sessions")
    table.add_column("Session")
    table.add_column("Last updated")
    table.add_column("Messages", justify="right")
    table.add_column("Preview")
    for s in sessions:
        table.add_row(s["sessionId"] or s["filename"], s["lastUpdated"], str(s["messageCount"]), escape(s["preview"]))
    console.print(table)


def _run_providers(cfg) -> None:
    from termagent.core.providers import available_providers

    table = Table(title="Providers")
    table.add_column("Name")
    table.add_column("Default model")
    table.add_column("Configured")
    for row in available_providers(cfg):
        mark = "[green]yes[/green]" if row["configured"] else "[red]no[/red]"
        active = " [cyan](active)[/cyan]" if row["name"] == cfg.provider else ""
        table.add_row(row["name"] + active, row["default_model"], mark)
    console.print(table)


async def _confirm_command(command: str, reason: str) -> bool:
    console.print(f"\n[yellow]⚠ {escape(reason)}[/yellow]\n  [bold]{escape(command)}[/bold]")
    try:
        return await asyncio.to_thread(Confirm.ask, "Run this command?", default=False)
    except EOFError:
        # No terminal to ask (stdin closed); treat as a refusal
        console.print("[dim]No input available; command declined.[/dim]")
        return False


def _build_agent(args, cfg):
    from termagent.core.agent import AgentLoop
    from termagent.core.conversation import ConversationStore
    from termagent.core.providers import ProviderConfigError, create_provider
    from termagent.core.session import load_last_session
    from termagent.core.tools import create_default_registry

    provider_name = args.provider or cfg.provider
    model = args.model or (cfg.model if provider_name == cfg.provider else None)
    try:
        provider = create_provider(provider_name, model, config=cfg)
    except ProviderConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return None

    store = None
    if args.resume:
        store = load_last_session(
            token_budget=cfg.context_token_budget,
            chars_per_token=cfg.context_chars_per_token,
            max_messages=cfg.context_max_messages,
            max_tool_messages=cfg.context_max_tool_messages,
            keep_tool_turns=cfg.context_keep_tool_turns,
            max_tool_result_chars=cfg.context_max_tool_result_chars,
            fallback_messages=cfg.context_fallback_messages,
        )
        if store is None:
            console.print("[dim]No previous session found; starting a new one.[/dim]")
    if store is None:
        store = ConversationStore.from_config(cfg)

    workdir = os.getcwd()
    agent = AgentLoop(
        provider,
        create_default_registry(workdir),
        store,
        config=cfg,
        confirm_callback=_confirm_command,
        working_directory=workdir,
    )
    agent.initialize()
    return agent


async def _send(agent, cfg, message: str) -> None:
    from termagent.core.agent import AutoContinue
    from termagent.core.session import save_session

    runner = AutoContinue(agent, cfg.agent_auto_continue_max, enabled=cfg.agent_auto_continue)
    streamed = False
    async for event in runner.chat(message):
        if event.type == "content":
            console.print(event.data["content"], end="", markup=False, highlight=False)
            streamed = True
            continue
        if streamed:
            console.print()
            streamed = False

        if event.type == "tool_call":
            args_text = json.dumps(event.data["arguments"], default=str)
            console.print(f"[cyan]⚙ {escape(event.data['tool'])}[/cyan] [dim]{escape(args_text[:200])}[/dim]")
        elif event.type == "tool_result":
            result = event.data["result"]
            if result.get("success", "error" not in result):
                console.print("  [green]✓ done[/green]")
            else:
                console.print(f"  [red]✗ {escape(str(result.get('error', 'failed')))}[/red]")
        elif event.type == "auto_continue":
            console.print(f"[dim]⟳ Auto-continuing ({event.data['attempt']}/{event.data['max']})...[/dim]")
        elif event.type == "auto_continue_limit":
            console.print('[dim]Auto-continue limit reached. Type "continue" to continue manually.[/dim]')
        elif event.type == "done":
            usage = event.data.get("usage") or {}
            console.print(f"[dim]✔ Done · ~{usage.get('totalTokens', 0)} tokens[/dim]")
        elif event.type == "max_iterations":
            console.print(f"[yellow]⏸ {escape(event.data['message'])}. Type \"continue\" to keep going.[/yellow]")
        elif event.type == "error":
            console.print(f"[red]✖ Error: {escape(event.data['message'])}[/red]")

    try:
        save_session(agent.conversation, max_kept=cfg.sessions_max_kept)
    except OSError as e:
        logger.error(f"Failed to save session: {e}")


async def _run_chat(args, cfg) -> None:
    agent = _build_agent(args, cfg)
    if agent is None:
        sys.exit(1)

    try:
        if args.message:
            await _send(agent, cfg, args.message)
            return

        console.print(
            f"[bold]TermAgent[/bold] [dim]{agent.provider.name}/{agent.provider.model} · "
            f"{agent.working_directory}[/dim]\n[dim]/clear resets the conversation, /exit quits.[/dim]"
        )
        while True:
            try:
                message = await asyncio.to_thread(Prompt.ask, "[bold green]›[/bold green]")
            except EOFError:
                break
            message = message.strip()
            if not message:
                continue
            if message in EXIT_COMMANDS:
                break
            if message == "/clear":
                agent.clear_history()
                console.print("[dim]Conversation cleared.[/dim]")
                continue
            await _send(agent, cfg, message)
    finally:
        await agent.provider.aclose()


if __name__ == "__main__":
    main()
