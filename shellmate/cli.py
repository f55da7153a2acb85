#!/usr/bin/env python3

import argparse
import asyncio
import json
import logging
import signal
import sys

import litellm
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import InMemoryHistory
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import config
from . import tools
from .agent import EMPTY_RESPONSE, ConversationOrchestrator, TurnState
from .session import CommandSession, ExecutionStatus
from .shell import ShellHost
from .transport import RateLimitedTransport

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    ExecutionStatus.RUNNING: "blue",
    ExecutionStatus.DONE: "green",
    ExecutionStatus.ERRORED: "red",
    ExecutionStatus.STOPPED: "yellow",
}
RESULT_PREVIEW_CHARS = 400


def is_config_valid(cfg) -> bool:
    """A config is usable once it names a model and an endpoint. The API key is optional."""
    return bool(cfg.get("model")) and bool(cfg.get("api_base"))


def _should_add_to_history(text: str):
    """Return True if the given input text should be added to history."""
    text = text.strip()
    # Don't save empty lines or commands to history
    if not text or text.startswith("/") or text.lower() == "exit":
        return False
    return True


def _model_prices(model: str) -> dict:
    """Per-token prices for a model from LiteLLM's cost map, tolerating provider prefixes."""
    for key in (model, model.split("/", 1)[-1]):
        info = litellm.model_cost.get(key)
        if info:
            return info
    return {}


def _update_session_stats(prompt_tokens: int, completion_tokens: int, session_stats: dict, model: str):
    """Adds one response's token counts and estimated cost to the session totals."""
    prices = _model_prices(model)
    in_cost = prices.get("input_cost_per_token", 0) or 0
    out_cost = prices.get("output_cost_per_token", 0) or 0

    session_stats["prompt_tokens"] += prompt_tokens
    session_stats["completion_tokens"] += completion_tokens
    session_stats["cost"] += (prompt_tokens * in_cost) + (completion_tokens * out_cost)


def display_help():
    """Displays the help menu for interactive commands."""
    help_text = """
[bold]Commands[/bold]
  /help   Show this help message
  /clear  Forget the conversation (the shell session is kept)
  /stats  Show token usage and estimated cost
  /exit   Quit (also: exit, Ctrl+D)

[bold]Keys[/bold]
  Ctrl+C  Stop the running command, or abort the current turn
"""
    console.print(Panel(help_text.strip(), title="[bold cyan]Help[/]", border_style="cyan", expand=False))


class _ChatHistory(InMemoryHistory):
    def append_string(self, string: str):
        if _should_add_to_history(string):
            super().append_string(string)


class TerminalSession:
    """Wires the orchestrator, the command session and the terminal together."""

    def __init__(self, cfg: dict):
        self.cfg = cfg
        self.model = cfg["model"]
        self.host = ShellHost(shell=cfg.get("shell"))
        self.command_session = CommandSession(self.host, label="shellmate", on_update=self.on_command_update)
        self.router = tools.ToolRouter(tools.build_catalog(cfg), self.command_session)
        self.transport = RateLimitedTransport(
            cfg["api_base"],
            api_key=cfg.get("api_key"),
            max_retries=cfg.get("max_retries", 3),
            retry_wait=cfg.get("retry_wait", 5),
            timeout=cfg.get("request_timeout", 120),
        )
        self.orchestrator = ConversationOrchestrator(
            self.transport,
            self.router,
            model=self.model,
            system_prompt=cfg.get("system_prompt") or "",
            tools_enabled=cfg.get("tools_enabled", True),
            max_turns=cfg.get("max_turns", 50),
            on_event=self.on_agent_event,
        )
        self.session_stats = {"prompt_tokens": 0, "completion_tokens": 0, "cost": 0.0}
        self.prompt_session = PromptSession(history=_ChatHistory())
        self._confirm_prompt = PromptSession()
        self._live = None
        self._response_text = ""
        self._usage_seen = False
        self._pending = set()

    # --- Model output ---

    def _assistant_panel(self, text: str) -> Panel:
        return Panel(
            Markdown(text, style="default", code_theme="monokai"),
            title="[bold green]Assistant[/]",
            border_style="green",
        )

    def _stop_live(self):
        if self._live is not None:
            self._live.stop()
            self._live = None

    def on_agent_event(self, event):
        if event.type == "request":
            self._response_text = ""
            self._usage_seen = False
            self._live = Live(Panel("...", title="[bold green]Assistant[/]", border_style="green"),
                              console=console, refresh_per_second=10, transient=True)
            self._live.start()
        elif event.type == "text":
            self._response_text += event.content
            if self._live is not None:
                self._live.update(self._assistant_panel(self._response_text))
        elif event.type == "rate_limited":
            if self._live is not None:
                self._live.update(Panel(f"Rate limit reached. Retrying in {event.content}s...",
                                        title="[bold yellow]Waiting[/]", border_style="yellow"))
        elif event.type == "usage":
            self._usage_seen = True
            _update_session_stats(event.data["prompt_tokens"], event.data["completion_tokens"],
                                  self.session_stats, self.model)
        elif event.type == "response_end":
            self._stop_live()
            if event.content:
                console.print(self._assistant_panel(event.content))
            if not self._usage_seen:
                self._count_tokens(event.content)
        elif event.type == "tool_call":
            call = event.data["call"]
            console.print(
                Panel(
                    Text.assemble((call.name, "cyan"), "(", json.dumps(call.arguments, indent=2), ")"),
                    title="[bold yellow]Tool Call[/]",
                    border_style="yellow",
                    expand=False,
                )
            )
        elif event.type == "tool_result":
            result = event.data["result"]
            if result.name != tools.SHELL_TOOL:
                preview = result.output
                if len(preview) > RESULT_PREVIEW_CHARS:
                    preview = preview[:RESULT_PREVIEW_CHARS] + "\n… (truncated)"
                console.print(Panel(Text(preview), title=f"[dim]{result.name} result[/]", border_style="dim", expand=False))
        elif event.type == "final":
            if event.content == EMPTY_RESPONSE:
                console.print(f"[dim]{EMPTY_RESPONSE}[/dim]")
        elif event.type == "error":
            self._stop_live()
            console.print(Text.assemble(("Error: ", "bold red"), event.content))
        elif event.type == "aborted":
            self._stop_live()
            console.print("[bold yellow]Turn aborted.[/bold yellow]")

    def _count_tokens(self, completion_text: str):
        """Estimates usage with LiteLLM when the provider did not report it."""
        try:
            messages = self.orchestrator.build_payload()["messages"]
            prompt_tokens = litellm.token_counter(model=self.model, messages=messages)
            completion_tokens = litellm.token_counter(model=self.model, text=completion_text or "")
        except Exception:
            return  # litellm might not know the model
        _update_session_stats(prompt_tokens, completion_tokens, self.session_stats, self.model)

    # --- Command panel ---

    def on_command_update(self, execution, chunk=None):
        if chunk is not None:
            console.print(chunk, end="", markup=False, highlight=False)
            return
        if execution.status == ExecutionStatus.AWAITING_CONFIRMATION:
            console.print(Panel(Text(execution.command), title="[bold yellow]Command awaiting confirmation[/]",
                                border_style="yellow", expand=False))
            task = asyncio.get_running_loop().create_task(self._ask_confirmation(execution))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        elif execution.status == ExecutionStatus.RUNNING:
            console.print(Text(f">> {execution.command}", style="blue"))
        else:
            style = STATUS_STYLES.get(execution.status, "default")
            console.print(f"\n[{style}]● {execution.status.value}[/{style}]")

    async def _ask_confirmation(self, execution):
        answer = ""
        try:
            answer = await self._confirm_prompt.prompt_async(
                HTML("<ansiyellow><b>Run this command?</b> [y/N] </ansiyellow>")
            )
        except (KeyboardInterrupt, EOFError):
            pass
        except Exception as e:
            logger.warning("Could not ask for confirmation: %s", e)
        if answer.strip().lower() in ("y", "yes"):
            execution.confirm()
        else:
            execution.stop()

    # --- Interrupts ---

    def on_interrupt(self):
        active = self.command_session.active
        if active is not None and active.status == ExecutionStatus.RUNNING:
            active.stop()
        elif self.orchestrator.state in (TurnState.REQUESTING, TurnState.EXECUTING_TOOLS):
            console.print("[yellow]Aborting after the current step...[/yellow]")
            self.orchestrator.abort()

    # --- Main loop ---

    def show_stats(self):
        table = Table(title="Session stats", show_header=False)
        table.add_row("Model", self.model)
        table.add_row("Prompt tokens", str(self.session_stats["prompt_tokens"]))
        table.add_row("Completion tokens", str(self.session_stats["completion_tokens"]))
        table.add_row("Estimated cost", f"${self.session_stats['cost']:.4f}")
        table.add_row("History turns", str(len(self.orchestrator.history)))
        console.print(table)

    async def run_turn(self, text: str):
        console.print(Panel(Text(text), title="[bold blue]User[/]", border_style="blue"))
        try:
            await self.orchestrator.send(text)
        except Exception as e:
            self._stop_live()
            logger.debug("Turn failed", exc_info=True)
            console.print(Text.assemble(("An error occurred: ", "bold red"), str(e)))

    async def run(self, initial_prompt: str = None, interactive: bool = True):
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.on_interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not available on this platform")
        try:
            if initial_prompt:
                await self.run_turn(initial_prompt)
            while interactive:
                try:
                    text = await self.prompt_session.prompt_async(HTML("<ansigreen><b>&gt; </b></ansigreen>"))
                except KeyboardInterrupt:
                    continue
                except EOFError:
                    break
                text = text.strip()
                if not text:
                    continue
                command = text.lower()
                if command in ("/exit", "/quit", "exit"):
                    break
                if command == "/help":
                    display_help()
                elif command == "/clear":
                    self.orchestrator.reset()
                    console.print("[bold green]Conversation cleared.[/bold green]")
                elif command == "/stats":
                    self.show_stats()
                elif command.startswith("/"):
                    console.print(f"[bold red]Unknown command:[/] {text}. Type /help for a list of commands.")
                else:
                    await self.run_turn(text)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
            for task in list(self._pending):
                task.cancel()
            await self.orchestrator.close()
            await self.host.close()


def start_interactive_session(initial_prompt, cfg, interactive: bool = True):
    """Runs the agent in interactive mode."""
    session = TerminalSession(cfg)
    asyncio.run(session.run(initial_prompt, interactive=interactive))


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def main():
    """Main function for the shellmate CLI tool."""
    parser = argparse.ArgumentParser(
        description="A terminal chat agent that can run shell commands after you confirm them."
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command")

    # Interactive session (default command)
    interactive_parser = subparsers.add_parser("interactive", help="Start an interactive session (default).")
    interactive_parser.add_argument(
        "prompt", type=str, nargs="?", default=None,
        help="The initial prompt for the interactive session. Can be passed as an argument or piped via stdin.",
    )

    # Config command
    subparsers.add_parser("config", help="Open the configuration prompt.")

    # Check if a command is provided, otherwise default to interactive
    argv = sys.argv[1:]
    first_positional = next((arg for arg in argv if not arg.startswith("-")), None)
    if first_positional not in subparsers.choices:
        position = argv.index(first_positional) if first_positional is not None else len(argv)
        argv.insert(position, "interactive")

    args = parser.parse_args(argv)

    stored = config.load_config()
    cfg = config.effective_config(stored)
    _setup_logging("DEBUG" if args.verbose else cfg.get("log_level", "WARNING"))

    if args.command == "config":
        config.prompt_for_config()
        sys.exit(0)

    if not is_config_valid(cfg):
        console.print("[bold yellow]shellmate is not configured. Please set it up.[/bold yellow]")
        cfg = config.effective_config(config.prompt_for_config())
        if not is_config_valid(cfg):
            console.print("[bold red]No model or endpoint configured. Exiting.[/bold red]")
            sys.exit(1)

    initial_prompt = args.prompt
    interactive = sys.stdin.isatty()
    if not interactive and not initial_prompt:
        initial_prompt = sys.stdin.read().strip() or None

    if interactive:
        console.print(
            Panel(
                "Type '/help' for a list of commands.",
                title="[bold green]shellmate[/]",
                subtitle=f"[cyan]{cfg['model']}[/]",
                expand=False,
            )
        )
    start_interactive_session(initial_prompt, cfg, interactive=interactive)


if __name__ == "__main__":
    main()
