"""ANSI-formatted stderr output using Rich."""

import json
import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False, debug: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=_console, show_path=debug)],
        force=True,
    )


# -- Turn structure ----------------------------------------------------------


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={finish_reason}", style=style)
    _console.print(text)


def step_limit(steps: int) -> None:
    _console.print(
        Text(
            f"  ⚠ Step limit reached after {steps} tool calls, response truncated",
            style="bold yellow",
        )
    )


def usage(prompt_tokens: int, completion_tokens: int, total_tokens: int) -> None:
    _console.print(
        Text(
            f"  tokens: {prompt_tokens} in / {completion_tokens} out / {total_tokens} total",
            style="dim",
        )
    )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args: dict) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args:
        pretty = json.dumps(args, indent=2, default=str)
        if len(pretty) > 1000:
            pretty = pretty[:1000] + "\n... (truncated)"
        for line in pretty.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview[:500]}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Approvals ---------------------------------------------------------------


def approval_request(kind: str, description: str) -> None:
    body = Text()
    body.append(f"{kind}\n", style="bold yellow")
    body.append(description)
    _console.print(Panel(body, title="Approval required", border_style="yellow"))


def approval_denied(name: str) -> None:
    _console.print(Text(f"  ✗ {name} was not approved", style="yellow"))


# -- Session -----------------------------------------------------------------


def checkpoint_saved(checkpoint_id: str, tag: str | None) -> None:
    label = f"{checkpoint_id} ({tag})" if tag else checkpoint_id
    _console.print(Text(f"  ✓ Checkpoint saved: {label}", style="green"))


def checkpoint_table(rows: list[tuple[int, str, str, str, int]], current: int) -> None:
    table = Table(box=None, pad_edge=False)
    table.add_column("")
    table.add_column("id")
    table.add_column("tag")
    table.add_column("saved")
    table.add_column("messages", justify="right")
    for index, cid, tag, stamp, count in rows:
        marker = "*" if index == current else ""
        table.add_row(marker, cid, tag, stamp, str(count))
    _console.print(table)


def stats_table(stats: dict, context_tokens: int) -> None:
    table = Table(box=None, pad_edge=False, show_header=False)
    table.add_column(style="dim")
    table.add_column(justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    table.add_row("context (est.)", f"~{context_tokens} tokens")
    _console.print(table)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(provider: str, model: str, sandbox: str, policy: str) -> None:
    _console.print(
        Text(
            f"omni: {provider}/{model}  sandbox={sandbox}  approval={policy}",
            style="bold cyan",
        )
    )
    _console.print(Text("Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
