"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
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


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, stop_reason: str) -> None:
    style = "green" if stop_reason in ("end_turn", "stop", "tool_use") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  stop_reason={stop_reason}", style=style)
    _console.print(text)


def usage(usage: dict, cache_markers: int) -> None:
    if not usage:
        return
    parts = [f"{k}={v}" for k, v in usage.items() if v is not None]
    parts.append(f"cache_markers={cache_markers}")
    _console.print(Text("  usage: " + " ".join(parts), style="dim"))


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_request(name: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)


def tool_invocation(description: str) -> None:
    for line in description.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- MCP servers -------------------------------------------------------------


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(
        Text(f"  MCP server '{name}' ready ({tool_count} tools)", style="dim")
    )


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ✗ MCP server '{name}': ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


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
