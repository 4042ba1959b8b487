"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
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


def turn_header(n: int, token_est: int, max_n: int | None = None) -> None:
    limit = f"/{max_n}" if max_n else ""
    _console.print(Rule(f"Turn {n}{limit} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def thinking_spinner(label: str = "Thinking..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def thinking(text: str) -> None:
    for line in text.strip().splitlines():
        _console.print(Text(f"  | {line}", style="dim italic"))


def completion(turns: int, outcome: str) -> None:
    if outcome == "done":
        _console.print(Text(f"  \u2713 Finished: {turns} turns", style="bold green"))
    else:
        _console.print(Text(f"  Finished: {turns} turns, outcome={outcome}", style="bold red"))


# -- Actions -----------------------------------------------------------------


def action_start(label: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(label, style="bold magenta")
    _console.print(header)


def action_result(label: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {label}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        first = preview.strip().split("\n", 1)[0]
        if len(first) > 100:
            first = first[:97] + "..."
        _console.print(Text(f"    {first}", style="dim"))


def action_error(label: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {label}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Loop guards -------------------------------------------------------------


def correction(kind: str, detail: str) -> None:
    line = Text()
    line.append(f"  \u26a0 Correction [{kind}]: ", style="bold yellow")
    line.append(detail, style="yellow")
    _console.print(line)


def fail_fast(summary: str) -> None:
    line = Text()
    line.append("  \u2717 Fail-fast: ", style="bold red")
    line.append(summary, style="red")
    _console.print(line)


def context_compressed(before: int, after: int) -> None:
    _console.print(Text(f"  [Context] Compressed: {before} \u2192 {after} messages", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def usage(prompt_tokens: int, completion_tokens: int, total_tokens: int, requests: int) -> None:
    _console.print(
        Text(
            f"  Tokens: {prompt_tokens} in / {completion_tokens} out "
            f"({total_tokens} total, {requests} requests)",
            style="dim",
        )
    )


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
