import argparse
import asyncio
import base64
import mimetypes
import os
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .client import DONE, FAIL_FAST, AgentClient, RequestContext
from .config import _UNSET, apply_config_to_args, generate_config, load_config, resolve_api_key
from .plan import PlanState
from .prompts import PERSONALITIES, load_project_context
from .report import AbortedError, AgentError, ReportCollector
from .tools import BackgroundJobs, build_local_handlers, cleanup_old_outputs
from .transport import DEFAULT_MODEL, PROVIDERS, LiteLLMTransport

MAX_IMAGE_BYTES = 20 * 1024 * 1024


def build_parser():
    """Build and return the argument parser.

    Flags that may also come from config files default to _UNSET so that
    apply_config_to_args can tell "not given" apart from an explicit value.
    """
    parser = argparse.ArgumentParser(
        prog="tagwright",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A coding agent driven by inline action tags, with streaming output "
        "and multi-provider LLM support.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (tagwright.toml) variant.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: xai).",
    )
    parser.add_argument(
        "--model", default=_UNSET, help=f"Model identifier (default: {DEFAULT_MODEL})."
    )
    parser.add_argument(
        "--vision-model",
        default=_UNSET,
        help="Model used when the conversation carries images (default: same as --model).",
    )
    parser.add_argument(
        "--api-key", default=_UNSET, help="API key for the provider (overrides env vars)."
    )
    parser.add_argument("--base-url", default=_UNSET, help="Override the provider base URL.")
    parser.add_argument(
        "--max-tokens", type=int, default=_UNSET, help="Maximum output tokens (default: 16384)."
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature (default: 0.7)."
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=_UNSET,
        help="Per-request timeout in seconds (default: 60).",
    )
    parser.add_argument(
        "--personality",
        choices=list(PERSONALITIES),
        default=_UNSET,
        help="Tone of the final answers (default: normal).",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        default=_UNSET,
        help="Wait for complete model replies instead of streaming them.",
    )
    parser.add_argument(
        "--max-context-messages",
        type=int,
        default=_UNSET,
        help="History size that triggers compression (default: 200).",
    )
    parser.add_argument(
        "--no-context-compression",
        dest="context_compression",
        action="store_false",
        default=_UNSET,
        help="Never drop old messages from the conversation.",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Default timeout in seconds for <bash> actions (default: 120).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Working directory for file and shell actions (default: current directory).",
    )
    parser.add_argument(
        "--no-project-context",
        action="store_true",
        default=_UNSET,
        help="Don't load TAGWRIGHT.md or AGENTS.md from the base directory.",
    )
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        metavar="FILE",
        help="Attach an image to the question (repeatable).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def image_data_url(path: str) -> str:
    """Read an image file into a base64 data URL."""
    p = Path(path)
    if not p.is_file():
        raise AgentError(f"image not found: {path}")
    mime, _ = mimetypes.guess_type(p.name)
    if not mime or not mime.startswith("image/"):
        raise AgentError(f"not an image file: {path}")
    data = p.read_bytes()
    if len(data) > MAX_IMAGE_BYTES:
        raise AgentError(f"image too large ({len(data)} bytes): {path}")
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def _stdout_writer(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def build_client(args, report: ReportCollector | None = None) -> AgentClient:
    """Create the transport, local handlers and client described by args."""
    base_dir = str(Path(args.base_dir).resolve())
    transport = LiteLLMTransport(
        provider=args.provider,
        base_url=args.base_url,
        api_key=resolve_api_key(args.api_key),
        request_timeout=args.request_timeout,
    )
    args.plan = PlanState(verbose=args.verbose)
    args.jobs = BackgroundJobs(base_dir)
    handlers = build_local_handlers(
        base_dir, command_timeout=args.command_timeout, plan=args.plan, jobs=args.jobs
    )

    project_context = ""
    args.context_loaded = []
    if not args.no_project_context:
        project_context, args.context_loaded = load_project_context(base_dir, args.verbose)

    return AgentClient(
        transport,
        handlers=handlers,
        model=args.model or DEFAULT_MODEL,
        vision_model=args.vision_model,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
        stream=args.stream,
        work_dir=base_dir,
        personality=args.personality,
        project_context=project_context,
        context_compression=args.context_compression,
        max_context_messages=args.max_context_messages,
        verbose=args.verbose,
        report=report,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tagwright")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, turns=0, error_message=None, usage=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or DEFAULT_MODEL,
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "max_tokens": args.max_tokens,
                "personality": args.personality,
                "stream": args.stream,
                "context_compression": args.context_compression,
                "max_context_messages": args.max_context_messages,
                "project_context_loaded": getattr(args, "context_loaded", []),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=turns,
            error_message=error_message,
            usage=usage,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        _write_report("interrupted", exit_code=130, error_message="interrupted")
        sys.exit(130)
    sys.exit(exit_code)


def _run_main(args, report, _write_report) -> int:
    client = build_client(args, report)
    cleanup_old_outputs(client.work_dir)

    try:
        if args.repl:
            if args.image:
                fmt.warning("--image is ignored in --repl mode")
            repl_loop(client, args, first_question=args.question)
            return 0

        ctx = RequestContext(images=[image_data_url(p) for p in args.image])
        outcome = asyncio.run(ask(client, args.question, ctx))
    finally:
        args.jobs.stop_all()

    usage = client.get_usage()
    if args.verbose:
        fmt.usage(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens, usage.requests)

    exit_code = 2 if outcome.status == FAIL_FAST else 0
    _write_report(
        outcome.status,
        answer=outcome.response,
        exit_code=exit_code,
        turns=outcome.turns,
        usage={
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
            "requests": usage.requests,
        },
    )
    return exit_code


async def ask(client: AgentClient, question: str, ctx: RequestContext | None = None):
    """Run one question, echoing the answer on stdout.

    Streamed text is written as it arrives; otherwise (or when the loop ended
    on a stop condition rather than a model answer) the final text is printed.
    """
    streamed: list[str] = []

    def on_text(delta: str) -> None:
        streamed.append(delta)
        _stdout_writer(delta)

    outcome = await client.chat(question, ctx, on_text=on_text if client.stream else None)
    if streamed:
        _stdout_writer("\n")
    if outcome.status != DONE or not streamed:
        if outcome.response:
            print(outcome.response)
    return outcome


# -- REPL ----------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                Show this help message\n"
        "  /clear               Reset the conversation and the plan\n"
        "  /compress            Drop old messages from the conversation now\n"
        "  /personality [name]  Show or change the answer tone\n"
        "  /plan                Show the current plan\n"
        "  /usage               Show token usage for this session\n"
        "  /exit, /quit         Exit the REPL"
    )


def _repl_clear(client: AgentClient, plan: PlanState) -> None:
    dropped = len(client.messages) - 1
    client.clear_history()
    plan.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compress(client: AgentClient) -> None:
    before = client.estimate_tokens()
    if not client.compress_context(max(2, len(client.messages) // 2)):
        fmt.info("nothing to compress")
        return
    after = client.estimate_tokens()
    fmt.info(f"compressed: {before} -> {after} tokens ({before - after} saved)")


def _repl_personality(client: AgentClient, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"personality: {client.personality} (available: {', '.join(PERSONALITIES)})")
        return
    try:
        client.set_personality(arg)
    except AgentError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"personality set to {arg}")


def _repl_usage(client: AgentClient) -> None:
    u = client.get_usage()
    fmt.usage(u.prompt_tokens, u.completion_tokens, u.total_tokens, u.requests)


def _run_question(client: AgentClient, line: str) -> None:
    try:
        asyncio.run(ask(client, line))
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
    except AbortedError:
        fmt.warning("question aborted.")
    except AgentError as e:
        fmt.error(str(e))


def repl_loop(client: AgentClient, args, first_question: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(client.work_dir, ".tagwright", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "tagwright> ")])

    if args.verbose:
        fmt.repl_banner()

    if first_question:
        _run_question(client, first_question)

    while True:
        try:
            print(file=sys.stderr)
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            _repl_clear(client, args.plan)
        elif cmd == "/compress":
            _repl_compress(client)
        elif cmd == "/personality":
            _repl_personality(client, cmd_arg)
        elif cmd == "/plan":
            fmt.info(args.plan.render() or "Plan is empty")
        elif cmd == "/usage":
            _repl_usage(client)
        else:
            _run_question(client, line)


if __name__ == "__main__":
    main()
