"""Run parsed actions against the host's capability handlers."""

import time

from . import fmt
from .actions import ALREADY_APPLIED, APPLIED, NOT_FOUND, ActionResult
from .handlers import ActionHandlers

NOT_AVAILABLE = "not available"

_LABEL_COMMAND_CHARS = 80


def _short(text: str, limit: int = _LABEL_COMMAND_CHARS) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def action_label(action) -> str:
    """Human-readable label used in results, logs and fail-fast summaries."""
    kind = action.type
    if kind == "bash":
        return f"Bash: {_short(action.command)}"
    if kind == "read":
        return f"Read: {action.path}"
    if kind == "edit":
        return f"Edit: {action.path}"
    if kind == "multi-edit":
        return f"MultiEdit: {action.path}"
    if kind in ("write", "create"):
        return f"Write: {action.path}"
    if kind == "glob":
        return f"Glob: {action.pattern}"
    if kind == "grep":
        return f"Grep: {action.pattern}"
    if kind == "ls":
        return f"LS: {action.path}"
    if kind == "git":
        return f"Git: {action.command}" + (f" {action.args}" if action.args else "")
    if kind == "fetch":
        return f"Fetch: {action.url}"
    if kind == "search":
        return f"Search: {action.query}"
    if kind == "format":
        return f"Format: {action.path or '.'}"
    if kind == "typecheck":
        return f"Typecheck: {action.path or '.'}"
    if kind == "schedule":
        return f"Schedule: {action.name}"
    if kind == "notify":
        return "Notify"
    if kind == "skill":
        return f"Skill: {action.name}"
    if kind == "skill-install":
        return f"SkillInstall: {action.name or action.url}"
    if kind == "plan":
        return f"Plan: {action.operation}"
    if kind == "task":
        return f"Task: {_short(action.description or action.prompt, 50)}"
    if kind == "explore":
        return f"Explore: {action.query}"
    if kind == "ps":
        return "Ps"
    if kind == "kill":
        return f"Kill: {action.target}"
    if kind == "connector-config":
        return f"{action.connector.capitalize()}Config"
    return kind


def _is_error_text(output: str) -> bool:
    return output.startswith(("error:", "Error:"))


def _text_result(label: str, output, empty: str = "OK") -> ActionResult:
    """Wrap a plain-text handler reply; ``error:`` prefixed replies are failures."""
    if output is None:
        output = ""
    if not isinstance(output, str):
        output = str(output)
    if _is_error_text(output):
        return ActionResult(label, False, output, output)
    return ActionResult(label, True, output or empty)


def _list_result(label: str, output, empty: str) -> ActionResult:
    if isinstance(output, (list, tuple)):
        if not output:
            return ActionResult(label, True, empty)
        return ActionResult(label, True, "\n".join(str(item) for item in output))
    return _text_result(label, output, empty)


def _unavailable(label: str, kind: str) -> ActionResult:
    return ActionResult(label, False, f"{kind} is not available in this session", NOT_AVAILABLE)


# -- Per-kind executors --------------------------------------------------------


async def _run_bash(action, handlers: ActionHandlers, label: str):
    if handlers.on_bash is not None:
        output = await handlers.on_bash(action.command, action.timeout, action.background)
    elif handlers.on_exec is not None:
        output = await handlers.on_exec(action.command)
    else:
        return None
    output = output or ""
    if output.startswith("Exit code:"):
        first_line = output.split("\n", 1)[0]
        return ActionResult(label, False, output, first_line)
    return _text_result(label, output)


async def _run_read(action, handlers: ActionHandlers, label: str):
    if handlers.on_read is None:
        return None
    content = await handlers.on_read(action.path, action.offset, action.limit)
    if not content:
        return ActionResult(label, False, "File not found", "File not found")
    return _text_result(label, content)


async def _run_edit(action, handlers: ActionHandlers, label: str):
    if handlers.on_edit is None:
        return None
    result = await handlers.on_edit(action.path, action.search, action.replace, action.replace_all)
    if result.status == ALREADY_APPLIED:
        return ActionResult(label, True, "Skipped (already applied)")
    if result.success:
        return ActionResult(label, True, "OK")
    message = result.message
    if result.status == NOT_FOUND:
        if "File not found" in message:
            message += " - Use <read> to verify path or <write> to make new file"
        else:
            message += f' - Use <read path="{action.path}"/> first to see actual content'
    return ActionResult(label, False, "Failed", message)


async def _run_multi_edit(action, handlers: ActionHandlers, label: str):
    if handlers.on_multi_edit is None:
        return None
    result = await handlers.on_multi_edit(action.path, list(action.edits))
    if not result.success:
        return ActionResult(label, False, "Failed", result.message or "Multi-edit failed")
    if result.status == APPLIED:
        return ActionResult(label, True, f"Applied {len(action.edits)} edits")
    return ActionResult(label, True, "Skipped (already applied)")


async def _run_write(action, handlers: ActionHandlers, label: str):
    if action.type == "create":
        handler = handlers.on_create or handlers.on_write
        failure = "Failed to create file"
    else:
        handler = handlers.on_write or handlers.on_create
        failure = "Failed to write file"
    if handler is None:
        return None
    outcome = await handler(action.path, action.content)
    if outcome is False:
        return ActionResult(label, False, "Failed", failure)
    if isinstance(outcome, str):
        return _text_result(label, outcome)
    return ActionResult(label, True, "OK")


async def _run_glob(action, handlers: ActionHandlers, label: str):
    if handlers.on_glob is None:
        return None
    return _list_result(label, await handlers.on_glob(action.pattern, action.path), "No files found")


async def _run_grep(action, handlers: ActionHandlers, label: str):
    if handlers.on_grep is None:
        return None
    options = {
        "path": action.path,
        "glob": action.glob,
        "output_mode": action.output_mode,
        "context": action.context,
        "context_before": action.context_before,
        "context_after": action.context_after,
        "case_insensitive": action.case_insensitive,
        "line_numbers": action.line_numbers,
        "head_limit": action.head_limit,
        "multiline": action.multiline,
    }
    return _text_result(label, await handlers.on_grep(action.pattern, options), "No results")


async def _run_ls(action, handlers: ActionHandlers, label: str):
    if handlers.on_ls is None:
        return None
    return _list_result(label, await handlers.on_ls(action.path, list(action.ignore)), "(empty)")


async def _run_git(action, handlers: ActionHandlers, label: str):
    if handlers.on_git is None:
        return None
    return _text_result(label, await handlers.on_git(action.command, action.args))


async def _run_fetch(action, handlers: ActionHandlers, label: str):
    if handlers.on_fetch is None:
        return None
    return _text_result(label, await handlers.on_fetch(action.url, action.prompt), "(empty page)")


async def _run_search(action, handlers: ActionHandlers, label: str):
    if handlers.on_search is None:
        return None
    reply = await handlers.on_search(
        action.query, list(action.allowed_domains), list(action.blocked_domains)
    )
    if isinstance(reply, dict):
        text = reply.get("response") or "No results"
        citations = reply.get("citations") or []
        if citations:
            text += "\n\nSources:\n" + "\n".join(f"- {url}" for url in citations)
        return ActionResult(label, True, text)
    return _text_result(label, reply, "No results")


async def _run_format(action, handlers: ActionHandlers, label: str):
    handler = handlers.on_format if action.type == "format" else handlers.on_typecheck
    if handler is None:
        return None
    return _text_result(label, await handler(action.path))


async def _run_schedule(action, handlers: ActionHandlers, label: str):
    if handlers.on_schedule is None:
        return None
    is_prompt = action.prompt is not None
    await handlers.on_schedule(
        action.cron, action.prompt if is_prompt else action.command, action.name, is_prompt
    )
    kind = "prompt" if is_prompt else "command"
    return ActionResult(label, True, f"Scheduled {kind}: {action.cron}")


async def _run_notify(action, handlers: ActionHandlers, label: str):
    if handlers.on_notify is None:
        return None
    outcome = await handlers.on_notify(action.message, action.target) or {}
    sent = list(outcome.get("sent") or [])
    failed = list(outcome.get("failed") or [])
    if sent:
        text = f"Sent to: {', '.join(sent)}"
        if failed:
            text += f" (failed: {', '.join(failed)})"
        return ActionResult(label, True, text)
    if failed:
        error = f"Failed to send to: {', '.join(failed)}"
        return ActionResult(label, False, "Failed", error)
    return ActionResult(label, False, "Failed", "No notification channel configured")


async def _run_skill(action, handlers: ActionHandlers, label: str):
    if handlers.on_skill is None:
        return None
    return _text_result(label, await handlers.on_skill(action.name, action.args))


async def _run_skill_install(action, handlers: ActionHandlers, label: str):
    if handlers.on_skill_install is None:
        return None
    info = await handlers.on_skill_install(action.url, action.name)
    return ActionResult(label, True, f"Installed skill {info['name']} at {info['path']}")


async def _run_plan(action, handlers: ActionHandlers, label: str):
    if handlers.on_plan is None:
        return None
    reply = await handlers.on_plan(
        action.operation,
        id=action.item_id,
        content=action.content,
        description=action.description,
        status=action.status,
        question=action.question,
    )
    message = reply.get("message", "")
    if not reply.get("success"):
        return ActionResult(label, False, message or "Failed", message or "Plan update failed")
    return ActionResult(label, True, message or "OK")


async def _run_task(action, handlers: ActionHandlers, label: str):
    if handlers.on_task is None:
        return None
    return _text_result(label, await handlers.on_task(action.prompt, action.description), "Done.")


async def _run_explore(action, handlers: ActionHandlers, label: str):
    if handlers.on_explore is None:
        return None
    reply = await handlers.on_explore(action.query, action.path, action.depth)
    return _text_result(label, reply, "No matches")


async def _run_ps(action, handlers: ActionHandlers, label: str):
    if handlers.on_ps is None:
        return None
    return _text_result(label, await handlers.on_ps(), "No background processes")


async def _run_kill(action, handlers: ActionHandlers, label: str):
    if handlers.on_kill is None:
        return None
    if await handlers.on_kill(action.target):
        return ActionResult(label, True, f"Killed {action.target}")
    return ActionResult(label, False, "Failed", f"No such process: {action.target}")


async def _run_connector_config(action, handlers: ActionHandlers, label: str):
    if handlers.on_connector_config is None:
        return None
    reply = await handlers.on_connector_config(
        action.connector, action.bot_token, action.channel_id
    )
    message = reply.get("message", "")
    if reply.get("success"):
        return ActionResult(label, True, message or "Configured")
    return ActionResult(label, False, "Failed", message or "Configuration failed")


_EXECUTORS = {
    "bash": _run_bash,
    "read": _run_read,
    "edit": _run_edit,
    "multi-edit": _run_multi_edit,
    "write": _run_write,
    "create": _run_write,
    "glob": _run_glob,
    "grep": _run_grep,
    "ls": _run_ls,
    "git": _run_git,
    "fetch": _run_fetch,
    "search": _run_search,
    "format": _run_format,
    "typecheck": _run_format,
    "schedule": _run_schedule,
    "notify": _run_notify,
    "skill": _run_skill,
    "skill-install": _run_skill_install,
    "plan": _run_plan,
    "task": _run_task,
    "explore": _run_explore,
    "ps": _run_ps,
    "kill": _run_kill,
    "connector-config": _run_connector_config,
}


async def execute_action(action, handlers: ActionHandlers) -> ActionResult:
    """Run one action. Never raises for handler faults."""
    label = action_label(action)
    runner = _EXECUTORS.get(action.type)
    if runner is None:
        return _unavailable(label, action.type)
    try:
        result = await runner(action, handlers, label)
    except TimeoutError:
        return ActionResult(label, False, "Failed", "timed out")
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        return ActionResult(label, False, "Failed", error)
    if result is None:
        return _unavailable(label, action.type)
    return result


async def execute_actions(
    actions: list, handlers: ActionHandlers, *, verbose: bool = False
) -> list[ActionResult]:
    """Run actions strictly in order, one result per action."""
    results = []
    for action in actions:
        if verbose:
            fmt.action_start(action_label(action))
        t0 = time.monotonic()
        result = await execute_action(action, handlers)
        elapsed = time.monotonic() - t0
        if verbose:
            if result.success:
                fmt.action_result(result.action, elapsed, result.result)
            else:
                fmt.action_error(result.action, result.error or "failed")
        results.append(result)
    return results
