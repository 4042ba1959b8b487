"""The capability contract between the loop and the host application.

A host wires whichever capabilities it supports; every field is optional and
every handler is an async callable. Actions whose handler is missing fail
with "not available" instead of raising.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from typing import Any

from .actions import EditOp, EditResult

Handler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ActionHandlers:
    # on_bash(command, timeout_ms, background) -> str
    on_bash: Handler | None = None
    # on_exec(command) -> str; used for bash when on_bash is absent
    on_exec: Handler | None = None
    # on_read(path, offset, limit) -> str | None
    on_read: Handler | None = None
    # on_edit(path, search, replace, replace_all) -> EditResult
    on_edit: Callable[[str, str, str, bool], Awaitable[EditResult]] | None = None
    # on_multi_edit(path, edits) -> EditResult
    on_multi_edit: Callable[[str, list[EditOp]], Awaitable[EditResult]] | None = None
    # on_write(path, content) -> bool | str
    on_write: Handler | None = None
    on_create: Handler | None = None
    # on_glob(pattern, path) -> list[str] | str
    on_glob: Handler | None = None
    # on_grep(pattern, options: dict) -> str
    on_grep: Handler | None = None
    # on_ls(path, ignore) -> list[str] | str
    on_ls: Handler | None = None
    # on_git(command, args) -> str
    on_git: Handler | None = None
    # on_fetch(url, prompt) -> str
    on_fetch: Handler | None = None
    # on_search(query, allowed_domains, blocked_domains) -> {"response", "citations"}
    on_search: Handler | None = None
    # on_format(path) -> str
    on_format: Handler | None = None
    on_typecheck: Handler | None = None
    # on_schedule(cron, command_or_prompt, name, is_prompt) -> None
    on_schedule: Handler | None = None
    # on_notify(message, target) -> {"sent": [...], "failed": [...]}
    on_notify: Handler | None = None
    # on_skill(name, args) -> str
    on_skill: Handler | None = None
    # on_skill_install(url, name) -> {"name", "path"}
    on_skill_install: Handler | None = None
    # on_task(prompt, description) -> str
    on_task: Handler | None = None
    # on_explore(query, path, depth) -> str
    on_explore: Handler | None = None
    # on_plan(operation, **options) -> {"success", "message", "plan"?, "question"?}
    on_plan: Handler | None = None
    # on_ps() -> str
    on_ps: Handler | None = None
    # on_kill(target) -> bool
    on_kill: Handler | None = None
    # on_connector_config(connector, bot_token, channel_id) -> {"success", "message"}
    on_connector_config: Handler | None = None

    def available(self) -> list[str]:
        """Names of the wired capabilities, without the on_ prefix."""
        return [f.name[3:] for f in fields(self) if getattr(self, f.name) is not None]
