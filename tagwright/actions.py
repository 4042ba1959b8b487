"""Typed actions parsed from model output, and the results of running them.

Every action kind is a frozen dataclass with a class-level ``type`` tag.
The set is closed: tags outside ``ACTION_TAGS`` are never turned into actions.
"""

from dataclasses import dataclass, field
from typing import ClassVar, Union

# Canonical action tags, in the order they are documented to the model.
ACTION_TAGS = (
    "bash",
    "read",
    "edit",
    "multi-edit",
    "write",
    "create",
    "exec",
    "glob",
    "grep",
    "ls",
    "git",
    "fetch",
    "search",
    "format",
    "typecheck",
    "schedule",
    "notify",
    "skill",
    "skill-install",
    "plan",
    "task",
    "explore",
    "ps",
    "kill",
    "telegram-config",
    "discord-config",
)

THINKING_TAGS = ("think", "thinking", "reasoning", "inner_monologue")

# Edit outcomes reported by edit handlers.
APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
NOT_FOUND = "not_found"
EDIT_ERROR = "error"

EDIT_STATUSES = (APPLIED, ALREADY_APPLIED, NOT_FOUND, EDIT_ERROR)

PLAN_OPERATIONS = ("add", "update", "complete", "remove", "show", "clear", "ask")
PLAN_STATUSES = ("pending", "in_progress", "completed")

GIT_COMMANDS = (
    "status",
    "diff",
    "log",
    "branch",
    "add",
    "commit",
    "checkout",
    "stash",
    "push",
    "pull",
)


# -- Shell ---------------------------------------------------------------------


@dataclass(frozen=True)
class BashAction:
    type: ClassVar[str] = "bash"
    command: str
    timeout: int | None = None  # milliseconds
    description: str | None = None
    background: bool = False


@dataclass(frozen=True)
class PsAction:
    type: ClassVar[str] = "ps"


@dataclass(frozen=True)
class KillAction:
    type: ClassVar[str] = "kill"
    target: str


# -- Files ---------------------------------------------------------------------


@dataclass(frozen=True)
class ReadAction:
    type: ClassVar[str] = "read"
    path: str
    offset: int | None = None
    limit: int | None = None


@dataclass(frozen=True)
class EditOp:
    """One search/replace pair inside a multi-edit."""

    search: str
    replace: str
    replace_all: bool = False


@dataclass(frozen=True)
class EditAction:
    type: ClassVar[str] = "edit"
    path: str
    search: str
    replace: str
    replace_all: bool = False


@dataclass(frozen=True)
class MultiEditAction:
    type: ClassVar[str] = "multi-edit"
    path: str
    edits: tuple[EditOp, ...]


@dataclass(frozen=True)
class WriteAction:
    type: ClassVar[str] = "write"
    path: str
    content: str


@dataclass(frozen=True)
class CreateAction:
    type: ClassVar[str] = "create"
    path: str
    content: str


@dataclass(frozen=True)
class GlobAction:
    type: ClassVar[str] = "glob"
    pattern: str
    path: str | None = None


@dataclass(frozen=True)
class GrepAction:
    type: ClassVar[str] = "grep"
    pattern: str
    path: str | None = None
    glob: str | None = None
    output_mode: str | None = None  # content | files_with_matches | count
    context: int | None = None
    context_before: int | None = None
    context_after: int | None = None
    case_insensitive: bool = False
    line_numbers: bool = False
    head_limit: int | None = None
    multiline: bool = False


@dataclass(frozen=True)
class LsAction:
    type: ClassVar[str] = "ls"
    path: str
    ignore: tuple[str, ...] = ()


@dataclass(frozen=True)
class FormatAction:
    type: ClassVar[str] = "format"
    path: str | None = None


@dataclass(frozen=True)
class TypecheckAction:
    type: ClassVar[str] = "typecheck"
    path: str | None = None


@dataclass(frozen=True)
class GitAction:
    type: ClassVar[str] = "git"
    command: str
    args: str | None = None


# -- Web -----------------------------------------------------------------------


@dataclass(frozen=True)
class FetchAction:
    type: ClassVar[str] = "fetch"
    url: str
    prompt: str | None = None


@dataclass(frozen=True)
class SearchAction:
    type: ClassVar[str] = "search"
    query: str
    allowed_domains: tuple[str, ...] = ()
    blocked_domains: tuple[str, ...] = ()


# -- Scheduling and messaging --------------------------------------------------


@dataclass(frozen=True)
class ScheduleAction:
    """A cron job running either a shell command or a model prompt."""

    type: ClassVar[str] = "schedule"
    cron: str
    name: str
    command: str | None = None
    prompt: str | None = None


@dataclass(frozen=True)
class NotifyAction:
    type: ClassVar[str] = "notify"
    message: str
    target: str | None = None


@dataclass(frozen=True)
class ConnectorConfigAction:
    type: ClassVar[str] = "connector-config"
    connector: str  # telegram | discord
    bot_token: str
    channel_id: str | None = None


# -- Skills, planning, delegation ----------------------------------------------


@dataclass(frozen=True)
class SkillAction:
    type: ClassVar[str] = "skill"
    name: str
    args: str | None = None


@dataclass(frozen=True)
class SkillInstallAction:
    type: ClassVar[str] = "skill-install"
    url: str
    name: str | None = None


@dataclass(frozen=True)
class PlanAction:
    type: ClassVar[str] = "plan"
    operation: str
    item_id: str | None = None
    content: str | None = None
    description: str | None = None
    status: str | None = None
    question: str | None = None


@dataclass(frozen=True)
class TaskAction:
    type: ClassVar[str] = "task"
    prompt: str
    description: str | None = None


@dataclass(frozen=True)
class ExploreAction:
    type: ClassVar[str] = "explore"
    query: str
    path: str | None = None
    depth: str = "medium"  # quick | medium | deep


Action = Union[
    BashAction,
    PsAction,
    KillAction,
    ReadAction,
    EditAction,
    MultiEditAction,
    WriteAction,
    CreateAction,
    GlobAction,
    GrepAction,
    LsAction,
    FormatAction,
    TypecheckAction,
    GitAction,
    FetchAction,
    SearchAction,
    ScheduleAction,
    NotifyAction,
    ConnectorConfigAction,
    SkillAction,
    SkillInstallAction,
    PlanAction,
    TaskAction,
    ExploreAction,
]


# -- Results -------------------------------------------------------------------


@dataclass
class ActionResult:
    """Outcome of one executed action, as fed back to the model."""

    action: str
    success: bool
    result: str
    error: str | None = None


@dataclass
class EditResult:
    success: bool
    status: str
    message: str = ""
    diffs: list[dict] = field(default_factory=list)

    @classmethod
    def applied(cls, message: str = "OK", diffs: list[dict] | None = None):
        return cls(True, APPLIED, message, diffs or [])

    @classmethod
    def already_applied(cls, message: str = "Already applied"):
        return cls(True, ALREADY_APPLIED, message)

    @classmethod
    def not_found(cls, message: str):
        return cls(False, NOT_FOUND, message)

    @classmethod
    def error(cls, message: str):
        return cls(False, EDIT_ERROR, message)
