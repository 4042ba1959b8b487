"""Turn free-form model text into an ordered list of typed actions.

Parsing is a single left-to-right scan so actions come back in source order.
Fenced code, inline code spans, ``<literal>`` blocks and thinking blocks are
skipped. Content-bearing tags (write, edit, bash, ...) swallow everything up
to their closing tag, so tags quoted inside file content are never executed.
"""

from __future__ import annotations

import re

from .actions import (
    ACTION_TAGS,
    GIT_COMMANDS,
    PLAN_OPERATIONS,
    PLAN_STATUSES,
    THINKING_TAGS,
    BashAction,
    ConnectorConfigAction,
    CreateAction,
    EditAction,
    EditOp,
    ExploreAction,
    FetchAction,
    FormatAction,
    GitAction,
    GlobAction,
    GrepAction,
    KillAction,
    LsAction,
    MultiEditAction,
    NotifyAction,
    PlanAction,
    PsAction,
    ReadAction,
    ScheduleAction,
    SearchAction,
    SkillAction,
    SkillInstallAction,
    TaskAction,
    TypecheckAction,
    WriteAction,
)

# Tags whose body is payload and which are only valid with a closing tag.
CONTENT_TAGS = frozenset(
    {"bash", "exec", "edit", "multi-edit", "write", "create", "schedule", "notify", "task"}
)

_EXTRA_ALIASES = {
    "read_file": "read",
    "read-file": "read",
    "write_file": "write",
    "write-file": "write",
    "edit_file": "edit",
    "edit-file": "edit",
    "create_file": "create",
    "create-file": "create",
    "multiedit": "multi-edit",
}


def _build_alias_map() -> dict[str, str]:
    aliases: dict[str, str] = {}
    for tag in ACTION_TAGS:
        aliases[tag] = tag
        aliases[tag.replace("-", "_")] = tag
    aliases.update(_EXTRA_ALIASES)
    return aliases


TAG_ALIASES = _build_alias_map()

_TAG_NAME = re.compile(r"<(/?)([a-z][a-z0-9_-]*)(?=[\s/>])", re.IGNORECASE)

# Common formatting slips, fixed before scanning.
_FIXUPS = [
    # <search"> / <replace'> -> <search> / <replace>
    (re.compile(r"<(search|replace)\s*[\"']\s*>", re.IGNORECASE), r"<\1>"),
    # </edit at the very end of the text, missing its '>'
    (
        re.compile(
            r"</(edit|multi-edit|write|create|bash|exec|schedule|notify|task)\s*$",
            re.IGNORECASE,
        ),
        r"</\1>",
    ),
]

_TOKEN = re.compile(
    r"(?P<fence>```)"
    r"|(?P<inline>`[^`\n]+`)"
    r"|(?P<literal><literal>)"
    r"|<(?P<name>[a-z][a-z_-]*)\b"
    r"(?P<attrs>(?:\"[^\"]*\"|'[^']*'|[^<>\"'])*?)"
    r"(?P<selfclose>/?)>",
    re.IGNORECASE,
)

_SEARCH_BLOCK = re.compile(r"<search>(.*?)</search>", re.DOTALL | re.IGNORECASE)
_REPLACE_BLOCK = re.compile(
    r"<replace>(.*?)(?:</replace>|</search>|\Z)", re.DOTALL | re.IGNORECASE
)
_INNER_EDIT = re.compile(
    r"<edit\b((?:\"[^\"]*\"|'[^']*'|[^<>\"'])*)>(.*?)</edit\s*>",
    re.DOTALL | re.IGNORECASE,
)

_TRUE_VALUES = ("true", "1", "yes")


# -- Attribute helpers ---------------------------------------------------------


def extract_attr(attrs: str, name: str) -> str | None:
    """Return the value of attribute *name*, quoted or bare, or None."""
    pattern = re.compile(
        r"(?<![\w-])" + re.escape(name) + r"\s*=\s*(?:\"([^\"]*)\"|'([^']*)'|([^\s\"'>]+))",
        re.IGNORECASE,
    )
    m = pattern.search(attrs)
    if not m:
        return None
    for group in m.groups():
        if group is not None:
            return group
    return None


def extract_bool_attr(attrs: str, name: str) -> bool:
    value = extract_attr(attrs, name)
    return value is not None and value.strip().lower() in _TRUE_VALUES


def _first_attr(attrs: str, *names: str) -> str | None:
    for name in names:
        value = extract_attr(attrs, name)
        if value is not None:
            return value
    return None


def _int_attr(attrs: str, *names: str) -> int | None:
    value = _first_attr(attrs, *names)
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _list_attr(attrs: str, *names: str) -> tuple[str, ...]:
    value = _first_attr(attrs, *names)
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _strip_blank_lines(text: str) -> str:
    """Drop leading and trailing blank lines but keep indentation."""
    text = re.sub(r"\A(?:[ \t]*\r?\n)+", "", text)
    text = re.sub(r"(?:\r?\n[ \t]*)+\Z", "", text)
    return text


# -- Normalization -------------------------------------------------------------


def normalize_tag_aliases(text: str) -> str:
    """Rewrite tag spellings like <read_file> or <READ> to canonical names."""

    def _sub(m: re.Match) -> str:
        canonical = TAG_ALIASES.get(m.group(2).lower())
        if canonical is None:
            return m.group(0)
        return f"<{m.group(1)}{canonical}"

    return _TAG_NAME.sub(_sub, text)


def apply_fixups(text: str) -> str:
    for pattern, repl in _FIXUPS:
        text = pattern.sub(repl, text)
    return text


# -- Per-tag builders ----------------------------------------------------------


def _edit_ops(body: str, attrs: str = "") -> EditOp | None:
    search_m = _SEARCH_BLOCK.search(body)
    if not search_m:
        return None
    replace_m = _REPLACE_BLOCK.search(body, search_m.end())
    if not replace_m:
        return None
    return EditOp(
        search=_strip_blank_lines(search_m.group(1)),
        replace=_strip_blank_lines(replace_m.group(1)),
        replace_all=extract_bool_attr(attrs, "replaceAll")
        or extract_bool_attr(attrs, "replace_all"),
    )


def _path_from_body(body: str) -> str | None:
    """An edit may name its file on the first body line, before <search>."""
    head = body.split("<", 1)[0].strip()
    if head and "\n" not in head:
        return head
    return None


def _build_edit(attrs: str, body: str):
    path = _first_attr(attrs, "path", "file") or _path_from_body(body)
    op = _edit_ops(body, attrs)
    if not path or op is None:
        return None
    return EditAction(path=path, search=op.search, replace=op.replace, replace_all=op.replace_all)


def _build_multi_edit(attrs: str, body: str):
    path = _first_attr(attrs, "path", "file")
    if not path:
        return None
    edits = []
    for m in _INNER_EDIT.finditer(body):
        op = _edit_ops(m.group(2), m.group(1))
        if op is not None:
            edits.append(op)
    if not edits:
        return None
    return MultiEditAction(path=path, edits=tuple(edits))


def _file_content(body: str) -> str:
    content = _strip_blank_lines(body)
    if content and body.rstrip(" \t").endswith("\n"):
        content += "\n"
    return content


def _build_write(attrs: str, body: str, cls=WriteAction):
    path = _first_attr(attrs, "path", "file")
    if not path:
        return None
    return cls(path=path, content=_file_content(body))


def _build_bash(attrs: str, body: str):
    command = body.strip() or (_first_attr(attrs, "command", "cmd") or "").strip()
    if not command:
        return None
    return BashAction(
        command=command,
        timeout=_int_attr(attrs, "timeout"),
        description=extract_attr(attrs, "description"),
        background=extract_bool_attr(attrs, "background")
        or extract_bool_attr(attrs, "run_in_background"),
    )


def _build_read(attrs: str, body: str):
    path = _first_attr(attrs, "path", "file") or body.strip()
    if not path:
        return None
    return ReadAction(path=path, offset=_int_attr(attrs, "offset"), limit=_int_attr(attrs, "limit"))


def _build_glob(attrs: str, body: str):
    pattern = extract_attr(attrs, "pattern") or body.strip()
    if not pattern:
        return None
    return GlobAction(pattern=pattern, path=extract_attr(attrs, "path"))


def _build_grep(attrs: str, body: str):
    pattern = extract_attr(attrs, "pattern") or body.strip()
    if not pattern:
        return None
    return GrepAction(
        pattern=pattern,
        path=extract_attr(attrs, "path"),
        glob=_first_attr(attrs, "glob", "include", "file"),
        output_mode=_first_attr(attrs, "output", "output_mode"),
        context=_int_attr(attrs, "C", "context"),
        context_before=_int_attr(attrs, "B", "before"),
        context_after=_int_attr(attrs, "A", "after"),
        case_insensitive=extract_bool_attr(attrs, "i"),
        line_numbers=extract_bool_attr(attrs, "lines") or extract_bool_attr(attrs, "n"),
        head_limit=_int_attr(attrs, "limit", "head_limit"),
        multiline=extract_bool_attr(attrs, "multiline"),
    )


def _build_ls(attrs: str, body: str):
    path = extract_attr(attrs, "path") or body.strip() or "."
    return LsAction(path=path, ignore=_list_attr(attrs, "ignore"))


def _build_git(attrs: str, body: str):
    command = extract_attr(attrs, "command")
    args = extract_attr(attrs, "args")
    if not command and body.strip():
        command, _, rest = body.strip().partition(" ")
        args = args or rest.strip() or None
    if not command:
        return None
    command = command.strip().lower()
    if command not in GIT_COMMANDS:
        return None
    return GitAction(command=command, args=args)


def _build_fetch(attrs: str, body: str):
    url = extract_attr(attrs, "url") or body.strip()
    if not url:
        return None
    return FetchAction(url=url, prompt=extract_attr(attrs, "prompt"))


def _build_search(attrs: str, body: str):
    query = extract_attr(attrs, "query") or body.strip()
    if not query:
        return None
    return SearchAction(
        query=query,
        allowed_domains=_list_attr(attrs, "domains", "allowed_domains"),
        blocked_domains=_list_attr(attrs, "exclude", "blocked_domains"),
    )


def _build_schedule(attrs: str, body: str):
    cron = extract_attr(attrs, "cron")
    payload = body.strip()
    if not cron or not payload:
        return None
    name = extract_attr(attrs, "name") or "Scheduled Task"
    if (extract_attr(attrs, "type") or "").lower() == "prompt":
        return ScheduleAction(cron=cron, name=name, prompt=payload)
    return ScheduleAction(cron=cron, name=name, command=payload)


def _build_notify(attrs: str, body: str):
    message = body.strip() or (extract_attr(attrs, "message") or "").strip()
    if not message:
        return None
    return NotifyAction(message=message, target=_first_attr(attrs, "to", "target"))


def _build_skill(attrs: str, body: str):
    name = extract_attr(attrs, "name")
    if not name:
        return None
    return SkillAction(name=name, args=extract_attr(attrs, "args") or body.strip() or None)


def _build_skill_install(attrs: str, body: str):
    url = extract_attr(attrs, "url") or body.strip()
    if not url:
        return None
    return SkillInstallAction(url=url, name=extract_attr(attrs, "name"))


def _build_plan(attrs: str, body: str):
    operation = (_first_attr(attrs, "operation", "op") or "").strip().lower()
    if operation not in PLAN_OPERATIONS:
        return None
    status = extract_attr(attrs, "status")
    if status is not None and status not in PLAN_STATUSES:
        status = None
    text = body.strip() or None
    return PlanAction(
        operation=operation,
        item_id=extract_attr(attrs, "id"),
        content=extract_attr(attrs, "content") or (text if operation != "ask" else None),
        description=extract_attr(attrs, "description"),
        status=status,
        question=extract_attr(attrs, "question") or (text if operation == "ask" else None),
    )


def _build_task(attrs: str, body: str):
    prompt = body.strip() or (extract_attr(attrs, "prompt") or "").strip()
    if not prompt:
        return None
    return TaskAction(prompt=prompt, description=extract_attr(attrs, "description"))


def _build_explore(attrs: str, body: str):
    query = extract_attr(attrs, "query") or body.strip()
    if not query:
        return None
    depth = (extract_attr(attrs, "depth") or "medium").lower()
    if depth not in ("quick", "medium", "deep"):
        depth = "medium"
    return ExploreAction(query=query, path=extract_attr(attrs, "path"), depth=depth)


def _build_kill(attrs: str, body: str):
    target = _first_attr(attrs, "target", "pid", "id") or body.strip()
    if not target:
        return None
    return KillAction(target=target)


def _build_telegram_config(attrs: str, body: str):
    token = _first_attr(attrs, "token", "bot_token", "botToken")
    if not token:
        return None
    return ConnectorConfigAction(
        connector="telegram",
        bot_token=token,
        channel_id=_first_attr(attrs, "chat_id", "chatId", "chat"),
    )


def _build_discord_config(attrs: str, body: str):
    token = _first_attr(attrs, "token", "bot_token", "botToken")
    channel = _first_attr(attrs, "channel_id", "channelId", "channel")
    if not token or not channel:
        return None
    return ConnectorConfigAction(connector="discord", bot_token=token, channel_id=channel)


def _build_path_only(cls):
    def build(attrs: str, body: str):
        return cls(path=extract_attr(attrs, "path") or body.strip() or None)

    return build


_BUILDERS = {
    "bash": _build_bash,
    "exec": _build_bash,
    "read": _build_read,
    "edit": _build_edit,
    "multi-edit": _build_multi_edit,
    "write": _build_write,
    "create": lambda attrs, body: _build_write(attrs, body, CreateAction),
    "glob": _build_glob,
    "grep": _build_grep,
    "ls": _build_ls,
    "git": _build_git,
    "fetch": _build_fetch,
    "search": _build_search,
    "format": _build_path_only(FormatAction),
    "typecheck": _build_path_only(TypecheckAction),
    "schedule": _build_schedule,
    "notify": _build_notify,
    "skill": _build_skill,
    "skill-install": _build_skill_install,
    "plan": _build_plan,
    "task": _build_task,
    "explore": _build_explore,
    "ps": lambda attrs, body: PsAction(),
    "kill": _build_kill,
    "telegram-config": _build_telegram_config,
    "discord-config": _build_discord_config,
}


# -- Scanner -------------------------------------------------------------------


def _find_close(text: str, name: str, start: int) -> re.Match | None:
    return re.compile(rf"</{re.escape(name)}\s*>", re.IGNORECASE).search(text, start)


def parse_actions(text: str) -> list:
    """Parse every action in *text*, in source order.

    A malformed action (missing required attribute, unclosed content tag)
    is dropped on its own; the rest of the text still parses.
    """
    if not text:
        return []
    text = apply_fixups(normalize_tag_aliases(text))

    actions = []
    pos = 0
    while True:
        m = _TOKEN.search(text, pos)
        if m is None:
            break

        if m.group("fence"):
            close = text.find("```", m.end())
            if close == -1:
                break
            pos = close + 3
            continue
        if m.group("inline"):
            pos = m.end()
            continue
        if m.group("literal"):
            close = _find_close(text, "literal", m.end())
            if close is None:
                break
            pos = close.end()
            continue

        name = m.group("name").lower()
        attrs = m.group("attrs") or ""

        if name in THINKING_TAGS:
            close = _find_close(text, name, m.end())
            pos = close.end() if close else m.end()
            continue

        builder = _BUILDERS.get(name)
        if builder is None:
            pos = m.end()
            continue

        body = ""
        if m.group("selfclose"):
            pos = m.end()
        else:
            close = _find_close(text, name, m.end())
            if name in CONTENT_TAGS:
                if close is None:
                    # Unterminated payload, e.g. a tag named in prose.
                    pos = m.end()
                    continue
                body = text[m.end() : close.start()]
                pos = close.end()
            else:
                # Attribute tags may carry a short text body before their close.
                simple = re.compile(rf"([^<]*)</{re.escape(name)}\s*>", re.IGNORECASE)
                sm = simple.match(text, m.end())
                if sm:
                    body = sm.group(1)
                    pos = sm.end()
                else:
                    pos = m.end()

        action = builder(attrs, body)
        if action is not None:
            actions.append(action)

    return actions


# -- Display cleaning ----------------------------------------------------------

_TAG_ALT = "|".join(re.escape(t) for t in sorted(ACTION_TAGS, key=len, reverse=True))

_THINKING_ALT = "|".join(re.escape(t) for t in sorted(THINKING_TAGS, key=len, reverse=True))

_THINKING_BLOCK = re.compile(rf"<({_THINKING_ALT})>.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
_PAIRED_BLOCK = re.compile(
    rf"<({_TAG_ALT})\b(?:\"[^\"]*\"|'[^']*'|[^<>\"'])*?(?<!/)>.*?</\1\s*>",
    re.DOTALL | re.IGNORECASE,
)
_SELF_CLOSING = re.compile(
    rf"<(?:{_TAG_ALT})\b(?:\"[^\"]*\"|'[^']*'|[^<>\"'])*/>", re.IGNORECASE
)
_INNER_BLOCKS = re.compile(r"<(search|replace)>.*?</\1>", re.DOTALL | re.IGNORECASE)
_STRAY_TAG = re.compile(rf"</?(?:{_TAG_ALT}|replace|literal)\b[^>]*>", re.IGNORECASE)


def clean_action_tags(text: str | None) -> str:
    """Remove action tags and thinking blocks, leaving the prose."""
    if not text:
        return ""
    text = normalize_tag_aliases(text)
    text = _THINKING_BLOCK.sub("", text)
    text = _PAIRED_BLOCK.sub("", text)
    text = _SELF_CLOSING.sub("", text)
    text = _INNER_BLOCKS.sub("", text)
    text = _STRAY_TAG.sub("", text)
    return text.strip()


_FILLER_LINE = re.compile(
    r"^(Yes|No|Done|Good|Perfect|Correct|Right|OK|Okay|Indeed|Exactly|Then|So|But|Now|And|First|Next|I)\.?\s*$",
    re.IGNORECASE,
)
_MONOLOGUE_LINE = re.compile(
    r"^(Let me|Let's|I think|I will|I need|I should|Now,? let me|The (response|answer|output) (is|should))\b",
    re.IGNORECASE,
)


def clean_self_dialogue(text: str) -> str:
    """Strip filler and thinking-aloud lines from a short summary reply.

    Used on connector replies, where only a plain-language summary is wanted.
    """
    kept = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            kept.append("")
            continue
        if len(stripped) <= 2 or _FILLER_LINE.match(stripped):
            continue
        if _MONOLOGUE_LINE.match(stripped):
            continue
        kept.append(line)
    result = "\n".join(kept)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()
