"""Bounding what goes back into the conversation.

Two independent policies live here: the per-batch compression of action
results fed back to the model, and the sliding window applied to the whole
history before a new user message is appended.
"""

import tiktoken

from .actions import ActionResult

MAX_GENERIC_RESULT_CHARS = 1600
MAX_READ_RESULT_CHARS = 14000
MAX_EXPLORE_RESULT_CHARS = 3000
MAX_EXPLORE_PREVIEW_LINES = 12
MAX_CONTINUATION_RESULTS = 8
MAX_ERROR_NOTE_CHARS = 220

DEFAULT_MAX_CONTEXT_MESSAGES = 200

_EXPLORE_KINDS = {"glob", "grep", "ls", "explore"}

_encoder = tiktoken.get_encoding("cl100k_base")


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... [truncated {len(text) - max_chars} chars]"


def _kind_from_label(label: str) -> str:
    return label.split(":", 1)[0].strip().lower()


def _summarize_explore(result: str) -> str:
    lines = [line.strip() for line in result.split("\n") if line.strip()]
    if not lines:
        return "No matches"
    preview = lines[:MAX_EXPLORE_PREVIEW_LINES]
    hidden = len(lines) - len(preview)
    body = "\n".join(preview)
    if hidden > 0:
        body += f"\n... [{hidden} more lines]"
    return truncate(body, MAX_EXPLORE_RESULT_CHARS)


def summarize_result(label: str, result: str) -> str:
    """Shorten one result body according to the kind of action that made it."""
    kind = _kind_from_label(label)
    if kind == "read":
        return truncate(result, MAX_READ_RESULT_CHARS)
    if kind in _EXPLORE_KINDS:
        return _summarize_explore(result)
    return truncate(result, MAX_GENERIC_RESULT_CHARS)


def _select(results: list[ActionResult]) -> list[int]:
    """Indexes of the results to keep: failures first, then the most recent."""
    if len(results) <= MAX_CONTINUATION_RESULTS:
        return list(range(len(results)))
    selected: set[int] = set()
    for i in reversed(range(len(results))):
        if len(selected) >= MAX_CONTINUATION_RESULTS:
            break
        if not results[i].success:
            selected.add(i)
    for i in reversed(range(len(results))):
        if len(selected) >= MAX_CONTINUATION_RESULTS:
            break
        selected.add(i)
    return sorted(selected)


def compress_action_results(results: list[ActionResult]) -> str:
    """Render a batch of results as an <action-output> block for the model."""
    keep = _select(results)
    blocks = []
    for i in keep:
        r = results[i]
        status = "\u2713" if r.success else "\u2717"
        note = f" ({truncate(r.error, MAX_ERROR_NOTE_CHARS)})" if r.error else ""
        summary = summarize_result(r.action, r.result or "")
        blocks.append(f"[{status}] {r.action}{note}\n{summary}")
    omitted = len(results) - len(keep)
    if omitted > 0:
        blocks.append(f"[i] {omitted} older action result(s) omitted for context hygiene.")
    body = "\n\n".join(blocks)
    return f"<action-output>\n{body}\n</action-output>"


def compress_history(messages: list[dict], max_messages: int) -> tuple[list[dict], int] | None:
    """Keep the system message plus the last max_messages others.

    Returns (new_messages, dropped_from) where dropped_from is the number of
    non-system messages before compression, or None when nothing was dropped.
    """
    if not messages or messages[0].get("role") != "system":
        system, rest = None, list(messages)
    else:
        system, rest = messages[0], list(messages[1:])
    if len(rest) <= max_messages:
        return None
    kept = rest[-max_messages:] if max_messages > 0 else []
    new_messages = ([system] if system is not None else []) + kept
    return new_messages, len(rest)


def message_text(message: dict) -> str:
    content = message.get("content") or ""
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if part.get("type") == "text")
    return content


def has_images(message: dict) -> bool:
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(part.get("type") == "image_url" for part in content)


def estimate_tokens(messages: list[dict]) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        total += len(_encoder.encode(message_text(m)))
    # Per-message overhead (role, separators), about 4 tokens each
    total += 4 * len(messages)
    return total
