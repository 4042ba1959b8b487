"""Search/replace engine behind the edit and multi-edit actions.

Matching strategies are tried in order: exact, then line-trimmed, then
Unicode-normalized. An ambiguous match replaces the first occurrence unless
``replace_all`` is set. A transform that leaves the content unchanged is
reported as already applied rather than as a failure.
"""

from __future__ import annotations

import difflib
import re
from pathlib import Path

from .actions import EditOp, EditResult


# ---------------------------------------------------------------------------
# Unicode normalization
# ---------------------------------------------------------------------------

_UNICODE_SINGLE_QUOTES = re.compile(r"[\u2018\u2019\u201a\u201b]")
_UNICODE_DOUBLE_QUOTES = re.compile(r"[\u201c\u201d\u201e\u201f]")
_UNICODE_DASHES = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2015]")


def _normalize_unicode(s: str) -> str:
    s = _UNICODE_SINGLE_QUOTES.sub("'", s)
    s = _UNICODE_DOUBLE_QUOTES.sub('"', s)
    s = _UNICODE_DASHES.sub("-", s)
    s = s.replace("\u2026", "...")
    s = s.replace("\u00a0", " ")
    return s


def _trimmed(line: str) -> str:
    return line.strip()


def _trimmed_unicode(line: str) -> str:
    return _normalize_unicode(line.strip())


# ---------------------------------------------------------------------------
# Line-window matching
# ---------------------------------------------------------------------------


def _find_lines(content: str, old_string: str, key) -> tuple[int, int] | None:
    """Find old_string by comparing key(line) over a sliding window of lines.

    Returns (start_index, end_index) into content, or None.
    """
    content_lines = content.split("\n")
    old_lines = old_string.split("\n")
    old_len = len(old_lines)
    wanted = [key(line) for line in old_lines]

    for i in range(len(content_lines) - old_len + 1):
        if all(key(content_lines[i + j]) == wanted[j] for j in range(old_len)):
            start = sum(len(content_lines[k]) + 1 for k in range(i))
            end = start + sum(len(content_lines[i + k]) + 1 for k in range(old_len))
            # The window spans whole lines; drop the final newline unless asked for.
            if not old_string.endswith("\n") and end > 0:
                end -= 1
            return (start, min(end, len(content)))

    return None


def locate(content: str, old_string: str) -> str | None:
    """Return the exact text in content that old_string refers to, or None."""
    if old_string in content:
        return old_string
    for key in (_trimmed, _trimmed_unicode):
        span = _find_lines(content, old_string, key)
        if span is not None:
            return content[span[0] : span[1]]
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def replace(
    content: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> str:
    """Replace old_string with new_string in content.

    Raises ValueError("search must not be empty") or ValueError("not found").
    The returned content may equal the input when the edit is a no-op.
    """
    if not old_string:
        raise ValueError("search must not be empty")

    target = locate(content, old_string)
    if target is None:
        raise ValueError("not found")

    if replace_all:
        return content.replace(target, new_string)
    return content.replace(target, new_string, 1)


def similar_lines(content: str, old_string: str, limit: int = 3) -> list[str]:
    """Lines of content resembling the first line of old_string."""
    first = old_string.strip().split("\n", 1)[0].strip()
    if not first:
        return []
    candidates = [line.strip() for line in content.split("\n") if line.strip()]
    return difflib.get_close_matches(first, candidates, n=limit, cutoff=0.6)


def _not_found_message(display_path: str, content: str, search: str) -> str:
    message = f"Pattern not found in {display_path}."
    if similar_lines(content, search):
        return message + " Similar patterns exist - check whitespace/indentation."
    return message + " Use <read> to see actual content."


def edit_file(
    path: Path,
    search: str,
    replacement: str,
    replace_all: bool = False,
    display_path: str | None = None,
) -> EditResult:
    """Apply one search/replace to the file at *path*."""
    shown = display_path or str(path)
    if not path.is_file():
        return EditResult.not_found(f"File not found: {shown}")
    if not search:
        return EditResult.error("Edit error: search must not be empty")

    try:
        content = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return EditResult.error(f"Edit error: {exc}")

    try:
        new_content = replace(content, search, replacement, replace_all=replace_all)
    except ValueError:
        return EditResult.not_found(_not_found_message(shown, content, search))

    if new_content == content:
        return EditResult.already_applied("Edit already applied (no change needed)")

    try:
        path.write_text(new_content, encoding="utf-8")
    except OSError as exc:
        return EditResult.error(f"Edit error: {exc}")
    return EditResult.applied(
        f"Modified: {shown}",
        diffs=[{"search": search.split("\n"), "replace": replacement.split("\n")}],
    )


def multi_edit_file(
    path: Path,
    edits: list[EditOp] | tuple[EditOp, ...],
    display_path: str | None = None,
) -> EditResult:
    """Apply several edits to one file, all or nothing.

    Every search pattern is checked against the file as it was before the
    batch; the edits are then applied in order to an in-memory copy, and the
    file is written only if all patterns were found.
    """
    shown = display_path or str(path)
    if not path.is_file():
        return EditResult.not_found(f"File not found: {shown}")

    try:
        original = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return EditResult.error(f"Multi-edit error: {exc}")

    total = len(edits)
    targets = []
    for i, op in enumerate(edits, start=1):
        if not op.search:
            return EditResult.error(f"Edit {i}/{total} failed: search must not be empty.")
        target = locate(original, op.search)
        if target is None:
            return EditResult.not_found(
                f"Edit {i}/{total} failed: pattern not found. Aborting all edits."
            )
        targets.append(target)

    content = original
    diffs = []
    for op, target in zip(edits, targets):
        if op.replace_all:
            content = content.replace(target, op.replace)
        else:
            content = content.replace(target, op.replace, 1)
        diffs.append({"search": op.search.split("\n"), "replace": op.replace.split("\n")})

    if content == original:
        return EditResult.already_applied("All edits already applied")

    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        return EditResult.error(f"Multi-edit error: {exc}")
    return EditResult.applied(f"Applied {total} edits to {shown}", diffs=diffs)
