"""Incremental display of a streamed model reply.

The assembler accumulates raw chunks and releases only text that cannot
belong to an action tag still being written. Balance is counted over the
whole accumulated text, since a tag can span many network chunks.
"""

import re

from .actions import ACTION_TAGS, THINKING_TAGS
from .parser import clean_action_tags, normalize_tag_aliases

_VOCAB = "|".join(
    re.escape(t) for t in sorted(ACTION_TAGS + THINKING_TAGS, key=len, reverse=True)
)

_OPEN = re.compile(rf"<(?:{_VOCAB})\b", re.IGNORECASE)
_CLOSE = re.compile(rf"</(?:{_VOCAB})\s*>", re.IGNORECASE)
_SELF_CLOSED = re.compile(
    rf"<(?:{_VOCAB})\b(?:\"[^\"]*\"|'[^']*'|[^<>\"'])*/>", re.IGNORECASE
)
_PARTIAL = re.compile(r"<[a-z_-]*$", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def displayable(text: str) -> str:
    """Prose left once action tags and thinking blocks are removed."""
    return _BLANK_RUNS.sub("\n\n", clean_action_tags(text))


def has_open_tag(text: str) -> bool:
    # Aliases such as <read_file> count under their canonical name.
    text = normalize_tag_aliases(text)
    opened = len(_OPEN.findall(text))
    closed = len(_CLOSE.findall(text)) + len(_SELF_CLOSED.findall(text))
    return opened > closed


def has_partial_tag(text: str) -> bool:
    return _PARTIAL.search(text) is not None


class StreamAssembler:
    """Turns raw chunks into display-safe deltas.

    ``feed`` returns only the text not emitted before; ``flush`` releases
    whatever is left when the stream ends. Output never rewinds: when the
    cleaned text no longer extends what was already shown, nothing more
    is released.
    """

    def __init__(self):
        self._text = ""
        self._shown = ""

    @property
    def text(self) -> str:
        return self._text

    @property
    def shown(self) -> int:
        return len(self._shown)

    def feed(self, chunk: str) -> str:
        if not chunk:
            return ""
        self._text += chunk
        if has_open_tag(self._text) or has_partial_tag(self._text):
            return ""
        return self._emit()

    def flush(self) -> str:
        return self._emit()

    def _emit(self) -> str:
        clean = displayable(self._text)
        if len(clean) <= len(self._shown) or not clean.startswith(self._shown):
            return ""
        delta = clean[len(self._shown) :]
        self._shown = clean
        return delta
