"""Detectors for known model mistakes and the corrections sent back for them.

Each detector is a plain predicate over the model's reply. They are
heuristics: false positives and negatives are possible, which is why the
loop logs every time one fires.
"""

import re

DUPLICATE_READ_LIMIT = 3
EMPTY_RESPONSE_LIMIT = 2
FAIL_FAST_LIMIT = 3

DUPLICATE_READ_CORRECTION = (
    "ERROR: You've already read these files - the content is in your context above. "
    "DO NOT read them again. Use the content you already have and complete the task. "
    "If you need to edit, use the exact text from your previous read."
)

DUPLICATE_READ_NOTE = (
    "<action-output>\n[i] Skipped re-reading {paths}: the content is already "
    "in your context above.\n</action-output>"
)

CODE_BLOCK_CORRECTION = (
    "ERROR: Action tag inside code block. Write action tags directly WITHOUT backticks."
)

HALLUCINATION_CORRECTION = (
    'ERROR: You outputted code directly instead of using actions. NEVER output raw code - '
    'always use <read path="..."/> to check actual file content, or '
    '<edit path="...">...</edit> to make changes. '
    "Do NOT hallucinate file contents from memory."
)

EMPTY_TURN_PLACEHOLDER = "[Thinking...]"
EMPTY_TURN_CORRECTION = (
    "You were thinking but didn't provide a response. Please respond to the task."
)

CONTINUE_DIRECTIVE = "<system-instruction>Continue with the next step.</system-instruction>"

ERROR_DIRECTIVE = (
    "<system-instruction>ERROR DETECTED - You MUST fix it now. Read the action output "
    "above to find the file and line number, then use <read> and <edit> to fix it. "
    "Run the appropriate check command via bash to verify. "
    "Do NOT stop until the error is resolved.</system-instruction>"
)

PLATFORM_HINT = (
    "\n[PLATFORM: {platform} - Execute actions, then respond with a 1-2 sentence SUMMARY "
    "in plain language. NEVER include code, file contents, or technical details. "
    'Describe what was done simply (e.g., "Fixed the login bug" not code snippets).]'
)

_FENCEABLE_TAG = re.compile(r"<(bash|read|edit|write|glob|grep|explore)\b[^>]*>", re.IGNORECASE)

_CODE_PATTERNS = (
    re.compile(r"^(async\s+)?(function|class|const|let|var|export|import)\s+", re.MULTILINE),
    re.compile(r"constructor\s*\([^)]*\)\s*\{", re.MULTILINE),
    re.compile(r"^\s*(public|private|protected)\s+", re.MULTILINE),
)


def find_fenced_action_tags(text: str) -> list[str]:
    """Action tags that sit inside backticks or after an opening code fence.

    A tag counts as fenced when a backtick appears within the 50 characters
    before it and within the 10 after it, or a ``` fence opens within the
    50 characters before it.
    """
    fenced = []
    for m in _FENCEABLE_TAG.finditer(text):
        before = text[max(0, m.start() - 50) : m.start()]
        after = text[m.end() : m.end() + 10]
        if ("`" in before and "`" in after) or "```" in before:
            fenced.append(m.group(0))
    return fenced


def looks_like_hallucinated_code(text: str) -> bool:
    """Source-like text with no code fence, written instead of an action."""
    if "```" in text:
        return False
    return any(p.search(text) for p in _CODE_PATTERNS)


def is_empty_turn(content: str, thinking: str) -> bool:
    """The model reasoned but produced no visible reply."""
    return bool(thinking) and not content.strip()


def split_duplicate_reads(actions: list, files_read: set[str]) -> tuple[list, list[str]]:
    """Drop reads of paths already read this turn; record first reads in files_read.

    Returns (kept_actions, duplicate_paths).
    """
    kept = []
    duplicates = []
    for action in actions:
        if action.type == "read":
            if action.path in files_read:
                duplicates.append(action.path)
                continue
            files_read.add(action.path)
        kept.append(action)
    return kept, duplicates


def platform_hint(platform: str | None) -> str:
    if not platform:
        return ""
    return PLATFORM_HINT.format(platform=platform.upper())
