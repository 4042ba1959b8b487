"""System prompt assembly: base prompt, environment info, personality, project context."""

import sys
from datetime import date
from pathlib import Path

from . import fmt

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

MAX_CONTEXT_CHARS = 10_000

ENVIRONMENT_HEADER = "\n\nHere is useful information about the environment you are running in:"
PROJECT_CONTEXT_HEADER = "\n\nPROJECT CONTEXT:\n"

PERSONALITIES = {
    "normal": "",
    "depressed": (
        "\n\nPERSONALITY: Depressed, melancholic. Sigh often. "
        "Question existence. Still help, but lament."
    ),
    "sarcasm": (
        "\n\nPERSONALITY: Sarcastic, witty, condescending. "
        "Roll eyes at obvious things. Still helpful."
    ),
    "unhinged": (
        "\n\nPERSONALITY: UNHINGED. No filter. Roast bad code. "
        "Use profanity. Brutally honest."
    ),
}


def load_base_prompt() -> str:
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")


def environment_info(work_dir: str | None) -> str:
    cwd = Path(work_dir) if work_dir else Path.cwd()
    is_git = (cwd / ".git").exists()
    today = date.today().isoformat()
    return (
        f"\n<env>cwd={cwd} git={'yes' if is_git else 'no'} "
        f"platform={sys.platform} date={today}</env>"
    )


def build_system_prompt(
    base: str,
    work_dir: str | None = None,
    personality: str = "normal",
    project_context: str = "",
) -> str:
    """Compose the full system message from its parts."""
    prompt = base + ENVIRONMENT_HEADER + environment_info(work_dir)
    prompt += PERSONALITIES.get(personality, "")
    if project_context:
        prompt += PROJECT_CONTEXT_HEADER + project_context
    return prompt


def load_project_context(base_dir: str, verbose: bool = False) -> tuple[str, list[str]]:
    """Load TAGWRIGHT.md and/or AGENTS.md from base_dir, if present.

    Returns (combined_text, filenames_loaded). Each file is capped at
    MAX_CONTEXT_CHARS characters.
    """
    sections = []
    loaded: list[str] = []
    for filename in ("TAGWRIGHT.md", "AGENTS.md"):
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_CONTEXT_CHARS + 1)
        except OSError:
            continue
        if len(content) > MAX_CONTEXT_CHARS:
            content = (
                content[:MAX_CONTEXT_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_CONTEXT_CHARS} character limit]"
            )
        if verbose:
            fmt.info(f"Loaded {filename} from {path.parent}")
        sections.append(content)
        loaded.append(filename)
    return "\n\n".join(sections), loaded
