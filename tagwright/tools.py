"""Local capability host: file, search, shell, git and web handlers for the CLI.

Every operation is a plain synchronous function that returns text (``error:``
prefixed on expected failures). ``build_local_handlers`` wraps them as the
async callables the executor expects, running each in a worker thread.
"""

import asyncio
import fnmatch
import os
import re
import shlex
import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path, PurePath, PurePosixPath

from .actions import GIT_COMMANDS, EditResult
from .edit import edit_file, multi_edit_file
from .fetch import fetch_url
from .handlers import ActionHandlers
from .plan import PlanState

MAX_OUTPUT_BYTES = 50 * 1024
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024
MAX_LIST_RESULTS = 200
MAX_GREP_MATCHES = 100
DEFAULT_READ_LIMIT = 2000

MAX_INLINE_OUTPUT = 10 * 1024
MAX_FILE_OUTPUT = 1 * 1024 * 1024
SCRATCH_DIR = ".tagwright"
OUTPUT_FILE_TTL = 600
DEFAULT_COMMAND_TIMEOUT = 120
MAX_COMMAND_TIMEOUT = 600

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", SCRATCH_DIR}


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve file_path against base_dir and refuse anything outside it.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    candidate = Path(file_path).expanduser()
    resolved = candidate.resolve() if candidate.is_absolute() else (base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"{file_path!r} resolves outside the working directory {base}")
    return resolved


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
        for filename in sorted(files):
            yield Path(dirpath) / filename


# -- Files ---------------------------------------------------------------------


def read_file(file_path: str, base_dir: str, offset: int | None = None, limit: int | None = None) -> str:
    """Return the file with 1-based line numbers, or a directory listing."""
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.exists():
        return f"error: File not found: {file_path}"
    if resolved.is_dir():
        return list_dir(file_path, base_dir)
    if _is_binary(resolved):
        return f"error: binary file: {file_path}"
    try:
        text = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"error: cannot read {file_path}: {exc}"

    lines = text.splitlines()
    start = max((offset or 1) - 1, 0)
    selected = lines[start : start + (limit or DEFAULT_READ_LIMIT)]

    out: list[str] = []
    total = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        total += len(numbered.encode("utf-8")) + 1
        if total > MAX_OUTPUT_BYTES:
            break
        out.append(numbered)

    remaining = len(lines) - (start + len(out))
    result = "\n".join(out) if out else "(empty file)"
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(out) + 1} to continue]"
    return result


def write_file(file_path: str, content: str, base_dir: str) -> str:
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


def edit_in_place(file_path: str, search: str, replace: str, replace_all: bool, base_dir: str) -> EditResult:
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return EditResult.error(f"Edit error: {exc}")
    return edit_file(resolved, search, replace, replace_all, display_path=file_path)


def multi_edit_in_place(file_path: str, edits, base_dir: str) -> EditResult:
    try:
        resolved = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return EditResult.error(f"Multi-edit error: {exc}")
    return multi_edit_file(resolved, edits, display_path=file_path)


# -- Search --------------------------------------------------------------------


def _search_root(path: str | None, base_dir: str) -> Path | str:
    try:
        root = safe_resolve(path or ".", base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.exists():
        return f"error: path does not exist: {path}"
    return root


def glob_files(pattern: str, path: str | None, base_dir: str) -> list[str] | str:
    """Files under path matching pattern, newest first."""
    if PurePosixPath(pattern).is_absolute() or ".." in PurePosixPath(pattern).parts:
        return f"error: pattern {pattern!r} must be relative and must not contain '..'"
    root = _search_root(path, base_dir)
    if isinstance(root, str):
        return root
    if not root.is_dir():
        return f"error: path is not a directory: {path}"
    base = Path(base_dir).resolve()

    matched = [
        f for f in _walk_files(root) if PurePath(f.relative_to(root)).full_match(pattern)
    ]
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    names = [_relative(f, base) for f in matched[:MAX_LIST_RESULTS]]
    if len(matched) > MAX_LIST_RESULTS:
        names.append(f"(showing {MAX_LIST_RESULTS} of {len(matched)} files)")
    return names


def list_dir(path: str, base_dir: str, ignore: list[str] | None = None) -> str:
    root = _search_root(path, base_dir)
    if isinstance(root, str):
        return root
    if not root.is_dir():
        return f"error: path is not a directory: {path}"
    ignore = ignore or []
    entries = []
    try:
        children = sorted(root.iterdir(), key=lambda c: (not c.is_dir(), c.name))
    except PermissionError as exc:
        return f"error: {exc}"
    for child in children:
        if any(fnmatch.fnmatch(child.name, pat) for pat in ignore):
            continue
        entries.append(child.name + ("/" if child.is_dir() else ""))
    return "\n".join(entries[:MAX_LIST_RESULTS])


def _grep_file(path: Path, regex: re.Pattern, multiline: bool) -> list[tuple[int, str]]:
    try:
        text = path.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError):
        return []
    lines = text.splitlines()
    if not multiline:
        return [(n, line) for n, line in enumerate(lines, start=1) if regex.search(line)]
    hits = []
    for m in regex.finditer(text):
        line_no = text.count("\n", 0, m.start()) + 1
        hits.append((line_no, lines[line_no - 1] if line_no <= len(lines) else ""))
    return hits


def grep(pattern: str, base_dir: str, options: dict | None = None) -> str:
    """Regex search over file contents.

    options: path, glob, output_mode (content | files_with_matches | count),
    context / context_before / context_after, case_insensitive,
    line_numbers, head_limit, multiline.
    """
    options = options or {}
    flags = re.IGNORECASE if options.get("case_insensitive") else 0
    multiline = bool(options.get("multiline"))
    if multiline:
        flags |= re.MULTILINE | re.DOTALL
    try:
        regex = re.compile(pattern, flags)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"

    root = _search_root(options.get("path"), base_dir)
    if isinstance(root, str):
        return root
    base = Path(base_dir).resolve()
    include = options.get("glob")
    mode = options.get("output_mode") or "content"
    limit = options.get("head_limit") or MAX_GREP_MATCHES
    before = options.get("context_before") or options.get("context") or 0
    after = options.get("context_after") or options.get("context") or 0
    numbered = options.get("line_numbers", True)

    files = [root] if root.is_file() else list(_walk_files(root))
    out: list[str] = []
    total = 0
    for f in files:
        if include and not fnmatch.fnmatch(f.name, include):
            continue
        if _is_binary(f):
            continue
        hits = _grep_file(f, regex, multiline)
        if not hits:
            continue
        rel = _relative(f, base)
        total += len(hits)
        if mode == "files_with_matches":
            out.append(rel)
        elif mode == "count":
            out.append(f"{rel}: {len(hits)}")
        else:
            out.extend(_format_hits(f, rel, hits, before, after, numbered))
        if len(out) >= limit:
            out = out[:limit]
            out.append(f"(output limited to {limit} lines)")
            break

    if not out:
        return "No matches found."
    if mode == "content":
        out.insert(0, f"Found {total} matches")
    return "\n".join(out)


def _format_hits(path: Path, rel: str, hits, before: int, after: int, numbered: bool) -> list[str]:
    if not before and not after:
        return [
            f"{rel}:{n}: {line[:MAX_LINE_LENGTH]}" if numbered else f"{rel}: {line[:MAX_LINE_LENGTH]}"
            for n, line in hits
        ]
    lines = path.read_text(encoding="utf-8").splitlines()
    shown: set[int] = set()
    for n, _ in hits:
        shown.update(range(max(1, n - before), min(len(lines), n + after) + 1))
    hit_lines = {n for n, _ in hits}
    out = []
    prev = None
    for n in sorted(shown):
        if prev is not None and n > prev + 1:
            out.append("--")
        sep = ":" if n in hit_lines else "-"
        text = lines[n - 1][:MAX_LINE_LENGTH]
        out.append(f"{rel}{sep}{n}{sep} {text}" if numbered else f"{rel}{sep} {text}")
        prev = n
    return out


EXPLORE_DEPTHS = {"quick": 8, "medium": 20, "deep": 50}
MAX_EXPLORE_TERMS = 6

_STOPWORDS = frozenset(
    "the and for are was where what when how does with that this from into which "
    "all any find show list file files code function functions class use used".split()
)


def explore_terms(query: str) -> list[str]:
    """Distinct search terms from a natural-language query."""
    terms: list[str] = []
    for word in re.findall(r"[A-Za-z_][A-Za-z0-9_.-]{2,}", query):
        key = word.lower()
        if key in _STOPWORDS or key in (t.lower() for t in terms):
            continue
        terms.append(word)
    return terms[:MAX_EXPLORE_TERMS]


def _name_matches(terms: list[str], path: str | None, base_dir: str) -> list[str]:
    root = _search_root(path, base_dir)
    if isinstance(root, str) or not root.is_dir():
        return []
    base = Path(base_dir).resolve()
    keys = [t.lower() for t in terms]
    return [
        _relative(f, base)
        for f in _walk_files(root)
        if any(k in f.name.lower() for k in keys)
    ][:MAX_LIST_RESULTS]


async def explore(query: str, path: str | None, depth: str, base_dir: str) -> str:
    """Search for every query term at once and merge the findings."""
    terms = explore_terms(query)
    if not terms:
        return f"error: no searchable terms in {query!r}"
    per_term = EXPLORE_DEPTHS.get(depth, EXPLORE_DEPTHS["medium"])
    searches = [
        asyncio.to_thread(
            grep,
            re.escape(term),
            base_dir,
            {"path": path, "case_insensitive": True, "head_limit": per_term},
        )
        for term in terms
    ]
    names, *found = await asyncio.gather(
        asyncio.to_thread(_name_matches, terms, path, base_dir), *searches
    )

    sections = []
    if names:
        sections.append("Matching file names:\n" + "\n".join(names[:per_term]))
    for term, result in zip(terms, found):
        if result.startswith("error:"):
            return result
        if result != "No matches found.":
            sections.append(f"## {term}\n{result}")
    return "\n\n".join(sections) if sections else "No matches"


# -- Shell ---------------------------------------------------------------------


def cleanup_old_outputs(base_dir: str) -> int:
    """Remove saved command outputs older than OUTPUT_FILE_TTL. Returns the count removed."""
    scratch = Path(base_dir) / SCRATCH_DIR
    if not scratch.is_dir():
        return 0
    cutoff = time.time() - OUTPUT_FILE_TTL
    removed = 0
    for f in scratch.glob("cmd_output_*.txt"):
        try:
            if f.stat().st_mtime < cutoff:
                f.unlink()
                removed += 1
        except OSError:
            pass
    return removed


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its process group, then reap it."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        pass


def _save_large_output(output: str, base_dir: str) -> str:
    """Write output under .tagwright/ and return a pointer to it."""
    scratch = Path(base_dir) / SCRATCH_DIR
    filename = f"cmd_output_{uuid.uuid4().hex[:12]}.txt"
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        (scratch / filename).write_text(output, encoding="utf-8")
    except OSError:
        clipped = output.encode("utf-8")[:MAX_INLINE_OUTPUT].decode("utf-8", errors="replace")
        return clipped + "\n[output truncated, could not save the full output]"

    size_kb = len(output.encode("utf-8")) / 1024
    return (
        f"Command output too large for context ({size_kb:.1f}KB).\n"
        f"Full output saved to: {SCRATCH_DIR}/{filename}\n"
        f'Use <read path="{SCRATCH_DIR}/{filename}" offset="1" limit="200"/> to page through it.'
    )


def _capture(proc: subprocess.Popen, timeout: int, base_dir: str) -> str:
    chunks: list[bytes] = []
    size = 0
    clipped = False

    def _reader():
        nonlocal size, clipped
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if clipped:
                    continue  # keep draining the pipe
                chunks.append(chunk[: MAX_FILE_OUTPUT - size])
                size += len(chunks[-1])
                clipped = size >= MAX_FILE_OUTPUT
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()
    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
    reader.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    if clipped:
        output += "\n[output truncated at 1MB]"
    if len(output.encode("utf-8")) > MAX_INLINE_OUTPUT:
        output = _save_large_output(output, base_dir)

    if timed_out:
        return f"error: command timed out after {timeout}s\n{output}".rstrip()
    if proc.returncode != 0:
        return f"Exit code: {proc.returncode}\n{output}".rstrip()
    return output or "(no output)"


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    return ["/bin/sh", "-c", command]


def _popen_kwargs(base_dir: str) -> dict:
    kwargs: dict = dict(stdin=subprocess.DEVNULL, cwd=base_dir)
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    return kwargs


def run_shell_command(command: str, base_dir: str, timeout: int = DEFAULT_COMMAND_TIMEOUT) -> str:
    timeout = max(1, min(int(timeout), MAX_COMMAND_TIMEOUT))
    try:
        proc = subprocess.Popen(
            _shell_argv(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            **_popen_kwargs(base_dir),
        )
    except OSError as e:
        return f"error: failed to start shell command: {e}"
    return _capture(proc, timeout, base_dir)


class BackgroundJobs:
    """Shell commands started with background="true", listed by <ps/>, stopped by <kill/>."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self.jobs: dict[str, tuple[subprocess.Popen, str, Path]] = {}
        self._next = 1

    def start(self, command: str) -> str:
        scratch = Path(self.base_dir) / SCRATCH_DIR
        scratch.mkdir(parents=True, exist_ok=True)
        job_id = str(self._next)
        log_path = scratch / f"bg_{job_id}.log"
        try:
            with open(log_path, "wb") as log:
                proc = subprocess.Popen(
                    _shell_argv(command),
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    **_popen_kwargs(self.base_dir),
                )
        except OSError as e:
            return f"error: failed to start background command: {e}"
        self._next += 1
        self.jobs[job_id] = (proc, command, log_path)
        return (
            f"Started background job {job_id} (pid {proc.pid}).\n"
            f"Output: {SCRATCH_DIR}/{log_path.name}"
        )

    def list(self) -> str:
        rows = []
        for job_id, (proc, command, _) in self.jobs.items():
            code = proc.poll()
            state = "running" if code is None else f"exited ({code})"
            rows.append(f"[{job_id}] pid {proc.pid} {state}: {command}")
        return "\n".join(rows)

    def kill(self, target: str) -> bool:
        target = target.strip()
        for job_id, (proc, _, _) in self.jobs.items():
            if target in (job_id, str(proc.pid)):
                if proc.poll() is None:
                    _kill_process_tree(proc)
                del self.jobs[job_id]
                return True
        return False

    def stop_all(self) -> None:
        for proc, _, _ in self.jobs.values():
            if proc.poll() is None:
                _kill_process_tree(proc)
        self.jobs.clear()


def run_git(command: str, args: str | None, base_dir: str, timeout: int = DEFAULT_COMMAND_TIMEOUT) -> str:
    if command not in GIT_COMMANDS:
        return f"error: git {command} is not allowed, use one of: {', '.join(GIT_COMMANDS)}"
    try:
        extra = shlex.split(args or "")
    except ValueError as e:
        return f"error: malformed git arguments: {e}"
    try:
        proc = subprocess.Popen(
            ["git", command, *extra],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            **_popen_kwargs(base_dir),
        )
    except OSError as e:
        return f"error: failed to run git: {e}"
    output = _capture(proc, timeout, base_dir)
    if output.startswith("Exit code:"):
        return "error: " + output
    return output


# -- Wiring --------------------------------------------------------------------


def build_local_handlers(
    base_dir: str,
    *,
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
    plan: PlanState | None = None,
    jobs: BackgroundJobs | None = None,
) -> ActionHandlers:
    """Handlers backed by the local machine, rooted at base_dir.

    Capabilities with no local backend (search, format, typecheck, schedule,
    notify, skill, skill-install, connector-config) are left unset.
    """
    plan = plan if plan is not None else PlanState()
    jobs = jobs if jobs is not None else BackgroundJobs(base_dir)

    async def on_bash(command, timeout_ms=None, background=False):
        if background:
            return await asyncio.to_thread(jobs.start, command)
        seconds = max(1, -(-timeout_ms // 1000)) if timeout_ms else command_timeout
        return await asyncio.to_thread(run_shell_command, command, base_dir, seconds)

    async def on_read(path, offset=None, limit=None):
        return await asyncio.to_thread(read_file, path, base_dir, offset, limit)

    async def on_write(path, content):
        return await asyncio.to_thread(write_file, path, content, base_dir)

    async def on_edit(path, search, replace, replace_all=False):
        return await asyncio.to_thread(edit_in_place, path, search, replace, replace_all, base_dir)

    async def on_multi_edit(path, edits):
        return await asyncio.to_thread(multi_edit_in_place, path, edits, base_dir)

    async def on_glob(pattern, path=None):
        return await asyncio.to_thread(glob_files, pattern, path, base_dir)

    async def on_grep(pattern, options):
        return await asyncio.to_thread(grep, pattern, base_dir, options)

    async def on_ls(path, ignore=None):
        return await asyncio.to_thread(list_dir, path, base_dir, ignore)

    async def on_git(command, args=None):
        return await asyncio.to_thread(run_git, command, args, base_dir, command_timeout)

    async def on_fetch(url, prompt=None):
        return await asyncio.to_thread(fetch_url, url, prompt)

    async def on_explore(query, path=None, depth="medium"):
        return await explore(query, path, depth, base_dir)

    async def on_plan(operation, **options):
        return plan.process(operation, **options)

    async def on_ps():
        return jobs.list()

    async def on_kill(target):
        return await asyncio.to_thread(jobs.kill, target)

    return ActionHandlers(
        on_bash=on_bash,
        on_read=on_read,
        on_write=on_write,
        on_create=on_write,
        on_edit=on_edit,
        on_multi_edit=on_multi_edit,
        on_glob=on_glob,
        on_grep=on_grep,
        on_ls=on_ls,
        on_git=on_git,
        on_fetch=on_fetch,
        on_explore=on_explore,
        on_plan=on_plan,
        on_ps=on_ps,
        on_kill=on_kill,
    )
