"""Tests for tools.py: the local capability host used by the CLI."""

import asyncio
import shutil
import sys

import pytest

from tagwright.actions import APPLIED
from tagwright.tools import (
    SCRATCH_DIR,
    BackgroundJobs,
    build_local_handlers,
    explore,
    explore_terms,
    glob_files,
    grep,
    list_dir,
    read_file,
    run_git,
    run_shell_command,
    safe_resolve,
    write_file,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh")


@pytest.fixture
def sandbox(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("import os\nprint('hello')\n")
    (tmp_path / "src" / "utils.py").write_text("def helper():\n    return 42\n")
    (tmp_path / "src" / "sub").mkdir()
    (tmp_path / "src" / "sub" / "deep.py").write_text("# deep module\nx = 1\n")
    (tmp_path / "README.txt").write_text("This is the readme.\n")
    (tmp_path / "config.json").write_text('{"key": "value"}\n')
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("[core]\nhello\n")
    (tmp_path / "image.bin").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00hello")
    return tmp_path


# =========================================================================
# Path containment
# =========================================================================


class TestSafeResolve:
    def test_relative_inside(self, tmp_path):
        assert safe_resolve("a/b.txt", str(tmp_path)) == (tmp_path / "a" / "b.txt").resolve()

    def test_parent_escape(self, tmp_path):
        with pytest.raises(ValueError, match="outside"):
            safe_resolve("../etc/passwd", str(tmp_path))

    def test_absolute_outside(self, tmp_path):
        with pytest.raises(ValueError):
            safe_resolve("/etc/passwd", str(tmp_path))


# =========================================================================
# Files
# =========================================================================


class TestReadWrite:
    def test_line_numbers(self, sandbox):
        assert read_file("src/main.py", str(sandbox)) == "1: import os\n2: print('hello')"

    def test_offset_limit_hint(self, tmp_path):
        (tmp_path / "f.txt").write_text("a\nb\nc\nd\ne\n")
        out = read_file("f.txt", str(tmp_path), offset=2, limit=2)
        assert out == "2: b\n3: c\n[2 more lines, use offset=4 to continue]"

    def test_missing(self, tmp_path):
        assert read_file("nope.txt", str(tmp_path)) == "error: File not found: nope.txt"

    def test_binary(self, sandbox):
        assert read_file("image.bin", str(sandbox)).startswith("error: binary file")

    def test_directory_lists(self, sandbox):
        assert "main.py" in read_file("src", str(sandbox))

    def test_outside_base(self, tmp_path):
        assert read_file("../x", str(tmp_path)).startswith("error:")

    def test_write_creates_parents(self, tmp_path):
        out = write_file("deep/er/f.txt", "hi\n", str(tmp_path))
        assert out == "Wrote 3 bytes to deep/er/f.txt"
        assert (tmp_path / "deep" / "er" / "f.txt").read_text() == "hi\n"


# =========================================================================
# Search
# =========================================================================


class TestGlob:
    def test_recursive(self, sandbox):
        found = glob_files("**/*.py", None, str(sandbox))
        assert sorted(found) == ["src/main.py", "src/sub/deep.py", "src/utils.py"]

    def test_git_pruned(self, sandbox):
        assert glob_files("**/config", None, str(sandbox)) == []

    def test_subpath(self, sandbox):
        assert glob_files("*.py", "src/sub", str(sandbox)) == ["src/sub/deep.py"]

    def test_dotdot_rejected(self, sandbox):
        assert glob_files("../*.py", None, str(sandbox)).startswith("error:")


class TestGrep:
    def test_content(self, sandbox):
        out = grep("hello", str(sandbox))
        assert out == "Found 1 matches\nsrc/main.py:2: print('hello')"

    def test_no_line_numbers(self, sandbox):
        out = grep("hello", str(sandbox), {"line_numbers": False})
        assert out.splitlines()[1] == "src/main.py: print('hello')"

    def test_files_with_matches(self, sandbox):
        out = grep(r"def |import ", str(sandbox), {"output_mode": "files_with_matches"})
        assert out == "src/main.py\nsrc/utils.py"

    def test_count(self, sandbox):
        assert grep("=", str(sandbox), {"output_mode": "count", "glob": "*.py"}) == (
            "src/sub/deep.py: 1"
        )

    def test_case_insensitive(self, sandbox):
        assert grep("HELLO", str(sandbox)) == "No matches found."
        assert "src/main.py" in grep("HELLO", str(sandbox), {"case_insensitive": True})

    def test_include_glob(self, sandbox):
        out = grep("readme", str(sandbox), {"glob": "*.txt", "case_insensitive": True})
        assert "README.txt:1:" in out

    def test_context(self, sandbox):
        out = grep("return", str(sandbox), {"context": 1})
        assert "src/utils.py-1- def helper():" in out
        assert "src/utils.py:2:     return 42" in out

    def test_head_limit(self, tmp_path):
        (tmp_path / "many.txt").write_text("hit\n" * 20)
        out = grep("hit", str(tmp_path), {"head_limit": 5})
        assert out.endswith("(output limited to 5 lines)")

    def test_invalid_regex(self, sandbox):
        assert grep("(", str(sandbox)).startswith("error: invalid regex")


class TestListDir:
    def test_dirs_first(self, sandbox):
        assert list_dir(".", str(sandbox)).splitlines()[:2] == [".git/", "src/"]

    def test_ignore(self, sandbox):
        out = list_dir(".", str(sandbox), [".git", "*.bin"])
        assert out == "src/\nREADME.txt\nconfig.json"


class TestExplore:
    def test_terms(self):
        assert explore_terms("where is the config loader defined") == [
            "config",
            "loader",
            "defined",
        ]

    def test_no_terms(self, sandbox):
        out = asyncio.run(explore("is it", None, "quick", str(sandbox)))
        assert out.startswith("error:")

    def test_content_hits(self, sandbox):
        out = asyncio.run(explore("helper function", None, "quick", str(sandbox)))
        assert "## helper" in out
        assert "src/utils.py:1: def helper():" in out

    def test_file_names(self, sandbox):
        out = asyncio.run(explore("utils", None, "medium", str(sandbox)))
        assert out.startswith("Matching file names:\nsrc/utils.py")


# =========================================================================
# Shell
# =========================================================================


@posix_only
class TestShell:
    def test_output(self, tmp_path):
        assert run_shell_command("echo hello", str(tmp_path)).strip() == "hello"

    def test_runs_in_base_dir(self, tmp_path):
        (tmp_path / "marker.txt").write_text("")
        assert "marker.txt" in run_shell_command("ls", str(tmp_path))

    def test_exit_code(self, tmp_path):
        out = run_shell_command("echo oops; exit 3", str(tmp_path))
        assert out.startswith("Exit code: 3\n")
        assert "oops" in out

    def test_no_output(self, tmp_path):
        assert run_shell_command("true", str(tmp_path)) == "(no output)"

    def test_timeout(self, tmp_path):
        out = run_shell_command("sleep 5", str(tmp_path), timeout=1)
        assert out.startswith("error: command timed out after 1s")

    def test_large_output_saved(self, tmp_path):
        out = run_shell_command("head -c 20000 /dev/zero | tr '\\0' 'a'", str(tmp_path))
        assert "Full output saved to: .tagwright/cmd_output_" in out
        saved = list((tmp_path / SCRATCH_DIR).glob("cmd_output_*.txt"))
        assert len(saved) == 1
        assert len(saved[0].read_text()) == 20000


@posix_only
class TestBackgroundJobs:
    def test_start_list_kill(self, tmp_path):
        jobs = BackgroundJobs(str(tmp_path))
        started = jobs.start("sleep 30")
        assert started.startswith("Started background job 1 (pid ")
        listing = jobs.list()
        assert listing.startswith("[1] pid ")
        assert "running: sleep 30" in listing
        assert jobs.kill("1") is True
        assert jobs.list() == ""
        assert jobs.kill("1") is False

    def test_stop_all(self, tmp_path):
        jobs = BackgroundJobs(str(tmp_path))
        jobs.start("sleep 30")
        jobs.start("sleep 30")
        jobs.stop_all()
        assert jobs.jobs == {}


class TestGit:
    def test_not_whitelisted(self, tmp_path):
        assert "not allowed" in run_git("rebase", "-i HEAD~2", str(tmp_path))

    def test_bad_quoting(self, tmp_path):
        assert run_git("log", "'unterminated", str(tmp_path)).startswith("error: malformed")

    def test_outside_repo(self, tmp_path):
        if shutil.which("git") is None:
            pytest.skip("git not installed")
        assert run_git("status", None, str(tmp_path)).startswith("error: Exit code:")


# =========================================================================
# Handler wiring
# =========================================================================


class TestLocalHandlers:
    def test_unwired_capabilities(self, tmp_path):
        available = build_local_handlers(str(tmp_path)).available()
        assert "read" in available
        assert "plan" in available
        for name in ("search", "format", "typecheck", "notify", "schedule", "skill"):
            assert name not in available

    def test_write_read_edit(self, tmp_path):
        handlers = build_local_handlers(str(tmp_path))

        async def scenario():
            wrote = await handlers.on_write("pkg/a.py", "x = 1\n")
            edited = await handlers.on_edit("pkg/a.py", "x = 1", "x = 2", False)
            text = await handlers.on_read("pkg/a.py", None, None)
            return wrote, edited, text

        wrote, edited, text = asyncio.run(scenario())
        assert wrote == "Wrote 6 bytes to pkg/a.py"
        assert edited.status == APPLIED
        assert text == "1: x = 2"

    def test_edit_outside_base(self, tmp_path):
        handlers = build_local_handlers(str(tmp_path))
        result = asyncio.run(handlers.on_edit("../x.py", "a", "b", False))
        assert not result.success
        assert "outside" in result.message

    def test_plan(self, tmp_path):
        handlers = build_local_handlers(str(tmp_path))
        reply = asyncio.run(handlers.on_plan("add", content="Write docs"))
        assert reply["success"]
        assert reply["plan"][0]["content"] == "Write docs"

    @posix_only
    def test_bash_timeout_from_ms(self, tmp_path):
        handlers = build_local_handlers(str(tmp_path))
        out = asyncio.run(handlers.on_bash("sleep 5", 1000, False))
        assert out.startswith("error: command timed out after 1s")
