"""Tests for edit.py: the search/replace engine behind edit and multi-edit."""

import pytest

from tagwright.actions import ALREADY_APPLIED, APPLIED, EDIT_ERROR, NOT_FOUND, EditOp
from tagwright.edit import edit_file, locate, multi_edit_file, replace, similar_lines


# =========================================================================
# replace()
# =========================================================================


class TestReplace:
    def test_exact(self):
        assert replace("hello world", "hello", "goodbye") == "goodbye world"

    def test_multiline(self):
        assert replace("aaa\nbbb\nccc\n", "bbb\nccc", "BBB\nCCC") == "aaa\nBBB\nCCC\n"

    def test_ambiguous_replaces_first(self):
        assert replace("x\ny\nx\n", "x", "z") == "z\ny\nx\n"

    def test_replace_all(self):
        assert replace("foo bar foo", "foo", "qux", replace_all=True) == "qux bar qux"

    def test_noop_returns_same_content(self):
        assert replace("a\nb\n", "a", "a") == "a\nb\n"

    def test_delete_line(self):
        assert replace("keep\nremove\nkeep\n", "remove\n", "") == "keep\nkeep\n"

    def test_not_found(self):
        with pytest.raises(ValueError, match="not found"):
            replace("abc def", "xyz", "q")

    def test_empty_search(self):
        with pytest.raises(ValueError, match="empty"):
            replace("abc", "", "q")


# =========================================================================
# Tolerant matching
# =========================================================================


class TestTolerantMatching:
    def test_indentation_difference(self):
        content = "def f():\n    return 1\n"
        assert replace(content, "return 1", "return 2") == "def f():\n    return 2\n"

    def test_trimmed_lines(self):
        content = "if x:\n    a = 1   \n    b = 2\n"
        result = replace(content, "a = 1\nb = 2", "c = 3")
        assert result == "if x:\nc = 3\n"

    def test_smart_quotes(self):
        content = "print(\u201chello\u201d)\n"
        assert replace(content, 'print("hello")', 'print("world")') == 'print("world")\n'

    def test_em_dash(self):
        assert "value - 20" in replace("value \u2014 10\n", "value - 10", "value - 20")

    def test_ellipsis_and_nbsp(self):
        assert replace("loading\u2026\n", "loading...", "done") == "done\n"
        assert replace("hello\u00a0world\n", "hello world", "hi") == "hi\n"

    def test_locate_returns_file_text(self):
        content = "    x = \u201ca\u201d\n"
        assert locate(content, 'x = "a"') == "    x = \u201ca\u201d"

    def test_similar_lines(self):
        content = "def handle_request(self):\n    pass\n"
        assert similar_lines(content, "def handle_requests(self):") == ["def handle_request(self):"]


# =========================================================================
# edit_file()
# =========================================================================


class TestEditFile:
    def test_applied(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("x = 1\n")
        result = edit_file(f, "x = 1", "x = 2", display_path="a.py")
        assert result.success
        assert result.status == APPLIED
        assert result.message == "Modified: a.py"
        assert f.read_text() == "x = 2\n"

    def test_already_applied_leaves_file(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("x = 2\n")
        mtime = f.stat().st_mtime_ns
        result = edit_file(f, "x = 2", "x = 2")
        assert result.success
        assert result.status == ALREADY_APPLIED
        assert f.stat().st_mtime_ns == mtime

    def test_missing_file(self, tmp_path):
        result = edit_file(tmp_path / "nope.py", "a", "b", display_path="nope.py")
        assert not result.success
        assert result.status == NOT_FOUND
        assert result.message == "File not found: nope.py"

    def test_pattern_not_found(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("alpha\n")
        result = edit_file(f, "omega", "beta", display_path="a.py")
        assert result.status == NOT_FOUND
        assert result.message.startswith("Pattern not found in a.py.")
        assert f.read_text() == "alpha\n"

    def test_empty_search_is_error(self, tmp_path):
        f = tmp_path / "a.py"
        f.write_text("alpha\n")
        assert edit_file(f, "", "x").status == EDIT_ERROR


# =========================================================================
# multi_edit_file()
# =========================================================================


class TestMultiEditFile:
    def test_all_applied(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("a = 1\nb = 2\n")
        result = multi_edit_file(
            f, [EditOp("a = 1", "a = 10"), EditOp("b = 2", "b = 20")], display_path="m.py"
        )
        assert result.status == APPLIED
        assert result.message == "Applied 2 edits to m.py"
        assert f.read_text() == "a = 10\nb = 20\n"

    def test_patterns_checked_against_original(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("one\n")
        result = multi_edit_file(f, [EditOp("one", "two"), EditOp("two", "three")])
        assert result.status == NOT_FOUND
        assert result.message == "Edit 2/2 failed: pattern not found. Aborting all edits."
        assert f.read_text() == "one\n"

    def test_edits_applied_in_order(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("x = 1\ny = x\n")
        result = multi_edit_file(f, [EditOp("x = 1", "x = 2"), EditOp("y = x", "y = x + 1")])
        assert result.status == APPLIED
        assert f.read_text() == "x = 2\ny = x + 1\n"

    def test_all_or_nothing(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("a = 1\nb = 2\n")
        result = multi_edit_file(f, [EditOp("a = 1", "a = 10"), EditOp("zzz", "y")])
        assert not result.success
        assert result.message == "Edit 2/2 failed: pattern not found. Aborting all edits."
        assert f.read_text() == "a = 1\nb = 2\n"

    def test_all_already_applied(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("a = 1\n")
        result = multi_edit_file(f, [EditOp("a = 1", "a = 1")])
        assert result.status == ALREADY_APPLIED
        assert result.message == "All edits already applied"

    def test_missing_file(self, tmp_path):
        result = multi_edit_file(tmp_path / "x", [EditOp("a", "b")], display_path="x")
        assert result.message == "File not found: x"
