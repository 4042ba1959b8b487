"""Tests for guards.py: model-mistake detectors."""

from tagwright.actions import BashAction, ReadAction
from tagwright.guards import (
    find_fenced_action_tags,
    is_empty_turn,
    looks_like_hallucinated_code,
    platform_hint,
    split_duplicate_reads,
)


class TestFencedTags:
    def test_tag_in_code_fence(self):
        text = 'Here you go:\n```xml\n<read path="a.py"/>\n```'
        assert find_fenced_action_tags(text) == ['<read path="a.py"/>']

    def test_tag_in_backticks(self):
        assert find_fenced_action_tags('Run `<bash>` with ls`') == ["<bash>"]

    def test_bare_tag_not_flagged(self):
        assert find_fenced_action_tags('<read path="a.py"/>') == []

    def test_only_action_tags(self):
        assert find_fenced_action_tags("```\n<div>\n```") == []


class TestHallucinatedCode:
    def test_unfenced_class(self):
        assert looks_like_hallucinated_code("class Server:\n    pass")

    def test_unfenced_import(self):
        assert looks_like_hallucinated_code("Sure.\nimport os\nprint(os.getcwd())")

    def test_fenced_code_allowed(self):
        assert not looks_like_hallucinated_code("```python\nclass Server:\n    pass\n```")

    def test_prose(self):
        assert not looks_like_hallucinated_code("The server class handles requests.")


class TestEmptyTurn:
    def test_thinking_without_reply(self):
        assert is_empty_turn("  \n", "I should look at the code")

    def test_nothing_at_all(self):
        assert not is_empty_turn("", "")

    def test_reply_present(self):
        assert not is_empty_turn("Done.", "thoughts")


class TestDuplicateReads:
    def test_first_read_recorded(self):
        seen = set()
        kept, dups = split_duplicate_reads([ReadAction("a.py")], seen)
        assert kept == [ReadAction("a.py")]
        assert dups == []
        assert seen == {"a.py"}

    def test_repeat_dropped(self):
        seen = {"a.py"}
        actions = [ReadAction("a.py"), BashAction("ls"), ReadAction("b.py")]
        kept, dups = split_duplicate_reads(actions, seen)
        assert kept == [BashAction("ls"), ReadAction("b.py")]
        assert dups == ["a.py"]

    def test_same_batch_repeat(self):
        kept, dups = split_duplicate_reads([ReadAction("a"), ReadAction("a")], set())
        assert kept == [ReadAction("a")]
        assert dups == ["a"]


class TestPlatformHint:
    def test_none(self):
        assert platform_hint(None) == ""

    def test_named(self):
        hint = platform_hint("telegram")
        assert "[PLATFORM: TELEGRAM" in hint
        assert hint.startswith("\n")
