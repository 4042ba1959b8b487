"""Tests for parser.py: action tag extraction and display cleaning."""

from tagwright.actions import (
    BashAction,
    CreateAction,
    EditAction,
    GitAction,
    GrepAction,
    PlanAction,
    ReadAction,
    WriteAction,
)
from tagwright.parser import (
    clean_action_tags,
    clean_self_dialogue,
    extract_attr,
    extract_bool_attr,
    normalize_tag_aliases,
    parse_actions,
)


# =========================================================================
# Attributes
# =========================================================================


class TestAttributes:
    def test_double_and_single_quotes(self):
        assert extract_attr(' path="a.py" mode=\'x\'', "path") == "a.py"
        assert extract_attr(' path="a.py" mode=\'x\'', "mode") == "x"

    def test_bare_value(self):
        assert extract_attr(" limit=20", "limit") == "20"

    def test_missing(self):
        assert extract_attr(' path="a.py"', "offset") is None

    def test_name_must_stand_alone(self):
        assert extract_attr(' include="*.py"', "i") is None

    def test_bool_attr(self):
        assert extract_bool_attr(' background="true"', "background") is True
        assert extract_bool_attr(' background="yes"', "background") is True
        assert extract_bool_attr(' background="false"', "background") is False
        assert extract_bool_attr("", "background") is False


# =========================================================================
# Basic parsing
# =========================================================================


class TestParseActions:
    def test_empty_text(self):
        assert parse_actions("") == []
        assert parse_actions("Just prose, nothing to do.") == []

    def test_self_closing_read(self):
        assert parse_actions('<read path="src/app.py"/>') == [ReadAction(path="src/app.py")]

    def test_read_offset_limit(self):
        [action] = parse_actions('<read path="a.py" offset="10" limit="5"/>')
        assert action.offset == 10
        assert action.limit == 5

    def test_source_order(self):
        text = (
            "First look around.\n"
            "<bash>ls -la</bash>\n"
            '<read path="README.md"/>\n'
            '<grep pattern="TODO"/>'
        )
        assert [a.type for a in parse_actions(text)] == ["bash", "read", "grep"]

    def test_bash_attributes(self):
        [action] = parse_actions('<bash timeout="5000" background="true">npm run dev</bash>')
        assert action == BashAction(command="npm run dev", timeout=5000, background=True)

    def test_write_keeps_trailing_newline(self):
        [action] = parse_actions('<write path="hello.txt">\nhello\nworld\n</write>')
        assert action == WriteAction(path="hello.txt", content="hello\nworld\n")

    def test_write_keeps_indentation(self):
        [action] = parse_actions('<write path="a.py">\n    indented()\n</write>')
        assert action.content == "    indented()\n"

    def test_create(self):
        [action] = parse_actions('<create path="new.txt">data</create>')
        assert action == CreateAction(path="new.txt", content="data")

    def test_edit(self):
        text = (
            '<edit path="a.py">\n'
            "<search>\nold = 1\n</search>\n"
            "<replace>\nnew = 2\n</replace>\n"
            "</edit>"
        )
        assert parse_actions(text) == [EditAction(path="a.py", search="old = 1", replace="new = 2")]

    def test_edit_replace_all(self):
        text = '<edit path="a.py" replaceAll="true"><search>x</search><replace>y</replace></edit>'
        [action] = parse_actions(text)
        assert action.replace_all is True

    def test_multi_edit(self):
        text = (
            '<multi-edit path="a.py">\n'
            "<edit><search>a</search><replace>b</replace></edit>\n"
            "<edit><search>c</search><replace>d</replace></edit>\n"
            "</multi-edit>"
        )
        [action] = parse_actions(text)
        assert action.type == "multi-edit"
        assert [(e.search, e.replace) for e in action.edits] == [("a", "b"), ("c", "d")]

    def test_grep_attribute_aliases(self):
        [action] = parse_actions(
            '<grep pattern="def main" include="*.py" C="2" i="true" output="count" limit="5"/>'
        )
        assert action == GrepAction(
            pattern="def main",
            glob="*.py",
            context=2,
            case_insensitive=True,
            output_mode="count",
            head_limit=5,
        )

    def test_git_whitelist(self):
        assert parse_actions('<git command="status"/>') == [GitAction(command="status")]
        assert parse_actions('<git command="rebase" args="-i HEAD~3"/>') == []

    def test_plan_body_is_content(self):
        [action] = parse_actions('<plan operation="add">Write the tests</plan>')
        assert action == PlanAction(operation="add", content="Write the tests")

    def test_plan_ask_body_is_question(self):
        [action] = parse_actions('<plan operation="ask">Which database?</plan>')
        assert action.question == "Which database?"
        assert action.content is None

    def test_unknown_tags_ignored(self):
        assert parse_actions('<div class="x">hi</div><foo bar="1"/>') == []


# =========================================================================
# Skipped regions
# =========================================================================


class TestSkippedRegions:
    def test_fenced_code(self):
        text = 'Example:\n```\n<read path="x.py"/>\n```\n<read path="y.py"/>'
        assert parse_actions(text) == [ReadAction(path="y.py")]

    def test_inline_code(self):
        assert parse_actions('Use `<read path="x.py"/>` to read.') == []

    def test_literal_block(self):
        text = '<literal><bash>rm -rf /</bash></literal><read path="ok.py"/>'
        assert parse_actions(text) == [ReadAction(path="ok.py")]

    def test_thinking_block(self):
        text = '<think>maybe <bash>ls</bash></think><read path="a"/>'
        assert parse_actions(text) == [ReadAction(path="a")]

    def test_inner_monologue_block(self):
        text = '<inner_monologue>maybe <bash>ls</bash></inner_monologue><read path="a"/>'
        assert parse_actions(text) == [ReadAction(path="a")]

    def test_tags_inside_write_content_not_executed(self):
        text = '<write path="doc.md">\nRun <bash>make</bash> then <read path="x"/>\n</write>'
        [action] = parse_actions(text)
        assert action.type == "write"
        assert "<bash>make</bash>" in action.content


# =========================================================================
# Robustness
# =========================================================================


class TestRobustness:
    def test_malformed_action_dropped_alone(self):
        assert parse_actions("<read/><bash>ls</bash>") == [BashAction(command="ls")]

    def test_unterminated_content_tag_in_prose(self):
        assert parse_actions("I will use <bash> to check it.") == []

    def test_aliases(self):
        assert parse_actions('<read_file path="a"/>') == [ReadAction(path="a")]
        assert parse_actions('<READ path="a"/>') == [ReadAction(path="a")]

    def test_normalize_aliases_keeps_unknown(self):
        assert normalize_tag_aliases("<b>x</b>") == "<b>x</b>"
        assert normalize_tag_aliases("<write_file path='a'>") == "<write path='a'>"

    def test_missing_final_bracket_fixed(self):
        [action] = parse_actions('<write path="a.txt">hi</write')
        assert action == WriteAction(path="a.txt", content="hi")

    def test_quoted_search_tag_fixed(self):
        text = '<edit path="a"><search">x</search><replace>y</replace></edit>'
        assert parse_actions(text) == [EditAction(path="a", search="x", replace="y")]


# =========================================================================
# Display cleaning
# =========================================================================


class TestCleaning:
    def test_removes_self_closing_and_blocks(self):
        text = 'Checking.\n<read path="a"/>\n<bash>ls</bash>\nDone.'
        clean = clean_action_tags(text)
        assert "<" not in clean
        assert clean.startswith("Checking.")
        assert clean.endswith("Done.")

    def test_removes_thinking(self):
        assert clean_action_tags("<think>secret</think>Answer") == "Answer"

    def test_removes_inner_monologue(self):
        assert clean_action_tags("Hi <inner_monologue>plan</inner_monologue>there") == "Hi there"

    def test_none(self):
        assert clean_action_tags(None) == ""

    def test_self_dialogue(self):
        text = "Let me check the file.\nOK\nFixed the login bug.\nI think that's it."
        assert clean_self_dialogue(text) == "Fixed the login bug."
