"""Tests for plan.py: the in-memory plan list behind <plan> actions."""

from tagwright.plan import MAX_ITEM_TEXT, MAX_ITEMS, PlanState


def _add(state, content, **kw):
    return state.process("add", content=content, **kw)


class TestAdd:
    def test_numbered(self):
        state = PlanState()
        assert _add(state, "Read the code")["message"] == "Added [1] Read the code"
        assert _add(state, "Fix the bug")["message"] == "Added [2] Fix the bug"
        assert [i["id"] for i in state.snapshot()] == ["1", "2"]

    def test_duplicate_is_idempotent(self):
        state = PlanState()
        _add(state, "Fix the bug")
        reply = _add(state, "fix the BUG")
        assert reply["success"]
        assert reply["message"].startswith("Already planned: [1]")
        assert len(state.items) == 1

    def test_empty_rejected(self):
        reply = _add(PlanState(), "   ")
        assert not reply["success"]
        assert reply["message"].startswith("error:")

    def test_too_long(self):
        assert not _add(PlanState(), "x" * (MAX_ITEM_TEXT + 1))["success"]

    def test_full(self):
        state = PlanState()
        for i in range(MAX_ITEMS):
            _add(state, f"step {i}")
        assert "plan is full" in _add(state, "one more")["message"]


class TestUpdate:
    def test_status(self):
        state = PlanState()
        _add(state, "Write tests")
        reply = state.process("update", id="1", status="in_progress")
        assert reply["message"] == "Updated [1] Write tests (in_progress)"
        assert state.render() == "[~] 1. Write tests"

    def test_bad_status(self):
        state = PlanState()
        _add(state, "Write tests")
        assert "invalid status" in state.process("update", id="1", status="later")["message"]

    def test_needs_a_change(self):
        state = PlanState()
        _add(state, "Write tests")
        assert not state.process("update", id="1")["success"]

    def test_unknown_id(self):
        assert "no plan item" in PlanState().process("update", id="7", status="completed")["message"]


class TestCompleteRemove:
    def test_complete_counts(self):
        state = PlanState()
        _add(state, "a")
        _add(state, "b")
        reply = state.process("complete", id="2")
        assert reply["message"] == "Completed [2] b (1/2 done)"
        assert state.render() == "[ ] 1. a\n[x] 2. b"

    def test_remove(self):
        state = PlanState()
        _add(state, "a")
        assert state.process("remove", id="1")["message"] == "Removed [1] a"
        assert state.items == []

    def test_missing_id(self):
        reply = PlanState().process("complete")
        assert not reply["success"]
        assert reply["message"] == "error: an item id is required"


class TestShowClearAsk:
    def test_show_empty(self):
        assert PlanState().process("show")["message"] == "Plan is empty"

    def test_show_with_description(self):
        state = PlanState()
        _add(state, "Deploy", description="after review")
        assert state.process("show")["message"] == "[ ] 1. Deploy: after review"

    def test_clear_restarts_numbering(self):
        state = PlanState()
        _add(state, "a")
        _add(state, "b")
        assert state.process("clear")["message"] == "Cleared 2 items"
        assert _add(state, "c")["message"] == "Added [1] c"

    def test_ask(self):
        reply = PlanState().process("ask", question="Postgres or SQLite?")
        assert reply["success"]
        assert reply["question"] == "Postgres or SQLite?"

    def test_ask_needs_question(self):
        assert not PlanState().process("ask")["success"]

    def test_unknown_operation(self):
        assert "invalid operation" in PlanState().process("archive")["message"]
