"""Tests for REPL mode: slash commands and repl_loop."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from tagwright.agent import (
    _repl_clear,
    _repl_compress,
    _repl_personality,
    _run_question,
    repl_loop,
)
from tagwright.client import AgentClient
from tagwright.plan import PlanState
from tagwright.transport import ModelReply, TransportError


class ScriptedTransport:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return ModelReply(content=text, finish_reason="stop")


class BrokenTransport:
    async def complete(self, request):
        raise TransportError("model call failed: connection refused")


def _client(tmp_path, transport=None):
    return AgentClient(
        transport or ScriptedTransport(["Sure."]),
        system_prompt="S",
        stream=False,
        work_dir=str(tmp_path),
    )


def _args():
    return SimpleNamespace(verbose=False, plan=PlanState())


def _fill(client, n):
    for i in range(n):
        role = "user" if i % 2 == 0 else "assistant"
        client.messages.append({"role": role, "content": f"message {i} " + "x" * 40})


# ---------------------------------------------------------------------------
# Slash command helpers
# ---------------------------------------------------------------------------


class TestCommands:
    def test_clear(self, tmp_path, capsys):
        client = _client(tmp_path)
        _fill(client, 4)
        plan = PlanState()
        plan.process("add", content="step")
        _repl_clear(client, plan)
        assert len(client.messages) == 1
        assert client.messages[0]["role"] == "system"
        assert plan.items == []
        assert "4 messages removed" in capsys.readouterr().err

    def test_compress(self, tmp_path, capsys):
        client = _client(tmp_path)
        _fill(client, 6)
        _repl_compress(client)
        assert len(client.messages) == 4
        assert "compressed:" in capsys.readouterr().err

    def test_compress_nothing(self, tmp_path, capsys):
        _repl_compress(_client(tmp_path))
        assert "nothing to compress" in capsys.readouterr().err

    def test_personality_show(self, tmp_path, capsys):
        _repl_personality(_client(tmp_path), "")
        assert "personality: normal" in capsys.readouterr().err

    def test_personality_set(self, tmp_path):
        client = _client(tmp_path)
        _repl_personality(client, " unhinged ")
        assert client.personality == "unhinged"
        assert "UNHINGED" in client.messages[0]["content"]

    def test_personality_unknown(self, tmp_path, capsys):
        client = _client(tmp_path)
        _repl_personality(client, "grumpy")
        assert client.personality == "normal"
        assert "unknown personality" in capsys.readouterr().err

    def test_question_error_reported(self, tmp_path, capsys):
        client = _client(tmp_path, BrokenTransport())
        _run_question(client, "hello")
        assert "connection refused" in capsys.readouterr().err
        assert len(client.messages) == 1


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _patch_session(self, inputs):
        """Return a patch context that replaces PromptSession with a mock."""
        mock_session = MagicMock()
        mock_session.prompt.side_effect = [v() if isinstance(v, type) else v for v in inputs]
        return patch("prompt_toolkit.PromptSession", return_value=mock_session)

    def test_exit_command(self, tmp_path):
        client = _client(tmp_path)
        with self._patch_session(["/exit"]):
            repl_loop(client, _args())
        assert client.transport.requests == []
        assert len(client.messages) == 1

    def test_quit_and_blank_lines(self, tmp_path):
        client = _client(tmp_path)
        with self._patch_session(["", "   ", "/quit"]):
            repl_loop(client, _args())
        assert client.transport.requests == []

    def test_eof_exits(self, tmp_path):
        with self._patch_session([EOFError]):
            repl_loop(_client(tmp_path), _args())

    def test_ctrl_c_exits(self, tmp_path):
        with self._patch_session([KeyboardInterrupt]):
            repl_loop(_client(tmp_path), _args())

    def test_question_answered(self, tmp_path, capsys):
        client = _client(tmp_path)
        with self._patch_session(["what is this?", "/exit"]):
            repl_loop(client, _args())
        assert capsys.readouterr().out == "Sure.\n"
        assert client.messages[1] == {"role": "user", "content": "what is this?"}
        assert client.messages[2] == {"role": "assistant", "content": "Sure."}

    def test_first_question_runs_before_prompt(self, tmp_path):
        client = _client(tmp_path)
        with self._patch_session(["/exit"]):
            repl_loop(client, _args(), first_question="start here")
        assert len(client.transport.requests) == 1
        assert client.messages[1]["content"] == "start here"

    def test_history_survives_between_questions(self, tmp_path):
        client = _client(tmp_path, ScriptedTransport(["One.", "Two."]))
        with self._patch_session(["first", "second", "/exit"]):
            repl_loop(client, _args())
        assert [m["content"] for m in client.messages[1:]] == ["first", "One.", "second", "Two."]
        assert len(client.transport.requests[1].messages) == 4

    def test_clear_then_question(self, tmp_path):
        client = _client(tmp_path)
        with self._patch_session(["hello", "/clear", "again", "/exit"]):
            repl_loop(client, _args())
        assert [m["content"] for m in client.messages[1:]] == ["again", "Sure."]

    def test_plan_command(self, tmp_path, capsys):
        args = _args()
        args.plan.process("add", content="Refactor parser")
        with self._patch_session(["/plan", "/exit"]):
            repl_loop(_client(tmp_path), args)
        assert "[ ] 1. Refactor parser" in capsys.readouterr().err

    def test_unknown_slash_goes_to_model(self, tmp_path):
        client = _client(tmp_path)
        with self._patch_session(["/frobnicate now", "/exit"]):
            repl_loop(client, _args())
        assert client.messages[1]["content"] == "/frobnicate now"

    def test_history_file_created(self, tmp_path):
        with self._patch_session(["/exit"]):
            repl_loop(_client(tmp_path), _args())
        assert (tmp_path / ".tagwright").is_dir()

    def test_usage_command(self, tmp_path, capsys):
        with self._patch_session(["/usage", "/exit"]):
            repl_loop(_client(tmp_path), _args())
        assert "Tokens: 0 in / 0 out (0 total, 0 requests)" in capsys.readouterr().err

    def test_help(self, tmp_path, capsys):
        with self._patch_session(["/help", "/exit"]):
            repl_loop(_client(tmp_path), _args())
        assert "/personality" in capsys.readouterr().err
