"""Error types and the JSON run report."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad types, unknown provider, etc.)."""


class AbortedError(AgentError):
    """Raised from a chat call whose model request was aborted."""


class AgentBusyError(AgentError):
    """Raised when a message is submitted while another is still being handled."""


class ReportCollector:
    """Accumulates events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.action_stats: dict[str, dict[str, int]] = {}
        self.corrections: dict[str, int] = {}
        self.compressions = 0
        self.fail_fast = False
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.max_turn_seen = 0

    def record_llm_call(self, turn: int, duration: float, token_est: int, finish_reason):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        self.events.append(
            {
                "turn": turn,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
            }
        )

    def record_action(
        self,
        turn: int,
        kind: str,
        label: str,
        succeeded: bool,
        result_length: int,
        error: str | None = None,
    ):
        stats = self.action_stats.setdefault(kind, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "action",
            "kind": kind,
            "label": label,
            "succeeded": succeeded,
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_correction(self, turn: int, kind: str):
        self.corrections[kind] = self.corrections.get(kind, 0) + 1
        self.events.append({"turn": turn, "type": "correction", "kind": kind})

    def record_compression(self, before: int, after: int):
        self.compressions += 1
        self.events.append(
            {"type": "context_compression", "messages_before": before, "messages_after": after}
        )

    def record_fail_fast(self, turn: int, summary: str):
        self.fail_fast = True
        self.events.append({"turn": turn, "type": "fail_fast", "summary": summary})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
        usage: dict | None = None,
    ) -> dict:
        succeeded = sum(s["succeeded"] for s in self.action_stats.values())
        failed = sum(s["failed"] for s in self.action_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "actions_total": succeeded + failed,
                "actions_succeeded": succeeded,
                "actions_failed": failed,
                "actions_by_kind": dict(self.action_stats),
                "corrections": dict(self.corrections),
                "context_compressions": self.compressions,
                "fail_fast": self.fail_fast,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                **({"usage": usage} if usage else {}),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
