"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing credentials, bad value types, etc.)."""


class ProviderError(AgentError):
    """Raised when the remote model call fails (network, auth, rate limit)."""


class ToolNotFoundError(AgentError):
    """Raised when the model asks for a tool that was never registered."""

    def __init__(self, name: str):
        super().__init__(f"tool not found: {name!r}")
        self.name = name


class MaxTurnsExceededError(AgentError):
    """Raised when a conversation hits the turn limit.

    ``state`` holds the conversation as it stood after the last completed
    turn, so the caller can still save it.
    """

    def __init__(self, max_turns: int, state):
        super().__init__(f"conversation exceeded {max_turns} turns")
        self.max_turns = max_turns
        self.state = state


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        stop_reason: str,
        *,
        usage: dict | None = None,
        cache_markers: int = 0,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        usage = usage or {}
        self.input_tokens += usage.get("input_tokens", 0) or 0
        self.output_tokens += usage.get("output_tokens", 0) or 0
        self.events.append(
            {
                "turn": turn,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "stop_reason": stop_reason,
                "usage": usage,
                "cache_markers": cache_markers,
            }
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        mode: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {"outcome": outcome, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "mode": mode,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise AgentError("report has not been finalized")
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self._last_report, f, indent=2)
                f.write("\n")
        except OSError as e:
            raise AgentError(f"cannot write report {path}: {e}") from e
