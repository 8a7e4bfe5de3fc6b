"""Tests for clai.engine: the multi-turn tool-using conversation loop."""

import copy

import pytest

from clai import fmt
from clai.cache import MAX_MESSAGE_MARKERS, count_markers
from clai.engine import (
    create_message,
    estimate_tokens,
    run_agent_loop,
    start_conversation,
)
from clai.providers import TurnResult
from clai.registry import ToolRegistry
from clai.report import MaxTurnsExceededError, ReportCollector, ToolNotFoundError
from clai.session import SessionState
from clai.tools import Tool, ToolError, ToolResult, create_tools


@pytest.fixture(autouse=True)
def _plain_console():
    fmt.init(no_color=True)


class _ScriptedProvider:
    """Replays canned turns and records every request it receives."""

    name = "ollama"
    supports_cache_control = False

    def __init__(self, turns):
        self.turns = list(turns)
        self.requests = []

    def send_turn(self, messages, system_prompts, tool_defs):
        self.requests.append(
            (copy.deepcopy(messages), copy.deepcopy(system_prompts), list(tool_defs))
        )
        if not self.turns:
            raise AssertionError("provider called more times than scripted")
        turn = self.turns.pop(0)
        return turn() if callable(turn) else turn


class _CachingProvider(_ScriptedProvider):
    name = "anthropic"
    supports_cache_control = True


def _text(text):
    return TurnResult([{"type": "text", "text": text}], stop_reason="end_turn")


def _call(*calls, text=None):
    content = [{"type": "text", "text": text}] if text else []
    for i, (name, args) in enumerate(calls):
        content.append({"type": "tool_use", "id": f"t{i}", "name": name, "input": args})
    return TurnResult(content, stop_reason="tool_use")


def _run(provider, registry, prompt="q", **kwargs):
    printed = []
    state = create_message(
        prompt,
        provider=provider,
        registry=registry,
        base_system_prompt="base",
        verbose=False,
        on_text=printed.append,
        **kwargs,
    )
    return state, printed


class _Echo(Tool):
    name = "echo"
    description = "Echo the argument"
    input_schema = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": ["value"],
    }

    def invoke(self, params):
        return ToolResult(content=params["value"])


class _Failing(Tool):
    name = "fail"
    description = "Always fails"
    input_schema = {"type": "object", "properties": {}}

    def invoke(self, params):
        raise ToolError("boom")


class _Big(Tool):
    name = "big"
    description = "Returns a large result"
    input_schema = {"type": "object", "properties": {}}

    def invoke(self, params):
        return ToolResult(content=" ".join(["abcd"] * 2500))


# ---------------------------------------------------------------------------
# Starting state
# ---------------------------------------------------------------------------


class TestStartConversation:
    def test_fresh(self):
        state = start_conversation("hello", "base")
        assert state.system_prompts == [{"type": "text", "text": "base"}]
        assert state.messages == [{"role": "user", "content": "hello"}]

    def test_context_appended_in_order(self):
        state = start_conversation("hello", "base", ["ctx one", "ctx two"])
        assert [s["text"] for s in state.system_prompts] == ["base", "ctx one", "ctx two"]

    def test_resume_keeps_session_prompts(self):
        session = SessionState(
            [
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": [{"type": "text", "text": "ok"}]},
            ],
            [{"type": "text", "text": "original base"}],
        )
        state = start_conversation("second", "new base", session=session)
        assert state.system_prompts[0]["text"] == "original base"
        assert len(state.messages) == 3
        assert state.messages[-1] == {"role": "user", "content": "second"}
        assert len(session.messages) == 2


# ---------------------------------------------------------------------------
# The loop
# ---------------------------------------------------------------------------


class TestAgentLoop:
    def test_no_tools_single_turn(self):
        provider = _ScriptedProvider([_text("Hi there")])
        state, printed = _run(provider, ToolRegistry())
        assert printed == ["Hi there"]
        assert len(state.messages) == 2
        assert state.messages[1]["role"] == "assistant"

    def test_list_dir_round(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "index.ts").write_text("")
        (tmp_path / "src" / "model.ts").write_text("")
        provider = _ScriptedProvider(
            [
                _call(("list_dir", {"relative_workspace_path": "src"}), text="Let me look."),
                _text("src contains index.ts and model.ts"),
            ]
        )
        registry = ToolRegistry(create_tools(str(tmp_path), "ask"))
        state, printed = _run(provider, registry, "list files in src")

        assert [m["role"] for m in state.messages] == ["user", "assistant", "user", "assistant"]
        result = state.messages[2]["content"][0]
        assert result["type"] == "tool_result"
        assert result["tool_use_id"] == "t0"
        assert "is_error" not in result
        assert result["content"].split("\n") == ["index.ts", "model.ts"]
        assert printed == ["Let me look.", "src contains index.ts and model.ts"]

    def test_tools_declared_to_provider(self, tmp_path):
        provider = _ScriptedProvider([_text("done")])
        _run(provider, ToolRegistry(create_tools(str(tmp_path), "ask")))
        names = [d.name for d in provider.requests[0][2]]
        assert names == ["read_file", "list_dir", "grep_search"]

    def test_tool_failure_reported_to_model(self, tmp_path):
        provider = _ScriptedProvider(
            [
                _call(("read_file", {"relative_workspace_path": "../../etc/passwd"})),
                _text("I cannot read that file."),
            ]
        )
        registry = ToolRegistry(create_tools(str(tmp_path), "ask"))
        state, printed = _run(provider, registry)
        result = state.messages[2]["content"][0]
        assert result["is_error"] is True
        assert "Access denied" in result["content"]
        assert printed == ["I cannot read that file."]

    def test_bad_params_reported_to_model(self):
        provider = _ScriptedProvider([_call(("echo", {})), _text("sorry")])
        state, _ = _run(provider, ToolRegistry([_Echo()]))
        result = state.messages[2]["content"][0]
        assert result["is_error"] is True
        assert "missing 'value'" in result["content"]

    def test_results_paired_in_order(self):
        provider = _ScriptedProvider(
            [
                _call(("echo", {"value": "a"}), ("fail", {}), ("echo", {"value": "c"})),
                _text("done"),
            ]
        )
        state, _ = _run(provider, ToolRegistry([_Echo(), _Failing()]))
        results = state.messages[2]["content"]
        assert [r["tool_use_id"] for r in results] == ["t0", "t1", "t2"]
        assert [r["content"] for r in results] == ["a", "boom", "c"]
        assert [r.get("is_error", False) for r in results] == [False, True, False]

    def test_tools_run_one_after_another(self):
        log = []

        class _First(Tool):
            name = "first"
            description = "Logs its start and end"
            input_schema = {"type": "object", "properties": {}}

            def invoke(self, params):
                log.append("a-start")
                log.append("a-end")
                return ToolResult(content="a")

        class _Second(Tool):
            name = "second"
            description = "Requires first to have finished"
            input_schema = {"type": "object", "properties": {}}

            def invoke(self, params):
                if log[-1:] != ["a-end"]:
                    raise ToolError(f"started before first finished: {log}")
                log.append("b-start")
                log.append("b-end")
                return ToolResult(content="b")

        provider = _ScriptedProvider([_call(("first", {}), ("second", {})), _text("done")])
        state, _ = _run(provider, ToolRegistry([_First(), _Second()]))
        assert log == ["a-start", "a-end", "b-start", "b-end"]
        results = state.messages[2]["content"]
        assert [r["content"] for r in results] == ["a", "b"]
        assert not any(r.get("is_error") for r in results)

    def test_empty_reply_stored_with_placeholder(self):
        provider = _ScriptedProvider([TurnResult([], stop_reason="end_turn")])
        state, printed = _run(provider, ToolRegistry())
        assert printed == []
        assert state.messages[-1] == {
            "role": "assistant",
            "content": [{"type": "text", "text": "(empty response)"}],
        }

    def test_read_file_adds_system_segment(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n")
        provider = _ScriptedProvider(
            [_call(("read_file", {"relative_workspace_path": "a.py"})), _text("done")]
        )
        state, _ = _run(provider, ToolRegistry(create_tools(str(tmp_path), "ask")))
        assert len(state.system_prompts) == 2
        assert state.system_prompts[1]["text"].endswith("x = 1\n")
        # The second request already carries the file contents
        assert len(provider.requests[1][1]) == 2

    def test_unknown_tool_is_fatal(self):
        provider = _ScriptedProvider([_call(("nope", {}))])
        with pytest.raises(ToolNotFoundError):
            _run(provider, ToolRegistry([_Echo()]))

    def test_max_turns(self):
        provider = _ScriptedProvider([_call(("echo", {"value": "x"}))] * 3)
        with pytest.raises(MaxTurnsExceededError) as exc_info:
            _run(provider, ToolRegistry([_Echo()]), max_turns=2)
        state = exc_info.value.state
        assert len(provider.requests) == 2
        assert [m["role"] for m in state.messages] == [
            "user",
            "assistant",
            "user",
            "assistant",
            "user",
        ]
        assert state.messages[-1]["content"][0]["type"] == "tool_result"

    def test_inputs_not_mutated(self):
        messages = [{"role": "user", "content": "q"}]
        system = [{"type": "text", "text": "base"}]
        before = (copy.deepcopy(messages), copy.deepcopy(system))
        provider = _ScriptedProvider([_call(("echo", {"value": "x"})), _text("done")])
        run_agent_loop(
            messages,
            system,
            provider=provider,
            registry=ToolRegistry([_Echo()]),
            verbose=False,
            on_text=lambda t: None,
        )
        assert (messages, system) == before

    def test_verbose_output_goes_to_stderr(self, capsys):
        provider = _ScriptedProvider([_call(("echo", {"value": "x"})), _text("done")])
        create_message(
            "q",
            provider=provider,
            registry=ToolRegistry([_Echo()]),
            base_system_prompt="base",
            verbose=True,
        )
        captured = capsys.readouterr()
        assert captured.out == "done\n"
        assert "Turn 1/100" in captured.err


# ---------------------------------------------------------------------------
# Cache markers
# ---------------------------------------------------------------------------


class TestCacheMarkers:
    def test_markers_bounded_and_history_clean(self):
        provider = _CachingProvider([_call(("big", {}))] * 7 + [_text("done")])
        state, _ = _run(provider, ToolRegistry([_Big()]))
        for messages, system, _ in provider.requests:
            assert count_markers(messages) <= MAX_MESSAGE_MARKERS
            assert "cache_control" in system[-1]
        assert any(count_markers(m) for m, _, _ in provider.requests)
        assert count_markers(state.messages) == 0
        assert count_markers(state.system_prompts) == 0

    def test_no_markers_without_support(self):
        provider = _ScriptedProvider([_call(("big", {}))] * 3 + [_text("done")])
        _run(provider, ToolRegistry([_Big()]))
        for messages, system, _ in provider.requests:
            assert count_markers(messages) == 0
            assert count_markers(system) == 0


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class TestReporting:
    def test_events_recorded(self):
        report = ReportCollector()
        provider = _ScriptedProvider(
            [_call(("echo", {"value": "x"}), ("fail", {})), _text("done")]
        )
        _run(provider, ToolRegistry([_Echo(), _Failing()]), report=report)
        assert report.llm_calls == 2
        assert report.tool_stats == {
            "echo": {"succeeded": 1, "failed": 0},
            "fail": {"succeeded": 0, "failed": 1},
        }
        failed = [e for e in report.events if e.get("name") == "fail"][0]
        assert failed["error"] == "boom"


class TestEstimate:
    def test_grows_with_content(self):
        small = estimate_tokens([{"role": "user", "content": "hi"}], [])
        large = estimate_tokens([{"role": "user", "content": "hi " * 200}], [])
        assert 0 < small < large
