"""Tests for the clai command line: input handling and whole runs."""

import io
import json
import sys
import types
from unittest.mock import patch

import pytest

from clai import agent
from clai.config import UNSET
from clai.report import ConfigError


class _Tty(io.StringIO):
    def isatty(self):
        return True


def _response(content=None, tool_calls=None, finish_reason="stop"):
    message = types.SimpleNamespace(content=content, tool_calls=tool_calls, role="assistant")
    choice = types.SimpleNamespace(message=message, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice], usage=None)


def _list_dir_call(path="."):
    return types.SimpleNamespace(
        id="call_1",
        function=types.SimpleNamespace(
            name="list_dir", arguments=json.dumps({"relative_workspace_path": path})
        ),
    )


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """An isolated workspace: no global config, an API key, empty stdin."""
    ws = tmp_path / "ws"
    ws.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    return ws


def _main(argv):
    with pytest.raises(SystemExit) as exc_info:
        agent.main(argv)
    return exc_info.value.code


# ---------------------------------------------------------------------------
# Prompt and context input
# ---------------------------------------------------------------------------


class TestReadPrompt:
    def test_piped_stdin_wins(self):
        assert agent.read_prompt("from arg", io.StringIO("from stdin\n")) == "from stdin"

    def test_argument_when_stdin_is_tty(self):
        assert agent.read_prompt("  from arg ", _Tty()) == "from arg"

    def test_argument_when_stdin_empty(self):
        assert agent.read_prompt("from arg", io.StringIO("")) == "from arg"

    @pytest.mark.skipif(sys.platform == "win32", reason="uses sh")
    def test_editor_fallback(self, monkeypatch):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", "sh -c 'echo written in editor > \"$0\"'")
        assert agent.read_prompt(None, _Tty()) == "written in editor"

    @pytest.mark.skipif(sys.platform == "win32", reason="uses true")
    def test_empty_editor_is_error(self, monkeypatch):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", "true")
        with pytest.raises(ConfigError, match="no prompt provided"):
            agent.read_prompt(None, _Tty())

    @pytest.mark.skipif(sys.platform == "win32", reason="uses false")
    def test_failing_editor_is_error(self, monkeypatch):
        monkeypatch.delenv("VISUAL", raising=False)
        monkeypatch.setenv("EDITOR", "false")
        with pytest.raises(ConfigError, match="failed to get prompt from editor"):
            agent.read_prompt(None, _Tty())


class TestReadContext:
    def test_format(self, tmp_path):
        f = tmp_path / "notes.md"
        f.write_text("remember this")
        assert agent.read_context([str(f)]) == [f"{f.resolve()}:\n\nremember this"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read context file"):
            agent.read_context([str(tmp_path / "absent.md")])


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_modes_share_options(self):
        parser = agent.build_parser()
        for mode in ("ask", "edit"):
            args = parser.parse_args([mode, "q", "-c", "a", "-c", "b", "-s", "s.json"])
            assert args.command == mode
            assert args.question == "q"
            assert args.context == ["a", "b"]
            assert args.session == "s.json"

    def test_config_backed_options_default_to_unset(self):
        args = agent.build_parser().parse_args(["ask", "q"])
        assert args.provider is UNSET
        assert args.max_turns is UNSET
        assert args.no_mcp is UNSET

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["ask", "q", "--provider", "openai"])

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["ask", "q", "--color", "--no-color"])

    def test_no_command_prints_help(self, capsys):
        assert _main([]) == 2
        assert "usage: clai" in capsys.readouterr().err

    def test_init_config(self, capsys):
        assert _main(["init-config", "--project"]) == 0
        assert "<project>/clai.toml" in capsys.readouterr().out

    def test_version(self, capsys):
        assert _main(["--version"]) == 0
        assert capsys.readouterr().out.strip()


# ---------------------------------------------------------------------------
# Whole runs
# ---------------------------------------------------------------------------


class TestRuns:
    def test_answer_on_stdout(self, workspace, capsys):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("The answer")
            code = _main(["ask", "what is this?", "--base-dir", str(workspace), "-q"])
        assert code == 0
        assert capsys.readouterr().out == "The answer\n"
        kwargs = mock_comp.call_args.kwargs
        assert kwargs["model"] == "anthropic/claude-3-5-sonnet-latest"
        assert [t["function"]["name"] for t in kwargs["tools"]] == [
            "read_file",
            "list_dir",
            "grep_search",
        ]

    def test_edit_mode_tools(self, workspace):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            _main(["edit", "change it", "--base-dir", str(workspace), "-q"])
        names = [t["function"]["name"] for t in mock_comp.call_args.kwargs["tools"]]
        assert "edit_files" in names
        assert "build" in names

    def test_tool_round_trip(self, workspace, capsys):
        (workspace / "src").mkdir()
        (workspace / "src" / "index.ts").write_text("")
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = [
                _response(None, [_list_dir_call("src")], "tool_calls"),
                _response("src holds index.ts"),
            ]
            code = _main(["ask", "list src", "--base-dir", str(workspace), "-q"])
        assert code == 0
        second = mock_comp.call_args_list[1].kwargs["messages"]
        assert second[-1]["role"] == "tool"
        assert second[-1]["content"] == "index.ts"
        assert capsys.readouterr().out == "src holds index.ts\n"

    def test_context_in_system_prompt(self, workspace):
        ctx = workspace / "ctx.md"
        ctx.write_text("project notes")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            _main(["ask", "q", "-c", str(ctx), "--base-dir", str(workspace), "-q"])
        system = mock_comp.call_args.kwargs["messages"][0]
        assert system["role"] == "system"
        assert system["content"][-1]["text"].endswith("project notes")
        assert system["content"][-1]["cache_control"] == {"type": "ephemeral"}

    def test_session_saved_and_resumed(self, workspace):
        session = workspace / "session.json"
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("first answer")
            assert _main(["ask", "first", "-s", str(session), "--base-dir", str(workspace), "-q"]) == 0
        data = json.loads(session.read_text())
        assert [m["role"] for m in data["state"]["messages"]] == ["user", "assistant"]

        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("second answer")
            assert _main(["ask", "second", "-s", str(session), "--base-dir", str(workspace), "-q"]) == 0
            sent = mock_comp.call_args.kwargs["messages"]
        assert [m["role"] for m in sent] == ["system", "user", "assistant", "user"]
        data = json.loads(session.read_text())
        assert len(data["state"]["messages"]) == 4
        assert "cache_control" not in session.read_text()

    def test_max_turns_exit_code(self, workspace, capsys):
        session = workspace / "s.json"
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response(None, [_list_dir_call()], "tool_calls")
            code = _main(
                ["ask", "loop", "--max-turns", "2", "-s", str(session), "--base-dir", str(workspace), "-q"]
            )
        assert code == 2
        assert mock_comp.call_count == 2
        assert "exceeded 2 turns" in capsys.readouterr().err
        messages = json.loads(session.read_text())["state"]["messages"]
        assert len(messages) == 5

    def test_missing_api_key(self, workspace, monkeypatch, capsys):
        monkeypatch.delenv("ANTHROPIC_API_KEY")
        assert _main(["ask", "q", "--base-dir", str(workspace)]) == 1
        assert "no API key" in capsys.readouterr().err

    def test_provider_failure(self, workspace, capsys):
        with patch("litellm.completion", side_effect=RuntimeError("connection refused")):
            assert _main(["ask", "q", "--base-dir", str(workspace), "-q"]) == 1
        assert "LLM call failed: connection refused" in capsys.readouterr().err

    def test_mcp_closed_when_provider_fails(self, workspace, monkeypatch):
        (workspace / "clai.toml").write_text('[mcp_servers.fs]\ncommand = "fs-server"\n')
        managers = []

        class _FakeMcp:
            def __init__(self, servers, mode="ask", verbose=False):
                self.servers = servers
                self.closed = False
                managers.append(self)

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                self.close()

            def tools(self):
                return []

            def close(self):
                self.closed = True

        monkeypatch.setattr(agent, "McpManager", _FakeMcp)
        with patch("litellm.completion", side_effect=RuntimeError("connection refused")):
            assert _main(["ask", "q", "--base-dir", str(workspace), "-q"]) == 1
        assert len(managers) == 1
        assert list(managers[0].servers) == ["fs"]
        assert managers[0].closed

    def test_unknown_tool_is_fatal(self, workspace, capsys):
        call = types.SimpleNamespace(
            id="c", function=types.SimpleNamespace(name="launch_rockets", arguments="{}")
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response(None, [call], "tool_calls")
            assert _main(["ask", "q", "--base-dir", str(workspace), "-q"]) == 1
        assert "tool not found: 'launch_rockets'" in capsys.readouterr().err

    def test_project_config_applies(self, workspace):
        (workspace / "clai.toml").write_text('model = "claude-custom"\nmax_output_tokens = 1000\n')
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            _main(["ask", "q", "--base-dir", str(workspace), "-q"])
        kwargs = mock_comp.call_args.kwargs
        assert kwargs["model"] == "anthropic/claude-custom"
        assert kwargs["max_tokens"] == 1000


class TestReportIntegration:
    def test_report_written_on_success(self, workspace):
        report = workspace / "report.json"
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("done")
            _main(["ask", "task", "--report", str(report), "--base-dir", str(workspace), "-q"])
        data = json.loads(report.read_text())
        assert data["result"] == {"outcome": "success", "exit_code": 0}
        assert data["task"] == "task"
        assert data["mode"] == "ask"
        assert data["stats"]["llm_calls"] == 1

    def test_report_written_on_error(self, workspace, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY")
        report = workspace / "report.json"
        _main(["ask", "task", "--report", str(report), "--base-dir", str(workspace)])
        data = json.loads(report.read_text())
        assert data["result"]["outcome"] == "error"
        assert data["result"]["exit_code"] == 1
        assert "no API key" in data["result"]["error_message"]
