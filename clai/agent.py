"""Command-line entry point: clai ask / clai edit."""

import argparse
import os
import shlex
import subprocess
import sys
import tempfile
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    MODES,
    PROVIDERS,
    SYSTEM_PROMPTS,
    UNSET,
    apply_config_to_args,
    build_settings,
    generate_config,
    load_config,
    load_mcp_json,
    merge_mcp_configs,
)
from .engine import create_message
from .mcp_client import McpManager
from .providers import build_provider
from .registry import ToolRegistry
from .report import AgentError, ConfigError, MaxTurnsExceededError, ReportCollector
from .session import load_session, save_session
from .tools import CheckCommands, create_tools

_MODE_HELP = {
    "ask": "Ask a question about the codebase (read-only tools).",
    "edit": "Request changes to the codebase (adds file-writing and build tools).",
}


def _common_options() -> argparse.ArgumentParser:
    """Options shared by ask and edit. Config-backed options default to UNSET."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "question",
        nargs="?",
        default=None,
        help="The prompt. If omitted, read from stdin or an editor.",
    )
    common.add_argument(
        "-c",
        "--context",
        action="append",
        default=[],
        metavar="PATH",
        help="File to include in the system prompt (repeatable).",
    )
    common.add_argument(
        "-s",
        "--session",
        default=None,
        metavar="PATH",
        help="Session file to resume from and save to.",
    )
    common.add_argument(
        "--base-dir",
        default=".",
        help="Workspace root the tools operate in (default: current directory).",
    )
    common.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=UNSET,
        help="LLM backend (default: anthropic).",
    )
    common.add_argument("--model", default=UNSET, help="Model identifier.")
    common.add_argument(
        "--api-key",
        default=UNSET,
        help="API key for the provider (overrides env var).",
    )
    common.add_argument(
        "--base-url",
        default=UNSET,
        help="Server base URL (default for ollama: http://localhost:11434).",
    )
    common.add_argument(
        "--max-turns",
        type=int,
        default=UNSET,
        help="Maximum model turns before giving up (default: 100).",
    )
    common.add_argument(
        "--max-output-tokens",
        type=int,
        default=UNSET,
        help="Maximum output tokens per turn (default: 8192).",
    )
    common.add_argument(
        "--request-timeout",
        type=float,
        default=UNSET,
        help="Seconds to wait for one model response (default: 600).",
    )
    common.add_argument(
        "--token-efficient",
        action="store_true",
        default=UNSET,
        help="Use Anthropic's token-efficient tool use.",
    )
    common.add_argument(
        "--system-prompt",
        default=UNSET,
        help="Replace the built-in system prompt for this mode.",
    )
    common.add_argument(
        "--no-mcp",
        action="store_true",
        default=UNSET,
        help="Do not connect to configured MCP servers.",
    )
    common.add_argument(
        "--mcp-config",
        default=UNSET,
        metavar="FILE",
        help="Load MCP servers from this .mcp.json file.",
    )
    common.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE.",
    )
    common.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=UNSET,
        help="Only print the model's answer.",
    )
    color = common.add_mutually_exclusive_group()
    color.add_argument("--color", action="store_true", default=UNSET)
    color.add_argument("--no-color", action="store_true", default=UNSET)
    return common


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="clai",
        description="Command line AI assistant for your codebase.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    sub = parser.add_subparsers(dest="command")
    common = _common_options()
    for mode in MODES:
        sub.add_parser(mode, parents=[common], help=_MODE_HELP[mode])
    init = sub.add_parser("init-config", help="Print a commented config template.")
    init.add_argument(
        "--project",
        action="store_true",
        help="Template for <project>/clai.toml instead of the global config.",
    )
    return parser


# --- Input ---


def _prompt_from_editor() -> str:
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    fd, path = tempfile.mkstemp(prefix="clai-prompt-", suffix=".md")
    os.close(fd)
    try:
        try:
            proc = subprocess.run([*shlex.split(editor), path])
        except OSError as e:
            raise ConfigError(f"failed to get prompt from editor: {e}") from e
        if proc.returncode != 0:
            raise ConfigError(
                f"failed to get prompt from editor: {editor} exited with {proc.returncode}"
            )
        return Path(path).read_text(encoding="utf-8").strip()
    finally:
        Path(path).unlink(missing_ok=True)


def read_prompt(question: str | None, stdin=None) -> str:
    """Piped stdin first, then the argument, then an editor."""
    stdin = stdin if stdin is not None else sys.stdin
    prompt = ""
    if stdin is not None and not stdin.isatty():
        prompt = stdin.read().strip()
    if not prompt and question:
        prompt = question.strip()
    if not prompt:
        prompt = _prompt_from_editor()
    if not prompt:
        raise ConfigError("no prompt provided via stdin, argument, or editor")
    return prompt


def read_context(paths: list[str]) -> list[str]:
    """Each context file becomes ``"<absolute path>:\\n\\n<content>"``."""
    context = []
    for p in paths:
        resolved = Path(p).resolve()
        try:
            content = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"cannot read context file {p}: {e}") from e
        context.append(f"{resolved}:\n\n{content}")
    return context


def _mcp_json_servers(args, base_dir: Path) -> dict | None:
    if args.mcp_config:
        return load_mcp_json(Path(args.mcp_config))
    default = base_dir / ".mcp.json"
    if default.is_file():
        return load_mcp_json(default)
    return None


# --- Main ---


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("clai")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command is None:
        parser.print_help(sys.stderr)
        sys.exit(2)

    if args.command == "init-config":
        print(generate_config(project=args.project))
        sys.exit(0)

    report = ReportCollector() if args.report else None
    run = _Run(args, report)
    try:
        exit_code = run.execute()
    except AgentError as e:
        fmt.error(str(e))
        run.write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted")
        run.write_report("interrupted", exit_code=130)
        sys.exit(130)
    sys.exit(exit_code)


class _Run:
    """One ask/edit invocation: settings, tools, MCP connections, the loop."""

    def __init__(self, args, report: ReportCollector | None):
        self.args = args
        self.report = report
        self.settings = None
        self.prompt = ""

    def execute(self) -> int:
        args = self.args
        mode = args.command
        base_dir = Path(args.base_dir).resolve()
        if not base_dir.is_dir():
            raise ConfigError(f"base directory does not exist: {args.base_dir}")

        config = load_config(base_dir)
        apply_config_to_args(args, config)
        fmt.init(color=args.color, no_color=args.no_color)

        mcp_servers = merge_mcp_configs(
            config.get("mcp_servers"), _mcp_json_servers(args, base_dir)
        )
        settings = self.settings = build_settings(args, mcp_servers)
        verbose = settings.verbose

        self.prompt = read_prompt(args.question)
        context = read_context(args.context)

        session = None
        if args.session:
            session = load_session(args.session)
            if session is not None and verbose:
                fmt.info(f"Session loaded from {Path(args.session).resolve()}")

        provider = build_provider(settings)
        checks = CheckCommands(
            format=settings.format_command,
            lint=settings.lint_command,
            typecheck=settings.typecheck_command,
            timeout=settings.command_timeout,
        )
        registry = ToolRegistry(create_tools(str(base_dir), mode, checks))

        with McpManager(settings.mcp_servers, mode=mode, verbose=verbose) as mcp:
            registry.extend(mcp.tools())
            if verbose:
                fmt.model_info(
                    f"{mode} mode, provider={settings.provider}, model={settings.model}, "
                    f"tools: {', '.join(registry.names())}"
                )
            try:
                state = create_message(
                    self.prompt,
                    provider=provider,
                    registry=registry,
                    base_system_prompt=settings.system_prompt or SYSTEM_PROMPTS[mode],
                    context=context,
                    session=session,
                    max_turns=settings.max_turns,
                    verbose=verbose,
                    report=self.report,
                )
            except MaxTurnsExceededError as e:
                self._save(e.state)
                fmt.warning(str(e))
                if verbose:
                    fmt.completion(e.max_turns, "max_turns")
                self.write_report("exhausted", exit_code=2, error_message=str(e))
                return 2

        self._save(state)
        self.write_report("success", exit_code=0)
        return 0

    def _save(self, state) -> None:
        if not self.args.session:
            return
        path = save_session(self.args.session, state)
        if self.settings is None or self.settings.verbose:
            fmt.info(f"Session saved to {path}")

    def write_report(self, outcome: str, exit_code: int, error_message: str | None = None):
        if self.report is None:
            return
        settings = self.settings
        provider = getattr(self.args, "provider", None)
        model = getattr(self.args, "model", None)
        self.report.finalize(
            task=self.prompt or (self.args.question or ""),
            mode=self.args.command,
            model=settings.model if settings else (model if isinstance(model, str) else "unknown"),
            provider=settings.provider if settings else (provider if isinstance(provider, str) else "unknown"),
            settings=settings.report_settings() if settings else {},
            outcome=outcome,
            exit_code=exit_code,
            turns=self.report.max_turn_seen,
            error_message=error_message,
        )
        try:
            self.report.write(self.args.report)
        except AgentError as e:
            fmt.error(str(e))
            return
        if settings is None or settings.verbose:
            fmt.info(f"Report written to {self.args.report}")


if __name__ == "__main__":
    main()
