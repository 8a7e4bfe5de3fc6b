"""Local tools the model can call, and the contract every tool follows."""

import json
import os
import re
import subprocess
import sys
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_FILE_BYTES = 256 * 1024  # largest file read_file will inject
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_GREP_MATCHES = 100
MAX_GREP_MATCHES_PER_FILE = 50
MAX_COMMAND_OUTPUT = 1 * 1024 * 1024  # 1MB
MAX_INLINE_OUTPUT = 10 * 1024  # 10KB

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "object": dict,
    "array": list,
}


class ToolError(Exception):
    """A tool invocation failed; the message is fed back to the model."""


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict

    def to_openai(self) -> dict:
        """Function-calling declaration in the OpenAI format litellm accepts."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolResult:
    content: str
    system: str | None = None


# --- Tool contract ---


class Tool:
    """Base class for anything the model can call.

    Subclasses set ``name``, ``description`` and ``input_schema`` and implement
    ``invoke``. ``backends`` restricts which providers see the tool; ``None``
    means all of them.
    """

    name: str = ""
    description: str = ""
    input_schema: dict = {"type": "object", "properties": {}, "required": []}
    backends: frozenset[str] | None = None

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(self.name, self.description, self.input_schema)

    def supports(self, backend: str) -> bool:
        return self.backends is None or backend in self.backends

    def check_params(self, params: dict) -> None:
        """Raise ToolError when *params* does not match ``input_schema``."""
        if not isinstance(params, dict):
            raise ToolError(
                f"bad {self.name} input: expected an object, got {type(params).__name__}"
            )
        if "_raw_arguments" in params:
            raise ToolError(
                f"bad {self.name} input: arguments are not valid JSON: "
                f"{params['_raw_arguments']!r}"
            )
        schema = self.input_schema
        for key in schema.get("required", []):
            if key not in params:
                raise ToolError(f"bad {self.name} input: missing {key!r}")
        for key, prop in schema.get("properties", {}).items():
            if key in params:
                _check_value(self.name, key, params[key], prop)

    def invoke(self, params: dict) -> ToolResult:
        raise NotImplementedError

    def describe_invocation(self, params: dict) -> str:
        return f"({self.name} {json.dumps(params, ensure_ascii=False)})"


def _check_value(tool: str, key: str, value, prop: dict) -> None:
    expected = _JSON_TYPES.get(prop.get("type", ""))
    if expected is None:
        return
    if isinstance(value, bool) and expected is not bool:
        ok = False
    else:
        ok = isinstance(value, expected)
    if not ok:
        raise ToolError(
            f"bad {tool} input: {key!r} must be {prop['type']}, "
            f"got {type(value).__name__}"
        )
    if expected is str and prop.get("minLength") and len(value) < prop["minLength"]:
        raise ToolError(f"bad {tool} input: {key!r} must not be empty")
    extra = prop.get("additionalProperties")
    if expected is dict and isinstance(extra, dict):
        for k, v in value.items():
            _check_value(tool, f"{key}.{k}", v, extra)


# --- Path containment ---


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a workspace-relative path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path.

    Raises:
        ToolError: If the resolved path escapes the workspace root.
    """
    base = Path(base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if not resolved.is_relative_to(base):
        raise ToolError(
            f"Access denied: The path {file_path} resolves outside the workspace root."
        )
    return resolved


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


# --- Subprocess helpers ---

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Capture combined output from a running subprocess with timeout enforcement.

    A KeyboardInterrupt while waiting kills the process tree before propagating.
    """
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_COMMAND_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_COMMAND_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
    except KeyboardInterrupt:
        _kill_process_tree(proc)
        raise

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")
    parts: list[str] = []

    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    if raw_output:
        if len(raw_output.encode("utf-8")) > MAX_INLINE_OUTPUT:
            raw_output = raw_output.encode("utf-8")[-MAX_INLINE_OUTPUT:].decode(
                "utf-8", errors="replace"
            )
            parts.append("[output truncated, showing the last 10KB]")
        parts.append(raw_output)

    if output_truncated:
        parts.append("[output truncated at 1MB]")

    return "\n".join(parts) if parts else "(no output)"


def run_shell_command(command: str, base_dir: str, timeout: int) -> str:
    """Execute a configured shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start {command!r}: {e}"

    return _capture_process(proc, max(1, timeout))


@dataclass(frozen=True)
class CheckCommands:
    """Format, lint and type-check commands run after edits."""

    format: str | None = None
    lint: str | None = None
    typecheck: str | None = None
    timeout: int = 120

    def run_format(self, base_dir: str) -> None:
        # Formatter output is discarded; a broken formatter must not block edits.
        if self.format:
            run_shell_command(self.format, base_dir, self.timeout)

    def run_checks(self, base_dir: str) -> str:
        lint = (
            run_shell_command(self.lint, base_dir, self.timeout)
            if self.lint
            else "(no lint_command configured)"
        )
        typecheck = (
            run_shell_command(self.typecheck, base_dir, self.timeout)
            if self.typecheck
            else "(no typecheck_command configured)"
        )
        return f"Lint errors:\n{lint}\n\nCompile errors:\n{typecheck}\n\n"


# --- Read-only tools ---

_PATH_PROPERTY = {
    "type": "string",
    "description": "The path, relative to the workspace root",
    "minLength": 1,
}


class ReadFileTool(Tool):
    name = "read_file"
    description = (
        "Read the contents of a file at the specified path. The file contents "
        "are added to the system context."
    )
    input_schema = {
        "type": "object",
        "properties": {"relative_workspace_path": _PATH_PROPERTY},
        "required": ["relative_workspace_path"],
    }

    def __init__(self, workspace_root: str):
        self.workspace_root = workspace_root

    def invoke(self, params: dict) -> ToolResult:
        rel = params["relative_workspace_path"]
        resolved = safe_resolve(rel, self.workspace_root)
        if not resolved.is_file():
            raise ToolError(f"Failed to read file at {rel}: not a file")
        try:
            if _is_binary(resolved):
                raise ToolError(f"Failed to read file at {rel}: binary file")
            if resolved.stat().st_size > MAX_FILE_BYTES:
                raise ToolError(
                    f"Failed to read file at {rel}: larger than {MAX_FILE_BYTES // 1024}KB"
                )
            text = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ToolError(f"Failed to read file at {rel}: {e}") from e
        return ToolResult(
            content=f"File {rel} read successfully and included in the context.",
            system=f"{resolved}:\n\n{text}",
        )

    def describe_invocation(self, params: dict) -> str:
        return f"(reading file at {params.get('relative_workspace_path')})"


class ListDirTool(Tool):
    name = "list_dir"
    description = (
        "List the contents of a directory. Use this, recursively if needed, "
        "to discover files by looking at filenames."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "relative_workspace_path": {
                "type": "string",
                "description": "Path to list contents of, relative to the workspace root",
            }
        },
        "required": ["relative_workspace_path"],
    }

    def __init__(self, workspace_root: str):
        self.workspace_root = workspace_root

    def invoke(self, params: dict) -> ToolResult:
        rel = params["relative_workspace_path"] or "."
        resolved = safe_resolve(rel, self.workspace_root)
        if not resolved.is_dir():
            raise ToolError(f"Failed to list directory at {rel}: not a directory")
        output_parts = []
        total_bytes = 0
        truncated = False
        try:
            for child in sorted(resolved.iterdir()):
                name = child.name + ("/" if child.is_dir() else "")
                encoded_len = len(name.encode("utf-8")) + 1
                if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                    truncated = True
                    break
                output_parts.append(name)
                total_bytes += encoded_len
        except OSError as e:
            raise ToolError(f"Failed to list directory at {rel}: {e}") from e
        result = "\n".join(output_parts)
        if truncated:
            result += "\n[truncated at 50KB]"
        return ToolResult(content=result)

    def describe_invocation(self, params: dict) -> str:
        return f"(listing directory at {params.get('relative_workspace_path')})"


class GrepSearchTool(Tool):
    name = "grep_search"
    description = (
        "Search for content in all files recursively from the workspace root. "
        "The query is a regular expression; matching is case-insensitive unless "
        "the query contains an uppercase letter. Use this to search for content "
        "within files, not to look up files by name."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to find in files",
                "minLength": 1,
            }
        },
        "required": ["query"],
    }

    def __init__(self, workspace_root: str):
        self.workspace_root = workspace_root

    def invoke(self, params: dict) -> ToolResult:
        query = params["query"]
        flags = 0 if any(c.isupper() for c in query) else re.IGNORECASE
        try:
            regex = re.compile(query, flags)
        except re.error as e:
            raise ToolError(f"Failed to search: invalid regex {query!r}: {e}") from e

        base = Path(self.workspace_root).resolve()
        grouped: OrderedDict[str, list[tuple[int, str]]] = OrderedDict()
        total = 0
        truncated = False

        for dirpath, dirs, files in os.walk(base):
            dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
            for filename in sorted(files):
                filepath = Path(dirpath) / filename
                if not filepath.resolve().is_relative_to(base):
                    continue
                try:
                    if _is_binary(filepath):
                        continue
                    text = filepath.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue

                per_file = 0
                for line_no, line in enumerate(text.splitlines(), start=1):
                    if not regex.search(line):
                        continue
                    if total >= MAX_GREP_MATCHES:
                        truncated = True
                        break
                    rel = str(filepath.relative_to(base))
                    grouped.setdefault(rel, []).append(
                        (line_no, line[:MAX_LINE_LENGTH])
                    )
                    total += 1
                    per_file += 1
                    if per_file >= MAX_GREP_MATCHES_PER_FILE:
                        break
                if truncated:
                    break
            if truncated:
                break

        if not grouped:
            return ToolResult(content="No matches found.")

        lines = [
            f"{rel}:{line_no}:{text}"
            for rel, matches in grouped.items()
            for line_no, text in matches
        ]
        result = "\n".join(lines)
        if truncated:
            result += (
                f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
                "Use a more specific query.)"
            )
        return ToolResult(content=result)

    def describe_invocation(self, params: dict) -> str:
        return f"(searching for {params.get('query')})"


# --- Read-write tools ---


def _write_files(files: dict[str, str], base_dir: str) -> tuple[list[str], list[str]]:
    """Write every file after checking all paths; returns (successful, failed)."""
    targets = [(rel, safe_resolve(rel, base_dir), content) for rel, content in files.items()]
    successful: list[str] = []
    failed: list[str] = []
    for rel, resolved, content in targets:
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(content, encoding="utf-8")
            successful.append(f"Successfully wrote to {rel}")
        except OSError as e:
            failed.append(f"Failed to write file at {rel}: {e}")
    return successful, failed


def _write_report(successful: list[str], failed: list[str]) -> str:
    return (
        "Successful writes:\n"
        + "\n".join(successful)
        + "\n\nFailed writes:\n"
        + "\n".join(failed)
        + "\n\n"
    )


class EditFileTool(Tool):
    name = "edit_file"
    description = (
        "Write new content to one file, specified by a path and the new content "
        "for that path. The results will include whether the file was written "
        "successfully or any errors."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "relative_workspace_path": {
                "type": "string",
                "description": "File path relative to workspace root to write to",
                "minLength": 1,
            },
            "content": {"type": "string", "description": "New file content to write"},
        },
        "required": ["relative_workspace_path", "content"],
    }

    def __init__(self, workspace_root: str, checks: CheckCommands):
        self.workspace_root = workspace_root
        self.checks = checks

    def invoke(self, params: dict) -> ToolResult:
        successful, failed = _write_files(
            {params["relative_workspace_path"]: params["content"]}, self.workspace_root
        )
        self.checks.run_format(self.workspace_root)
        return ToolResult(content=_write_report(successful, failed))

    def describe_invocation(self, params: dict) -> str:
        return f"(editing file at {params.get('relative_workspace_path')})"


class EditFilesTool(Tool):
    name = "edit_files"
    description = (
        "Write new content to one or more files, specified as a map of paths to "
        "content. The results will include the files written successfully or any "
        "errors, and then any linting or compile errors present after these "
        "changes. Use this tool again to fix those, but give up if you can't "
        "after a few times."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "files": {
                "type": "object",
                "description": "Object mapping relative file paths to their new content",
                "additionalProperties": {"type": "string"},
            }
        },
        "required": ["files"],
    }
    # Gemini rejects map-typed (additionalProperties) parameters.
    backends = frozenset({"anthropic", "ollama"})

    def __init__(self, workspace_root: str, checks: CheckCommands):
        self.workspace_root = workspace_root
        self.checks = checks

    def invoke(self, params: dict) -> ToolResult:
        successful, failed = _write_files(params["files"], self.workspace_root)
        self.checks.run_format(self.workspace_root)
        report = _write_report(successful, failed)
        return ToolResult(content=report + self.checks.run_checks(self.workspace_root))

    def describe_invocation(self, params: dict) -> str:
        files = params.get("files") or {}
        return f"(editing and checking files: {', '.join(files)})"


class BuildTool(Tool):
    name = "build"
    description = (
        "Trigger a format, lint, and type check for the codebase. The results "
        "will include any linting or compile errors present."
    )

    def __init__(self, workspace_root: str, checks: CheckCommands):
        self.workspace_root = workspace_root
        self.checks = checks

    def invoke(self, params: dict) -> ToolResult:
        self.checks.run_format(self.workspace_root)
        return ToolResult(content=self.checks.run_checks(self.workspace_root))

    def describe_invocation(self, params: dict) -> str:
        return "(linting and building)"


def create_tools(workspace_root: str, mode: str, checks: CheckCommands | None = None) -> list[Tool]:
    """Local tools for *mode*: read-only for ask, plus writers and build for edit."""
    tools: list[Tool] = [
        ReadFileTool(workspace_root),
        ListDirTool(workspace_root),
        GrepSearchTool(workspace_root),
    ]
    if mode == "edit":
        checks = checks or CheckCommands()
        tools += [
            EditFileTool(workspace_root, checks),
            EditFilesTool(workspace_root, checks),
            BuildTool(workspace_root, checks),
        ]
    return tools
