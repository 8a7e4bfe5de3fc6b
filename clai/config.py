"""Configuration file loading and merging for clai.

Reads TOML config from ~/.config/clai/config.toml (global) and
<base_dir>/clai.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .report import ConfigError

UNSET = object()  # Sentinel for "not set by CLI"

PROVIDERS = ("anthropic", "gemini", "ollama")
MODES = ("ask", "edit")

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-latest",
    "gemini": "gemini-2.0-flash",
    "ollama": "qwen2.5-coder",
}

OLLAMA_DEFAULT_BASE_URL = "http://localhost:11434"

_BASE_PROMPT = (
    "You are an AI code assistant. Be helpful but concise. "
    "Use tools to gather information about the user's codebase as needed."
)

SYSTEM_PROMPTS = {
    "ask": _BASE_PROMPT
    + " If you are asked a general coding question, you can just answer"
    " without context from the codebase.",
    "edit": _BASE_PROMPT
    + " When supplying edits, you should use the edit_files tool, and then use"
    " it again to fix any lint or build issues that arise.",
}


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_turns": int,
    "max_output_tokens": int,
    "request_timeout": (int, float),
    "token_efficient": bool,
    "format_command": str,
    "lint_command": str,
    "typecheck_command": str,
    "command_timeout": int,
    "system_prompt": str,
    "no_mcp": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_turns": 100,
    "max_output_tokens": 8192,
    "request_timeout": 600,
    "token_efficient": False,
    "format_command": None,
    "lint_command": None,
    "typecheck_command": None,
    "command_timeout": 120,
    "system_prompt": None,
    "no_mcp": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "mcp_config": None,
}

_API_KEY_ENV = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


@dataclass(frozen=True)
class Settings:
    """Everything a run needs, resolved once at startup."""

    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    max_turns: int = 100
    max_output_tokens: int = 8192
    request_timeout: float = 600
    token_efficient: bool = False
    format_command: str | None = None
    lint_command: str | None = None
    typecheck_command: str | None = None
    command_timeout: int = 120
    system_prompt: str | None = None
    verbose: bool = True
    mcp_servers: dict = field(default_factory=dict)

    def report_settings(self) -> dict:
        """The subset of settings worth recording in a run report."""
        return {
            "max_turns": self.max_turns,
            "max_output_tokens": self.max_output_tokens,
            "request_timeout": self.request_timeout,
            "token_efficient": self.token_efficient,
            "mcp_servers": sorted(self.mcp_servers),
        }


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "clai"
    return Path.home() / ".config" / "clai"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and enumerated values in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    for key in ("max_turns", "max_output_tokens", "command_timeout"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # mcp_servers is a nested table, not a flat key
    mcp_servers = config.pop("mcp_servers", None)

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if mcp_servers is not None:
        if not isinstance(mcp_servers, dict):
            raise ConfigError(f"{label}: 'mcp_servers' must be a table")
        _validate_mcp_server_configs(mcp_servers, label)
        known["mcp_servers"] = mcp_servers

    return known


# --- MCP config helpers ---


_MCP_SERVER_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
    "allowed_tools": (list, dict),
}


def _validate_str_list(value: list, where: str) -> None:
    for i, elem in enumerate(value):
        if not isinstance(elem, str):
            raise ConfigError(
                f"{where}[{i}]: expected string, got {type(elem).__name__}"
            )


def _validate_allowed_tools(value: list | dict, prefix: str) -> None:
    """Allow-lists are a plain list (every mode) or a per-mode table."""
    if isinstance(value, list):
        _validate_str_list(value, f"{prefix}.allowed_tools")
        return
    for mode, names in value.items():
        if mode not in MODES:
            raise ConfigError(
                f"{prefix}.allowed_tools: unknown mode {mode!r} "
                f"(expected {' or '.join(MODES)})"
            )
        if not isinstance(names, list):
            raise ConfigError(
                f"{prefix}.allowed_tools.{mode}: expected list, "
                f"got {type(names).__name__}"
            )
        _validate_str_list(names, f"{prefix}.allowed_tools.{mode}")


def _validate_mcp_server_configs(servers: dict, source: str) -> None:
    """Validate structure and field types of MCP server configurations."""
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        if not isinstance(cfg, dict):
            raise ConfigError(f"{source}: mcp_servers.{name} must be a table")
        has_command = "command" in cfg
        has_url = "url" in cfg
        if not has_command and not has_url:
            raise ConfigError(
                f"{source}: mcp_servers.{name} must have 'command' or 'url'"
            )
        if has_command and has_url:
            raise ConfigError(
                f"{source}: mcp_servers.{name} cannot have both 'command' and 'url'"
            )

        prefix = f"{source}: mcp_servers.{name}"
        for fld, expected in _MCP_SERVER_FIELD_TYPES.items():
            if fld in cfg and not isinstance(cfg[fld], expected):
                raise ConfigError(
                    f"{prefix}.{fld}: expected {_type_name(expected)}, "
                    f"got {type(cfg[fld]).__name__}"
                )

        if "args" in cfg:
            _validate_str_list(cfg["args"], f"{prefix}.args")

        for dict_field in ("env", "headers"):
            for k, v in cfg.get(dict_field, {}).items():
                if not isinstance(v, str):
                    raise ConfigError(
                        f"{prefix}.{dict_field}.{k}: expected string, "
                        f"got {type(v).__name__}"
                    )

        if "allowed_tools" in cfg:
            _validate_allowed_tools(cfg["allowed_tools"], prefix)


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Load MCP server configs from a .mcp.json file.

    Returns a dict of server_name -> server_config.
    Raises ConfigError on invalid JSON or structure.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")

    servers_raw = data.get("mcpServers", {})
    if not isinstance(servers_raw, dict):
        raise ConfigError(f"{path}: 'mcpServers' must be a JSON object")

    # .mcp.json uses camelCase for the allow-list
    for cfg in servers_raw.values():
        if isinstance(cfg, dict) and "allowedTools" in cfg:
            cfg["allowed_tools"] = cfg.pop("allowedTools")

    _validate_mcp_server_configs(servers_raw, str(path))
    return servers_raw


def merge_mcp_configs(
    toml_servers: dict[str, dict] | None,
    json_servers: dict[str, dict] | None,
) -> dict[str, dict]:
    """Merge MCP server configs. TOML wins on name collision."""
    merged: dict[str, dict] = {}
    if json_servers:
        merged.update(json_servers)
    if toml_servers:
        merged.update(toml_servers)
    return merged


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "clai.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    # mcp_servers merge by server name instead of overwriting
    global_mcp = global_config.pop("mcp_servers", None)
    project_mcp = project_config.pop("mcp_servers", None)
    merged = {**global_config, **project_config}

    mcp_servers = merge_mcp_configs(project_mcp, global_mcp)
    if mcp_servers:
        merged["mcp_servers"] = mcp_servers

    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, UNSET) is UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "mcp_servers"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(provider: str, explicit: str | None) -> str | None:
    """Return the credential for *provider*, or raise if one is required and missing."""
    if explicit:
        return explicit
    env_names = _API_KEY_ENV.get(provider)
    if env_names is None:
        return None
    for name in env_names:
        value = os.environ.get(name)
        if value:
            return value
    raise ConfigError(
        f"no API key for provider {provider!r}: set {' or '.join(env_names)} "
        f"or pass --api-key"
    )


def build_settings(args: argparse.Namespace, mcp_servers: dict | None = None) -> Settings:
    """Turn a fully-defaulted argparse namespace into a Settings value."""
    if args.provider not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {args.provider!r} (expected {', '.join(PROVIDERS)})"
        )
    if args.max_turns < 1:
        raise ConfigError("--max-turns must be at least 1")

    base_url = args.base_url
    if args.provider == "ollama" and not base_url:
        base_url = OLLAMA_DEFAULT_BASE_URL

    if args.token_efficient and args.provider != "anthropic":
        print(
            f"warning: token-efficient mode only applies to the anthropic provider, "
            f"ignoring it for {args.provider!r}",
            file=sys.stderr,
        )

    return Settings(
        provider=args.provider,
        model=args.model or DEFAULT_MODELS[args.provider],
        api_key=resolve_api_key(args.provider, args.api_key),
        base_url=base_url,
        max_turns=args.max_turns,
        max_output_tokens=args.max_output_tokens,
        request_timeout=args.request_timeout,
        token_efficient=bool(args.token_efficient) and args.provider == "anthropic",
        format_command=args.format_command,
        lint_command=args.lint_command,
        typecheck_command=args.typecheck_command,
        command_timeout=args.command_timeout,
        system_prompt=args.system_prompt,
        verbose=not args.quiet,
        mcp_servers={} if args.no_mcp else dict(mcp_servers or {}),
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# clai configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/clai.toml' if project else '~/.config/clai/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"         # "anthropic" | "gemini" | "ollama"',
        '# model = "claude-3-5-sonnet-latest"',
        '# api_key = "sk-ant-..."         # prefer env vars; this is a fallback',
        '# base_url = "http://localhost:11434"',
        "# token_efficient = false        # anthropic only",
        "",
        "# --- Generation / limits ---",
        "# max_output_tokens = 8192",
        "# max_turns = 100",
        "# request_timeout = 600",
        "",
        "# --- Edit mode checks ---",
        '# format_command = "npm run format"',
        '# lint_command = "npm run lint"',
        '# typecheck_command = "npm run type"',
        "# command_timeout = 120",
        "",
        "# --- Prompt ---",
        '# system_prompt = "You are an AI code assistant."',
        "",
        "# --- MCP servers ---",
        "# no_mcp = false",
        "",
        "# [mcp_servers.filesystem]",
        '# command = "npx"',
        '# args = ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]',
        '# env = { DEBUG = "true" }',
        '# allowed_tools = { ask = ["read_file"], edit = ["read_file", "write_file"] }',
        "",
        "# [mcp_servers.remote-api]",
        '# url = "https://api.example.com/mcp"',
        '# headers = { Authorization = "Bearer token123" }',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
