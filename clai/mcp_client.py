"""MCP (Model Context Protocol) client integration for clai.

Manages connections to external tool servers and exposes their tools as
``Tool`` objects that sit in the registry next to the local tools.
"""

import asyncio
import atexit
import copy
import json
import logging
import re
import threading
from typing import Any

from .report import AgentError, ConfigError
from .tools import Tool, ToolError, ToolResult

logger = logging.getLogger(__name__)

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")

CONNECT_TIMEOUT = 30
CALL_TIMEOUT = 120


class McpShutdownError(AgentError):
    """Raised when call_tool() is invoked during or after shutdown."""


class McpTool(Tool):
    """A tool advertised by an MCP server, routed back through the manager."""

    def __init__(self, manager: "McpManager", name: str, original_name: str,
                 description: str, input_schema: dict):
        self.manager = manager
        self.name = name
        self.original_name = original_name
        self.description = description
        self.input_schema = input_schema

    def invoke(self, params: dict) -> ToolResult:
        text, is_error = self.manager.call_tool(self.name, params)
        if is_error:
            raise ToolError(text)
        return ToolResult(content=text)

    def describe_invocation(self, params: dict) -> str:
        return f"(calling {self.original_name} {json.dumps(params, ensure_ascii=False)})"


class McpManager:
    """Manages connections to the configured MCP servers for one command.

    Runs an asyncio event loop in a background daemon thread.
    All public methods are synchronous: they submit coroutines via
    run_coroutine_threadsafe() and block on the future.

    Each server gets a long-lived asyncio Task that owns its
    AsyncExitStack from connect through shutdown, so the cancel-scopes
    created by the MCP SDK's anyio transports are entered and exited
    inside the same Task.

    Use as a context manager; every opened connection is closed on exit,
    and ``start()`` closes the ones already opened when a later server in
    the batch fails to connect.
    """

    def __init__(self, server_configs: dict[str, dict], mode: str = "ask",
                 verbose: bool = False):
        """
        server_configs: {
            "server-name": {
                "command": "npx",
                "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
                "env": {"KEY": "val"},
                # OR for HTTP:
                "url": "http://localhost:8080/mcp",
                "headers": {"Authorization": "Bearer ..."},
                # optional, a list or {"ask": [...], "edit": [...]}
                "allowed_tools": ["read_file"],
            }
        }
        """
        self._server_configs = server_configs
        self._mode = mode
        self._verbose = verbose

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

        self._sessions: dict[str, Any] = {}  # server_name -> ClientSession
        self._tools: dict[str, list[McpTool]] = {}  # server_name -> tools
        self._tool_map: dict[str, tuple[str, str]] = {}  # namespaced -> (server, orig)
        self._degraded: set[str] = set()  # servers that failed after startup

        self._server_tasks: dict[str, asyncio.Task] = {}
        self._shutdown_events: dict[str, asyncio.Event] = {}

        self._closing = False
        self._closed = False

    def __enter__(self) -> "McpManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        """Start the background event loop and connect to every server.

        Raises AgentError if any server fails to connect, after closing the
        connections that did open.
        """
        if self._closed:
            raise McpShutdownError("manager is already closed")
        if not self._server_configs:
            return

        loop_ready = threading.Event()
        self._loop = asyncio.new_event_loop()

        def _run_loop():
            self._loop.call_soon(loop_ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(
            target=_run_loop,
            name="clai-mcp-loop",
            daemon=True,
        )
        self._thread.start()
        atexit.register(self.close)
        if not loop_ready.wait(timeout=10):
            self.close()
            raise McpShutdownError("MCP event loop failed to start")

        from . import fmt

        for name, config in self._server_configs.items():
            try:
                self._start_server_task(name, config, timeout=CONNECT_TIMEOUT)
            except Exception as e:
                fmt.mcp_server_error(name, str(e))
                self.close()
                raise AgentError(f"cannot connect to MCP server {name!r}: {e}") from e

        self._build_tool_map()

    def tools(self) -> list[McpTool]:
        """Every exposed MCP tool, in server configuration order."""
        result: list[McpTool] = []
        for server_tools in self._tools.values():
            result.extend(server_tools)
        return result

    def call_tool(self, namespaced_name: str, arguments: dict) -> tuple[str, bool]:
        """Dispatch to the owning server and return (result_text, is_error)."""
        if self._closing or self._closed:
            raise McpShutdownError("manager is shutting down")

        if namespaced_name not in self._tool_map:
            return (f"unknown MCP tool: {namespaced_name}", True)

        server_name, original_name = self._tool_map[namespaced_name]

        if server_name in self._degraded:
            return (f"MCP server {server_name!r} is unavailable (disconnected)", True)

        session = self._sessions.get(server_name)
        if session is None:
            return (f"MCP server {server_name!r} has no active session", True)

        try:
            result = self._run_sync(
                session.call_tool(original_name, arguments),
                timeout=CALL_TIMEOUT,
            )
        except McpShutdownError:
            raise
        except Exception as e:
            self._degraded.add(server_name)
            return (f"MCP server {server_name!r} failed: {e}", True)
        return _normalize_result(result)

    def close(self) -> None:
        """Idempotent shutdown."""
        if self._closed:
            return
        self._closing = True

        if self._loop is not None and self._loop.is_running():
            try:
                self._run_sync(self._close_all_sessions(), timeout=10)
            except Exception as e:
                logger.warning(f"Error closing MCP sessions: {e}")

            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning(
                    "MCP event loop thread did not stop cleanly. "
                    f"Residual servers: {list(self._sessions)}"
                )

        self._closed = True
        self._closing = False

    # --- Internal helpers ---

    def _allowed_tools(self, config: dict) -> set[str] | None:
        allowed = config.get("allowed_tools")
        if allowed is None:
            return None
        if isinstance(allowed, dict):
            return set(allowed.get(self._mode, []))
        return set(allowed)

    def _run_sync(self, coro, timeout: float = 30):
        """Submit a coroutine to the background loop and wait for result."""
        if self._loop is None or not self._loop.is_running():
            coro.close()
            raise McpShutdownError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except asyncio.CancelledError:
            raise McpShutdownError("operation cancelled during shutdown")
        except (TimeoutError, KeyboardInterrupt):
            future.cancel()
            raise

    def _start_server_task(self, name: str, config: dict, timeout: float = 30) -> None:
        """Launch a long-lived task for one server; block until connected."""
        ready = threading.Event()
        startup_error: list[BaseException | None] = [None]
        shutdown_event = asyncio.Event()
        self._shutdown_events[name] = shutdown_event

        async def _launch():
            self._server_tasks[name] = asyncio.create_task(
                self._server_lifecycle(
                    name, config, ready, startup_error, shutdown_event
                ),
                name=f"mcp-{name}",
            )

        self._run_sync(_launch(), timeout=5)

        if not ready.wait(timeout=timeout):
            task = self._server_tasks.pop(name, None)
            if task:
                self._loop.call_soon_threadsafe(task.cancel)
            self._shutdown_events.pop(name, None)
            raise TimeoutError(f"MCP server {name!r} startup timed out")

        if startup_error[0] is not None:
            self._server_tasks.pop(name, None)
            self._shutdown_events.pop(name, None)
            raise startup_error[0]

    async def _server_lifecycle(
        self,
        name: str,
        config: dict,
        ready: threading.Event,
        startup_error: list[BaseException | None],
        shutdown_event: asyncio.Event,
    ) -> None:
        """Connect, wait for the shutdown signal, clean up; all within one Task."""
        from contextlib import AsyncExitStack
        import mcp

        stack = AsyncExitStack()
        await stack.__aenter__()

        try:
            if "url" in config:
                from mcp.client.sse import sse_client

                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(
                        url=config["url"],
                        headers=config.get("headers"),
                        timeout=10,
                        sse_read_timeout=300,
                    )
                )
            else:
                params = mcp.StdioServerParameters(
                    command=config["command"],
                    args=config.get("args", []),
                    env=config.get("env"),
                )
                read_stream, write_stream = await stack.enter_async_context(
                    mcp.stdio_client(params)
                )

            session = await stack.enter_async_context(
                mcp.ClientSession(read_stream, write_stream)
            )
            await session.initialize()
            tools_result = await session.list_tools()

            self._sessions[name] = session
            allowed = self._allowed_tools(config)
            self._tools[name] = [
                _mcp_tool_to_clai(self, name, tool)
                for tool in tools_result.tools
                if allowed is None or tool.name in allowed
            ]

            from . import fmt

            if self._verbose:
                fmt.mcp_server_start(name, len(self._tools[name]))

            ready.set()
            await shutdown_event.wait()
        except Exception as exc:
            startup_error[0] = exc
            ready.set()
        finally:
            try:
                await asyncio.wait_for(stack.aclose(), timeout=5)
            except TimeoutError:
                logger.warning(f"MCP server {name!r}: graceful close timed out")
            except Exception as e:
                logger.warning(f"Error closing MCP server {name!r}: {e}")
            self._sessions.pop(name, None)

    async def _close_all_sessions(self) -> None:
        """Signal every server lifecycle task to shut down and wait for them."""
        for event in self._shutdown_events.values():
            event.set()

        tasks = list(self._server_tasks.values())
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for r in results:
                if isinstance(r, Exception) and not isinstance(
                    r, asyncio.CancelledError
                ):
                    logger.warning(f"MCP server task error during shutdown: {r}")

        self._server_tasks.clear()
        self._shutdown_events.clear()
        self._sessions.clear()

    def _build_tool_map(self) -> None:
        """Build the routing table.

        Two tools of one server that sanitize to the same name make the whole
        server unusable; its tools are dropped with an error.
        """
        tool_map: dict[str, tuple[str, str]] = {}

        for server_name, tools in self._tools.items():
            collisions = []
            for tool in tools:
                if tool.name in tool_map:
                    existing_server, existing_orig = tool_map[tool.name]
                    collisions.append(
                        f"  {tool.name!r}: {existing_server}/{existing_orig} "
                        f"vs {server_name}/{tool.original_name}"
                    )
                else:
                    tool_map[tool.name] = (server_name, tool.original_name)

            if collisions:
                from . import fmt

                for tool in tools:
                    if tool_map.get(tool.name, (None,))[0] == server_name:
                        del tool_map[tool.name]
                self._tools[server_name] = []
                fmt.mcp_server_error(
                    server_name,
                    "tool name collision after sanitization, skipping all its tools:\n"
                    + "\n".join(collisions),
                )

        self._tool_map = tool_map


def _sanitize_tool_name(name: str) -> str:
    """Sanitize an MCP tool name for use in namespaced identifiers."""
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def validate_server_name(name: str) -> None:
    """Validate an MCP server name. Raises ConfigError if invalid."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain double underscores"
        )


def _mcp_tool_to_clai(manager: McpManager, server_name: str, tool) -> McpTool:
    """Wrap an MCP Tool object, namespacing it as mcp__<server>__<tool>."""
    namespaced = f"mcp__{server_name}__{_sanitize_tool_name(tool.name)}"
    return McpTool(
        manager,
        name=namespaced,
        original_name=tool.name,
        description=tool.description or f"MCP tool from {server_name}",
        input_schema=_convert_schema(tool.inputSchema or {}),
    )


def _convert_schema(input_schema: dict) -> dict:
    """Normalize an MCP inputSchema into a tool input schema.

    Keep everything, only strip keys known to cause provider rejections.
    """
    schema = copy.deepcopy(input_schema)
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def _normalize_result(result) -> tuple[str, bool]:
    """Convert an MCP CallToolResult to ``(text, is_error)``."""
    parts = []
    for block in result.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            parts.append(block.text)
        elif block_type in ("image", "audio"):
            mime = getattr(block, "mimeType", "unknown")
            data = getattr(block, "data", "")
            parts.append(f"[{block_type}: {mime}, {len(data)} bytes]")
        elif block_type == "resource":
            resource = getattr(block, "resource", None)
            if resource is not None and getattr(resource, "text", None):
                parts.append(resource.text)
            else:
                uri = getattr(resource, "uri", "unknown") if resource else "unknown"
                parts.append(f"[resource: {uri}]")
        else:
            parts.append(f"[{block_type or 'unknown'}: unsupported content type]")

    text = "\n".join(parts)
    if result.isError:
        return (text or "MCP tool returned an error", True)
    return (text or "(empty result)", False)
