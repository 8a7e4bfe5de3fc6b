"""Name -> tool lookup for one command invocation."""

from . import fmt
from .report import ToolNotFoundError
from .tools import Tool, ToolDefinition


class ToolRegistry:
    """Tools in registration order; the first registration of a name wins.

    Local tools are registered before MCP tools, so a server cannot
    shadow a built-in.
    """

    def __init__(self, tools: list[Tool] = ()):
        self._tools: list[Tool] = []
        self._by_name: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools.append(tool)
        if tool.name in self._by_name:
            fmt.warning(
                f"tool {tool.name!r} is already registered; "
                f"the later registration is shadowed"
            )
            return
        self._by_name[tool.name] = tool

    def extend(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def lookup(self, name: str) -> Tool:
        try:
            return self._by_name[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._by_name)

    def definitions(self, backend: str) -> list[ToolDefinition]:
        """Declarations for *backend*: one per name, skipping unsupported tools."""
        return [
            tool.get_definition()
            for tool in self._by_name.values()
            if tool.supports(backend)
        ]
