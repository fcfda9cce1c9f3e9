"""Registry adapters for tools exposed by an RPC server."""

from typing import TYPE_CHECKING, Any

from mentis.exceptions import RpcError, SessionError
from mentis.logging import get_logger
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult

if TYPE_CHECKING:
    from mentis.rpc.session import RpcSession

log = get_logger(__name__)


class RemoteTool(Tool):
    """A tool whose execution is delegated to an RPC session."""

    kind = ToolKind.RPC
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True

    def __init__(self, session: "RpcSession", definition: dict[str, Any]):
        self.session = session
        self.name = str(definition["name"])
        self.description = str(definition.get("description") or "")
        schema = definition.get("inputSchema")
        self.parameters = schema if isinstance(schema, dict) else {"type": "object", "properties": {}}

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        base = super().confirmation_message(arguments).rstrip("?")
        return f"{base} on server '{self.session.server_name}'?"

    async def execute(self, **kwargs: Any) -> ToolResult:
        arguments = {key: value for key, value in kwargs.items() if not key.startswith("_")}
        try:
            output = await self.session.invoke(self.name, arguments)
        except (RpcError, SessionError) as e:
            log.warning("Remote tool failed", tool=self.name, server=self.session.server_name, error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content=output)
