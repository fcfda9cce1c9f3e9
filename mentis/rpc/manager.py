"""Lifecycle of the RPC tool servers attached to a registry."""

from mentis import __version__
from mentis.logging import get_logger
from mentis.rpc.session import DEFAULT_PROTOCOL_VERSION, RpcSession
from mentis.tools.registry import ToolRegistry

log = get_logger(__name__)


class RpcConnectionManager:
    """Connects tool servers and keeps their tools registered."""

    def __init__(
        self,
        registry: ToolRegistry,
        client_name: str = "mentis-cli",
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
    ):
        self.registry = registry
        self.client_name = client_name
        self.protocol_version = protocol_version
        self._sessions: list[RpcSession] = []
        self._tool_names: dict[int, list[str]] = {}

    @property
    def sessions(self) -> list[RpcSession]:
        return list(self._sessions)

    def tools_for(self, session: RpcSession) -> list[str]:
        return list(self._tool_names.get(id(session), []))

    async def connect(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> RpcSession:
        """Start a server, handshake, and register its tools.

        Tools whose names are already registered are skipped so built-ins
        keep precedence. A failed handshake tears the process down again.
        """
        session = RpcSession(
            command,
            args,
            env=env,
            client_name=self.client_name,
            client_version=__version__,
            protocol_version=self.protocol_version,
        )
        try:
            await session.connect()
            await session.initialize()
            remote_tools = await session.list_remote_tools()
        except BaseException:
            await session.disconnect()
            raise

        registered: list[str] = []
        for tool in remote_tools:
            if self.registry.has_tool(tool.name):
                log.warning("Remote tool name already registered", tool=tool.name, server=session.server_name)
                continue
            self.registry.register(tool)
            registered.append(tool.name)

        self._sessions.append(session)
        self._tool_names[id(session)] = registered
        log.info("RPC server connected", server=session.server_name, tools=len(registered))
        return session

    async def disconnect(self, session: RpcSession) -> None:
        """Disconnect one session and drop its tools."""
        for name in self._tool_names.pop(id(session), []):
            self.registry.unregister(name)
        if session in self._sessions:
            self._sessions.remove(session)
        await session.disconnect()

    async def disconnect_all(self) -> None:
        for session in list(self._sessions):
            await self.disconnect(session)
