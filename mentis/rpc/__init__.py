"""JSON-RPC tool servers."""

from mentis.rpc.manager import RpcConnectionManager
from mentis.rpc.session import RpcSession
from mentis.rpc.tools import RemoteTool

__all__ = ["RemoteTool", "RpcConnectionManager", "RpcSession"]
