"""JSON-RPC 2.0 over the stdio of a child process."""

from .client import RpcClient
from .protocol import DecodeResult, RpcErrorDetail, RpcRequest, RpcResponse
from .transport import ProcessTransport

__all__ = [
    "DecodeResult",
    "ProcessTransport",
    "RpcClient",
    "RpcErrorDetail",
    "RpcRequest",
    "RpcResponse",
]
