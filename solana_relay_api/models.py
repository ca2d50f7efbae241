"""
JSON-RPC message models and helpers for the Solana websocket relay.
"""
from datetime import datetime
from typing import Any, Optional, Union
from pydantic import BaseModel, Field


# =============================================================================
# JSON-RPC CONSTANTS
# =============================================================================

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700           # Frame is not valid JSON
INVALID_REQUEST = -32600       # JSON is not a request object
INTERNAL_ERROR = -32603        # Relay or proxy failure
UPSTREAM_UNAVAILABLE = -32000  # Upstream connection is not open right now

SUBSCRIBE_SUFFIX = "Subscribe"
UNSUBSCRIBE_SUFFIX = "Unsubscribe"


def error_response(code: int, message: str, request_id: Any = None) -> dict:
    """
    Build a JSON-RPC error reply.

    Args:
        code: JSON-RPC error code
        message: Human readable error message
        request_id: Id of the request being answered (None when unknown)

    Returns:
        Error reply dict ready for json.dumps
    """
    return {
        "jsonrpc": JSONRPC_VERSION,
        "error": {"code": code, "message": message},
        "id": request_id,
    }


def is_subscribe_method(method: str) -> bool:
    """accountSubscribe, logsSubscribe, ... but not accountUnsubscribe."""
    return bool(method) and method.endswith(SUBSCRIBE_SUFFIX)


def is_unsubscribe_method(method: str) -> bool:
    return bool(method) and method.endswith(UNSUBSCRIBE_SUFFIX)


def is_notification(message: Any) -> bool:
    """
    A push message from the upstream (e.g. accountNotification).

    Notifications carry a method and no id; replies carry the id of the
    request they answer.
    """
    if not isinstance(message, dict):
        return False
    return "method" in message and message.get("id") is None


# =============================================================================
# PYDANTIC MODELS (for message validation)
# =============================================================================

class RpcRequest(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Union[int, str]] = None
    method: str = Field(min_length=1)
    params: list = Field(default_factory=list)


class RpcError(BaseModel):
    code: int
    message: str


class RpcErrorResponse(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    error: RpcError
    id: Optional[Union[int, str]] = None


class RelayStatus(BaseModel):
    state: str
    attempts: int
    max_attempts: int
    exhausted: bool
    subscriptions: int
    clients: int
    pending_requests: int
    messages_in: int
    messages_out: int
    reconnects: int
    last_connected_at: Optional[datetime] = None
