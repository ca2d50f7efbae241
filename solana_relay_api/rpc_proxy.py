"""
HTTP JSON-RPC forwarding to the upstream provider (Helius).

Keeps the api key on the server: browsers post plain JSON-RPC bodies here and
the request is replayed against the keyed upstream URL.
"""
import logging
from typing import Any, Optional, Tuple
import httpx

from solana_relay_api.config import config as app_config
from solana_relay_api.models import INTERNAL_ERROR, UPSTREAM_UNAVAILABLE, error_response

logger = logging.getLogger(__name__)


def _request_id(payload: Any) -> Any:
    if isinstance(payload, dict):
        request_id = payload.get("id")
        if isinstance(request_id, (int, str)):
            return request_id
    return None


async def forward_rpc(
    payload: Any,
    url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Tuple[int, Any]:
    """
    Forward a JSON-RPC body (single request or batch) to the upstream.

    Args:
        payload: Decoded JSON body from the client
        url: Upstream URL (defaults to the configured, keyed Helius URL)
        timeout: Request timeout in seconds

    Returns:
        (status_code, body) where body is the decoded upstream response or a
        JSON-RPC error object
    """
    url = url or app_config.upstream_http_url
    timeout = timeout if timeout is not None else app_config.RPC_PROXY_TIMEOUT
    request_id = _request_id(payload)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=timeout,
            )
    except httpx.TimeoutException:
        logger.warning("Timeout forwarding RPC request upstream")
        return 504, error_response(UPSTREAM_UNAVAILABLE, "Upstream request timed out", request_id)
    except httpx.HTTPError as e:
        logger.error(f"Error forwarding RPC request upstream: {e}")
        return 502, error_response(INTERNAL_ERROR, "Upstream request failed", request_id)

    if response.status_code != 200:
        logger.warning(f"Upstream RPC error: {response.status_code}")

    try:
        return response.status_code, response.json()
    except ValueError:
        logger.error(f"Upstream returned non-JSON body (status {response.status_code})")
        return 502, error_response(INTERNAL_ERROR, "Upstream returned an invalid response", request_id)
