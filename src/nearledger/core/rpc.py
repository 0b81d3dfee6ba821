"""
Minimal NEAR JSON-RPC client.

Only the calls the signing flows need: access key view, final block and
``broadcast_tx_commit``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from nearledger.core.exceptions import NetworkRequestFailedError

logger = logging.getLogger(__name__)


def _error_from_payload(error: Any) -> NetworkRequestFailedError:
    if not isinstance(error, dict):
        return NetworkRequestFailedError(str(error) or "RPC request failed")
    cause = error.get("cause")
    cause_name = cause.get("name") if isinstance(cause, dict) else None
    data = error.get("data")
    message = error.get("message") or "RPC request failed"
    if isinstance(data, str) and data and data not in message:
        message = f"{message}: {data}"
    return NetworkRequestFailedError(message, cause=cause_name, data=data, details={"error": error})


class NearRpcClient:
    """
    JSON-RPC 2.0 client bound to one NEAR endpoint.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or inject a mock
    transport in tests); otherwise a client is created per request.
    """

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.url = url
        self._client = client
        self._timeout = timeout

    async def call(self, method: str, params: Any) -> Any:
        body = {"jsonrpc": "2.0", "id": "dontcare", "method": method, "params": params}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=body, timeout=self._timeout)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "RPC request %s failed: %s",
                method,
                exc,
                extra={"event": "rpc.request_failed", "method": method, "url": self.url},
            )
            raise NetworkRequestFailedError(f"RPC request {method} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise NetworkRequestFailedError(f"RPC request {method} returned malformed response")

        if payload.get("error"):
            error = _error_from_payload(payload["error"])
            logger.info(
                "RPC %s returned error: %s",
                method,
                error.message,
                extra={"event": "rpc.error", "method": method, "cause": error.cause},
            )
            raise error

        if "result" not in payload:
            raise NetworkRequestFailedError(
                f"RPC request {method} failed with HTTP {response.status_code}"
            )
        return payload["result"]

    async def view_access_key(self, account_id: str, public_key: str) -> dict[str, Any]:
        result = await self.call(
            "query",
            {
                "request_type": "view_access_key",
                "finality": "final",
                "account_id": account_id,
                "public_key": public_key,
            },
        )
        # Some nodes report a missing key inside the result instead of as an RPC error
        if isinstance(result, dict) and result.get("error"):
            raise NetworkRequestFailedError(str(result["error"]), data=result["error"])
        return result

    async def block(self, finality: str = "final") -> dict[str, Any]:
        return await self.call("block", {"finality": finality})

    async def broadcast_tx_commit(self, signed_transaction_base64: str) -> dict[str, Any]:
        return await self.call("broadcast_tx_commit", [signed_transaction_base64])
