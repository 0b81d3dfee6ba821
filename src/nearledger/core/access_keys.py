"""Confirms that a Ledger-held key has full access to the claimed account."""

from __future__ import annotations

import logging
from typing import Callable

from nearledger.core.config import NetworkType
from nearledger.core.exceptions import (
    AccessKeyNotFoundError,
    AccessKeyNotFullAccessError,
    NetworkRequestFailedError,
)
from nearledger.core.rpc import NearRpcClient

logger = logging.getLogger(__name__)

_MISSING_CAUSES = {"UNKNOWN_ACCESS_KEY", "UNKNOWN_ACCOUNT"}


def _reports_missing(error: NetworkRequestFailedError) -> bool:
    if error.cause in _MISSING_CAUSES:
        return True
    text = f"{error.message} {error.data if isinstance(error.data, str) else ''}"
    return "does not exist" in text


class AccessKeyVerifier:
    """Runs the single read-only access key query that gates sign-in."""

    def __init__(self, rpc_for_network: Callable[[NetworkType], NearRpcClient]):
        self._rpc_for_network = rpc_for_network

    async def verify(self, network: NetworkType, account_id: str, public_key: str) -> None:
        rpc = self._rpc_for_network(network)
        try:
            access_key = await rpc.view_access_key(account_id, public_key)
        except NetworkRequestFailedError as exc:
            if _reports_missing(exc):
                raise AccessKeyNotFoundError(account_id, details={"public_key": public_key}) from exc
            raise

        if access_key.get("permission") != "FullAccess":
            logger.info(
                "Key %s is not a full access key on %s",
                public_key,
                account_id,
                extra={"event": "access_key.not_full_access", "account_id": account_id},
            )
            raise AccessKeyNotFullAccessError(account_id, details={"permission": access_key.get("permission")})

        logger.info(
            "Verified full access key for %s",
            account_id,
            extra={"event": "access_key.verified", "account_id": account_id, "public_key": public_key},
        )
