"""Account/key pairs and the implicit account id suggestion."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class AccountKeyPair:
    account_id: str
    public_key: str

    def to_dict(self) -> dict[str, str]:
        return {"accountId": self.account_id, "publicKey": self.public_key}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AccountKeyPair":
        return cls(account_id=data["accountId"], public_key=data["publicKey"])


def suggest_implicit_account_id(raw_public_key: bytes) -> str:
    """
    Hex form of an ed25519 key, i.e. the implicit account that key would own.

    Only a prefill for the account prompt. Whatever the user submits is still
    verified on-chain before it is stored.
    """
    return bytes(raw_public_key).hex()
