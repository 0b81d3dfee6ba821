"""
NEAR transaction building and canonical serialization.

Host applications describe actions as ``{"type": ..., "params": {...}}``
dictionaries. ``action_from_descriptor`` turns each into a typed action, and
``Transaction`` / ``SignedTransaction`` produce the Borsh bytes the Ledger
signs and the base64 form ``broadcast_tx_commit`` accepts.

Action enum indices follow nearcore's ``Action`` ordering:
CreateAccount=0, DeployContract=1, FunctionCall=2, Transfer=3, Stake=4,
AddKey=5, DeleteKey=6, DeleteAccount=7.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Mapping, Optional, Union

from nearledger.core.binary import BinaryReader, BinaryWriter
from nearledger.core.config import DEFAULT_FUNCTION_CALL_GAS
from nearledger.core.exceptions import UnsupportedActionTypeError
from nearledger.core.keys import PublicKey, Signature, base58_decode

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from nearledger.core.rpc import NearRpcClient

logger = logging.getLogger(__name__)

BLOCK_HASH_LENGTH = 32


def _to_amount(value: Any, field_name: str) -> int:
    """Parse a yoctoNEAR / gas amount given as int or decimal string."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer amount, got {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValueError(f"{field_name} must be a non-negative integer amount, got {value!r}")
    if amount < 0:
        raise ValueError(f"{field_name} must be non-negative, got {value!r}")
    return amount


def _to_bytes(value: Any, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        return bytes(value)
    raise ValueError(f"{field_name} must be bytes, got {type(value).__name__}")


def encode_function_args(args: Any) -> bytes:
    """JSON-encode structured call arguments the way near-api-js does."""
    if isinstance(args, (bytes, bytearray, memoryview)):
        return bytes(args)
    return json.dumps(args if args is not None else {}, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# ==================== Access key permissions ====================


@dataclass(frozen=True)
class FullAccessPermission:
    INDEX: ClassVar[int] = 1

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)


@dataclass(frozen=True)
class FunctionCallPermission:
    """Access scoped to calling ``method_names`` (empty means any) on ``receiver_id``."""

    INDEX: ClassVar[int] = 0

    receiver_id: str
    method_names: tuple[str, ...] = ()
    allowance: Optional[int] = 0

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.option(self.allowance, BinaryWriter.u128)
        writer.string(self.receiver_id)
        writer.vec(self.method_names, BinaryWriter.string)


Permission = Union[FullAccessPermission, FunctionCallPermission]


@dataclass(frozen=True)
class AccessKey:
    permission: Permission
    nonce: int = 0

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u64(self.nonce)
        self.permission.serialize(writer)

    @classmethod
    def deserialize(cls, reader: BinaryReader) -> "AccessKey":
        nonce = reader.u64()
        index = reader.u8()
        if index == FullAccessPermission.INDEX:
            return cls(FullAccessPermission(), nonce)
        if index == FunctionCallPermission.INDEX:
            allowance = reader.option(BinaryReader.u128)
            receiver_id = reader.string()
            method_names = tuple(reader.vec(BinaryReader.string))
            return cls(FunctionCallPermission(receiver_id, method_names, allowance), nonce)
        raise ValueError(f"Unknown access key permission index {index}")


# ==================== Actions ====================


@dataclass(frozen=True)
class CreateAccount:
    INDEX: ClassVar[int] = 0

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "CreateAccount":
        return cls()


@dataclass(frozen=True)
class DeployContract:
    INDEX: ClassVar[int] = 1

    code: bytes

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.byte_vec(self.code)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "DeployContract":
        return cls(reader.byte_vec())


@dataclass(frozen=True)
class FunctionCall:
    INDEX: ClassVar[int] = 2

    method_name: str
    args: bytes
    gas: int = DEFAULT_FUNCTION_CALL_GAS
    deposit: int = 0

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.string(self.method_name)
        writer.byte_vec(self.args)
        writer.u64(self.gas)
        writer.u128(self.deposit)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "FunctionCall":
        return cls(reader.string(), reader.byte_vec(), reader.u64(), reader.u128())

    def decoded_args(self) -> Any:
        return json.loads(self.args.decode("utf-8"))


@dataclass(frozen=True)
class Transfer:
    INDEX: ClassVar[int] = 3

    deposit: int

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.u128(self.deposit)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "Transfer":
        return cls(reader.u128())


@dataclass(frozen=True)
class Stake:
    INDEX: ClassVar[int] = 4

    stake: int
    public_key: PublicKey

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.u128(self.stake)
        self.public_key.serialize(writer)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "Stake":
        return cls(reader.u128(), PublicKey.deserialize(reader))


@dataclass(frozen=True)
class AddKey:
    INDEX: ClassVar[int] = 5

    public_key: PublicKey
    access_key: AccessKey

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        self.public_key.serialize(writer)
        self.access_key.serialize(writer)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "AddKey":
        return cls(PublicKey.deserialize(reader), AccessKey.deserialize(reader))


@dataclass(frozen=True)
class DeleteKey:
    INDEX: ClassVar[int] = 6

    public_key: PublicKey

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        self.public_key.serialize(writer)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "DeleteKey":
        return cls(PublicKey.deserialize(reader))


@dataclass(frozen=True)
class DeleteAccount:
    INDEX: ClassVar[int] = 7

    beneficiary_id: str

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.INDEX)
        writer.string(self.beneficiary_id)

    @classmethod
    def deserialize_body(cls, reader: BinaryReader) -> "DeleteAccount":
        return cls(reader.string())


Action = Union[
    CreateAccount, DeployContract, FunctionCall, Transfer, Stake, AddKey, DeleteKey, DeleteAccount
]

_ACTIONS_BY_INDEX = {
    action_cls.INDEX: action_cls
    for action_cls in (
        CreateAccount, DeployContract, FunctionCall, Transfer, Stake, AddKey, DeleteKey, DeleteAccount
    )
}


def _deserialize_action(reader: BinaryReader) -> Action:
    index = reader.u8()
    action_cls = _ACTIONS_BY_INDEX.get(index)
    if action_cls is None:
        raise UnsupportedActionTypeError(index)
    return action_cls.deserialize_body(reader)


def _access_key_from_descriptor(access_key: Mapping[str, Any]) -> AccessKey:
    permission = access_key.get("permission")
    if permission == "FullAccess":
        return AccessKey(FullAccessPermission())
    if not isinstance(permission, Mapping):
        raise ValueError(f"Invalid access key permission: {permission!r}")
    allowance = permission.get("allowance") or "0"
    return AccessKey(
        FunctionCallPermission(
            receiver_id=permission["receiverId"],
            method_names=tuple(permission.get("methodNames") or ()),
            allowance=_to_amount(allowance, "allowance"),
        )
    )


def action_from_descriptor(descriptor: Union[Mapping[str, Any], Action]) -> Action:
    """
    Map a host action descriptor to a typed action.

    Defaults: FunctionCall gas 30 Tgas and deposit 0, FunctionCall-scoped
    AddKey allowance 0. Unknown types raise UnsupportedActionTypeError.
    """
    if isinstance(descriptor, tuple(_ACTIONS_BY_INDEX.values())):
        return descriptor

    action_type = descriptor.get("type")
    params = descriptor.get("params") or {}

    if action_type == "FunctionCall":
        return FunctionCall(
            method_name=params["methodName"],
            args=encode_function_args(params.get("args")),
            gas=_to_amount(params.get("gas") or DEFAULT_FUNCTION_CALL_GAS, "gas"),
            deposit=_to_amount(params.get("deposit") or "0", "deposit"),
        )
    if action_type == "Transfer":
        return Transfer(_to_amount(params["deposit"], "deposit"))
    if action_type == "AddKey":
        return AddKey(
            PublicKey.from_string(params["publicKey"]),
            _access_key_from_descriptor(params["accessKey"]),
        )
    if action_type == "DeleteKey":
        return DeleteKey(PublicKey.from_string(params["publicKey"]))
    if action_type == "CreateAccount":
        return CreateAccount()
    if action_type == "DeleteAccount":
        return DeleteAccount(params["beneficiaryId"])
    if action_type == "Stake":
        return Stake(_to_amount(params["stake"], "stake"), PublicKey.from_string(params["publicKey"]))
    if action_type == "DeployContract":
        return DeployContract(_to_bytes(params["code"], "code"))

    raise UnsupportedActionTypeError(action_type)


# ==================== Transactions ====================


@dataclass(frozen=True)
class Transaction:
    signer_id: str
    public_key: PublicKey
    nonce: int
    receiver_id: str
    block_hash: bytes
    actions: tuple[Action, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "actions", tuple(self.actions))
        if len(self.block_hash) != BLOCK_HASH_LENGTH:
            raise ValueError(f"Block hash must be {BLOCK_HASH_LENGTH} bytes, got {len(self.block_hash)}")

    def serialize_into(self, writer: BinaryWriter) -> None:
        writer.string(self.signer_id)
        self.public_key.serialize(writer)
        writer.u64(self.nonce)
        writer.string(self.receiver_id)
        writer.fixed_bytes(self.block_hash, BLOCK_HASH_LENGTH)
        writer.vec(self.actions, lambda w, action: action.serialize(w))

    def serialize(self) -> bytes:
        """Canonical bytes the device signs."""
        writer = BinaryWriter()
        self.serialize_into(writer)
        return writer.getvalue()

    def get_hash(self) -> bytes:
        return hashlib.sha256(self.serialize()).digest()

    @classmethod
    def deserialize(cls, reader: BinaryReader) -> "Transaction":
        return cls(
            signer_id=reader.string(),
            public_key=PublicKey.deserialize(reader),
            nonce=reader.u64(),
            receiver_id=reader.string(),
            block_hash=reader.fixed_bytes(BLOCK_HASH_LENGTH),
            actions=tuple(reader.vec(_deserialize_action)),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        reader = BinaryReader(data)
        transaction = cls.deserialize(reader)
        reader.expect_end()
        return transaction


@dataclass(frozen=True)
class SignedTransaction:
    transaction: Transaction
    signature: Signature

    def serialize(self) -> bytes:
        writer = BinaryWriter()
        self.transaction.serialize_into(writer)
        self.signature.serialize(writer)
        return writer.getvalue()

    def to_base64(self) -> str:
        """Wire form accepted by ``broadcast_tx_commit``."""
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "SignedTransaction":
        reader = BinaryReader(data)
        transaction = Transaction.deserialize(reader)
        signature = Signature.deserialize(reader)
        reader.expect_end()
        return cls(transaction, signature)

    @classmethod
    def from_base64(cls, encoded: str) -> "SignedTransaction":
        return cls.from_bytes(base64.b64decode(encoded))


def build_transaction(
    signer_id: str,
    public_key: Union[str, PublicKey],
    receiver_id: str,
    nonce: int,
    actions: Iterable[Union[Mapping[str, Any], Action]],
    block_hash: bytes,
) -> Transaction:
    """Assemble an unsigned transaction from already-fetched chain state."""
    return Transaction(
        signer_id=signer_id,
        public_key=PublicKey.from_string(public_key),
        nonce=nonce,
        receiver_id=receiver_id,
        block_hash=bytes(block_hash),
        actions=tuple(action_from_descriptor(action) for action in actions),
    )


async def prepare_transaction(
    rpc: "NearRpcClient",
    signer_id: str,
    public_key: Union[str, PublicKey],
    receiver_id: str,
    actions: Iterable[Union[Mapping[str, Any], Action]],
) -> Transaction:
    """
    Query the signer's access key nonce, then the final block hash, then build.

    Actions are mapped before any network call so unsupported types fail
    without touching the node.
    """
    typed_actions = [action_from_descriptor(action) for action in actions]
    public_key = PublicKey.from_string(public_key)

    access_key = await rpc.view_access_key(signer_id, str(public_key))
    block = await rpc.block()
    block_hash = base58_decode(block["header"]["hash"])

    transaction = build_transaction(
        signer_id,
        public_key,
        receiver_id,
        int(access_key["nonce"]) + 1,
        typed_actions,
        block_hash,
    )
    logger.debug(
        "Prepared transaction",
        extra={
            "event": "transaction.prepared",
            "signer_id": signer_id,
            "receiver_id": receiver_id,
            "nonce": transaction.nonce,
            "actions": len(typed_actions),
        },
    )
    return transaction
