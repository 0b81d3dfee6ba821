"""
Unit tests for LedgerWallet transaction signing.

Coverage targets:
- Full cycle: nonce query, block hash, device signature, broadcast
- Guard rails that fail before any device or network traffic
- Decline on device followed by Retry or Cancel
"""

import hashlib

import pytest

from nearledger.core.config import DEFAULT_FUNCTION_CALL_GAS
from nearledger.core.exceptions import (
    NotSignedInError,
    UnsupportedActionTypeError,
    UserCancelledPromptError,
)
from nearledger.core.keys import KeyType
from nearledger.core.transaction import DeployContract, FunctionCall, SignedTransaction, Transfer
from nearledger.core.wallet import SessionState

CONNECT = ("connectLedgerBtn", {})

FT_TRANSFER = {
    "type": "FunctionCall",
    "params": {
        "methodName": "ft_transfer",
        "args": {"receiver_id": "bob.testnet", "amount": "1"},
    },
}


def _broadcast(node, index=0):
    return SignedTransaction.from_base64(node.broadcasts[index])


def _verify(near_app, signed):
    digest = hashlib.sha256(signed.transaction.serialize()).digest()
    near_app.private_key.public_key().verify(signed.signature.data, digest)


@pytest.mark.asyncio
async def test_requires_signed_in_account(wallet, near_app, node):
    with pytest.raises(NotSignedInError):
        await wallet.sign_and_send_transaction("bob.testnet", [FT_TRANSFER])

    assert near_app.apdus == []
    assert node.requests == []


@pytest.mark.asyncio
async def test_function_call_is_signed_and_broadcast(wallet, surface, near_app, node, signed_in):
    surface.script = [CONNECT]

    result = await wallet.sign_and_send_transaction("usdt.testnet", [FT_TRANSFER])

    assert result["transaction_outcome"]["id"] == "tx-hash"
    assert node.methods() == ["query", "block", "broadcast_tx_commit"]
    assert node.requests[0]["params"]["account_id"] == signed_in

    signed = _broadcast(node)
    transaction = signed.transaction
    assert transaction.signer_id == signed_in
    assert str(transaction.public_key) == near_app.public_key
    assert transaction.receiver_id == "usdt.testnet"
    assert transaction.nonce == 42
    assert transaction.block_hash == bytes(range(32))

    action = transaction.actions[0]
    assert isinstance(action, FunctionCall)
    assert action.method_name == "ft_transfer"
    assert action.gas == DEFAULT_FUNCTION_CALL_GAS
    assert action.deposit == 0
    assert action.decoded_args() == {"receiver_id": "bob.testnet", "amount": "1"}

    assert signed.signature.key_type is KeyType.ED25519
    assert near_app.signed_payloads == [transaction.serialize()]
    _verify(near_app, signed)
    assert wallet.state is SessionState.APP_OPEN


@pytest.mark.asyncio
async def test_signing_sends_version_before_payload(wallet, surface, near_app, node, signed_in):
    surface.script = [CONNECT]

    await wallet.sign_and_send_transaction("bob.testnet", [{"type": "Transfer", "params": {"deposit": "5"}}])

    assert near_app.instructions(cla=0x80) == [0x06, 0x02]
    sign_apdu = [apdu for apdu in near_app.apdus if apdu[:2] == bytes([0x80, 0x02])][0]
    assert sign_apdu[2] == 0x80
    assert sign_apdu[3] == ord("W")
    assert any("the transaction" in markup for markup in surface.shown)


@pytest.mark.asyncio
async def test_large_transaction_is_chunked(wallet, surface, near_app, node, signed_in):
    surface.script = [CONNECT]
    code = bytes(range(256)) * 3

    await wallet.sign_and_send_transaction(signed_in, [DeployContract(code)])

    sign_apdus = [apdu for apdu in near_app.apdus if apdu[:2] == bytes([0x80, 0x02])]
    assert len(sign_apdus) > 1
    assert [apdu[2] for apdu in sign_apdus] == [0x00] * (len(sign_apdus) - 1) + [0x80]
    assert all(apdu[4] <= 250 for apdu in sign_apdus)
    _verify(near_app, _broadcast(node))


@pytest.mark.asyncio
async def test_unsupported_action_fails_before_any_traffic(wallet, surface, near_app, node, signed_in):
    with pytest.raises(UnsupportedActionTypeError):
        await wallet.sign_and_send_transaction("bob.testnet", [{"type": "Teleport", "params": {}}])

    assert near_app.apdus == []
    assert node.requests == []
    assert surface.shown == []


@pytest.mark.asyncio
async def test_transactions_are_sent_sequentially(wallet, surface, near_app, node, signed_in):
    surface.script = [CONNECT]

    results = await wallet.sign_and_send_transactions(
        [
            {"receiverId": "bob.testnet", "actions": [{"type": "Transfer", "params": {"deposit": "1"}}]},
            {"receiverId": "carol.testnet", "actions": [Transfer(2)]},
        ]
    )

    assert len(results) == 2
    assert node.methods() == ["query", "block", "broadcast_tx_commit"] * 2
    first, second = _broadcast(node, 0), _broadcast(node, 1)
    assert first.transaction.receiver_id == "bob.testnet"
    assert second.transaction.receiver_id == "carol.testnet"
    assert (first.transaction.nonce, second.transaction.nonce) == (42, 43)
    assert len(near_app.signed_payloads) == 2


@pytest.mark.asyncio
async def test_declined_then_cancel_broadcasts_nothing(wallet, surface, near_app, node, signed_in):
    near_app.decline_signing = True
    surface.script = [CONNECT, ("cancelBtn", {})]

    with pytest.raises(UserCancelledPromptError) as exc:
        await wallet.sign_and_send_transaction("bob.testnet", [FT_TRANSFER])

    assert "declined" in str(exc.value.__cause__)
    assert node.broadcasts == []
    assert any("You declined the request on your Ledger." in markup for markup in surface.shown)


@pytest.mark.asyncio
async def test_declined_then_retry_signs(wallet, surface, near_app, node, signed_in):
    near_app.decline_signing = True

    def approve():
        near_app.decline_signing = False

    surface.script = [CONNECT, ("retryBtn", {}, approve)]

    await wallet.sign_and_send_transaction("bob.testnet", [FT_TRANSFER])

    assert len(node.broadcasts) == 1
    assert near_app.instructions(cla=0x80).count(0x06) == 2
    _verify(near_app, _broadcast(node))


@pytest.mark.asyncio
async def test_reuses_open_session(wallet, surface, near_app, node, signed_in, backend):
    surface.script = [CONNECT]
    await wallet.sign_and_send_transaction("bob.testnet", [Transfer(1)])
    await wallet.sign_and_send_transaction("bob.testnet", [Transfer(1)])

    assert backend.opened == 1
    assert len(node.broadcasts) == 2
