"""
Interaction orchestrator.

``LedgerWallet`` is what a host application talks to. It owns the device
session, sequences APDU operations with the prompt steps that need a user
gesture or on-device approval, and persists the signed-in account only after
its key is confirmed to have full access on-chain.

Session states::

    DISCONNECTED -> CONNECTING -> CONNECTED -> APP_OPEN <-> AWAITING_APPROVAL

A device-initiated disconnect forces DISCONNECTED from any state.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, TypeVar, Union

from nearledger.core.access_keys import AccessKeyVerifier
from nearledger.core.accounts import AccountKeyPair, suggest_implicit_account_id
from nearledger.core.apdu import NearLedgerClient
from nearledger.core.config import (
    STORAGE_KEY_ACCOUNTS,
    STORAGE_KEY_DERIVATION_PATH,
    LedgerSettings,
    NetworkType,
    resolve_network,
)
from nearledger.core.exceptions import (
    LedgerWalletError,
    NotSignedInError,
    UserCancelledPromptError,
)
from nearledger.core.keys import KeyType, PublicKey, Signature
from nearledger.core.offchain_message import NONCE_LENGTH, OffChainMessagePayload, serialize_payload
from nearledger.core.prompts import (
    ACCOUNT_ID_INPUT,
    CANCEL_BUTTON,
    CONFIRM_BUTTON,
    CONNECT_BUTTON,
    RETRY_BUTTON,
    FormValues,
    PromptSurface,
    account_id_prompt,
    approval_prompt,
    connect_prompt,
    error_prompt,
)
from nearledger.core.rpc import NearRpcClient
from nearledger.core.storage import JsonFileStorage, KeyValueStorage
from nearledger.core.transaction import Action, SignedTransaction, action_from_descriptor, prepare_transaction
from nearledger.core.transport import Chooser, LedgerTransport, first_device_chooser, select_backend

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    APP_OPEN = "app_open"
    AWAITING_APPROVAL = "awaiting_approval"


class LedgerWallet:
    """
    Ledger-backed NEAR wallet.

    Every collaborator is injectable: the prompt surface is required, the
    rest default to what ``settings`` describes (HID or Speculos transport,
    JSON file storage, one RPC client per network).
    """

    def __init__(
        self,
        surface: PromptSurface,
        settings: Optional[LedgerSettings] = None,
        transport: Optional[LedgerTransport] = None,
        storage: Optional[KeyValueStorage] = None,
        rpc_factory: Optional[Callable[[NetworkType], NearRpcClient]] = None,
        verifier: Optional[AccessKeyVerifier] = None,
        chooser: Chooser = first_device_chooser,
    ):
        self._surface = surface
        self._settings = settings or LedgerSettings.from_env()
        self._storage = storage or JsonFileStorage(self._settings.storage_path)
        self._rpc_factory = rpc_factory or self._default_rpc
        self._verifier = verifier or AccessKeyVerifier(self._rpc_factory)
        self._chooser = chooser
        self._state = SessionState.DISCONNECTED
        self._transport: Optional[LedgerTransport] = None
        self._client: Optional[NearLedgerClient] = None
        if transport is not None:
            self._attach_transport(transport)

    # ==================== Session ====================

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            logger.debug(
                "Session %s -> %s",
                self._state.value,
                state.value,
                extra={"event": "wallet.state", "from": self._state.value, "to": state.value},
            )
            self._state = state

    def _default_rpc(self, network: NetworkType) -> NearRpcClient:
        return NearRpcClient(self._settings.rpc_url(network), timeout=self._settings.rpc_timeout)

    def _attach_transport(self, transport: LedgerTransport) -> None:
        transport.on_disconnect(self._handle_disconnect)
        self._transport = transport
        self._client = NearLedgerClient(
            transport,
            settle_timeout=self._settings.app_settle_timeout,
            poll_interval=self._settings.app_poll_interval,
        )

    def _get_transport(self) -> LedgerTransport:
        if self._transport is None:
            self._attach_transport(LedgerTransport(select_backend(self._settings), chooser=self._chooser))
        return self._transport

    def _handle_disconnect(self) -> None:
        logger.warning(
            "Ledger disconnected during %s",
            self._state.value,
            extra={"event": "wallet.device_lost", "state": self._state.value},
        )
        self._set_state(SessionState.DISCONNECTED)

    async def disconnect(self) -> None:
        """Close the device session if one is open."""
        if self._transport is not None and self._transport.is_open:
            await self._transport.close()
        self._set_state(SessionState.DISCONNECTED)

    # ==================== Prompt steps ====================

    async def _prompt(self, markup: str, element_ids: Sequence[str]) -> tuple[str, FormValues]:
        """Show ``markup`` and wait for a click on one of ``element_ids``."""
        clicked: asyncio.Future = asyncio.get_running_loop().create_future()

        def make_handler(element_id: str) -> Callable[[FormValues], None]:
            def handler(values: FormValues) -> None:
                if not clicked.done():
                    clicked.set_result((element_id, dict(values or {})))

            return handler

        await self._surface.show(markup)
        for element_id in element_ids:
            self._surface.on_click(element_id, make_handler(element_id))
        return await clicked

    async def _with_retry(self, step: Callable[[], Awaitable[T]]) -> T:
        """
        Run an interactive step, re-rendering recoverable failures with
        Retry and Cancel buttons until it succeeds or the user cancels.
        """
        while True:
            try:
                return await step()
            except UserCancelledPromptError:
                raise
            except LedgerWalletError as exc:
                if not exc.recoverable:
                    raise
                logger.info(
                    "Recoverable failure: %s",
                    exc.message,
                    extra={"event": "wallet.step_failed", "error_type": type(exc).__name__},
                )
                choice, _ = await self._prompt(error_prompt(exc.message), (RETRY_BUTTON, CANCEL_BUTTON))
                if choice == CANCEL_BUTTON:
                    await self._surface.hide()
                    raise UserCancelledPromptError() from exc

    async def _connect_with_gesture(self) -> None:
        choice, _ = await self._prompt(connect_prompt(), (CONNECT_BUTTON, CANCEL_BUTTON))
        await self._surface.hide()
        if choice == CANCEL_BUTTON:
            raise UserCancelledPromptError()
        await self._get_transport().connect()

    async def _ensure_connected(self) -> None:
        transport = self._get_transport()
        if transport.is_open:
            return

        self._set_state(SessionState.CONNECTING)
        try:
            authorized = await transport.authorized_devices()
            if authorized:
                await transport.open(authorized[0])
            else:
                await self._with_retry(self._connect_with_gesture)
        except Exception:
            self._set_state(SessionState.DISCONNECTED)
            raise
        self._set_state(SessionState.CONNECTED)

    async def _on_device(self, action: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a device operation that may need approval, with the wait UI shown."""
        self._set_state(SessionState.AWAITING_APPROVAL)
        await self._surface.show(approval_prompt(action))
        try:
            result = await operation()
        finally:
            await self._surface.hide()
            if self._state == SessionState.AWAITING_APPROVAL:
                self._set_state(SessionState.CONNECTED)
        return result

    async def _ensure_app_open(self) -> NearLedgerClient:
        await self._ensure_connected()
        client = self._client
        await self._with_retry(lambda: self._on_device("opening the NEAR app", client.open_near_application))
        self._set_state(SessionState.APP_OPEN)
        return client

    async def _device_approval(self, action: str, operation: Callable[[], Awaitable[T]]) -> T:
        result = await self._with_retry(lambda: self._on_device(action, operation))
        self._set_state(SessionState.APP_OPEN)
        return result

    async def _prompt_for_verified_account(
        self, network: NetworkType, suggestion: str, public_key: str
    ) -> str:
        value, error = suggestion, None
        while True:
            choice, values = await self._prompt(
                account_id_prompt(value, error), (CONFIRM_BUTTON, CANCEL_BUTTON)
            )
            if choice == CANCEL_BUTTON:
                await self._surface.hide()
                raise UserCancelledPromptError()

            account_id = (values.get(ACCOUNT_ID_INPUT) or "").strip()
            if not account_id:
                value, error = "", "Enter the NEAR account ID this key has full access to."
                continue
            try:
                await self._verifier.verify(network, account_id, public_key)
            except LedgerWalletError as exc:
                if not exc.recoverable:
                    raise
                value, error = account_id, exc.message
                continue

            await self._surface.hide()
            return account_id

    # ==================== Accounts ====================

    async def _stored_derivation_path(self) -> str:
        return await self._storage.get(STORAGE_KEY_DERIVATION_PATH) or self._settings.derivation_path

    async def _require_account(self) -> AccountKeyPair:
        accounts = await self.get_accounts()
        if not accounts:
            raise NotSignedInError()
        return AccountKeyPair.from_dict(accounts[0])

    def _network(self, network: Union[NetworkType, str, None]) -> NetworkType:
        return resolve_network(network) if network is not None else self._settings.network

    async def sign_in(
        self,
        network: Union[NetworkType, str, None] = None,
        derivation_path: Optional[str] = None,
    ) -> list[dict[str, str]]:
        """
        Connect, read the device public key and bind it to an account id.

        The account id is prompted for (prefilled with the implicit account
        suggestion) and verified on-chain on every submission. Account and
        derivation path are stored together only once verification passes.
        On any failure the device session is closed before the error
        propagates.
        """
        resolved_network = self._network(network)
        try:
            client = await self._ensure_app_open()
            path = derivation_path or await self._stored_derivation_path()
            raw_key = await self._device_approval(
                "sharing your public key", lambda: client.get_public_key(path)
            )
            public_key = str(PublicKey.from_ed25519_bytes(raw_key))

            account_id = await self._prompt_for_verified_account(
                resolved_network, suggest_implicit_account_id(raw_key), public_key
            )
            accounts = [AccountKeyPair(account_id, public_key).to_dict()]
            await self._storage.set_many(
                {
                    STORAGE_KEY_ACCOUNTS: json.dumps(accounts),
                    STORAGE_KEY_DERIVATION_PATH: path,
                }
            )
        except Exception:
            await self._surface.hide()
            await self.disconnect()
            raise

        logger.info(
            "Signed in as %s",
            account_id,
            extra={
                "event": "wallet.signed_in",
                "account_id": account_id,
                "public_key": public_key,
                "network": resolved_network.value,
            },
        )
        return accounts

    async def sign_out(self) -> bool:
        await self.disconnect()
        await self._storage.remove(STORAGE_KEY_ACCOUNTS)
        await self._storage.remove(STORAGE_KEY_DERIVATION_PATH)
        logger.info("Signed out", extra={"event": "wallet.signed_out"})
        return True

    async def get_accounts(self) -> list[dict[str, str]]:
        raw = await self._storage.get(STORAGE_KEY_ACCOUNTS)
        if not raw:
            return []
        try:
            accounts = json.loads(raw)
            return [AccountKeyPair.from_dict(account).to_dict() for account in accounts]
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning(
                "Ignoring unreadable stored accounts: %s",
                exc,
                extra={"event": "wallet.accounts_corrupt"},
            )
            return []

    # ==================== Signing ====================

    async def sign_and_send_transaction(
        self,
        receiver_id: str,
        actions: Iterable[Union[Mapping[str, Any], Action]],
        network: Union[NetworkType, str, None] = None,
    ) -> Any:
        """Build, sign on the device and broadcast one transaction; returns the RPC result."""
        account = await self._require_account()
        resolved_network = self._network(network)
        typed_actions = [action_from_descriptor(action) for action in actions]
        path = await self._stored_derivation_path()

        client = await self._ensure_app_open()
        rpc = self._rpc_factory(resolved_network)
        transaction = await prepare_transaction(
            rpc, account.account_id, account.public_key, receiver_id, typed_actions
        )
        payload = transaction.serialize()

        signature = await self._device_approval(
            "the transaction", lambda: client.sign_transaction(payload, path)
        )
        signed = SignedTransaction(transaction, Signature(KeyType.ED25519, signature))

        result = await rpc.broadcast_tx_commit(signed.to_base64())
        logger.info(
            "Broadcast transaction %s -> %s",
            account.account_id,
            receiver_id,
            extra={
                "event": "wallet.transaction_sent",
                "signer_id": account.account_id,
                "receiver_id": receiver_id,
                "nonce": transaction.nonce,
                "size": len(payload),
                "network": resolved_network.value,
            },
        )
        return result

    async def sign_and_send_transactions(
        self,
        transactions: Iterable[Mapping[str, Any]],
        network: Union[NetworkType, str, None] = None,
    ) -> list[Any]:
        """Sign and send each ``{"receiverId", "actions"}`` in order, one full cycle at a time."""
        results = []
        for transaction in transactions:
            results.append(
                await self.sign_and_send_transaction(
                    transaction["receiverId"], transaction["actions"], network=network
                )
            )
        return results

    async def sign_message(
        self,
        message: str,
        recipient: str,
        nonce: Optional[bytes] = None,
        callback_url: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Sign a NEP-413 off-chain message.

        ``nonce`` defaults to 32 zero bytes. A ``callback_url`` is accepted
        for interface parity but never encoded.
        """
        account = await self._require_account()
        if callback_url:
            logger.warning(
                "Ignoring callback URL for off-chain message",
                extra={"event": "wallet.callback_url_dropped"},
            )
        payload = serialize_payload(
            OffChainMessagePayload(
                message=message,
                nonce=bytes(nonce) if nonce is not None else bytes(NONCE_LENGTH),
                recipient=recipient,
            )
        )
        path = await self._stored_derivation_path()

        client = await self._ensure_app_open()
        signature = await self._device_approval(
            "the message", lambda: client.sign_message(payload, path)
        )
        logger.info(
            "Signed off-chain message for %s",
            recipient,
            extra={"event": "wallet.message_signed", "account_id": account.account_id, "size": len(payload)},
        )
        return {
            "accountId": account.account_id,
            "publicKey": account.public_key,
            "signature": base64.b64encode(signature).decode("ascii"),
        }
