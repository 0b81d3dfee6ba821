"""
Shared fakes for nearledger tests.

- ``SimulatedNearApp``: a ledgerblue-style dongle running the NEAR app and
  dashboard, signing with a real ed25519 key
- ``FakeBackend``: hands the simulated dongle to the real ``LedgerTransport``
- ``FakeNearNode``: JSON-RPC node behind ``httpx.MockTransport``
- ``FakePromptSurface``: answers prompts from a click script
"""

import asyncio
import hashlib
import json
import threading

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from ledgerblue.commException import CommException

from nearledger.core.config import LedgerSettings, NetworkType, TransportKind
from nearledger.core.keys import PublicKey, base58_encode
from nearledger.core.rpc import NearRpcClient
from nearledger.core.storage import MemoryStorage
from nearledger.core.transaction import SignedTransaction
from nearledger.core.transport import DeviceDescriptor, LedgerTransport
from nearledger.core.wallet import LedgerWallet

NEP413_TAG = (2 ** 31 + 413).to_bytes(4, "little")
PATH_LENGTH = 20


class SimulatedNearApp:
    """Answers APDUs the way a Ledger with the NEAR app installed does."""

    def __init__(self, running_app="NEAR"):
        self.private_key = Ed25519PrivateKey.generate()
        self.running_app = running_app
        self.installed = True
        self.locked = False
        self.decline_signing = False
        self.decline_open = False
        self.closed = False
        self.apdus = []
        self.signed_payloads = []
        self.key_paths = []
        self.approval_gate = None
        self.awaiting_user = threading.Event()
        self._buffer = b""

    @property
    def raw_public_key(self):
        return self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    @property
    def public_key(self):
        return str(PublicKey.from_ed25519_bytes(self.raw_public_key))

    def hold_approval(self):
        """Block the next signature until ``release()``, like a user who has not pressed yet."""
        self.approval_gate = threading.Event()

    def release(self):
        if self.approval_gate is not None:
            self.approval_gate.set()

    def instructions(self, cla=None):
        return [apdu[1] for apdu in self.apdus if cla is None or apdu[0] == cla]

    def exchange(self, apdu, timeout=20000):
        apdu = bytes(apdu)
        self.apdus.append(apdu)
        cla, ins, p1, p2, lc = apdu[:5]
        data = apdu[5:5 + lc]
        sw, response = self._dispatch(cla, ins, p1, p2, data)
        if sw != 0x9000:
            raise CommException("Invalid status %04x" % sw, sw, bytearray(response))
        return bytearray(response)

    def close(self):
        self.closed = True

    def _app_info(self):
        version = b"1.2.3" if self.running_app == "NEAR" else b"2.1.0"
        name = self.running_app.encode("ascii")
        return bytes([1, len(name)]) + name + bytes([len(version)]) + version + bytes([1, 0])

    def _dispatch(self, cla, ins, p1, p2, data):
        if self.locked:
            return 0x5515, b""
        if cla == 0xB0 and ins == 0x01:
            return 0x9000, self._app_info()
        if cla == 0xB0 and ins == 0xA7:
            self.running_app = "BOLOS"
            return 0x9000, b""
        if cla == 0xE0 and ins == 0xD8:
            if not self.installed:
                return 0x6807, b""
            if self.decline_open:
                return 0x5501, b""
            self.running_app = data.decode("ascii")
            return 0x9000, b""
        if cla != 0x80 or self.running_app != "NEAR":
            return 0x6E00, b""

        if ins == 0x06:
            self._buffer = b""
            return 0x9000, bytes([2, 4, 0])
        if ins == 0x04:
            self.key_paths.append(data)
            return 0x9000, self.raw_public_key
        if ins in (0x02, 0x07):
            self._buffer += data
            if p1 != 0x80:
                return 0x9000, b""
            payload = self._buffer[PATH_LENGTH:]
            self._buffer = b""
            if self.approval_gate is not None:
                self.awaiting_user.set()
                self.approval_gate.wait(timeout=5)
            if self.decline_signing:
                return 0x6985, b""
            self.signed_payloads.append(payload)
            signed = payload if ins == 0x02 else NEP413_TAG + payload
            return 0x9000, self.private_key.sign(hashlib.sha256(signed).digest())
        return 0x6D00, b""


class FakeBackend:
    kind = TransportKind.HID

    def __init__(self, app):
        self.app = app
        self.present = True
        self.opened = 0
        self.device = DeviceDescriptor(path="sim-0", product="Nano S Plus", kind=self.kind)

    def list_devices(self):
        return [self.device] if self.present else []

    def open(self, device, debug=False):
        if not self.present:
            raise OSError("open failed")
        self.opened += 1
        self.app.closed = False
        return self.app


class FakeNearNode:
    """In-memory NEAR RPC node."""

    def __init__(self):
        self.access_keys = {}
        self.block_hash = base58_encode(bytes(range(32)))
        self.requests = []
        self.broadcasts = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def add_key(self, account_id, public_key, permission="FullAccess", nonce=7):
        self.access_keys[(account_id, public_key)] = {"nonce": nonce, "permission": permission}

    def methods(self):
        return [request["method"] for request in self.requests]

    def rpc_factory(self, network):
        return NearRpcClient(f"https://rpc.{network.value}.test", client=self.client)

    def handle(self, request):
        body = json.loads(request.content)
        self.requests.append(body)
        method, params = body["method"], body["params"]

        if method == "query":
            key = (params["account_id"], params["public_key"])
            if key not in self.access_keys:
                return self._error(
                    "UNKNOWN_ACCESS_KEY",
                    f"Access key for public key {params['public_key']} does not exist while viewing",
                )
            record = self.access_keys[key]
            return self._result(
                {
                    "nonce": record["nonce"],
                    "permission": record["permission"],
                    "block_height": 100,
                    "block_hash": self.block_hash,
                }
            )
        if method == "block":
            return self._result({"header": {"hash": self.block_hash, "height": 100}})
        if method == "broadcast_tx_commit":
            self.broadcasts.append(params[0])
            transaction = SignedTransaction.from_base64(params[0]).transaction
            key = (transaction.signer_id, str(transaction.public_key))
            if key in self.access_keys:
                self.access_keys[key]["nonce"] = transaction.nonce
            return self._result(
                {"status": {"SuccessValue": ""}, "transaction_outcome": {"id": "tx-hash"}}
            )
        return self._error("UNKNOWN_METHOD", f"Method {method} not found")

    @staticmethod
    def _result(result):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": "dontcare", "result": result})

    @staticmethod
    def _error(cause, data):
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": "dontcare",
                "error": {
                    "name": "HANDLER_ERROR",
                    "cause": {"name": cause, "info": {}},
                    "code": -32000,
                    "message": "Server error",
                    "data": data,
                },
            },
        )


class FakePromptSurface:
    """
    Records what was shown and clicks scripted buttons.

    ``script`` holds ``(element_id, form_values[, before_click])`` answers
    consumed in order; a prompt with no scripted answer fails the test
    instead of hanging.
    """

    def __init__(self, script=None):
        self.script = list(script or [])
        self.shown = []
        self.hidden = 0
        self.handlers = {}
        self._answered = False

    async def show(self, markup):
        self.shown.append(markup)
        self.handlers = {}
        self._answered = False

    async def hide(self):
        self.hidden += 1

    def on_click(self, element_id, handler):
        self.handlers[element_id] = handler
        if self._answered:
            return
        if not self.script:
            raise AssertionError(f"Unexpected prompt: {self.shown[-1] if self.shown else ''}")
        if self.script[0][0] == element_id:
            entry = self.script.pop(0)
            values = entry[1]
            if len(entry) > 2:
                # Lets a test change device state before the click lands
                entry[2]()
            self._answered = True
            asyncio.get_running_loop().call_soon(handler, values)


@pytest.fixture
def near_app():
    app = SimulatedNearApp()
    yield app
    app.release()


@pytest.fixture
def backend(near_app):
    return FakeBackend(near_app)


@pytest.fixture
def transport(backend):
    return LedgerTransport(backend)


@pytest.fixture
def node():
    return FakeNearNode()


@pytest.fixture
def surface():
    return FakePromptSurface()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def settings(tmp_path):
    return LedgerSettings(
        network=NetworkType.TESTNET,
        app_settle_timeout=0.5,
        app_poll_interval=0.01,
        storage_path=str(tmp_path / "storage.json"),
    )


@pytest.fixture
def wallet(surface, settings, transport, storage, node):
    return LedgerWallet(
        surface,
        settings=settings,
        transport=transport,
        storage=storage,
        rpc_factory=node.rpc_factory,
    )


@pytest.fixture
def signed_in(storage, near_app, node):
    """Storage holding a verified account for the simulated device key."""
    storage.data["ledger:accounts"] = json.dumps(
        [{"accountId": "alice.testnet", "publicKey": near_app.public_key}]
    )
    storage.data["ledger:derivationPath"] = "44'/397'/0'/0'/1'"
    node.add_key("alice.testnet", near_app.public_key, nonce=41)
    return "alice.testnet"
