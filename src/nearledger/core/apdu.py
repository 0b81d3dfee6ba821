"""
APDU command channel for the NEAR Ledger app.

Frames payloads into the device's chunked command/response protocol and
exposes the typed NEAR app operations plus the dashboard calls used to make
sure the NEAR app is the one running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from nearledger.core.config import DASHBOARD_APP_NAME, NEAR_APP_NAME
from nearledger.core.derivation_path import encode_derivation_path
from nearledger.core.exceptions import (
    AppMissingError,
    DeviceLockedError,
    DeviceStatusError,
    ProtocolFramingError,
    UserDeclinedOnDeviceError,
)

logger = logging.getLogger(__name__)

# NEAR app instructions
CLA = 0x80
INS_SIGN_TRANSACTION = 0x02
INS_GET_PUBLIC_KEY = 0x04
INS_GET_VERSION = 0x06
INS_SIGN_NEP413_MESSAGE = 0x07

# Dashboard / OS instructions
CLA_OS = 0xB0
INS_GET_APP_NAME = 0x01
INS_QUIT_APP = 0xA7

CLA_OPEN_APP = 0xE0
INS_OPEN_APP = 0xD8

P1_MORE = 0x00
P1_LAST = 0x80
P1_IGNORE = 0x00
P2_IGNORE = 0x00
NETWORK_ID = ord("W")

CHUNK_SIZE = 250
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

SW_OK = 0x9000
SW_DEVICE_LOCKED = 0x5515
SW_APP_MISSING = 0x6807
SW_USER_REFUSED = 0x5501
SW_CONDITIONS_NOT_SATISFIED = 0x6985


class ApduTransport(Protocol):
    async def send(self, cla: int, ins: int, p1: int, p2: int, data: bytes = b"") -> bytes:
        ...


def status_error(sw: int) -> DeviceStatusError:
    """Translate a status word into an exception with an actionable message."""
    if sw == SW_DEVICE_LOCKED:
        return DeviceLockedError("Your Ledger is locked. Unlock it with your PIN and try again.", sw)
    if sw == SW_APP_MISSING:
        return AppMissingError(
            "The NEAR app is not installed on your Ledger. Install it with Ledger Live and try again.",
            sw,
        )
    if sw in (SW_CONDITIONS_NOT_SATISFIED, SW_USER_REFUSED):
        return UserDeclinedOnDeviceError("You declined the request on your Ledger.", sw)
    return DeviceStatusError(
        "Your Ledger did not accept the request. Make sure it is unlocked with the NEAR app "
        "open, then approve the request on the device.",
        sw,
    )


def chunk_payload(data: bytes, chunk_size: int = CHUNK_SIZE) -> list[tuple[int, bytes]]:
    """Split ``data`` into ``(p1, chunk)`` pairs; only the last carries P1_LAST."""
    if not data:
        raise ProtocolFramingError("Nothing to send: payload is empty")
    chunks = []
    for offset in range(0, len(data), chunk_size):
        is_last = offset + chunk_size >= len(data)
        chunks.append((P1_LAST if is_last else P1_MORE, data[offset:offset + chunk_size]))
    return chunks


class NearLedgerClient:
    """
    Typed operations over a transport.

    The client never reconnects and never retries; one command is in flight
    at a time because every call awaits its response before returning.
    """

    def __init__(
        self,
        transport: ApduTransport,
        settle_timeout: float = 10.0,
        poll_interval: float = 0.25,
    ):
        self._transport = transport
        self._settle_timeout = settle_timeout
        self._poll_interval = poll_interval

    async def _exchange(self, cla: int, ins: int, p1: int, p2: int, data: bytes = b"") -> bytes:
        response = await self._transport.send(cla, ins, p1, p2, data)
        if len(response) < 2:
            raise ProtocolFramingError(f"Response too short to carry a status word ({len(response)} bytes)")
        sw = int.from_bytes(response[-2:], "big")
        if sw != SW_OK:
            logger.info(
                "Device returned status 0x%04x for INS 0x%02x",
                sw,
                ins,
                extra={"event": "apdu.status", "sw": sw, "cla": cla, "ins": ins},
            )
            raise status_error(sw)
        return bytes(response[:-2])

    async def get_version(self) -> str:
        response = await self._exchange(CLA, INS_GET_VERSION, P1_IGNORE, P2_IGNORE)
        if len(response) < 3:
            raise ProtocolFramingError(f"Unexpected version response: {response.hex()}")
        major, minor, patch = response[:3]
        return f"{major}.{minor}.{patch}"

    async def get_public_key(self, derivation_path: str) -> bytes:
        response = await self._exchange(
            CLA,
            INS_GET_PUBLIC_KEY,
            P1_IGNORE,
            NETWORK_ID,
            encode_derivation_path(derivation_path),
        )
        if len(response) != PUBLIC_KEY_LENGTH:
            raise ProtocolFramingError(
                f"Expected a {PUBLIC_KEY_LENGTH}-byte public key, got {len(response)} bytes"
            )
        return response

    async def _sign(self, ins: int, payload: bytes, derivation_path: str) -> bytes:
        # Resets a buffer left half-filled by an aborted earlier signing request
        await self.get_version()

        data = encode_derivation_path(derivation_path) + bytes(payload)
        chunks = chunk_payload(data)
        logger.debug(
            "Sending %d bytes in %d chunks",
            len(data),
            len(chunks),
            extra={"event": "apdu.sign_start", "ins": ins, "size": len(data), "chunks": len(chunks)},
        )

        signature = b""
        for p1, chunk in chunks:
            signature = await self._exchange(CLA, ins, p1, NETWORK_ID, chunk)

        if len(signature) != SIGNATURE_LENGTH:
            raise ProtocolFramingError(
                f"Expected a {SIGNATURE_LENGTH}-byte signature, got {len(signature)} bytes"
            )
        return signature

    async def sign_transaction(self, serialized_transaction: bytes, derivation_path: str) -> bytes:
        return await self._sign(INS_SIGN_TRANSACTION, serialized_transaction, derivation_path)

    async def sign_message(self, nep413_payload: bytes, derivation_path: str) -> bytes:
        return await self._sign(INS_SIGN_NEP413_MESSAGE, nep413_payload, derivation_path)

    # ==================== App lifecycle ====================

    async def get_running_app(self) -> tuple[str, str]:
        """Return ``(name, version)`` of the app currently running."""
        response = await self._exchange(CLA_OS, INS_GET_APP_NAME, 0x00, 0x00)
        try:
            if response[0] != 0x01:
                raise ProtocolFramingError(f"Unknown app info format {response[0]}")
            name_length = response[1]
            name = response[2:2 + name_length].decode("ascii")
            version_offset = 2 + name_length
            version_length = response[version_offset]
            version = response[version_offset + 1:version_offset + 1 + version_length].decode("ascii")
        except (IndexError, UnicodeDecodeError) as exc:
            raise ProtocolFramingError(f"Malformed app info response: {response.hex()}") from exc
        return name, version

    async def quit_app(self) -> None:
        await self._exchange(CLA_OS, INS_QUIT_APP, 0x00, 0x00)

    async def open_app(self, name: str) -> None:
        await self._exchange(CLA_OPEN_APP, INS_OPEN_APP, 0x00, 0x00, name.encode("ascii"))

    async def _wait_for_app(self, expected: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settle_timeout
        while True:
            name, _ = await self.get_running_app()
            if name == expected:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self._poll_interval)

    async def open_near_application(self) -> None:
        """
        Make the NEAR app the running app.

        Quits whatever else is running, waits (bounded polling) for the
        dashboard, then asks the dashboard to open NEAR, which the user
        confirms on the device.
        """
        name, version = await self.get_running_app()
        if name == NEAR_APP_NAME:
            logger.debug(
                "NEAR app already open (v%s)",
                version,
                extra={"event": "apdu.app_already_open", "version": version},
            )
            return

        if name != DASHBOARD_APP_NAME:
            logger.info(
                "Quitting %s to open NEAR",
                name,
                extra={"event": "apdu.quit_app", "app": name},
            )
            await self.quit_app()
            if not await self._wait_for_app(DASHBOARD_APP_NAME):
                raise DeviceStatusError(
                    f"{name} did not close on your Ledger. Quit it on the device and try again.",
                    SW_CONDITIONS_NOT_SATISFIED,
                )

        try:
            await self.open_app(NEAR_APP_NAME)
        except DeviceStatusError as exc:
            if exc.sw == SW_APP_MISSING:
                raise AppMissingError(exc.message, exc.sw) from exc
            if exc.sw in (SW_USER_REFUSED, SW_CONDITIONS_NOT_SATISFIED):
                raise UserDeclinedOnDeviceError(
                    "You declined opening the NEAR app on your Ledger.", exc.sw
                ) from exc
            raise

        if not await self._wait_for_app(NEAR_APP_NAME):
            raise DeviceStatusError(
                "The NEAR app did not start on your Ledger. Open it on the device and try again.",
                SW_CONDITIONS_NOT_SATISFIED,
            )
        logger.info("NEAR app opened", extra={"event": "apdu.app_opened"})
