"""
Ledger transport adapter.

Wraps ledgerblue dongles (HID through hidapi, or TCP to the Speculos
emulator) behind one async interface:

- ``connect()`` asks a chooser to pick among present devices, then opens it
- ``authorized_devices()`` / ``open()`` silently reopen a device picked before
- ``send()`` returns the response payload followed by the 2-byte status word
- ``on_disconnect()`` / ``notify_disconnect()`` propagate device loss

ledgerblue is blocking, so every exchange runs in a worker thread while the
event loop watches for a disconnect notification.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import struct
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from ledgerblue.commException import CommException

from nearledger.core.config import LedgerSettings, TransportKind
from nearledger.core.exceptions import (
    DeviceNotConnectedError,
    TransportUnavailableError,
    UserCancelledPromptError,
)

logger = logging.getLogger(__name__)

LEDGER_VENDOR_ID = 0x2C97
LEDGER_USAGE_PAGE = 0xFFA0


@dataclass(frozen=True)
class DeviceDescriptor:
    """A device the backend can open; ``path`` identifies it across reopenings."""

    path: str
    product: str
    kind: TransportKind


class Dongle(Protocol):
    def exchange(self, apdu: bytes, timeout: int = ...) -> bytes:
        ...

    def close(self) -> None:
        ...


class DeviceBackend(Protocol):
    kind: TransportKind

    def list_devices(self) -> list[DeviceDescriptor]:
        ...

    def open(self, device: DeviceDescriptor, debug: bool = False) -> Dongle:
        ...


class HidDeviceBackend:
    """USB HID devices through hidapi, the same discovery ledgerblue's getDongle does."""

    kind = TransportKind.HID

    def list_devices(self) -> list[DeviceDescriptor]:
        import hid

        devices = []
        for info in hid.enumerate(LEDGER_VENDOR_ID, 0):
            if info.get("interface_number") == 0 or info.get("usage_page") == LEDGER_USAGE_PAGE:
                path = info["path"]
                if isinstance(path, bytes):
                    path = path.decode("utf-8", "replace")
                devices.append(
                    DeviceDescriptor(path=path, product=info.get("product_string") or "Ledger", kind=self.kind)
                )
        return devices

    def open(self, device: DeviceDescriptor, debug: bool = False) -> Dongle:
        import hid
        from ledgerblue.comm import HIDDongleHIDAPI

        dev = hid.device()
        dev.open_path(device.path.encode("utf-8"))
        dev.set_nonblocking(True)
        return HIDDongleHIDAPI(dev, True, debug)


class TcpDeviceBackend:
    """The Speculos emulator's APDU socket."""

    kind = TransportKind.TCP

    def __init__(self, host: str = "127.0.0.1", port: int = 9999):
        self.host = host
        self.port = port

    def list_devices(self) -> list[DeviceDescriptor]:
        return [DeviceDescriptor(path=f"{self.host}:{self.port}", product="Speculos", kind=self.kind)]

    def open(self, device: DeviceDescriptor, debug: bool = False) -> Dongle:
        from ledgerblue.commTCP import getDongle

        return getDongle(self.host, self.port, debug)


def select_backend(settings: LedgerSettings) -> DeviceBackend:
    """Pick the backend once from configuration and host capability."""
    kind = settings.transport
    if kind == TransportKind.TCP:
        return TcpDeviceBackend(settings.speculos_host, settings.speculos_port)
    if importlib.util.find_spec("hid") is not None:
        return HidDeviceBackend()
    raise TransportUnavailableError(
        "No USB HID support found. Install hidapi (pip install hidapi) or set "
        "NEARLEDGER_TRANSPORT=tcp to use the Speculos emulator."
    )


Chooser = Callable[[Sequence[DeviceDescriptor]], Awaitable[Optional[DeviceDescriptor]]]


async def first_device_chooser(devices: Sequence[DeviceDescriptor]) -> Optional[DeviceDescriptor]:
    return devices[0] if devices else None


class LedgerTransport:
    """Owns at most one open device handle."""

    def __init__(
        self,
        backend: DeviceBackend,
        chooser: Chooser = first_device_chooser,
        debug: bool = False,
    ):
        self._backend = backend
        self._chooser = chooser
        self._debug = debug
        self._dongle: Optional[Dongle] = None
        self._device: Optional[DeviceDescriptor] = None
        self._authorized: list[str] = []
        self._disconnected: Optional[asyncio.Event] = None
        self._disconnect_callbacks: list[Callable[[], None]] = []
        self._lock = asyncio.Lock()

    @property
    def kind(self) -> TransportKind:
        return self._backend.kind

    @property
    def is_open(self) -> bool:
        return self._dongle is not None

    @property
    def device(self) -> Optional[DeviceDescriptor]:
        return self._device

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    async def _list_devices(self) -> list[DeviceDescriptor]:
        try:
            return await asyncio.to_thread(self._backend.list_devices)
        except OSError as exc:
            raise TransportUnavailableError(f"Could not enumerate Ledger devices: {exc}") from exc

    async def authorized_devices(self) -> list[DeviceDescriptor]:
        """Devices picked earlier in this process that are still present."""
        if not self._authorized:
            return []
        present = await self._list_devices()
        return [device for device in present if device.path in self._authorized]

    async def connect(self) -> DeviceDescriptor:
        devices = await self._list_devices()
        if not devices:
            raise DeviceNotConnectedError(
                "No Ledger device found. Connect it over USB and unlock it.", recoverable=True
            )
        device = await self._chooser(devices)
        if device is None:
            raise UserCancelledPromptError("Device selection was cancelled")
        await self.open(device)
        return device

    async def open(self, device: DeviceDescriptor) -> None:
        if self._dongle is not None:
            await self.close()
        try:
            dongle = await asyncio.to_thread(self._backend.open, device, self._debug)
        except (OSError, CommException) as exc:
            # commTCP reports a refused Speculos socket as a CommException
            reason = exc.message if isinstance(exc, CommException) else exc
            raise DeviceNotConnectedError(
                f"Could not open {device.product}: {reason}. Close other apps using the Ledger and retry.",
                recoverable=True,
            ) from exc

        self._dongle = dongle
        self._device = device
        self._disconnected = asyncio.Event()
        if device.path not in self._authorized:
            self._authorized.append(device.path)
        logger.info(
            "Opened %s over %s",
            device.product,
            self.kind.value,
            extra={"event": "transport.opened", "kind": self.kind.value, "product": device.product},
        )

    def _exchange(self, dongle: Dongle, apdu: bytes) -> bytes:
        try:
            return bytes(dongle.exchange(apdu)) + b"\x90\x00"
        except CommException as exc:
            if exc.message == "Timeout":
                raise OSError("Timed out waiting for the device to answer") from exc
            # ledgerblue strips the status word and raises; put it back
            data = bytes(exc.data or b"")
            return data + int(exc.sw).to_bytes(2, "big")
        except struct.error as exc:
            # Speculos closed the socket before a full response arrived
            raise OSError(f"Truncated response from the device: {exc}") from exc
        except BaseException as exc:
            # HIDDongleHIDAPI raises a bare BaseException when the HID write fails
            if type(exc) is not BaseException:
                raise
            raise OSError(str(exc) or "Device write failed") from exc

    async def send(self, cla: int, ins: int, p1: int, p2: int, data: bytes = b"") -> bytes:
        if len(data) > 255:
            raise ValueError(f"APDU data too long: {len(data)} bytes")
        apdu = bytes([cla, ins, p1, p2, len(data)]) + bytes(data)

        async with self._lock:
            dongle, disconnected = self._dongle, self._disconnected
            if dongle is None or disconnected is None:
                raise DeviceNotConnectedError()

            exchange = asyncio.ensure_future(asyncio.to_thread(self._exchange, dongle, apdu))
            lost = asyncio.ensure_future(disconnected.wait())
            try:
                await asyncio.wait({exchange, lost}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                lost.cancel()

            if not exchange.done():
                # The worker thread finishes on its own once the handle is gone
                exchange.add_done_callback(_consume_result)
                raise DeviceNotConnectedError("Ledger device was disconnected while waiting for it.")

            try:
                return exchange.result()
            except (OSError, ValueError) as exc:
                logger.warning(
                    "Device I/O failed: %s",
                    exc,
                    extra={"event": "transport.io_failed", "ins": ins},
                )
                self._mark_disconnected()
                raise DeviceNotConnectedError(
                    "Lost connection to the Ledger device. Reconnect it and try again."
                ) from exc

    def notify_disconnect(self) -> None:
        """Host hook for device removal; wakes any pending ``send``."""
        if self._dongle is not None:
            self._mark_disconnected()

    def _mark_disconnected(self) -> None:
        dongle = self._dongle
        self._dongle = None
        self._device = None
        if self._disconnected is not None:
            self._disconnected.set()
        if dongle is not None:
            try:
                dongle.close()
            except OSError as exc:
                logger.debug(
                    "Closing a vanished device failed: %s",
                    exc,
                    extra={"event": "transport.close_failed"},
                )
        logger.info("Ledger disconnected", extra={"event": "transport.disconnected"})
        for callback in list(self._disconnect_callbacks):
            callback()

    async def close(self) -> None:
        dongle = self._dongle
        if dongle is None:
            raise DeviceNotConnectedError("Device not connected")
        self._dongle = None
        self._device = None
        if self._disconnected is not None:
            self._disconnected.set()
        await asyncio.to_thread(dongle.close)
        logger.info("Closed Ledger transport", extra={"event": "transport.closed"})


def _consume_result(future: "asyncio.Future[bytes]") -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.debug(
            "Abandoned exchange finished with %s",
            future.exception(),
            extra={"event": "transport.abandoned_exchange"},
        )
