"""
Unit tests for the Ledger transport adapter.
"""

import asyncio

import pytest

from nearledger.core.config import LedgerSettings, TransportKind
from nearledger.core.exceptions import (
    DeviceNotConnectedError,
    TransportUnavailableError,
    UserCancelledPromptError,
)
from nearledger.core.transport import (
    HidDeviceBackend,
    LedgerTransport,
    TcpDeviceBackend,
    select_backend,
)


def test_select_backend_tcp():
    backend = select_backend(LedgerSettings(transport=TransportKind.TCP, speculos_port=40000))
    assert isinstance(backend, TcpDeviceBackend)
    assert backend.list_devices()[0].path == "127.0.0.1:40000"


def test_select_backend_hid_when_available(monkeypatch):
    monkeypatch.setattr("importlib.util.find_spec", lambda name: object())
    assert isinstance(select_backend(LedgerSettings()), HidDeviceBackend)


def test_select_backend_without_hid_support(monkeypatch):
    monkeypatch.setattr("importlib.util.find_spec", lambda name: None)
    with pytest.raises(TransportUnavailableError):
        select_backend(LedgerSettings(transport=TransportKind.HID))


@pytest.mark.asyncio
async def test_send_restores_status_word(transport):
    await transport.connect()

    ok = await transport.send(0x80, 0x06, 0x00, 0x00)
    failed = await transport.send(0x80, 0x7F, 0x00, 0x00)

    assert ok == bytes([2, 4, 0, 0x90, 0x00])
    assert failed == b"\x6d\x00"


@pytest.mark.asyncio
async def test_send_without_device_raises(transport):
    with pytest.raises(DeviceNotConnectedError):
        await transport.send(0x80, 0x06, 0x00, 0x00)


@pytest.mark.asyncio
async def test_connect_with_no_devices_is_recoverable(transport, backend):
    backend.present = False
    with pytest.raises(DeviceNotConnectedError) as exc:
        await transport.connect()
    assert exc.value.recoverable is True


@pytest.mark.asyncio
async def test_chooser_cancel_raises(backend):
    async def cancel(devices):
        return None

    transport = LedgerTransport(backend, chooser=cancel)
    with pytest.raises(UserCancelledPromptError):
        await transport.connect()
    assert not transport.is_open


@pytest.mark.asyncio
async def test_previously_chosen_device_is_authorized(transport, backend):
    assert await transport.authorized_devices() == []

    device = await transport.connect()
    await transport.close()

    assert await transport.authorized_devices() == [device]
    await transport.open(device)
    assert transport.is_open
    assert backend.opened == 2


@pytest.mark.asyncio
async def test_close_without_device_raises(transport):
    with pytest.raises(DeviceNotConnectedError):
        await transport.close()


@pytest.mark.asyncio
async def test_open_failure_is_recoverable(transport, backend):
    backend.present = False
    with pytest.raises(DeviceNotConnectedError) as exc:
        await transport.open(backend.device)
    assert exc.value.recoverable is True


@pytest.mark.asyncio
async def test_io_failure_marks_device_disconnected(transport, near_app):
    await transport.connect()
    lost = []
    transport.on_disconnect(lambda: lost.append(True))

    def broken_exchange(apdu, timeout=20000):
        raise OSError("device removed")

    near_app.exchange = broken_exchange

    with pytest.raises(DeviceNotConnectedError):
        await transport.send(0x80, 0x06, 0x00, 0x00)
    assert lost == [True]
    assert not transport.is_open
    assert near_app.closed


@pytest.mark.asyncio
async def test_disconnect_wakes_pending_send(transport, near_app):
    await transport.connect()
    near_app.hold_approval()
    lost = []
    transport.on_disconnect(lambda: lost.append(True))

    pending = asyncio.ensure_future(transport.send(0x80, 0x02, 0x80, 0x57, bytes(20) + b"tx"))
    await asyncio.to_thread(near_app.awaiting_user.wait, 5)
    transport.notify_disconnect()

    try:
        with pytest.raises(DeviceNotConnectedError):
            await asyncio.wait_for(pending, timeout=2)
    finally:
        near_app.release()
    assert lost == [True]
    assert not transport.is_open
