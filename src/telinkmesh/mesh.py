"""High-level Telink mesh device interface."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime
from enum import IntEnum, auto
from typing import Any

from bleak import BleakScanner
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from .crypto import NONCE_SIZE, build_login_packet, parse_login_response
from .dispatcher import CommandDispatcher, ReportHandler
from .exceptions import NoSessionKey, ProtocolError, TransportError
from .packet import CommandCode, command_code, command_name
from .session import DEFAULT_VENDOR, DeviceIdentity, SessionState, validate_mesh_id

logger = logging.getLogger(__name__)

# Telink mesh GATT service
SERVICE_UUID = "00010203-0405-0607-0809-0a0b0c0d1910"

CHARACTERISTIC_NOTIFY = "00010203-0405-0607-0809-0a0b0c0d1911"
CHARACTERISTIC_COMMAND = "00010203-0405-0607-0809-0a0b0c0d1912"
CHARACTERISTIC_PAIR = "00010203-0405-0607-0809-0a0b0c0d1914"

# Written to the notification characteristic to start status reports
NOTIFY_ENABLE = b"\x01"

# Query payloads
ADDRESS_QUERY_PAYLOAD = b"\xff\xff"
GROUP_QUERY_PAYLOAD = b"\x0a\x01"
TIME_QUERY_PAYLOAD = b"\x10"
DEVICE_INFO_PAYLOAD = b"\x10\x00"
DEVICE_VERSION_PAYLOAD = b"\x10\x02"

GROUP_EDIT_DELETE = 0x00
GROUP_EDIT_ADD = 0x01

# Unconsumed reports kept per connection; the oldest is dropped when full
REPORT_QUEUE_SIZE = 64


class ConnectionState(IntEnum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


class PairingState(IntEnum):
    UNPAIRED = auto()
    PAIRING = auto()
    PAIRED = auto()


class TelinkMesh:
    """High-level Telink mesh device interface.

    Usage:
        async with TelinkMesh("A4:C1:38:D5:FD:E8", name, password) as mesh:
            await mesh.query_mesh_id()
            report = await mesh.wait_for_report(CommandCode.ADDRESS_REPORT, timeout=3.0)
            await mesh.set_time()
            await mesh.add_group(3)

    Pass client= to reuse an existing BleakClient (or a fake one in tests);
    otherwise connect() resolves the MAC with BleakScanner and connects
    through bleak-retry-connector.
    """

    def __init__(
        self,
        address: str,
        name: str = "",
        password: str = "",
        vendor: int = DEFAULT_VENDOR,
        handler: ReportHandler | None = None,
        client: Any = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
    ):
        self.identity = DeviceIdentity(address, name, password)
        self.session = SessionState(self.identity, vendor)
        self.dispatcher = CommandDispatcher(self.session, handler)
        self.client = client
        self.timeout = timeout
        self.max_attempts = max_attempts

        self.state = ConnectionState.DISCONNECTED
        self.pairing = PairingState.UNPAIRED

        self._owns_client = client is None
        self._notify_char = None
        self._command_char = None
        self._pair_char = None
        self._notifying = False
        self._reports: asyncio.Queue = asyncio.Queue(REPORT_QUEUE_SIZE)

    async def __aenter__(self) -> TelinkMesh:
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.disconnect()

    # -- identity ---------------------------------------------------------

    def _require_disconnected(self, what: str):
        if self.state != ConnectionState.DISCONNECTED:
            raise ProtocolError(f"cannot change {what} while connected")

    def set_address(self, address: str):
        self._require_disconnected("address")
        self.identity.address = address

    def set_name(self, name: str):
        self._require_disconnected("name")
        self.identity.name = name

    def set_password(self, password: str):
        self._require_disconnected("password")
        self.identity.password = password

    def set_vendor(self, vendor: int):
        """Set the Bluetooth vendor code (0x0211 for Telink)."""
        self._require_disconnected("vendor")
        if not 0 <= vendor <= 0xFFFF:
            raise ProtocolError(f"vendor code must fit in 16 bits, got {vendor:#x}")
        self.session.vendor = vendor

    # -- connection lifecycle ---------------------------------------------

    async def connect(self) -> None:
        """Connect, resolve characteristics, pair and enable notifications.

        Raises:
            TransportError: link, characteristic or GATT I/O failure
            PairingError: device rejected the credentials
        """
        if self.is_connected() and self.pairing == PairingState.PAIRED:
            return

        self.state = ConnectionState.CONNECTING
        self.session.reset()
        self.dispatcher.reset()
        try:
            if self.client is None:
                self.client = await self._establish()
            elif not self.is_connected():
                await self._reconnect_client()
            self._resolve_characteristics()
            await self.pair()
            await self._start_notifications()
        except BaseException:
            await self.disconnect()
            raise

        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.identity.address} (vendor=0x{self.session.vendor:04x})")

    async def _establish(self):
        logger.debug(f"[connect]     {self.identity.address} (max_attempts={self.max_attempts})")
        try:
            device = await BleakScanner.find_device_by_address(
                self.identity.address, timeout=self.timeout)
            if device is None:
                raise TransportError(f"Device {self.identity.address} not found during scan")
            return await establish_connection(
                client_class=BleakClientWithServiceCache,
                device=device,
                name=device.name or self.identity.address,
                max_attempts=self.max_attempts,
                timeout=self.timeout,
            )
        except TransportError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection timeout after {self.timeout}s") from e
        except Exception as e:
            raise TransportError(f"Failed to connect: {e}") from e

    async def _reconnect_client(self):
        logger.debug(f"[connect]     reusing client for {self.identity.address}")
        try:
            await self.client.connect()
        except Exception as e:
            raise TransportError(f"Failed to connect: {e}") from e

    def _resolve_characteristics(self):
        services = self.client.services
        found = {}
        for uuid in (CHARACTERISTIC_NOTIFY, CHARACTERISTIC_COMMAND, CHARACTERISTIC_PAIR):
            char = services.get_characteristic(uuid) if services is not None else None
            if char is None:
                raise TransportError(f"Characteristic {uuid} not found")
            found[uuid] = char
        self._notify_char = found[CHARACTERISTIC_NOTIFY]
        self._command_char = found[CHARACTERISTIC_COMMAND]
        self._pair_char = found[CHARACTERISTIC_PAIR]

    async def pair(self, nonce: bytes | None = None) -> bytes:
        """Run the login handshake and store the derived session key."""
        self.pairing = PairingState.PAIRING
        combined = self.identity.combine_identity()
        nonce_a = nonce if nonce is not None else os.urandom(NONCE_SIZE)
        login = build_login_packet(combined, nonce_a)
        logger.debug(f"[pair]        request {login.hex()}")

        try:
            await self.client.write_gatt_char(self._pair_char, login, response=True)
            response = bytes(await self.client.read_gatt_char(self._pair_char))
        except Exception as e:
            self.pairing = PairingState.UNPAIRED
            raise TransportError(f"Pairing I/O failed: {e}") from e
        logger.debug(f"[pair]        response {response.hex()}")

        try:
            nonce_b = parse_login_response(combined, response)
        except ProtocolError:
            self.pairing = PairingState.UNPAIRED
            raise

        key = self.session.derive_shared_key(nonce_a, nonce_b)
        self.pairing = PairingState.PAIRED
        return key

    async def _start_notifications(self):
        if self._notifying:
            return
        self._reports = asyncio.Queue(REPORT_QUEUE_SIZE)
        try:
            await self.client.start_notify(self._notify_char, self.notification_callback)
            self._notifying = True
            await self.client.write_gatt_char(self._notify_char, NOTIFY_ENABLE, response=True)
        except Exception as e:
            raise TransportError(f"Failed to enable notifications: {e}") from e

    async def disconnect(self) -> None:
        """Release notifications and the link. Safe to call any time."""
        client = self.client
        if self._notifying and client is not None:
            try:
                await client.stop_notify(self._notify_char)
            except Exception as e:
                # BLE connection may already be closed
                logger.debug(f"stop_notify failed during disconnect: {e}")
        self._notifying = False
        self._reports = asyncio.Queue(REPORT_QUEUE_SIZE)

        if client is not None:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            if self._owns_client:
                self.client = None
        self._notify_char = self._command_char = self._pair_char = None

        was_connected = self.state != ConnectionState.DISCONNECTED
        self.session.reset()
        self.dispatcher.reset()
        self.state = ConnectionState.DISCONNECTED
        self.pairing = PairingState.UNPAIRED
        if was_connected:
            logger.info(f"Disconnected from {self.identity.address}")

    def is_connected(self) -> bool:
        return self.client is not None and bool(getattr(self.client, "is_connected", False))

    # -- packets ------------------------------------------------------------

    def notification_callback(self, sender, data: bytearray):
        """Bleak notification handler: decrypt, dispatch, queue the report."""
        logger.debug(f"[notify]      {len(data)}B: {bytes(data).hex()}")
        try:
            report = self.dispatcher.on_notification(bytes(data))
        except Exception:
            logger.exception("Notification processing failed")
            return
        if report is None:
            return
        if self._reports.full():
            dropped = self._reports.get_nowait()
            logger.debug(f"[drop]        report queue full, discarding {dropped!r}")
        self._reports.put_nowait(report)

    async def send_packet(self, command: int, payload: bytes = b"", dest: int | None = None):
        """Build, encrypt and write one command packet.

        Raises:
            InvalidCommand, PayloadTooLarge, NoSessionKey: before any I/O
            TransportError: the write failed (the counter is already spent)
        """
        code = command_code(command)
        if not self.session.has_key:
            raise NoSessionKey("pairing has not completed")
        if self.client is None or self._command_char is None:
            raise TransportError("Not connected")
        packet = self.session.build_packet(code, payload, dest)
        logger.debug(f"[send]        {command_name(code)} wire={packet.hex()}")
        try:
            await self.client.write_gatt_char(self._command_char, packet, response=False)
        except Exception as e:
            raise TransportError(f"Write failed: {e}") from e

    async def _query(self, command: CommandCode, payload: bytes, report: CommandCode):
        self.dispatcher.expect(report)
        await self.send_packet(command, payload)

    # -- device operations ----------------------------------------------------

    async def query_mesh_id(self):
        await self._query(CommandCode.ADDRESS_EDIT, ADDRESS_QUERY_PAYLOAD, CommandCode.ADDRESS_REPORT)

    async def set_mesh_id(self, mesh_id: int):
        """Set device mesh ID: 1-254 for a device, 0x8000-0x80ff for a group."""
        validate_mesh_id(mesh_id)
        self.dispatcher.expect(CommandCode.ADDRESS_REPORT)
        await self.send_packet(CommandCode.ADDRESS_EDIT, mesh_id.to_bytes(2, 'little'))

    async def query_groups(self):
        await self._query(CommandCode.GROUP_ID_QUERY, GROUP_QUERY_PAYLOAD, CommandCode.GROUP_ID_REPORT)

    async def add_group(self, group_id: int):
        await self._edit_group(GROUP_EDIT_ADD, group_id)

    async def delete_group(self, group_id: int):
        await self._edit_group(GROUP_EDIT_DELETE, group_id)

    async def _edit_group(self, op: int, group_id: int):
        if not 0 <= group_id <= 0xFF:
            raise ProtocolError(f"group id must fit in one byte, got {group_id}")
        await self.send_packet(CommandCode.GROUP_EDIT, bytes([op, group_id, 0x80]))

    async def set_time(self, when: datetime | None = None):
        """Set device date and time (local time by default)."""
        when = when or datetime.now()
        payload = when.year.to_bytes(2, 'little') + bytes([
            when.month, when.day, when.hour, when.minute, when.second,
        ])
        await self.send_packet(CommandCode.TIME_SET, payload)

    async def query_time(self):
        await self._query(CommandCode.TIME_QUERY, TIME_QUERY_PAYLOAD, CommandCode.TIME_REPORT)

    async def query_device_info(self):
        await self._query(CommandCode.DEVICE_INFO_QUERY, DEVICE_INFO_PAYLOAD,
                          CommandCode.DEVICE_INFO_REPORT)

    async def query_device_version(self):
        await self._query(CommandCode.DEVICE_INFO_QUERY, DEVICE_VERSION_PAYLOAD,
                          CommandCode.DEVICE_INFO_REPORT)

    # -- reports --------------------------------------------------------------

    async def recv(self, timeout: float = 1.0):
        """Get next report, or None on timeout."""
        try:
            return await asyncio.wait_for(self._reports.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def receive(self, timeout: float = 3.0,
                      match: Callable[[Any], bool] | None = None) -> list:
        """Collect reports until timeout.

        Args:
            timeout: Seconds to wait for reports.
            match: Optional predicate. When provided, only matching reports
                   are returned and collection stops after the first match.
        """
        results = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            report = await self.recv(timeout=remaining)
            if report is None:
                break
            if match is None:
                results.append(report)
            elif match(report):
                results.append(report)
                break
        return results

    async def wait_for_report(self, command: int, timeout: float = 3.0):
        """Return the first queued report with the given command code, or None."""
        found = await self.receive(timeout, match=lambda r: r.command == command)
        return found[0] if found else None
