"""Fake BleakClient simulating a Telink mesh device for tests."""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

from . import crypto, packet_crypto
from .mesh import CHARACTERISTIC_COMMAND, CHARACTERISTIC_NOTIFY, CHARACTERISTIC_PAIR
from .packet import CommandCode, build_notification, parse_command
from .session import DEFAULT_VENDOR, parse_mac

EMPTY_GROUP_SLOT = 0xFF


class FakeCharacteristic:
    def __init__(self, uuid: str):
        self.uuid = uuid


class FakeServices:
    def __init__(self, uuids):
        self._chars = {uuid: FakeCharacteristic(uuid) for uuid in uuids}

    def get_characteristic(self, uuid: str) -> FakeCharacteristic | None:
        return self._chars.get(uuid)


def _uuid(char: Any) -> str:
    return getattr(char, "uuid", char)


class FakeTelinkDevice:
    """
    Device simulator for protocol testing.

    Acts like a connected BleakClient: answers the pairing handshake,
    decrypts command writes with the negotiated key and answers queries
    with encrypted notifications.
    """

    def __init__(
        self,
        address: str,
        name: str,
        password: str,
        mesh_id: int = 0x0043,
        vendor: int = DEFAULT_VENDOR,
        nonce: bytes = bytes(range(8, 16)),
        groups: tuple[int, ...] = (),
        clock: datetime | None = None,
        device_info: bytes = b"\x00\x01\x02\x03",
        uuids=(CHARACTERISTIC_NOTIFY, CHARACTERISTIC_COMMAND, CHARACTERISTIC_PAIR),
    ):
        self.mac = parse_mac(address)
        self.reverse_address = crypto.reverse_bytes(self.mac)
        self.combined = crypto.combine_identity(name, password)
        self.mesh_id = mesh_id
        self.vendor = vendor
        self.nonce = nonce
        self.groups = list(groups)
        self.clock = clock or datetime(2024, 5, 17, 12, 30, 45)
        self.device_info = device_info

        self.services = FakeServices(uuids)
        self.is_connected = True
        self.shared_key: bytes | None = None
        self.pair_response = b""
        self.sequence = 0
        self.notification_handlers: dict[str, Callable[[Any, bytearray], None]] = {}

        self.writes: list[tuple[str, bytes]] = []
        self.commands: list[dict] = []
        self.fail_writes = False
        self.connect_count = 0

    async def connect(self) -> bool:
        self.connect_count += 1
        self.is_connected = True
        return True

    async def disconnect(self):
        self.is_connected = False
        self.shared_key = None
        self.notification_handlers.clear()

    async def start_notify(self, char, callback: Callable[[Any, bytearray], None]) -> None:
        self.notification_handlers[_uuid(char)] = callback

    async def stop_notify(self, char) -> None:
        self.notification_handlers.pop(_uuid(char), None)

    async def read_gatt_char(self, char) -> bytearray:
        if _uuid(char) == CHARACTERISTIC_PAIR:
            return bytearray(self.pair_response)
        return bytearray(1)

    async def write_gatt_char(self, char, data: bytes, response: bool = True) -> None:
        if self.fail_writes:
            raise OSError("simulated write failure")
        uuid = _uuid(char)
        self.writes.append((uuid, bytes(data)))

        if uuid == CHARACTERISTIC_PAIR:
            self._handle_login(bytes(data))
        elif uuid == CHARACTERISTIC_COMMAND:
            await self._handle_command(bytes(data))

    def _handle_login(self, data: bytes):
        """Check the host proof, then derive the key from both nonces."""
        nonce_a = data[1:9]
        expected = crypto.build_login_packet(self.combined, nonce_a)
        if data != expected:
            self.pair_response = bytes([crypto.PAIR_OP_ENC_FAIL])
            return
        proof = crypto.encrypt_identity(self.combined, crypto.pad_to(self.nonce, 16))[:8]
        self.pair_response = bytes([crypto.PAIR_OP_ENC_RSP]) + self.nonce + proof
        self.shared_key = crypto.derive_shared_key(self.combined, nonce_a, self.nonce)

    async def _handle_command(self, data: bytes):
        plain = packet_crypto.decrypt_packet(self.shared_key, self.reverse_address, data)
        cmd = parse_command(plain)
        self.commands.append(cmd)
        code, payload = cmd["command"], cmd["payload"]

        if code == CommandCode.ADDRESS_EDIT:
            requested = int.from_bytes(payload[0:2], 'little')
            if requested != 0xFFFF:
                self.mesh_id = requested
            await self.notify(CommandCode.ADDRESS_REPORT,
                              self.mesh_id.to_bytes(2, 'little') + self.reverse_address)
        elif code == CommandCode.GROUP_ID_QUERY:
            await self.notify_groups()
        elif code == CommandCode.GROUP_EDIT:
            op, group_id = payload[0], payload[1]
            if op and group_id not in self.groups:
                self.groups.append(group_id)
            elif not op and group_id in self.groups:
                self.groups.remove(group_id)
        elif code == CommandCode.TIME_SET:
            self.clock = datetime(int.from_bytes(payload[0:2], 'little'), *payload[2:7])
        elif code == CommandCode.TIME_QUERY:
            c = self.clock
            await self.notify(CommandCode.TIME_REPORT, c.year.to_bytes(2, 'little') + bytes([
                c.month, c.day, c.hour, c.minute, c.second]))
        elif code == CommandCode.DEVICE_INFO_QUERY:
            await self.notify(CommandCode.DEVICE_INFO_REPORT, self.device_info)

    async def notify_groups(self):
        slots = bytes(self.groups[:10]) + bytes([EMPTY_GROUP_SLOT] * (10 - len(self.groups[:10])))
        await self.notify(CommandCode.GROUP_ID_REPORT, slots)

    def encrypt_report(self, command: int, payload: bytes = b"") -> bytes:
        """Encrypt a report the way the device would put it on the air."""
        self.sequence += 1
        plain = build_notification(self.sequence, self.mesh_id, command, self.vendor, payload)
        return packet_crypto.encrypt_notification(self.shared_key, self.reverse_address, plain)

    async def notify(self, command: int, payload: bytes = b""):
        """Deliver one encrypted report to the notification handler."""
        await self.deliver(self.encrypt_report(command, payload))

    async def deliver(self, raw: bytes):
        handler = self.notification_handlers.get(CHARACTERISTIC_NOTIFY)
        if not handler:
            raise RuntimeError(f"No handler registered for {CHARACTERISTIC_NOTIFY}")
        handler(None, bytearray(raw))
        await asyncio.sleep(0.001)
