"""Telink mesh packet building and parsing.

Command packet format (before encryption):
    [counter:3][tag:2][dest:2][command][vendor:2][payload:10]

Notification packet format (after decryption):
    [sequence:3][source:2][tag:2][command][vendor:2][payload:10]

All multi-byte fields are little-endian.
"""

from enum import IntEnum

from .exceptions import InvalidCommand, PayloadTooLarge
from .packet_crypto import PACKET_SIZE

MAX_PAYLOAD = 10
PAYLOAD_OFFSET = 10
COMMAND_OFFSET = 7


class CommandCode(IntEnum):
    """Telink mesh command codes."""
    OTA_UPDATE = 0xC6
    QUERY_OTA_STATE = 0xC7
    OTA_STATUS_REPORT = 0xC8
    GROUP_ID_QUERY = 0xDD
    GROUP_ID_REPORT = 0xD4
    GROUP_EDIT = 0xD7
    ONLINE_STATUS_REPORT = 0xDC
    ADDRESS_EDIT = 0xE0
    ADDRESS_REPORT = 0xE1
    RESET = 0xE3
    TIME_QUERY = 0xE8
    TIME_REPORT = 0xE9
    TIME_SET = 0xE4
    DEVICE_INFO_QUERY = 0xEA
    DEVICE_INFO_REPORT = 0xEB


def command_code(value: int) -> CommandCode:
    """Return the CommandCode for value, or raise InvalidCommand."""
    if value not in CommandCode._value2member_map_:
        raise InvalidCommand(f"unknown command code 0x{value:02x}")
    return CommandCode(value)


def command_name(value: int) -> str:
    return CommandCode(value).name if value in CommandCode._value2member_map_ else f"0x{value:02x}"


def build_packet(counter: int, command: int, dest: int, vendor: int, payload: bytes = b"") -> bytes:
    """Build a 20-byte plaintext command packet with an empty tag field."""
    if len(payload) > MAX_PAYLOAD:
        raise PayloadTooLarge(f"payload is {len(payload)} bytes, maximum is {MAX_PAYLOAD}")

    packet = bytearray(PACKET_SIZE)
    packet[0:3] = (counter & 0xFFFFFF).to_bytes(3, 'little')
    packet[5:7] = (dest & 0xFFFF).to_bytes(2, 'little')
    packet[COMMAND_OFFSET] = command & 0xFF
    packet[8:10] = (vendor & 0xFFFF).to_bytes(2, 'little')
    packet[PAYLOAD_OFFSET:PAYLOAD_OFFSET + len(payload)] = payload
    return bytes(packet)


def parse_command(data: bytes) -> dict | None:
    """Parse a decrypted command packet.

    Returns {'counter', 'dest', 'command', 'vendor', 'payload'}
    or None if not a full packet.
    """
    if len(data) != PACKET_SIZE:
        return None
    return {
        "counter": int.from_bytes(data[0:3], 'little'),
        "dest": int.from_bytes(data[5:7], 'little'),
        "command": data[COMMAND_OFFSET],
        "vendor": int.from_bytes(data[8:10], 'little'),
        "payload": bytes(data[PAYLOAD_OFFSET:]),
    }


def build_notification(sequence: int, source: int, command: int, vendor: int, payload: bytes = b"") -> bytes:
    """Build a 20-byte plaintext notification packet (device side)."""
    if len(payload) > MAX_PAYLOAD:
        raise PayloadTooLarge(f"payload is {len(payload)} bytes, maximum is {MAX_PAYLOAD}")

    packet = bytearray(PACKET_SIZE)
    packet[0:3] = (sequence & 0xFFFFFF).to_bytes(3, 'little')
    packet[3:5] = (source & 0xFFFF).to_bytes(2, 'little')
    packet[COMMAND_OFFSET] = command & 0xFF
    packet[8:10] = (vendor & 0xFFFF).to_bytes(2, 'little')
    packet[PAYLOAD_OFFSET:PAYLOAD_OFFSET + len(payload)] = payload
    return bytes(packet)


def parse_notification(data: bytes) -> dict | None:
    """Parse a decrypted notification packet.

    Returns {'sequence', 'source', 'command', 'vendor', 'payload'}
    or None if not a full packet.
    """
    if len(data) != PACKET_SIZE:
        return None
    return {
        "sequence": int.from_bytes(data[0:3], 'little'),
        "source": int.from_bytes(data[3:5], 'little'),
        "command": data[COMMAND_OFFSET],
        "vendor": int.from_bytes(data[8:10], 'little'),
        "payload": bytes(data[PAYLOAD_OFFSET:]),
    }
