"""Packet-layer AES-CCM-like crypto for Telink mesh commands and notifications.

Both directions use 20-byte packets: a cleartext header, a 2-byte
authentication tag, then an encrypted body. The nonce mixes the device's
little-endian MAC with the cleartext header, so the same payload encrypts
differently under each packet counter.
"""

import hmac

from .crypto import KEY_SIZE, aes_encrypt, pad_to, xor_bytes
from .exceptions import InvalidKeyLength, InvalidPacketLength, NoSessionKey, ProtocolError

PACKET_SIZE = 20
TAG_SIZE = 2

# Cleartext header lengths
COMMAND_HEADER_LEN = 3   # counter
NOTIFY_HEADER_LEN = 5    # sequence + source mesh address


def _check(key: bytes | None, packet: bytes):
    if key is None:
        raise NoSessionKey("no shared key, pairing has not completed")
    if len(key) != KEY_SIZE:
        raise InvalidKeyLength(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(packet) != PACKET_SIZE:
        raise InvalidPacketLength(f"packet must be {PACKET_SIZE} bytes, got {len(packet)}")


def make_command_nonce(reverse_address: bytes, packet: bytes) -> bytes:
    """Nonce for host->device packets: [mac_le:4][0x01][counter:3]."""
    return bytes(reverse_address[:4]) + b"\x01" + bytes(packet[:3])


def make_notify_nonce(reverse_address: bytes, packet: bytes) -> bytes:
    """Nonce for device->host packets: [mac_le:3][sequence:3][source:2]."""
    return bytes(reverse_address[:3]) + bytes(packet[:5])


def _tag(key: bytes, nonce: bytes, body: bytes) -> bytes:
    block = bytearray(aes_encrypt(key, pad_to(nonce + bytes([len(body)]), KEY_SIZE)))
    for i, b in enumerate(body):
        block[i] ^= b
    return aes_encrypt(key, bytes(block))[:TAG_SIZE]


def _keystream_xor(key: bytes, nonce: bytes, body: bytes) -> bytes:
    stream = aes_encrypt(key, pad_to(b"\x00" + nonce, KEY_SIZE))
    return xor_bytes(body, stream)


def _seal(key: bytes, nonce: bytes, packet: bytes, header_len: int) -> bytes:
    body_start = header_len + TAG_SIZE
    body = bytes(packet[body_start:])
    tag = _tag(key, nonce, body)
    return bytes(packet[:header_len]) + tag + _keystream_xor(key, nonce, body)


def _open(key: bytes, nonce: bytes, packet: bytes, header_len: int) -> tuple[bytes, bytes]:
    """Return (plaintext body, expected tag)."""
    body = _keystream_xor(key, nonce, bytes(packet[header_len + TAG_SIZE:]))
    return body, _tag(key, nonce, body)


def encrypt_packet(key: bytes | None, reverse_address: bytes, plaintext: bytes) -> bytes:
    """Encrypt a 20-byte command packet, filling bytes 3-4 with the tag."""
    _check(key, plaintext)
    nonce = make_command_nonce(reverse_address, plaintext)
    return _seal(key, nonce, plaintext, COMMAND_HEADER_LEN)


def decrypt_packet(key: bytes | None, reverse_address: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt a 20-byte command packet and verify its tag.

    The tag field is zeroed in the returned plaintext, which makes this the
    exact inverse of encrypt_packet for plaintexts built by packet.build_packet.
    """
    _check(key, ciphertext)
    nonce = make_command_nonce(reverse_address, ciphertext)
    body, expected = _open(key, nonce, ciphertext, COMMAND_HEADER_LEN)

    # CRITICAL: reject before anyone acts on the payload
    received = bytes(ciphertext[COMMAND_HEADER_LEN:COMMAND_HEADER_LEN + TAG_SIZE])
    if not hmac.compare_digest(received, expected):
        raise ProtocolError("command packet authentication tag mismatch")
    return bytes(ciphertext[:COMMAND_HEADER_LEN]) + bytes(TAG_SIZE) + body


def encrypt_notification(key: bytes | None, reverse_address: bytes, plaintext: bytes) -> bytes:
    """Encrypt a 20-byte notification packet, filling bytes 5-6 with the tag."""
    _check(key, plaintext)
    nonce = make_notify_nonce(reverse_address, plaintext)
    return _seal(key, nonce, plaintext, NOTIFY_HEADER_LEN)


def decrypt_notification(key: bytes | None, reverse_address: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt a 20-byte notification packet.

    The received tag is kept in place; use notification_tag_valid to check it.
    """
    _check(key, ciphertext)
    nonce = make_notify_nonce(reverse_address, ciphertext)
    body, _ = _open(key, nonce, ciphertext, NOTIFY_HEADER_LEN)
    return bytes(ciphertext[:NOTIFY_HEADER_LEN + TAG_SIZE]) + body


def notification_tag_valid(key: bytes | None, reverse_address: bytes, packet: bytes) -> bool:
    """Recompute the tag of a decrypted notification and compare."""
    _check(key, packet)
    nonce = make_notify_nonce(reverse_address, packet)
    expected = _tag(key, nonce, bytes(packet[NOTIFY_HEADER_LEN + TAG_SIZE:]))
    received = bytes(packet[NOTIFY_HEADER_LEN:NOTIFY_HEADER_LEN + TAG_SIZE])
    return hmac.compare_digest(received, expected)
