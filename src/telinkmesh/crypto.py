"""Shared cryptographic primitives for the Telink mesh pairing handshake."""

import hmac

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import InvalidKeyLength, PairingError, ProtocolError

KEY_SIZE = 16
NONCE_SIZE = 8

# Pairing characteristic opcodes
PAIR_OP_ENC_REQ = 0x0C
PAIR_OP_ENC_RSP = 0x0D
PAIR_OP_ENC_FAIL = 0x0E


def reverse_bytes(data: bytes) -> bytes:
    """Reverse byte order."""
    return bytes(reversed(data))


def xor_bytes(a: bytes, b: bytes) -> bytes:
    """XOR two byte arrays."""
    return bytes(x ^ y for x, y in zip(a, b))


def pad_to(data: bytes, length: int) -> bytes:
    """Zero pad or truncate data to exactly length bytes."""
    return (bytes(data) + bytes(length))[:length]


def aes_encrypt(key: bytes, data: bytes) -> bytes:
    """
    Encrypt one 16-byte block the way Telink firmware does.

    AES-128-ECB with key, input and output all byte-reversed, since the
    firmware treats every buffer as little-endian.
    """
    if len(key) != KEY_SIZE:
        raise InvalidKeyLength(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    cipher = Cipher(
        algorithms.AES(reverse_bytes(key)),
        modes.ECB(),
        backend=default_backend()
    )
    encryptor = cipher.encryptor()
    block = encryptor.update(reverse_bytes(pad_to(data, KEY_SIZE))) + encryptor.finalize()
    return reverse_bytes(block)


def combine_identity(name: str, password: str) -> bytes:
    """
    Combine mesh name and password into the 16-byte handshake secret.

    Both are UTF-8 encoded, truncated or zero padded to 16 bytes, then XORed.
    """
    name_bytes = pad_to(name.encode('utf-8'), KEY_SIZE)
    password_bytes = pad_to(password.encode('utf-8'), KEY_SIZE)
    return xor_bytes(name_bytes, password_bytes)


def encrypt_identity(combined: bytes, key: bytes) -> bytes:
    """Encrypt the combined name/password buffer under key (16 bytes out)."""
    return aes_encrypt(key, combined)


def derive_shared_key(combined: bytes, nonce_a: bytes, nonce_b: bytes) -> bytes:
    """
    Derive the 16-byte session key from both pairing nonces.

    The host nonce comes first, the device nonce second; the combined
    name/password buffer is the AES key.
    """
    if len(nonce_a) != NONCE_SIZE or len(nonce_b) != NONCE_SIZE:
        raise ProtocolError(
            f"nonces must be {NONCE_SIZE} bytes, got {len(nonce_a)} and {len(nonce_b)}")
    return aes_encrypt(combined, bytes(nonce_a) + bytes(nonce_b))


def _login_proof(combined: bytes, nonce: bytes) -> bytes:
    return encrypt_identity(combined, pad_to(nonce, KEY_SIZE))[:NONCE_SIZE]


def build_login_packet(combined: bytes, nonce_a: bytes) -> bytes:
    """
    Build the pairing request written to the pairing characteristic.

    Format: [0x0C][nonce_a:8][proof:8]
    """
    if len(nonce_a) != NONCE_SIZE:
        raise ProtocolError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce_a)}")
    return bytes([PAIR_OP_ENC_REQ]) + bytes(nonce_a) + _login_proof(combined, nonce_a)


def parse_login_response(combined: bytes, response: bytes) -> bytes:
    """
    Verify the device's pairing response and return its nonce.

    Format: [0x0D][nonce_b:8][proof:8]. A 0x0E opcode means the device
    did not accept our name/password.
    """
    if not response:
        raise PairingError("empty pairing response")
    opcode = response[0]
    if opcode == PAIR_OP_ENC_FAIL:
        raise PairingError("device rejected mesh name/password")
    if opcode != PAIR_OP_ENC_RSP:
        raise PairingError(f"unexpected pairing opcode 0x{opcode:02x}")
    if len(response) < 1 + 2 * NONCE_SIZE:
        raise PairingError(f"pairing response too short: {len(response)} bytes")

    nonce_b = bytes(response[1:1 + NONCE_SIZE])
    proof = bytes(response[1 + NONCE_SIZE:1 + 2 * NONCE_SIZE])
    if not hmac.compare_digest(proof, _login_proof(combined, nonce_b)):
        raise PairingError("device proof does not match mesh credentials")
    return nonce_b
