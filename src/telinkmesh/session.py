"""Per-connection session state: device identity, counter, mesh ID and key."""

import logging
import re
import threading

from . import crypto, packet_crypto
from .exceptions import InvalidAddress, InvalidMeshId, NoSessionKey, PayloadTooLarge
from .packet import MAX_PAYLOAD, build_packet, command_name

logger = logging.getLogger(__name__)

DEFAULT_VENDOR = 0x0211  # Telink

MESH_ID_UNKNOWN = 0
MESH_ID_MIN = 1
MESH_ID_MAX = 254
GROUP_ID_BASE = 0x8000
GROUP_ID_MAX = 0x80FF

COUNTER_START = 1
COUNTER_MAX = 0xFFFF

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


def parse_mac(address: str) -> bytes:
    """Convert 'AA:BB:CC:DD:EE:FF' to 6 bytes in transmission order."""
    if not isinstance(address, str) or not _MAC_RE.match(address):
        raise InvalidAddress(f"invalid MAC address {address!r}")
    return bytes.fromhex(address.replace(":", ""))


def format_mac(data: bytes) -> str:
    return ":".join(f"{b:02X}" for b in data)


def validate_mesh_id(mesh_id: int) -> int:
    """Accept 1-254 for a device or 0x8000-0x80FF for a group."""
    if MESH_ID_MIN <= mesh_id <= MESH_ID_MAX or GROUP_ID_BASE <= mesh_id <= GROUP_ID_MAX:
        return mesh_id
    raise InvalidMeshId(
        f"mesh ID {mesh_id:#x} outside {MESH_ID_MIN}-{MESH_ID_MAX} "
        f"and {GROUP_ID_BASE:#06x}-{GROUP_ID_MAX:#06x}")


class DeviceIdentity:
    """MAC address plus mesh credentials of one device.

    reverse_address is always the byte-reverse of address; it is recomputed
    on every address assignment and cannot be set on its own.
    """

    def __init__(self, address: str, name: str = "", password: str = ""):
        self.address = address
        self.name = name
        self.password = password

    @property
    def address(self) -> str:
        return self._address

    @address.setter
    def address(self, value: str):
        raw = parse_mac(value)
        self._address = format_mac(raw)
        self._reverse_address = crypto.reverse_bytes(raw)

    @property
    def reverse_address(self) -> bytes:
        return self._reverse_address

    def combine_identity(self) -> bytes:
        return crypto.combine_identity(self.name, self.password)


class SessionState:
    """
    Mutable state shared by the command and notification paths.

    All mutation goes through the methods below, which hold one lock, so
    bleak callbacks and application tasks never see a half-updated counter,
    mesh ID or key.
    """

    def __init__(self, identity: DeviceIdentity, vendor: int = DEFAULT_VENDOR):
        self.identity = identity
        self.vendor = vendor
        self._lock = threading.RLock()

        self.packet_count = COUNTER_START
        self.mesh_id = MESH_ID_UNKNOWN
        self.shared_key: bytes | None = None
        self.groups: set[int] = set()

    @property
    def reverse_address(self) -> bytes:
        return self.identity.reverse_address

    @property
    def has_key(self) -> bool:
        return self.shared_key is not None

    def encrypt_identity(self, key: bytes) -> bytes:
        """Encrypt this device's combined name/password under key."""
        return crypto.encrypt_identity(self.identity.combine_identity(), key)

    def derive_shared_key(self, nonce_a: bytes, nonce_b: bytes) -> bytes:
        """Derive and store the session key; replaces any previous key."""
        key = crypto.derive_shared_key(self.identity.combine_identity(), nonce_a, nonce_b)
        with self._lock:
            self.shared_key = key
        return key

    def next_counter(self) -> int:
        """Return the current counter and advance it (wrapping to 1)."""
        with self._lock:
            counter = self.packet_count
            self.packet_count = counter + 1 if counter < COUNTER_MAX else COUNTER_START
            return counter

    def build_packet(self, command: int, payload: bytes = b"", dest: int | None = None) -> bytes:
        """
        Serialize and encrypt one command packet.

        The counter advances before the bytes are returned, so a retry after a
        failed write must call this again rather than resend the old bytes.
        """
        if len(payload) > MAX_PAYLOAD:
            raise PayloadTooLarge(f"payload is {len(payload)} bytes, maximum is {MAX_PAYLOAD}")
        with self._lock:
            key = self.shared_key
            if key is None:
                raise NoSessionKey("pairing has not completed")
            target = self.mesh_id if dest is None else dest
            counter = self.next_counter()
            plaintext = build_packet(counter, command, target, self.vendor, payload)

        logger.debug(f"[build]       {command_name(command)} counter={counter} dest=0x{target:04x} "
                     f"plain={plaintext.hex()}")
        return packet_crypto.encrypt_packet(key, self.reverse_address, plaintext)

    def set_mesh_id(self, mesh_id: int):
        with self._lock:
            self.mesh_id = mesh_id

    def set_groups(self, groups):
        with self._lock:
            self.groups = set(groups)

    def reset(self):
        """Return to the disconnected snapshot: no key, counter 1, mesh ID unknown."""
        with self._lock:
            self.shared_key = None
            self.packet_count = COUNTER_START
            self.mesh_id = MESH_ID_UNKNOWN
            self.groups = set()
