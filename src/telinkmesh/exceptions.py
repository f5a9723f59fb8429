"""Exceptions raised by the Telink mesh protocol layer."""


class TelinkMeshError(Exception):
    """Base class for all telinkmesh errors."""


class TransportError(TelinkMeshError):
    """BLE link, characteristic resolution, read or write failed."""


class ProtocolError(TelinkMeshError):
    """A locally detected protocol violation."""


class InvalidKeyLength(ProtocolError):
    """Key is not exactly 16 bytes."""


class InvalidPacketLength(ProtocolError):
    """Packet is not exactly 20 bytes."""


class NoSessionKey(ProtocolError):
    """Operation needs a shared key but pairing has not completed."""


class PayloadTooLarge(ProtocolError):
    """Command payload exceeds 10 bytes."""


class InvalidMeshId(ProtocolError):
    """Mesh ID outside the device or group address ranges."""


class InvalidAddress(ProtocolError):
    """MAC address is not in AA:BB:CC:DD:EE:FF form."""


class InvalidCommand(ProtocolError):
    """Command code is not part of the documented set."""


class PairingError(ProtocolError):
    """Device rejected the login or its response failed verification."""
