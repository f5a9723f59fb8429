"""Inbound notification dispatch to typed report handlers."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, auto

from . import packet_crypto
from .exceptions import ProtocolError
from .packet import (
    PACKET_SIZE,
    CommandCode,
    command_name,
    parse_notification,
)
from .session import SessionState, format_mac

logger = logging.getLogger(__name__)

EMPTY_GROUP_SLOT = 0xFF


@dataclass(frozen=True)
class TimeReport:
    source: int
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    command: int = CommandCode.TIME_REPORT

    def as_datetime(self) -> datetime | None:
        """Device clock as a naive datetime, or None if the fields are out of range."""
        try:
            return datetime(self.year, self.month, self.day, self.hour, self.minute, self.second)
        except ValueError:
            return None


@dataclass(frozen=True)
class AddressReport:
    source: int
    mesh_id: int
    mac: str | None = None
    command: int = CommandCode.ADDRESS_REPORT


@dataclass(frozen=True)
class DeviceInfoReport:
    source: int
    payload: bytes
    command: int = CommandCode.DEVICE_INFO_REPORT


@dataclass(frozen=True)
class GroupIdReport:
    source: int
    groups: tuple[int, ...]
    command: int = CommandCode.GROUP_ID_REPORT


@dataclass(frozen=True)
class StatusReport:
    """Online-status or OTA-status report, passed through unparsed."""
    source: int
    command: int
    payload: bytes


class ReportHandler:
    """
    Receives parsed reports from CommandDispatcher.

    Every method is a no-op; subclass and override the ones you need.
    """

    def on_time_report(self, report: TimeReport):
        pass

    def on_address_report(self, report: AddressReport):
        pass

    def on_device_info_report(self, report: DeviceInfoReport):
        pass

    def on_group_id_report(self, report: GroupIdReport):
        pass

    def on_online_status_report(self, report: StatusReport):
        pass

    def on_ota_status_report(self, report: StatusReport):
        pass


class DispatchState(IntEnum):
    IDLE = auto()
    AWAITING_RESPONSE = auto()


class CommandDispatcher:
    """
    Decrypts notifications and routes them by command code.

    Pattern: report = on_notification(raw); report is None when the packet
    was dropped or carried a code we don't handle.
    """

    def __init__(self, session: SessionState, handler: ReportHandler | None = None):
        self.session = session
        self.handler = handler or ReportHandler()

        self.state = DispatchState.IDLE
        self.awaiting: int | None = None

        self._routes = {
            CommandCode.TIME_REPORT: self.parse_time_report,
            CommandCode.ADDRESS_REPORT: self.parse_address_report,
            CommandCode.DEVICE_INFO_REPORT: self.parse_device_info_report,
            CommandCode.GROUP_ID_REPORT: self.parse_group_id_report,
            CommandCode.ONLINE_STATUS_REPORT: self.parse_online_status_report,
            CommandCode.OTA_STATUS_REPORT: self.parse_ota_status_report,
        }

    def expect(self, report_code: int):
        """Mark that a query was sent and its report is outstanding."""
        self.state = DispatchState.AWAITING_RESPONSE
        self.awaiting = report_code

    def reset(self):
        self.state = DispatchState.IDLE
        self.awaiting = None

    def on_notification(self, raw: bytes):
        """Decrypt, validate and dispatch one notification. Never raises."""
        key = self.session.shared_key
        if key is None:
            logger.debug(f"[drop]        no session key, {len(raw)}B ignored")
            return None
        try:
            decrypted = packet_crypto.decrypt_notification(key, self.session.reverse_address, bytes(raw))
        except ProtocolError as e:
            logger.warning(f"[drop]        undecryptable notification {bytes(raw).hex()}: {e}")
            return None

        if not self.check_packet_validity(decrypted):
            logger.debug(f"[drop]        invalid notification plain={decrypted.hex()}")
            return None
        return self.dispatch(decrypted)

    def check_packet_validity(self, packet: bytes) -> bool:
        """Length, known command byte and authentication tag."""
        if len(packet) != PACKET_SIZE:
            return False
        if packet[7] not in CommandCode._value2member_map_:
            return False
        key = self.session.shared_key
        if key is None:
            return False
        return packet_crypto.notification_tag_valid(key, self.session.reverse_address, packet)

    def dispatch(self, packet: bytes):
        """Route a decrypted packet; unknown codes are ignored."""
        parsed = parse_notification(packet)
        if parsed is None:
            return None

        route = self._routes.get(parsed["command"])
        if route is None:
            logger.debug(f"[ignore]      {command_name(parsed['command'])} from 0x{parsed['source']:04x}")
            return None

        logger.debug(f"[report]      {command_name(parsed['command'])} from 0x{parsed['source']:04x} "
                     f"payload={parsed['payload'].hex()}")
        try:
            return route(packet)
        finally:
            if self.awaiting == parsed["command"]:
                self.reset()

    def _deliver(self, hook, report):
        """Call a handler hook; a failing hook is logged, never propagated."""
        try:
            hook(report)
        except Exception:
            logger.exception(f"Report handler {hook.__name__} failed")
        return report

    def parse_time_report(self, packet: bytes) -> TimeReport | None:
        """Payload: [year:2][month][day][hour][minute][second]."""
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        p = parsed["payload"]
        report = TimeReport(
            source=parsed["source"],
            year=int.from_bytes(p[0:2], 'little'),
            month=p[2],
            day=p[3],
            hour=p[4],
            minute=p[5],
            second=p[6],
        )
        return self._deliver(self.handler.on_time_report, report)

    def parse_address_report(self, packet: bytes) -> AddressReport | None:
        """Payload: [mesh_id:2][mac:6 little-endian]. Updates the session mesh ID."""
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        p = parsed["payload"]
        mesh_id = int.from_bytes(p[0:2], 'little')
        mac_le = p[2:8]
        mac = format_mac(bytes(reversed(mac_le))) if any(mac_le) else None

        self.session.set_mesh_id(mesh_id)
        report = AddressReport(source=parsed["source"], mesh_id=mesh_id, mac=mac)
        return self._deliver(self.handler.on_address_report, report)

    def parse_device_info_report(self, packet: bytes) -> DeviceInfoReport | None:
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        report = DeviceInfoReport(source=parsed["source"], payload=parsed["payload"])
        return self._deliver(self.handler.on_device_info_report, report)

    def parse_group_id_report(self, packet: bytes) -> GroupIdReport | None:
        """Payload: up to 10 group ids, 0xFF marks an empty slot."""
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        groups = tuple(b for b in parsed["payload"] if b != EMPTY_GROUP_SLOT)

        self.session.set_groups(groups)
        report = GroupIdReport(source=parsed["source"], groups=groups)
        return self._deliver(self.handler.on_group_id_report, report)

    def parse_online_status_report(self, packet: bytes) -> StatusReport | None:
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        report = StatusReport(parsed["source"], parsed["command"], parsed["payload"])
        return self._deliver(self.handler.on_online_status_report, report)

    def parse_ota_status_report(self, packet: bytes) -> StatusReport | None:
        parsed = parse_notification(packet)
        if parsed is None:
            return None
        report = StatusReport(parsed["source"], parsed["command"], parsed["payload"])
        return self._deliver(self.handler.on_ota_status_report, report)
