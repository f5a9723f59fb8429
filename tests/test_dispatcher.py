"""Unit tests for notification dispatch and report parsing."""

from datetime import datetime

import pytest

from telinkmesh.dispatcher import (
    AddressReport,
    CommandDispatcher,
    DispatchState,
    GroupIdReport,
    ReportHandler,
    StatusReport,
    TimeReport,
)
from telinkmesh.packet import CommandCode, build_notification
from telinkmesh.packet_crypto import encrypt_notification
from telinkmesh.session import DeviceIdentity, SessionState

NONCE_A = bytes.fromhex("0001020304050607")
NONCE_B = bytes.fromhex("08090a0b0c0d0e0f")


class RecordingHandler(ReportHandler):
    def __init__(self):
        self.seen = []

    def on_time_report(self, report):
        self.seen.append(report)

    def on_address_report(self, report):
        self.seen.append(report)

    def on_group_id_report(self, report):
        self.seen.append(report)

    def on_online_status_report(self, report):
        self.seen.append(report)


def _setup(handler=None):
    session = SessionState(DeviceIdentity("A4:C1:38:D5:FD:E8", "dev", "pass1234"))
    session.derive_shared_key(NONCE_A, NONCE_B)
    return session, CommandDispatcher(session, handler)


def _wire(session, command, payload=b"", source=0x0043, sequence=1):
    plain = build_notification(sequence, source, command, session.vendor, payload)
    return encrypt_notification(session.shared_key, session.reverse_address, plain)


def test_address_report_updates_mesh_id():
    handler = RecordingHandler()
    session, dispatcher = _setup(handler)
    payload = b"\x43\x00" + bytes.fromhex("e8fdd538c1a4")

    report = dispatcher.on_notification(_wire(session, CommandCode.ADDRESS_REPORT, payload))

    assert report == AddressReport(source=0x0043, mesh_id=0x0043, mac="A4:C1:38:D5:FD:E8")
    assert session.mesh_id == 0x0043
    assert handler.seen == [report]


def test_time_report():
    handler = RecordingHandler()
    session, dispatcher = _setup(handler)
    payload = (2024).to_bytes(2, 'little') + bytes([5, 17, 12, 30, 45])

    report = dispatcher.on_notification(_wire(session, CommandCode.TIME_REPORT, payload))

    assert isinstance(report, TimeReport)
    assert report.as_datetime() == datetime(2024, 5, 17, 12, 30, 45)
    assert handler.seen == [report]


def test_time_report_out_of_range():
    session, dispatcher = _setup()
    report = dispatcher.on_notification(_wire(session, CommandCode.TIME_REPORT, bytes(7)))
    assert report.as_datetime() is None


def test_group_report_updates_membership():
    session, dispatcher = _setup()
    payload = bytes([1, 7, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF])

    report = dispatcher.on_notification(_wire(session, CommandCode.GROUP_ID_REPORT, payload))

    assert report == GroupIdReport(source=0x0043, groups=(1, 7))
    assert session.groups == {1, 7}


def test_device_info_report():
    session, dispatcher = _setup()
    report = dispatcher.on_notification(_wire(session, CommandCode.DEVICE_INFO_REPORT, b"V1.2"))
    assert report.payload == b"V1.2" + bytes(6)
    assert report.command == CommandCode.DEVICE_INFO_REPORT


def test_status_reports_reach_hooks():
    handler = RecordingHandler()
    session, dispatcher = _setup(handler)

    online = dispatcher.on_notification(_wire(session, CommandCode.ONLINE_STATUS_REPORT, b"\x43\x01"))
    ota = dispatcher.on_notification(_wire(session, CommandCode.OTA_STATUS_REPORT, b"\x02"))

    assert online == StatusReport(0x0043, CommandCode.ONLINE_STATUS_REPORT, b"\x43\x01" + bytes(8))
    assert ota.command == CommandCode.OTA_STATUS_REPORT
    # default no-op hook for OTA status
    assert handler.seen == [online]


def test_unknown_command_ignored():
    """Decrypted packet with an unrecognized code leaves state untouched."""
    session, dispatcher = _setup()
    session.set_mesh_id(5)
    session.set_groups([3])
    before = (session.mesh_id, set(session.groups), session.packet_count, session.shared_key)

    plain = build_notification(1, 0x0043, 0x42, session.vendor, b"\x01\x02")
    assert dispatcher.dispatch(plain) is None

    assert (session.mesh_id, session.groups, session.packet_count, session.shared_key) == before


def test_known_non_report_code_ignored():
    session, dispatcher = _setup()
    assert dispatcher.on_notification(_wire(session, CommandCode.TIME_QUERY, b"\x10")) is None


def test_invalid_packets_dropped():
    """Bad length, bad tag or unknown code are dropped without raising."""
    session, dispatcher = _setup()
    assert dispatcher.on_notification(bytes(19)) is None

    wire = bytearray(_wire(session, CommandCode.ADDRESS_REPORT, b"\x09\x00"))
    wire[12] ^= 0xFF
    assert dispatcher.on_notification(bytes(wire)) is None
    assert session.mesh_id == 0

    assert dispatcher.on_notification(_wire(session, 0x42)) is None


def test_no_key_drops():
    session, dispatcher = _setup()
    wire = _wire(session, CommandCode.ADDRESS_REPORT, b"\x09\x00")
    session.reset()
    assert dispatcher.on_notification(wire) is None
    assert session.mesh_id == 0


def test_check_packet_validity():
    session, dispatcher = _setup()
    from telinkmesh.packet_crypto import decrypt_notification

    good = decrypt_notification(session.shared_key, session.reverse_address,
                                _wire(session, CommandCode.TIME_REPORT, bytes(7)))
    assert dispatcher.check_packet_validity(good)
    assert not dispatcher.check_packet_validity(good[:19])


def test_awaiting_state_cleared_by_matching_report():
    session, dispatcher = _setup()
    dispatcher.expect(CommandCode.ADDRESS_REPORT)
    assert dispatcher.state == DispatchState.AWAITING_RESPONSE

    dispatcher.on_notification(_wire(session, CommandCode.TIME_REPORT, bytes(7)))
    assert dispatcher.state == DispatchState.AWAITING_RESPONSE

    dispatcher.on_notification(_wire(session, CommandCode.ADDRESS_REPORT, b"\x09\x00"))
    assert dispatcher.state == DispatchState.IDLE
    assert dispatcher.awaiting is None


def test_failing_hook_still_completes_query():
    """A hook that raises does not leave the dispatcher waiting."""
    class Broken(ReportHandler):
        def on_address_report(self, report):
            raise RuntimeError("boom")

    session, dispatcher = _setup(Broken())
    dispatcher.expect(CommandCode.ADDRESS_REPORT)

    report = dispatcher.on_notification(_wire(session, CommandCode.ADDRESS_REPORT, b"\x09\x00"))

    assert report == AddressReport(source=0x0043, mesh_id=9)
    assert dispatcher.state == DispatchState.IDLE
    assert session.mesh_id == 9


@pytest.mark.parametrize("parse", [
    "parse_time_report",
    "parse_address_report",
    "parse_device_info_report",
    "parse_group_id_report",
    "parse_online_status_report",
    "parse_ota_status_report",
])
def test_parse_short_packet_returns_none(parse):
    session, dispatcher = _setup()
    assert getattr(dispatcher, parse)(bytes(12)) is None
    assert session.mesh_id == 0
