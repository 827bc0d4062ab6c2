"""Tests for the session handshake state machine and packet filtering."""

from conftest import FakeHost, FakeStream
from vbus_bridge.config import BridgeConfig
from vbus_bridge.hub.directory import StaticDirectory
from vbus_bridge.hub.session import Session, SessionState
from vbus_bridge.protocol.framing import PROTOCOL_DATAGRAM, Packet

OK = b"+OK\r\n"


def _session(directory=None, **config) -> Session:
    return Session(1, FakeStream(), FakeHost(), BridgeConfig(**config), directory)


def _packet(source=0x7E11, destination=0x0010, channel=0) -> Packet:
    return Packet(destination, source, PROTOCOL_DATAGRAM, 0x0100, bytes(6), channel=channel)


def _login(session: Session) -> None:
    assert session.handle_line(b"PASS vbus\r\n") == OK
    assert session.handle_line(b"DATA\r\n") == OK


def test_full_handshake():
    session = _session(channel_count=2)
    assert session.state is SessionState.AWAITING_LOGIN
    assert session.handle_line(b"PASS vbus\r\n") == OK
    assert session.state is SessionState.CHANNEL_SELECT
    assert session.handle_line(b"CHANNEL 1\r\n") == OK
    assert session.channel == 1
    assert session.handle_line(b"DATA\r\n") == OK
    assert session.state is SessionState.STREAMING


def test_commands_are_case_insensitive():
    session = _session()
    assert session.handle_line(b"pass vbus\n") == OK
    assert session.handle_line(b"data\n") == OK
    assert session.streaming


def test_wrong_password_closes():
    session = _session()
    reply = session.handle_line(b"PASS nope\r\n")
    assert reply.startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_data_before_login_rejected():
    session = _session()
    assert session.handle_line(b"DATA\r\n").startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_channel_before_login_rejected():
    session = _session(channel_count=4)
    assert session.handle_line(b"CHANNEL 1\r\n").startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_channel_out_of_range_rejected():
    session = _session(channel_count=2)
    session.handle_line(b"PASS vbus\r\n")
    assert session.handle_line(b"CHANNEL 2\r\n").startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_malformed_channel_rejected():
    session = _session()
    session.handle_line(b"PASS vbus\r\n")
    assert session.handle_line(b"CHANNEL one\r\n") == b"-ERROR Expected 8 bit number argument\r\n"


def test_unknown_command_rejected():
    session = _session()
    assert session.handle_line(b"HELO\r\n").startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_quit():
    session = _session()
    assert session.handle_line(b"QUIT\r\n") == OK
    assert session.state is SessionState.CLOSED


def test_connect_resolves_via_tag():
    directory = StaticDirectory({"d1234567890.vbus.io": 0x7E11})
    session = _session(directory)
    assert session.handle_line(b"CONNECT D1234567890.vbus.io\r\n") == OK
    assert session.via_address == 0x7E11


def test_connect_unknown_tag_rejected():
    session = _session(StaticDirectory())
    assert session.handle_line(b"CONNECT nowhere\r\n").startswith(b"-ERROR")
    assert session.state is SessionState.CLOSED


def test_connect_without_directory_rejected():
    session = _session()
    assert session.handle_line(b"CONNECT tag\r\n").startswith(b"-ERROR")


def test_offer_filters_by_channel():
    session = _session(channel_count=2)
    session.handle_line(b"PASS vbus\r\n")
    session.handle_line(b"CHANNEL 1\r\n")
    session.handle_line(b"DATA\r\n")
    assert session.offer(_packet(channel=0))
    assert session.queue.empty()
    assert session.offer(_packet(channel=1))
    assert session.queue.qsize() == 1


def test_offer_filters_by_via_address():
    session = _session(StaticDirectory({"tag": 0x7E11}))
    session.handle_line(b"CONNECT tag\r\n")
    _login(session)
    session.offer(_packet(source=0x7E21))
    session.offer(_packet(source=0x7E11))
    session.offer(_packet(source=0x0020, destination=0x7E11))
    assert session.queue.qsize() == 2


def test_offer_before_streaming_is_ignored():
    session = _session()
    assert session.offer(_packet())
    assert session.queue.empty()


def test_offer_reports_full_queue():
    session = _session(queue_size=1)
    _login(session)
    assert session.offer(_packet())
    assert not session.offer(_packet())


def test_abort_closes_session():
    session = _session()
    _login(session)
    session.abort()
    assert session.state is SessionState.CLOSED
    assert session.offer(_packet())
    assert session.queue.empty()
