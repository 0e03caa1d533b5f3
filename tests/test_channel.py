from __future__ import annotations

import socket

import pytest

from echoprobe.channel import ChannelState, DatagramChannel, StreamChannel
from echoprobe.constants import KEY_SEED
from echoprobe.errors import NoResponse, PayloadTooLarge, ProtocolError, TransportError
from echoprobe.framing import Frame, FrameKind
from echoprobe.keystream import advance, transform
from echoprobe.net import UdpEndpoint


def test_data_is_sealed_with_key_before_advance(scripted_echo):
    wire = scripted_echo()
    sent: list[bytes] = []
    original = wire.send_all
    wire.send_all = lambda data: (sent.append(data), original(data))[1]

    ch = StreamChannel(wire)
    ch.send_data(b"\x00" * 8)
    assert sent[0][4:] == transform(b"\x00" * 8, KEY_SEED)
    assert ch.keys.current == advance(KEY_SEED)
    assert ch.state is ChannelState.AWAITING_RESPONSE

    assert ch.recv_data() == b"\x00" * 8
    assert ch.state is ChannelState.CONNECTED


def test_pipelined_echoes_decrypt_in_order(scripted_echo):
    ch = StreamChannel(scripted_echo())
    messages = [bytes([i]) * (i + 1) for i in range(5)]
    for m in messages:
        ch.send_data(m)
    assert ch.outstanding == 5
    assert [ch.recv_data() for _ in messages] == messages
    assert ch.keys.messages == 5


def test_empty_payload_round_trip_consumes_no_key(scripted_echo):
    ch = StreamChannel(scripted_echo())
    ch.send_data(b"")
    assert ch.recv_data() == b""
    assert ch.keys.current == KEY_SEED


def test_phase_end_ack(scripted_echo):
    ch = StreamChannel(scripted_echo())
    ch.send_phase_end()
    assert ch.state is ChannelState.AWAITING_RESPONSE
    assert ch.recv().kind is FrameKind.PHASE_END
    assert ch.state is ChannelState.CONNECTED


def test_unsolicited_echo_is_a_protocol_error(scripted_echo):
    wire = scripted_echo()
    ch = StreamChannel(wire)
    ch.send_data(b"abc")
    ch._pending.clear()
    with pytest.raises(ProtocolError):
        ch.recv()


def test_terminate_from_peer_closes_channel(scripted_echo):
    wire = scripted_echo(ack=None)
    wire._replies.append(Frame.terminate())
    ch = StreamChannel(wire)
    assert ch.recv().kind is FrameKind.TERMINATE
    assert ch.state is ChannelState.CLOSED
    with pytest.raises(TransportError):
        ch.send_data(b"x")
    ch.close()
    assert wire.closed


def test_datagram_payload_limit():
    udp = UdpEndpoint.sending()
    ch = DatagramChannel(udp, ("127.0.0.1", 9), max_datagram_size=16)
    with pytest.raises(PayloadTooLarge):
        ch.send_data(b"x" * 17)
    assert ch.keys.current == KEY_SEED
    ch.close()
    ch.close()


def test_oversized_frame_leaves_key_and_queue_untouched(scripted_echo, monkeypatch):
    monkeypatch.setattr("echoprobe.framing.MAX_FRAME_LENGTH", 4)
    ch = StreamChannel(scripted_echo())
    with pytest.raises(PayloadTooLarge):
        ch.send_data(b"x" * 8)
    assert ch.keys.current == KEY_SEED
    assert ch.outstanding == 0
    assert ch.state is ChannelState.CONNECTED

    ch.send_data(b"ab")
    assert ch.recv_data() == b"ab"


def _datagram_pair(timeout_ms: int):
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    server.settimeout(2.0)
    ch = DatagramChannel.open("127.0.0.1", server.getsockname()[1], read_timeout_ms=timeout_ms)
    return server, ch


def test_datagram_from_other_address_is_ignored():
    server, ch = _datagram_pair(2000)
    stray = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        ch.send_data(b"hi")
        sealed, client_addr = server.recvfrom(64)
        stray.sendto(b"junk", client_addr)
        server.sendto(transform(transform(sealed, KEY_SEED), advance(KEY_SEED)), client_addr)

        assert ch.recv_data() == b"hi"
        assert ch.keys.current == advance(advance(KEY_SEED))
    finally:
        stray.close()
        server.close()
        ch.close()


def test_stray_datagrams_only_still_time_out():
    server, ch = _datagram_pair(300)
    stray = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        ch.send_data(b"hi")
        _, client_addr = server.recvfrom(64)
        stray.sendto(b"junk", client_addr)
        with pytest.raises(NoResponse):
            ch.recv_data()
        assert ch.keys.current == advance(KEY_SEED)
    finally:
        stray.close()
        server.close()
        ch.close()


def test_datagram_channel_resolves_host_name():
    ch = DatagramChannel.open("localhost", 9)
    try:
        assert ch.dest == ("127.0.0.1", 9)
    finally:
        ch.close()
