from __future__ import annotations

import socket

import pytest

from echoprobe import net
from echoprobe.errors import ConnectRefused, ConnectTimeout, ReadTimeout, ShortRead
from echoprobe.net import Impairment, TcpEndpoint, UdpEndpoint


def _free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def test_recv_exact_reassembles_chunks():
    a, b = socket.socketpair()
    ep = TcpEndpoint.accepted(a, read_timeout_ms=1000)
    b.sendall(b"ab")
    b.sendall(b"cd")
    assert ep.recv_exact(4) == b"abcd"
    ep.close()
    b.close()


def test_short_read_when_peer_closes_mid_unit():
    a, b = socket.socketpair()
    ep = TcpEndpoint.accepted(a, read_timeout_ms=1000)
    b.sendall(b"ab")
    b.close()
    with pytest.raises(ShortRead) as info:
        ep.recv_exact(4)
    assert info.value.received == 2
    ep.close()


def test_read_timeout():
    a, b = socket.socketpair()
    ep = TcpEndpoint.accepted(a, read_timeout_ms=50)
    with pytest.raises(ReadTimeout):
        ep.recv_exact(1)
    ep.close()
    b.close()


def test_connect_refused():
    with pytest.raises(ConnectRefused):
        TcpEndpoint.connect("127.0.0.1", _free_port(), connect_timeout_ms=1000)


def test_connect_timeout(monkeypatch):
    def stalled(address, timeout=None):
        raise TimeoutError("timed out")

    monkeypatch.setattr(net.socket, "create_connection", stalled)
    with pytest.raises(ConnectTimeout):
        TcpEndpoint.connect("192.0.2.1", 9, connect_timeout_ms=10)


def test_close_is_idempotent():
    a, b = socket.socketpair()
    ep = TcpEndpoint.accepted(a)
    ep.close()
    ep.close()
    b.close()


def test_impairment_drop_decision():
    assert Impairment(loss_rate=1.0).should_drop()
    assert not Impairment().should_drop()


def test_lossy_udp_sender_delivers_nothing():
    rx = UdpEndpoint.listening("127.0.0.1", 0, timeout_ms=100)
    tx = UdpEndpoint.sending(impairment=Impairment(loss_rate=1.0))
    tx.sendto(b"lost", rx.address)
    with pytest.raises(TimeoutError):
        rx.recvfrom()
    tx.close()
    rx.close()
