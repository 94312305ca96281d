from __future__ import annotations

import socket
import threading

import pytest

from tftp.packet import Packet, decode, encode
from tftp.server import TftpServer
from tftp.timer import Timing


class ScriptedPeer:
    """A hand-driven TFTP endpoint running a test script in a thread.

    Requests arrive on ``listen``; the transfer itself uses ``xfer``, so
    the client sees a different source port as with a real server.
    """

    def __init__(self) -> None:
        self.listen = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.listen.bind(("127.0.0.1", 0))
        self.listen.settimeout(5.0)
        self.xfer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.xfer.bind(("127.0.0.1", 0))
        self.xfer.settimeout(5.0)
        self.client = None
        self.received: list[Packet] = []
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

    @property
    def address(self):
        return self.listen.getsockname()

    def accept(self) -> Packet:
        raw, self.client = self.listen.recvfrom(65535)
        return decode(raw)

    def send(self, packet: Packet) -> None:
        self.xfer.sendto(encode(packet), self.client)

    def recv(self) -> Packet:
        raw, _ = self.xfer.recvfrom(65535)
        packet = decode(raw)
        self.received.append(packet)
        return packet

    def run(self, script) -> None:
        def target():
            try:
                script(self)
            except BaseException as e:
                self._error = e

        self._thread = threading.Thread(target=target, daemon=True)
        self._thread.start()

    def join(self) -> None:
        assert self._thread is not None
        self._thread.join(10.0)
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.listen.close()
        self.xfer.close()


@pytest.fixture
def peer():
    p = ScriptedPeer()
    yield p
    p.close()


@pytest.fixture
def fast_timing() -> Timing:
    return Timing(deadline_s=5.0, retransmit_s=0.2, linger_s=0.5)


@pytest.fixture
def server_factory(tmp_path, fast_timing):
    """Start servers on ephemeral loopback ports, serving ``tmp_path/root``."""
    root = tmp_path / "root"
    root.mkdir()
    started = []

    def start(**kwargs) -> TftpServer:
        kwargs.setdefault("timing", fast_timing)
        srv = TftpServer(str(root), "127.0.0.1", 0, **kwargs)
        srv.bind()
        t = threading.Thread(target=srv.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        t.start()
        started.append((srv, t))
        return srv

    yield start

    for srv, t in started:
        srv.shutdown()
        t.join(2.0)
        srv.join(1.0)


@pytest.fixture
def server(server_factory) -> TftpServer:
    return server_factory()
