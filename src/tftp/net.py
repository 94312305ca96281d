from __future__ import annotations

import random
import socket
import time
from dataclasses import dataclass
from typing import Tuple

from .constants import RECV_BUFSIZE

Address = Tuple[str, int]


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    """A UDP socket plus the peer it currently talks to.

    ``peer`` is None until the endpoint has locked onto a transfer
    partner; afterwards :meth:`recv` drops datagrams from anyone else.
    """

    def __init__(
        self,
        sock: socket.socket,
        peer: Address | None = None,
        impairment: Impairment | None = None,
    ):
        self.sock = sock
        self.peer = peer
        self.impairment = impairment or Impairment()

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        reuse_port: bool = False,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if reuse_port:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind((host, port))
        return cls(sock)

    @classmethod
    def sending(cls, impairment: Impairment | None = None) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("", 0))
        return cls(sock, impairment=impairment)

    @classmethod
    def connected(
        cls,
        peer: Address,
        host: str = "",
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        """Open a fresh ephemeral-port socket dialed to ``peer``."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, 0))
            sock.connect(peer)
        except OSError:
            sock.close()
            raise
        return cls(sock, peer=peer, impairment=impairment)

    @property
    def address(self) -> Address:
        return self.sock.getsockname()[:2]

    def sendto(self, data: bytes, addr: Address) -> None:
        if self.impairment.should_drop():
            return
        self.impairment.sleep_if_needed()
        self.sock.sendto(data, addr)

    def send(self, data: bytes) -> None:
        if self.peer is None:
            raise RuntimeError("endpoint has no peer")
        self.sendto(data, self.peer)

    def recvfrom(self, timeout_s: float | None = None) -> Tuple[bytes, Address]:
        """Receive one datagram from anyone.

        Raises TimeoutError if ``timeout_s`` elapses first.
        """
        self.sock.settimeout(timeout_s)
        while True:
            data, addr = self.sock.recvfrom(RECV_BUFSIZE)
            if self.impairment.should_drop():
                continue
            self.impairment.sleep_if_needed()
            return data, addr[:2]

    def recv(self, timeout_s: float | None = None) -> bytes:
        """Receive one datagram from the locked peer, ignoring strangers."""
        end = None if timeout_s is None else time.monotonic() + timeout_s
        while True:
            remaining = None if end is None else max(0.0, end - time.monotonic())
            if remaining == 0.0:
                raise TimeoutError("timed out waiting for peer")
            data, addr = self.recvfrom(remaining)
            if self.peer is None or addr == self.peer:
                return data

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
