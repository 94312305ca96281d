from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from .constants import BLOCK_MODULUS, DEFAULT_BLOCK_SIZE
from .errors import DecodeError, RemoteError, TftpError, TransferTimeout
from .net import Address, UdpEndpoint
from .packet import Data, Error, decode, encode
from .timer import RetransmitTimer, Timing

log = logging.getLogger(__name__)


def next_block(block: int) -> int:
    return (block + 1) % BLOCK_MODULUS


@dataclass(frozen=True, slots=True)
class TransferResult:
    bytes_transferred: int
    blocks: int
    retransmits: int
    duration_s: float

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_transferred * 8 / 1_000_000) / self.duration_s


@dataclass(slots=True)
class TransferSession:
    """State of one transfer. Owns its endpoint and closes it on exit."""

    endpoint: UdpEndpoint
    timing: Timing = Timing()
    block: int = 0
    block_size: int = DEFAULT_BLOCK_SIZE
    bytes_transferred: int = 0
    blocks: int = 0
    started: float = field(default_factory=time.monotonic)
    timer: RetransmitTimer = field(init=False)

    def __post_init__(self) -> None:
        self.timer = RetransmitTimer(self.endpoint, self.timing)

    @property
    def peer(self) -> Address | None:
        return self.endpoint.peer

    def result(self) -> TransferResult:
        return TransferResult(
            bytes_transferred=self.bytes_transferred,
            blocks=self.blocks,
            retransmits=self.timer.retransmits,
            duration_s=max(0.0, time.monotonic() - self.started),
        )

    def report(self, exc: TftpError) -> None:
        """Send the peer an ERROR packet describing a local failure."""
        if self.peer is None or isinstance(exc, (RemoteError, TransferTimeout)):
            return
        try:
            self.endpoint.send(encode(Error(exc.code, str(exc))))
        except OSError as e:
            log.debug("could not report error to %s: %s", self.peer, e)

    def linger(self, block: int, ack: bytes) -> None:
        """Re-send ``ack`` for repeats of the final DATA ``block``.

        Covers a lost final ACK: the peer keeps retransmitting its last
        block until it hears the ACK or its own deadline expires.
        """
        end = time.monotonic() + self.timing.linger
        while True:
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            try:
                raw = self.endpoint.recv(remaining)
            except TimeoutError:
                return
            except OSError as e:
                log.debug("linger on %s ended: %s", self.peer, e)
                return
            try:
                packet = decode(raw)
            except DecodeError:
                continue
            if isinstance(packet, Data) and packet.block == block:
                log.debug("re-acknowledging final block %d to %s", block, self.peer)
                try:
                    self.endpoint.send(ack)
                except OSError as e:
                    log.debug("linger on %s ended: %s", self.peer, e)
                    return

    def close(self) -> None:
        self.endpoint.close()

    def __enter__(self) -> "TransferSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
