from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .constants import DEFAULT_DEADLINE_S, DEFAULT_RETRANSMIT_S
from .errors import DecodeError, RemoteError, TransferTimeout
from .net import UdpEndpoint
from .packet import Error, Packet, decode

log = logging.getLogger(__name__)

# Returns True for the awaited reply, False for noise. May raise to abort.
Matcher = Callable[[Packet], bool]


@dataclass(frozen=True, slots=True)
class Timing:
    """Per-instance timing.

    ``linger_s`` is how long the side that sent the final ACK keeps
    re-acknowledging repeats of the last DATA; one deadline when None.
    """

    deadline_s: float = DEFAULT_DEADLINE_S
    retransmit_s: float = DEFAULT_RETRANSMIT_S
    linger_s: float | None = None

    @property
    def linger(self) -> float:
        return self.deadline_s if self.linger_s is None else self.linger_s


@dataclass(slots=True)
class RetransmitTimer:
    """Lockstep send/await with a retransmit tick raced against a deadline.

    Each :meth:`exchange` starts a fresh deadline. Whenever the retransmit
    interval elapses without an accepted reply the identical bytes are sent
    again and only the interval restarts. Noise (undecodable datagrams or
    replies the matcher rejects) never touches either timer.
    """

    endpoint: UdpEndpoint
    timing: Timing = Timing()
    retransmits: int = 0

    def exchange(self, raw: bytes, matcher: Matcher) -> Packet:
        self.endpoint.send(raw)
        return self.await_reply(matcher, resend=raw)

    def await_reply(self, matcher: Matcher, resend: bytes | None = None) -> Packet:
        """Wait for an accepted reply, resending ``resend`` on each tick.

        With ``resend`` None only the deadline applies.
        """
        now = time.monotonic()
        deadline = now + self.timing.deadline_s
        tick = now + self.timing.retransmit_s if resend is not None else deadline

        while True:
            now = time.monotonic()
            if now >= deadline:
                raise TransferTimeout(f"no reply within {self.timing.deadline_s:g}s")
            if now >= tick:
                self.retransmits += 1
                log.debug("retransmitting %d bytes to %s", len(resend), self.endpoint.peer)
                self.endpoint.send(resend)
                tick = now + self.timing.retransmit_s
                continue

            try:
                raw = self.endpoint.recv(min(deadline, tick) - now)
            except TimeoutError:
                continue

            try:
                packet = decode(raw)
            except DecodeError as e:
                log.debug("ignoring undecodable datagram: %s", e)
                continue

            if isinstance(packet, Error):
                raise RemoteError(packet.code, packet.message)
            if matcher(packet):
                return packet
            log.debug("ignoring unexpected %r", packet)
