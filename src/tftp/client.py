from __future__ import annotations

import logging
import threading
import time
from typing import BinaryIO

from .constants import MAX_BLOCK_SIZE, MIN_BLOCK_SIZE, OPT_BLKSIZE
from .errors import DecodeError, NegotiationError, ProtocolError, RemoteError, TftpError, TransferTimeout
from .net import Address, Impairment, UdpEndpoint
from .packet import Ack, Data, Error, OptionAck, Packet, ReadRequest, WriteRequest, decode, encode
from .session import TransferResult, TransferSession, next_block
from .timer import Matcher, Timing

log = logging.getLogger(__name__)


def _expect_data(block: int) -> Matcher:
    def match(packet: Packet) -> bool:
        if isinstance(packet, Data):
            return packet.block == block
        # the server resends its OACK until our ACK 0 gets through
        if isinstance(packet, OptionAck) and block == 1:
            return False
        raise ProtocolError(f"expected DATA {block}, got {packet.opcode.name}")

    return match


def _expect_ack(block: int) -> Matcher:
    def match(packet: Packet) -> bool:
        if isinstance(packet, Ack):
            return packet.block == block
        if isinstance(packet, OptionAck) and block == 1:
            return False
        raise ProtocolError(f"expected ACK {block}, got {packet.opcode.name}")

    return match


def _linger(session: TransferSession, block: int, ack: bytes) -> None:
    with session:
        session.linger(block, ack)


def _read_chunk(f: BinaryIO, size: int) -> bytes:
    chunk = b""
    while len(chunk) < size:
        part = f.read(size - len(chunk))
        if not part:
            break
        chunk += part
    return chunk


class TftpClient:
    """Lockstep TFTP client. Every transfer gets its own socket."""

    def __init__(
        self,
        server: Address,
        *,
        timing: Timing | None = None,
        impairment: Impairment | None = None,
        mode: str = "octet",
    ):
        self.server = server
        self.timing = timing or Timing()
        self.impairment = impairment
        self.mode = mode

    def get_file(self, filename: str, out: BinaryIO, blksize: int | None = None) -> TransferResult:
        """Download ``filename`` into ``out``.

        Returns once the final ACK is sent; a daemon thread keeps the
        session open to re-acknowledge the last block if that ACK is lost.
        """
        session = self._session()
        try:
            reply = self._request(session, ReadRequest(filename, self.mode, self._options(blksize)))
            if self._negotiate(session, reply, blksize):
                reply = session.timer.exchange(encode(Ack(0)), _expect_data(1))

            session.block = 1
            while True:
                if not isinstance(reply, Data) or reply.block != session.block:
                    raise ProtocolError(f"expected DATA {session.block}, got {reply!r}")
                if len(reply.payload) > session.block_size:
                    raise ProtocolError(
                        f"DATA {reply.block} carries {len(reply.payload)} bytes, "
                        f"block size is {session.block_size}"
                    )

                out.write(reply.payload)
                session.bytes_transferred += len(reply.payload)
                session.blocks += 1

                ack = encode(Ack(reply.block))
                if len(reply.payload) < session.block_size:
                    session.endpoint.send(ack)
                    break
                session.block = next_block(session.block)
                reply = session.timer.exchange(ack, _expect_data(session.block))
        except TftpError as e:
            session.report(e)
            session.close()
            raise
        except BaseException:
            session.close()
            raise

        result = session.result()
        threading.Thread(target=_linger, args=(session, session.block, ack), daemon=True).start()
        log.info("get %s: %d bytes in %d blocks", filename, result.bytes_transferred, result.blocks)
        return result

    def put_file(self, filename: str, data: BinaryIO, blksize: int | None = None) -> TransferResult:
        """Upload the contents of ``data`` as ``filename``."""
        with self._session() as session:
            try:
                reply = self._request(session, WriteRequest(filename, self.mode, self._options(blksize)))
                if not self._negotiate(session, reply, blksize):
                    if not isinstance(reply, Ack) or reply.block != 0:
                        raise ProtocolError(f"expected ACK 0, got {reply!r}")

                while True:
                    chunk = _read_chunk(data, session.block_size)
                    session.block = next_block(session.block)
                    session.timer.exchange(encode(Data(session.block, chunk)), _expect_ack(session.block))
                    session.bytes_transferred += len(chunk)
                    session.blocks += 1
                    if len(chunk) < session.block_size:
                        break
            except TftpError as e:
                session.report(e)
                raise

            result = session.result()
        log.info("put %s: %d bytes in %d blocks", filename, result.bytes_transferred, result.blocks)
        return result

    def _session(self) -> TransferSession:
        return TransferSession(UdpEndpoint.sending(self.impairment), self.timing)

    @staticmethod
    def _options(blksize: int | None) -> dict[str, str]:
        if blksize is None:
            return {}
        if not MIN_BLOCK_SIZE <= blksize <= MAX_BLOCK_SIZE:
            raise ValueError(f"blksize must be between {MIN_BLOCK_SIZE} and {MAX_BLOCK_SIZE}")
        return {OPT_BLKSIZE: str(blksize)}

    def _request(self, session: TransferSession, request: ReadRequest | WriteRequest) -> Packet:
        """Send the request and wait for the first reply, resending on each tick.

        Repeats come from the same source port, which the server uses to
        drop duplicates of a transfer already in flight. The reply's source
        address becomes the session peer.
        """
        endpoint = session.endpoint
        raw_request = encode(request)
        endpoint.sendto(raw_request, self.server)
        now = time.monotonic()
        deadline = now + self.timing.deadline_s
        tick = now + self.timing.retransmit_s

        while True:
            now = time.monotonic()
            if now >= deadline:
                raise TransferTimeout(f"no reply to {request.opcode.name} from {self.server}")
            if now >= tick:
                session.timer.retransmits += 1
                log.debug("resending %s to %s", request.opcode.name, self.server)
                endpoint.sendto(raw_request, self.server)
                tick = now + self.timing.retransmit_s
                continue
            try:
                raw, addr = endpoint.recvfrom(min(deadline, tick) - now)
            except TimeoutError:
                continue
            try:
                packet = decode(raw)
            except DecodeError as e:
                log.debug("ignoring undecodable datagram from %s: %s", addr, e)
                continue

            endpoint.peer = addr
            if isinstance(packet, Error):
                raise RemoteError(packet.code, packet.message)
            return packet

    @staticmethod
    def _negotiate(session: TransferSession, reply: Packet, blksize: int | None) -> bool:
        """Apply the server's OACK. Returns True if one was received.

        Any disagreement with the requested block size is fatal.
        """
        if blksize is None:
            if isinstance(reply, OptionAck):
                raise ProtocolError("server sent OACK for a request without options")
            return False

        if not isinstance(reply, OptionAck):
            raise NegotiationError(f"server ignored blksize={blksize}")
        try:
            granted = reply.blksize
        except ValueError:
            raise NegotiationError(f"unparsable blksize in OACK: {reply.options!r}") from None
        if granted != blksize:
            raise NegotiationError(f"requested blksize={blksize}, server offered {granted}")

        session.block_size = blksize
        return True
